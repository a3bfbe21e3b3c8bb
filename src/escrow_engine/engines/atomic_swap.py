"""
Atomic swap escrow: party A trades ``amount_a`` of one asset for party B's
``amount_b`` of another.

Party A occupies the buyer slot and party B the seller slot. The swap runs
only once both deposits are confirmed; each party receives the other's
asset net of the platform fee charged on the sender's amount. Before that
point everything is reversible: on timeout a lone depositor is refunded in
full and an unfunded swap is simply cancelled.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from ..exceptions import LedgerRejectedError, StateConflictError
from ..models import (
    PRE_FUNDING_STATUSES,
    ActionType,
    Asset,
    AtomicSwapTerms,
    Dispute,
    DisputePriority,
    EscrowContract,
    EscrowStatus,
    PartyRole,
    ReleaseType,
    TimeoutType,
    new_id,
)
from ..notifications import NotificationType
from .base import (
    SWAP_EVENT,
    SWAP_LEG_A,
    SWAP_LEG_B,
    EngineContext,
    payouts,
    positive_amount,
    require_status,
    transition,
    validate_parties,
)

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"

_EXECUTABLE = (EscrowStatus.FULLY_FUNDED,)


class SwapTimeoutResult(str, Enum):
    NOT_EXPIRED = "not_expired"
    ALREADY_HANDLED = "already_handled"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    EXECUTED = "executed"


@dataclass(frozen=True)
class PartyDepositStatus:
    role: PartyRole
    wallet: str
    deposited: bool
    expected_amount: Decimal
    asset: Asset
    received_amount: Decimal
    deposit_ids: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role.value,
            "wallet": self.wallet,
            "deposited": self.deposited,
            "expected_amount": str(self.expected_amount),
            "asset": self.asset.symbol,
            "received_amount": str(self.received_amount),
        }


@dataclass(frozen=True)
class SwapDepositStatus:
    both_deposited: bool
    party_a: PartyDepositStatus
    party_b: PartyDepositStatus
    ready_for_swap: bool
    escrow_wallet: str
    swap_executed: bool


@dataclass(frozen=True)
class SwapReadiness:
    ready: bool
    reasons: list[str] = field(default_factory=list)

    @property
    def reason(self) -> Optional[str]:
        return "; ".join(self.reasons) if self.reasons else None


def _terms(contract: EscrowContract) -> AtomicSwapTerms:
    if not isinstance(contract.terms, AtomicSwapTerms):
        raise StateConflictError(
            "Not an atomic swap escrow",
            expected="atomic_swap",
            actual=contract.kind.value,
        )
    return contract.terms


def _expected(contract: EscrowContract, role: PartyRole) -> tuple[Asset, Decimal]:
    expected = contract.expected_deposit(role)
    if expected is None:
        raise StateConflictError(f"Escrow {contract.id} expects no deposit from the {role.value}")
    return expected


class AtomicSwapEngine:
    """Two-asset exchange through one custodial wallet."""

    def __init__(self, ctx: EngineContext) -> None:
        self.ctx = ctx

    async def create(
        self,
        party_a: str,
        party_b: str,
        asset_a: Asset,
        amount_a: Decimal | str | int,
        asset_b: Asset,
        amount_b: Decimal | str | int,
        timeout_hours: int = 24,
        description: Optional[str] = None,
    ) -> EscrowContract:
        """
        Create an atomic swap.

        Args:
            party_a: Wallet depositing ``amount_a`` of ``asset_a``
            party_b: Wallet depositing ``amount_b`` of ``asset_b``
            timeout_hours: Hours both parties have to deposit

        Raises:
            ValidationError: Missing or identical wallets, non-positive amounts
        """
        validate_parties(party_a, party_b, labels=("Party A", "Party B"))
        amount_a = positive_amount(amount_a, "amount_a", "Party A amount")
        amount_b = positive_amount(amount_b, "amount_b", "Party B amount")

        terms = AtomicSwapTerms(asset_a=asset_a, amount_a=amount_a, asset_b=asset_b, amount_b=amount_b)
        contract = await self.ctx.open_contract(
            party_a, party_b, terms, timeout_hours, TimeoutType.SWAP, description,
        )

        await self.ctx.record(
            contract,
            party_a,
            ActionType.CREATED,
            f"Atomic swap created: {amount_a} {asset_a.symbol} <-> {amount_b} {asset_b.symbol}",
            {
                "party_a_asset": asset_a.symbol,
                "party_a_amount": str(amount_a),
                "party_b_asset": asset_b.symbol,
                "party_b_amount": str(amount_b),
                "timeout_hours": timeout_hours,
            },
        )
        self.ctx.notify(
            [party_a, party_b],
            NotificationType.ESCROW_CREATED,
            contract,
            f"Atomic swap created: deposit before {contract.expires_at:%Y-%m-%d %H:%M} UTC",
            {"escrow_wallet": contract.escrow_wallet},
        )
        logger.info("Created atomic swap %s", contract.id)
        return contract

    # -- deposit detection ---------------------------------------------------

    async def monitor_party_deposit(self, escrow_id: str, role: PartyRole) -> PartyDepositStatus:
        """Compare one party's confirmed deposits with what it owes."""
        contract = await self.ctx.load_contract(escrow_id)
        _terms(contract)
        return await self._party_status(contract, role)

    async def _party_status(self, contract: EscrowContract, role: PartyRole) -> PartyDepositStatus:
        expected = _expected(contract, role)
        asset, amount = expected
        deposits = [d for d in await self.ctx.confirmed_deposits(contract.id, role) if d.asset == asset]
        received = sum((d.amount for d in deposits), Decimal("0"))
        return PartyDepositStatus(
            role=role,
            wallet=contract.wallet_for(role),
            deposited=bool(deposits) and received >= amount,
            expected_amount=amount,
            asset=asset,
            received_amount=received,
            deposit_ids=tuple(d.id for d in deposits),
        )

    async def detect_both_deposits(self, escrow_id: str) -> SwapDepositStatus:
        contract = await self.ctx.load_contract(escrow_id)
        terms = _terms(contract)
        party_a = await self._party_status(contract, PartyRole.BUYER)
        party_b = await self._party_status(contract, PartyRole.SELLER)
        both = party_a.deposited and party_b.deposited
        ready = (
            both
            and not terms.swap_executed
            and contract.status not in (EscrowStatus.DISPUTED, EscrowStatus.CANCELLED)
            and not self._expired(contract)
        )
        logger.debug(
            "Swap %s deposits: A=%s B=%s ready=%s", escrow_id, party_a.deposited, party_b.deposited, ready,
        )
        return SwapDepositStatus(
            both_deposited=both,
            party_a=party_a,
            party_b=party_b,
            ready_for_swap=ready,
            escrow_wallet=contract.escrow_wallet,
            swap_executed=terms.swap_executed,
        )

    def _expired(self, contract: EscrowContract) -> bool:
        return contract.expires_at is not None and self.ctx.clock() >= contract.expires_at

    def _readiness(self, contract: EscrowContract, *, ignore_expiry: bool = False) -> SwapReadiness:
        if not isinstance(contract.terms, AtomicSwapTerms):
            return SwapReadiness(False, ["Not an atomic swap escrow"])
        reasons = []
        if contract.terms.swap_executed:
            reasons.append("Swap already executed")
        if contract.status is EscrowStatus.DISPUTED:
            reasons.append("Escrow is disputed")
        elif contract.status is EscrowStatus.CANCELLED:
            reasons.append("Escrow is cancelled")
        elif contract.status is not EscrowStatus.FULLY_FUNDED and not contract.terms.swap_executed:
            if not contract.buyer_deposited:
                reasons.append("Waiting for party A deposit")
            if not contract.seller_deposited:
                reasons.append("Waiting for party B deposit")
        if not ignore_expiry and self._expired(contract):
            reasons.append("Swap has expired")
        return SwapReadiness(not reasons, reasons)

    async def check_swap_readiness(self, escrow_id: str) -> SwapReadiness:
        contract = await self.ctx.store.get_contract(escrow_id)
        if contract is None:
            return SwapReadiness(False, ["Escrow not found"])
        return self._readiness(contract)

    # -- execution -----------------------------------------------------------

    async def execute(
        self, escrow_id: str, triggered_by: str = SYSTEM_ACTOR, *, ignore_expiry: bool = False
    ) -> EscrowContract:
        """
        Cross-transfer both deposits, each net of its own platform fee.

        Same-asset swaps settle in one transaction. Cross-asset swaps need
        one transaction per asset; if the second is rejected after the first
        confirmed, the escrow is frozen as disputed and an urgent dispute is
        opened for an admin.

        Raises:
            StateConflictError: Swap not ready (reasons in the message)
            LedgerRejectedError: A leg was rejected by the ledger
            ExternalFailure: Ledger unreachable; safe to retry
        """
        contract = await self.ctx.load_contract(escrow_id)
        terms = _terms(contract)
        readiness = self._readiness(contract, ignore_expiry=ignore_expiry)
        if not readiness.ready:
            raise StateConflictError(
                f"Swap not ready: {readiness.reason}",
                expected=EscrowStatus.FULLY_FUNDED,
                actual=contract.status,
            )
        require_status(contract, EscrowStatus.FULLY_FUNDED)

        split = self.ctx.fees.swap(terms.amount_a, terms.amount_b, terms.asset_a.quantum, terms.asset_b.quantum)
        fee_a, fee_b = split.party_a, split.party_b
        treasury = self.ctx.fees.treasury_wallet

        leg_a = [
            (contract.seller_wallet, fee_a.net, ReleaseType.SWAP_EXECUTION),
            (treasury, fee_a.fee, ReleaseType.PLATFORM_FEE),
        ]
        leg_b = [
            (contract.buyer_wallet, fee_b.net, ReleaseType.SWAP_EXECUTION),
            (treasury, fee_b.fee, ReleaseType.PLATFORM_FEE),
        ]

        if terms.asset_a == terms.asset_b:
            settlement = await self.ctx.settle(
                contract, SWAP_EVENT, ReleaseType.SWAP_EXECUTION, terms.asset_a,
                payouts(leg_a + leg_b), triggered_by, allowed=_EXECUTABLE,
            )
            tx_refs = [settlement.tx_ref]
        else:
            first = await self.ctx.settle(
                contract, SWAP_LEG_A, ReleaseType.SWAP_EXECUTION, terms.asset_a,
                payouts(leg_a), triggered_by, allowed=_EXECUTABLE,
            )
            try:
                second = await self.ctx.settle(
                    contract, SWAP_LEG_B, ReleaseType.SWAP_EXECUTION, terms.asset_b,
                    payouts(leg_b), triggered_by, allowed=_EXECUTABLE,
                )
            except LedgerRejectedError as e:
                await self._freeze_partial_swap(contract, first.tx_ref, e)
                raise LedgerRejectedError(
                    f"Partial swap failure - admin intervention required. First TX: {first.tx_ref}",
                    tx_ref=first.tx_ref,
                    operation="swap_execution",
                ) from e
            tx_refs = [first.tx_ref, second.tx_ref]

        contract = await self.ctx.load_contract(escrow_id)
        require_status(contract, EscrowStatus.FULLY_FUNDED)
        terms = _terms(contract)
        terms.swap_executed = True
        terms.swap_tx_refs = [ref for ref in tx_refs if ref]
        terms.executed_at = self.ctx.clock()
        transition(contract, EscrowStatus.COMPLETED)
        contract.completed_at = terms.executed_at
        contract = await self.ctx.save_contract(contract)
        await self.ctx.resolve_timeouts(escrow_id, "swap_executed")

        await self.ctx.record(
            contract,
            triggered_by,
            ActionType.SWAPPED,
            "Atomic swap executed",
            {
                "tx_refs": terms.swap_tx_refs,
                "party_a_received": f"{fee_b.net} {terms.asset_b.symbol}",
                "party_b_received": f"{fee_a.net} {terms.asset_a.symbol}",
                "fee_a": str(fee_a.fee),
                "fee_b": str(fee_b.fee),
            },
        )
        self.ctx.notify(
            [contract.buyer_wallet, contract.seller_wallet],
            NotificationType.SWAP_EXECUTED,
            contract,
            f"Swap complete: {fee_a.net} {terms.asset_a.symbol} <-> {fee_b.net} {terms.asset_b.symbol}",
            {"tx_refs": terms.swap_tx_refs},
        )
        logger.info("Executed atomic swap %s: %s", escrow_id, terms.swap_tx_refs)
        return contract

    async def _freeze_partial_swap(
        self, contract: EscrowContract, first_tx: Optional[str], error: LedgerRejectedError
    ) -> None:
        logger.critical(
            "Partial swap failure on escrow %s: first leg %s confirmed, second leg rejected: %s",
            contract.id, first_tx, error.message,
        )
        contract = await self.ctx.load_contract(contract.id)
        transition(contract, EscrowStatus.DISPUTED)
        contract = await self.ctx.save_contract(contract)
        await self.ctx.store.insert_dispute(
            Dispute(
                id=new_id("dsp"),
                escrow_id=contract.id,
                raised_by=SYSTEM_ACTOR,
                party_role=PartyRole.ADMIN,
                reason="Partial swap execution failure",
                description=(
                    f"First leg {first_tx} confirmed but the second leg was rejected: "
                    f"{error.message}. Manual completion or refund required."
                ),
                priority=DisputePriority.URGENT,
                created_at=self.ctx.clock(),
            )
        )
        await self.ctx.schedule_timeout(contract.id, TimeoutType.DISPUTE)
        await self.ctx.record(
            contract,
            SYSTEM_ACTOR,
            ActionType.DISPUTED,
            "Partial swap failure - admin intervention required",
            {"first_tx": first_tx, "error": error.message},
        )
        self.ctx.notify(
            [contract.buyer_wallet, contract.seller_wallet],
            NotificationType.DISPUTE_RAISED,
            contract,
            "Swap could not be completed and has been sent to admin review",
        )

    # -- timeout -------------------------------------------------------------

    async def handle_timeout(self, escrow_id: str) -> SwapTimeoutResult:
        """
        Resolve an expired swap from deposit state alone.

        No deposits: cancel. One deposit: refund it in full. Both deposits:
        execute the swap anyway, since completeness outranks the deadline.
        """
        contract = await self.ctx.load_contract(escrow_id)
        terms = _terms(contract)

        if contract.is_terminal or terms.swap_executed:
            logger.info("Swap %s already handled (%s)", escrow_id, contract.status.value)
            return SwapTimeoutResult.ALREADY_HANDLED
        if contract.status is EscrowStatus.DISPUTED:
            return SwapTimeoutResult.DISPUTED
        if not self._expired(contract):
            return SwapTimeoutResult.NOT_EXPIRED

        if contract.buyer_deposited and contract.seller_deposited:
            logger.info("Swap %s expired with both deposits; executing", escrow_id)
            await self.execute(escrow_id, SYSTEM_ACTOR, ignore_expiry=True)
            return SwapTimeoutResult.EXECUTED

        if not contract.buyer_deposited and not contract.seller_deposited:
            transition(contract, EscrowStatus.CANCELLED)
            contract.cancelled_at = self.ctx.clock()
            contract = await self.ctx.save_contract(contract)
            await self.ctx.resolve_timeouts(escrow_id, "cancelled")
            await self.ctx.record(contract, SYSTEM_ACTOR, ActionType.TIMEOUT, "Swap timed out with no deposits")
            self.ctx.notify(
                [contract.buyer_wallet, contract.seller_wallet],
                NotificationType.ESCROW_CANCELLED,
                contract,
                "Swap expired before either party deposited and has been cancelled",
            )
            return SwapTimeoutResult.CANCELLED

        role = PartyRole.BUYER if contract.buyer_deposited else PartyRole.SELLER
        await self._refund_lone_depositor(contract, role)
        return SwapTimeoutResult.REFUNDED

    async def _refund_lone_depositor(self, contract: EscrowContract, role: PartyRole) -> None:
        expected = _expected(contract, role)
        asset, expected_amount = expected
        received = sum(
            (d.amount for d in await self.ctx.confirmed_deposits(contract.id, role) if d.asset == asset),
            Decimal("0"),
        )
        amount = received or expected_amount
        recipient = contract.wallet_for(role)
        party = "Party A" if role is PartyRole.BUYER else "Party B"

        settlement = await self.ctx.settle(
            contract, "timeout_refund", ReleaseType.REFUND, asset,
            payouts([(recipient, amount, ReleaseType.REFUND)]), SYSTEM_ACTOR,
            allowed=PRE_FUNDING_STATUSES,
        )

        contract = await self.ctx.load_contract(contract.id)
        require_status(contract, *PRE_FUNDING_STATUSES)
        transition(contract, EscrowStatus.REFUNDED)
        contract.completed_at = self.ctx.clock()
        contract = await self.ctx.save_contract(contract)
        await self.ctx.resolve_timeouts(contract.id, "refunded")

        await self.ctx.record(
            contract,
            SYSTEM_ACTOR,
            ActionType.REFUNDED,
            f"Swap timed out. Refunded {party}: {amount} {asset.symbol}",
            {"tx_ref": settlement.tx_ref, "recipient": recipient, "amount": str(amount)},
        )
        self.ctx.notify(
            recipient,
            NotificationType.REFUND_ISSUED,
            contract,
            f"The counterparty did not deposit in time. Your {amount} {asset.symbol} has been refunded.",
            {"tx_ref": settlement.tx_ref},
        )
        counterparty = contract.seller_wallet if role is PartyRole.BUYER else contract.buyer_wallet
        self.ctx.notify(
            counterparty,
            NotificationType.ESCROW_CANCELLED,
            contract,
            "You did not deposit in time. The swap has been cancelled and the counterparty refunded.",
        )
