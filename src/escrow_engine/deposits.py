"""
Deposit monitor: maps ledger transfers into an escrow's custodial wallet to
the per-party deposits each contract kind expects.

A deposit is recorded once per transaction reference and verified against
the ledger before it counts. Funding state is always recomputed from the
confirmed deposit rows, never incremented, so running the funding check or
the periodic scan again with nothing new on the ledger changes nothing.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Optional

from .exceptions import (
    AuthorizationError,
    EscrowException,
    StateConflictError,
    ValidationError,
)
from .models import (
    PRE_FUNDING_STATUSES,
    ActionType,
    Asset,
    AtomicSwapTerms,
    Deposit,
    EscrowContract,
    EscrowKind,
    EscrowStatus,
    MilestoneTerms,
    PartyRole,
    TimeoutType,
    TraditionalTerms,
    is_fully_funded,
    new_id,
    to_decimal,
)
from .notifications import NotificationType
from .engines.base import EngineContext, transition

if TYPE_CHECKING:
    from .engines.atomic_swap import AtomicSwapEngine

logger = logging.getLogger(__name__)

_SYNC_ATTEMPTS = 3


@dataclass(frozen=True)
class FundingSnapshot:
    """Funding state computed from confirmed deposit rows."""
    escrow_id: str
    kind: EscrowKind
    status: EscrowStatus
    buyer_deposited: bool
    seller_deposited: bool
    fully_funded: bool
    deposits: list[Deposit] = field(default_factory=list)


@dataclass(frozen=True)
class BalanceReport:
    escrow_id: str
    escrow_wallet: str
    asset: Asset
    expected: Decimal
    balance: Decimal

    @property
    def shortfall(self) -> Decimal:
        return max(self.expected - self.balance, Decimal("0"))


def _required_deposit(contract: EscrowContract, role: PartyRole) -> tuple[Asset, Decimal]:
    expected = contract.expected_deposit(role)
    if expected is None:
        raise StateConflictError(f"Escrow {contract.id} expects no deposit from the {role.value}")
    return expected


def _deposited_roles(contract: EscrowContract, deposits: list[Deposit]) -> set[PartyRole]:
    """Roles whose confirmed deposits cover what they owe."""
    received: dict[PartyRole, Decimal] = defaultdict(Decimal)
    for d in deposits:
        expected = contract.expected_deposit(d.party_role)
        if d.confirmed and expected is not None and d.asset == expected[0]:
            received[d.party_role] += d.amount
    roles = set()
    for role in contract.required_roles():
        expected = _required_deposit(contract, role)
        if received[role] >= expected[1]:
            roles.add(role)
    return roles


class DepositMonitor:
    """Records deposits and keeps contract funding status in step with them."""

    def __init__(self, ctx: EngineContext, swap_engine: Optional["AtomicSwapEngine"] = None) -> None:
        self.ctx = ctx
        self.swap_engine = swap_engine

    # -- recording -----------------------------------------------------------

    async def record_deposit(
        self,
        escrow_id: str,
        depositor: str,
        amount: Decimal | str | int,
        asset: Asset,
        tx_ref: str,
    ) -> Deposit:
        """
        Record and verify a party's deposit into the escrow wallet.

        Args:
            escrow_id: Escrow receiving the deposit
            depositor: Wallet that sent the funds; must be a party
            amount: Amount the depositor claims to have sent
            asset: Asset sent
            tx_ref: Ledger transaction reference of the transfer

        Returns:
            The deposit row; ``confirmed`` is False until the ledger confirms it

        Raises:
            AuthorizationError: Depositor is not a party
            ValidationError: Wrong asset, short amount, or the transaction
                does not pay the escrow wallet
            StateConflictError: Escrow already funded, party already
                deposited, or the transaction was recorded before
        """
        contract = await self.ctx.load_contract(escrow_id)
        if contract.status not in PRE_FUNDING_STATUSES:
            raise StateConflictError(
                f"Escrow is not accepting deposits (current status: {contract.status.value})",
                expected=[s.value for s in PRE_FUNDING_STATUSES],
                actual=contract.status,
            )

        role = contract.role_of(depositor)
        if role is None:
            raise AuthorizationError("Depositor is not a party in this escrow", actor=depositor)

        expected = contract.expected_deposit(role)
        if expected is None:
            raise ValidationError(f"The {role.value} does not deposit into this escrow", field="depositor")
        expected_asset, expected_amount = expected

        amount = to_decimal(amount)
        if asset != expected_asset:
            raise ValidationError(
                f"Expected a {expected_asset.symbol} deposit, got {asset.symbol}", field="asset"
            )
        if amount < expected_amount:
            raise ValidationError(
                f"Deposit of {amount} {asset.symbol} is below the required {expected_amount}",
                field="amount",
            )
        if not tx_ref:
            raise ValidationError("Transaction reference is required", field="tx_ref")

        existing = [d for d in await self.ctx.store.list_deposits(escrow_id) if d.party_role is role]
        if existing or contract.has_deposited(role):
            raise StateConflictError(f"{role.value} has already deposited", expected=False, actual=True)
        if await self.ctx.store.find_deposit_by_tx(tx_ref) is not None:
            raise StateConflictError(f"Transaction {tx_ref} has already been recorded")

        if not await self.ctx.signer.verify_transaction(tx_ref, contract.escrow_wallet, asset, amount):
            raise ValidationError("Transaction verification failed", field="tx_ref")

        confirmed = await self.ctx.signer.is_confirmed(tx_ref)
        now = self.ctx.clock()
        deposit = Deposit(
            id=new_id("dep"),
            escrow_id=escrow_id,
            depositor_wallet=depositor,
            party_role=role,
            amount=amount,
            asset=asset,
            tx_ref=tx_ref,
            confirmed=confirmed,
            detected_at=now,
            confirmed_at=now if confirmed else None,
        )
        await self.ctx.store.insert_deposit(deposit)

        funded = False
        if confirmed:
            contract, funded = await self._sync_funding(contract)

        await self.ctx.record(
            contract,
            depositor,
            ActionType.DEPOSITED,
            f"{role.value} deposited {amount} {asset.symbol}" + (" - escrow fully funded" if funded else ""),
            {"tx_ref": tx_ref, "amount": str(amount), "confirmed": confirmed},
        )
        self.ctx.notify(
            [contract.buyer_wallet, contract.seller_wallet],
            NotificationType.DEPOSIT_RECEIVED,
            contract,
            f"{role.value} deposit of {amount} {asset.symbol} "
            + ("confirmed" if confirmed else "detected, awaiting confirmation"),
            {"tx_ref": tx_ref},
        )
        logger.info(
            "Recorded %s deposit %s for escrow %s (confirmed=%s)", role.value, deposit.id, escrow_id, confirmed,
        )

        if funded:
            await self._on_funded(contract)
        return deposit

    # -- funding state -------------------------------------------------------

    async def monitor(self, escrow_id: str) -> FundingSnapshot:
        """Compute per-party deposit flags and the funding predicate from confirmed rows."""
        contract = await self.ctx.load_contract(escrow_id)
        deposits = await self.ctx.store.list_deposits(escrow_id)
        roles = _deposited_roles(contract, deposits)
        candidate = replace(
            contract,
            buyer_deposited=PartyRole.BUYER in roles,
            seller_deposited=PartyRole.SELLER in roles,
        )
        return FundingSnapshot(
            escrow_id=escrow_id,
            kind=contract.kind,
            status=contract.status,
            buyer_deposited=candidate.buyer_deposited,
            seller_deposited=candidate.seller_deposited,
            fully_funded=is_fully_funded(candidate),
            deposits=[d for d in deposits if d.confirmed],
        )

    async def check_and_update_funding_status(self, escrow_id: str) -> bool:
        """
        Bring the contract's deposit flags and status in line with its deposits.

        Only moves a contract that has not yet been funded. Returns True if
        this call moved it to ``fully_funded``.
        """
        contract = await self.ctx.load_contract(escrow_id)
        contract, funded = await self._sync_funding(contract)
        if funded:
            await self.ctx.record(contract, "system", ActionType.DEPOSITED, "Escrow fully funded")
            await self._on_funded(contract)
        return funded

    async def _sync_funding(self, contract: EscrowContract) -> tuple[EscrowContract, bool]:
        for attempt in range(_SYNC_ATTEMPTS):
            if contract.status not in PRE_FUNDING_STATUSES:
                return contract, False

            roles = _deposited_roles(contract, await self.ctx.store.list_deposits(contract.id))
            before = (contract.buyer_deposited, contract.seller_deposited)
            contract.buyer_deposited = PartyRole.BUYER in roles
            contract.seller_deposited = PartyRole.SELLER in roles

            if is_fully_funded(contract):
                target = EscrowStatus.FULLY_FUNDED
            elif contract.buyer_deposited:
                target = EscrowStatus.BUYER_DEPOSITED
            elif contract.seller_deposited:
                target = EscrowStatus.SELLER_DEPOSITED
            else:
                target = EscrowStatus.CREATED

            if target is contract.status and before == (PartyRole.BUYER in roles, PartyRole.SELLER in roles):
                return contract, False
            if target is not contract.status:
                transition(contract, target)
            if target is EscrowStatus.FULLY_FUNDED:
                contract.funded_at = self.ctx.clock()

            try:
                contract = await self.ctx.save_contract(contract)
            except StateConflictError:
                logger.info(
                    "Funding update for escrow %s raced another writer (attempt %d)", contract.id, attempt + 1,
                )
                contract = await self.ctx.load_contract(contract.id)
                continue
            return contract, target is EscrowStatus.FULLY_FUNDED
        raise StateConflictError(f"Could not update funding status of escrow {contract.id}")

    async def _on_funded(self, contract: EscrowContract) -> None:
        logger.info("Escrow %s is fully funded", contract.id)
        self.ctx.notify(
            [contract.buyer_wallet, contract.seller_wallet],
            NotificationType.ESCROW_FUNDED,
            contract,
            "Escrow is fully funded",
        )
        match contract.terms:
            case TraditionalTerms():
                await self.ctx.resolve_timeouts(contract.id, "funded", [TimeoutType.DEPOSIT])
                await self.ctx.schedule_timeout(contract.id, TimeoutType.CONFIRMATION)
            case MilestoneTerms():
                await self.ctx.resolve_timeouts(contract.id, "funded", [TimeoutType.DEPOSIT])
                await self.ctx.schedule_timeout(contract.id, TimeoutType.MILESTONE)
            case AtomicSwapTerms():
                await self._try_swap(contract.id)

    async def _try_swap(self, escrow_id: str) -> bool:
        if self.swap_engine is None:
            return False
        try:
            await self.swap_engine.execute(escrow_id)
        except EscrowException as e:
            logger.error("Automatic swap execution failed for %s: %s", escrow_id, e.message)
            self.ctx.events.error("escrow.swap_failed", e, escrow_id=escrow_id)
            return False
        return True

    # -- read model ----------------------------------------------------------

    async def get_deposit_status(self, escrow_id: str) -> dict[str, Any]:
        contract = await self.ctx.load_contract(escrow_id)
        deposits = await self.ctx.store.list_deposits(escrow_id)

        def party(role: PartyRole) -> Optional[dict[str, Any]]:
            expected = contract.expected_deposit(role)
            if expected is None:
                return None
            rows = [d for d in deposits if d.party_role is role]
            return {
                "wallet": contract.wallet_for(role),
                "expected_amount": str(expected[1]),
                "asset": expected[0].symbol,
                "deposited": contract.has_deposited(role),
                "deposits": [
                    {
                        "id": d.id,
                        "amount": str(d.amount),
                        "tx_ref": d.tx_ref,
                        "confirmed": d.confirmed,
                        "detected_at": d.detected_at.isoformat(),
                    }
                    for d in rows
                ],
            }

        return {
            "escrow_id": escrow_id,
            "kind": contract.kind.value,
            "status": contract.status.value,
            "escrow_wallet": contract.escrow_wallet,
            "buyer": party(PartyRole.BUYER),
            "seller": party(PartyRole.SELLER),
            "fully_funded": is_fully_funded(contract),
        }

    # -- periodic scans ------------------------------------------------------

    async def scan(self) -> dict[str, int]:
        """
        One pass over open contracts: confirm pending deposits, update funding
        and retry swaps that are funded but not executed.

        Failures are logged per escrow and counted; one bad escrow never stops
        the scan.
        """
        result = {
            "escrows_checked": 0,
            "deposits_confirmed": 0,
            "newly_funded": 0,
            "swaps_executed": 0,
            "errors": 0,
        }
        statuses = [*PRE_FUNDING_STATUSES, EscrowStatus.FULLY_FUNDED]
        for contract in await self.ctx.store.list_contracts(statuses):
            result["escrows_checked"] += 1
            try:
                if contract.status is EscrowStatus.FULLY_FUNDED:
                    if (
                        isinstance(contract.terms, AtomicSwapTerms)
                        and not contract.terms.swap_executed
                        and await self._try_swap(contract.id)
                    ):
                        result["swaps_executed"] += 1
                    continue

                for deposit in await self.ctx.store.list_deposits(contract.id):
                    if deposit.confirmed or not await self.ctx.signer.is_confirmed(deposit.tx_ref):
                        continue
                    deposit.confirmed = True
                    deposit.confirmed_at = self.ctx.clock()
                    await self.ctx.store.update_deposit(deposit)
                    result["deposits_confirmed"] += 1
                    logger.info("Deposit %s for escrow %s confirmed", deposit.id, contract.id)

                if await self.check_and_update_funding_status(contract.id):
                    result["newly_funded"] += 1
            except EscrowException as e:
                result["errors"] += 1
                logger.error("Deposit scan failed for escrow %s: %s", contract.id, e.message)
        return result

    async def scan_wallet_balances(self) -> list[BalanceReport]:
        """Compare each unfunded custodial wallet's balance with the deposits still owed."""
        reports: list[BalanceReport] = []
        for contract in await self.ctx.store.list_contracts(list(PRE_FUNDING_STATUSES)):
            owed: dict[Asset, Decimal] = defaultdict(Decimal)
            for role in contract.required_roles():
                expected = _required_deposit(contract, role)
                owed[expected[0]] += expected[1]
            for asset, expected_amount in owed.items():
                try:
                    balance = await self.ctx.signer.get_balance(contract.escrow_wallet, asset)
                except EscrowException as e:
                    logger.warning("Balance check failed for escrow %s: %s", contract.id, e.message)
                    continue
                report = BalanceReport(contract.id, contract.escrow_wallet, asset, expected_amount, balance)
                if report.shortfall > 0:
                    logger.info(
                        "Escrow %s wallet holds %s of %s %s expected",
                        contract.id, balance, expected_amount, asset.symbol,
                    )
                reports.append(report)
        return reports
