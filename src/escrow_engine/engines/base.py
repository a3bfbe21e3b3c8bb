"""
Plumbing shared by the contract engines.

``EngineContext`` bundles every collaborator an engine needs; it is built
once by the service and passed to each engine, so nothing reaches for a
global. ``EngineContext.settle`` is the single path by which funds leave a
custodial wallet.

Settlement protocol, per (escrow, event_key):
    1. insert a PENDING intent row (unique; a concurrent twin loses here)
    2. claim the contract: re-read it, check its status, bump its version
    3. sign, then persist tx ref + signed payload as SIGNED before broadcast
    4. broadcast, wait for confirmation, mark CONFIRMED
A retry finds the row: CONFIRMED returns immediately, SIGNED rebroadcasts
the stored payload (no new transaction), PENDING or FAILED starts over.
A failure before signing marks the row FAILED; nothing reached the ledger.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Iterable, Optional, Sequence

from ..audit import AuditLog
from ..custody import WalletCustody
from ..exceptions import (
    AuthorizationError,
    EscrowException,
    LedgerRejectedError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from ..fees import FeePolicy
from ..ledger.base import SignedTransfer
from ..ledger.signer import TransactionSigner
from ..logging import EventSink, LoggingEventSink
from ..logging_config import escrow_context
from ..models import (
    TERMINAL_STATUSES,
    ActionType,
    Asset,
    AtomicSwapTerms,
    Deposit,
    EscrowContract,
    EscrowStatus,
    EscrowTerms,
    EscrowTimeout,
    MilestoneStatus,
    MilestoneTerms,
    PartyRole,
    ReleaseType,
    Settlement,
    SettlementStatus,
    TimeoutType,
    TransferInstruction,
    new_id,
    to_decimal,
    utcnow,
)
from ..notifications import NotificationDispatcher, NotificationType
from ..store.base import EscrowStore
from ..timeouts.config import calculate_expiration, new_timeout, validate_timeout_hours

logger = logging.getLogger(__name__)


# Valid status transitions (fail-closed: only explicit transitions allowed)
VALID_TRANSITIONS: dict[EscrowStatus, frozenset[EscrowStatus]] = {
    EscrowStatus.CREATED: frozenset({
        EscrowStatus.BUYER_DEPOSITED, EscrowStatus.SELLER_DEPOSITED,
        EscrowStatus.FULLY_FUNDED, EscrowStatus.CANCELLED, EscrowStatus.DISPUTED,
    }),
    EscrowStatus.BUYER_DEPOSITED: frozenset({
        EscrowStatus.FULLY_FUNDED, EscrowStatus.CANCELLED,
        EscrowStatus.REFUNDED, EscrowStatus.DISPUTED,
    }),
    EscrowStatus.SELLER_DEPOSITED: frozenset({
        EscrowStatus.FULLY_FUNDED, EscrowStatus.CANCELLED,
        EscrowStatus.REFUNDED, EscrowStatus.DISPUTED,
    }),
    EscrowStatus.FULLY_FUNDED: frozenset({
        EscrowStatus.ACTIVE, EscrowStatus.COMPLETED, EscrowStatus.DISPUTED,
        EscrowStatus.CANCELLED, EscrowStatus.REFUNDED,
    }),
    EscrowStatus.ACTIVE: frozenset({
        EscrowStatus.COMPLETED, EscrowStatus.DISPUTED,
        EscrowStatus.CANCELLED, EscrowStatus.REFUNDED,
    }),
    # a disputed contract closes only through an admin resolution
    EscrowStatus.DISPUTED: frozenset(),
    EscrowStatus.COMPLETED: frozenset(),
    EscrowStatus.CANCELLED: frozenset(),
    EscrowStatus.REFUNDED: frozenset(),
}

DISPUTE_OUTCOMES = frozenset({EscrowStatus.COMPLETED, EscrowStatus.REFUNDED})

# statuses from which funds may leave custody outside a dispute resolution
PAYABLE_STATUSES = frozenset(
    s for s in EscrowStatus if s not in TERMINAL_STATUSES and s is not EscrowStatus.DISPUTED
)

# settlement event keys of an atomic swap and the depositing side each one pays out
SWAP_EVENT = "swap"
SWAP_LEG_A = "swap:a"
SWAP_LEG_B = "swap:b"
_SWAP_LEGS = {
    SWAP_EVENT: (PartyRole.BUYER, PartyRole.SELLER),
    SWAP_LEG_A: (PartyRole.BUYER,),
    SWAP_LEG_B: (PartyRole.SELLER,),
}


def milestone_event(milestone_id: str) -> str:
    return f"milestone:{milestone_id}"


def transition(contract: EscrowContract, target: EscrowStatus, *, resolving_dispute: bool = False) -> None:
    """Move ``contract`` to ``target`` or raise StateConflictError."""
    allowed = VALID_TRANSITIONS[contract.status]
    if resolving_dispute and contract.status is EscrowStatus.DISPUTED:
        allowed = DISPUTE_OUTCOMES
    if target not in allowed:
        raise StateConflictError(
            f"Escrow {contract.id} cannot move from {contract.status.value} to {target.value}",
            expected=sorted(s.value for s in allowed),
            actual=contract.status,
        )
    contract.status = target


def require_status(contract: EscrowContract, *allowed: EscrowStatus, message: Optional[str] = None) -> None:
    if contract.status not in allowed:
        raise StateConflictError(
            message or f"Escrow must be {' or '.join(s.value for s in allowed)}, "
                       f"current status: {contract.status.value}",
            expected=allowed if len(allowed) > 1 else allowed[0],
            actual=contract.status,
        )


def payouts(
    entries: Iterable[tuple[Optional[str], Decimal, ReleaseType]],
) -> list[TransferInstruction]:
    """Build transfer instructions, dropping zero amounts.

    A missing recipient (no treasury wallet configured) leaves that amount
    in the custodial wallet.
    """
    result = []
    for recipient, amount, purpose in entries:
        if amount <= 0:
            continue
        if not recipient:
            logger.warning("No recipient for %s of %s; amount stays in custody", purpose.value, amount)
            continue
        result.append(TransferInstruction(recipient, amount, purpose))
    return result


@dataclass
class EngineContext:
    """Collaborators shared by all engines."""

    store: EscrowStore
    custody: WalletCustody
    signer: TransactionSigner
    fees: FeePolicy
    audit: AuditLog
    notifications: NotificationDispatcher = field(default_factory=NotificationDispatcher)
    events: EventSink = field(default_factory=LoggingEventSink)
    max_milestones: int = 20
    clock: Callable[[], datetime] = utcnow

    # -- contracts -----------------------------------------------------------

    async def load_contract(self, escrow_id: str) -> EscrowContract:
        contract = await self.store.get_contract(escrow_id)
        if contract is None:
            raise NotFoundError("Escrow", escrow_id)
        return contract

    async def save_contract(self, contract: EscrowContract) -> EscrowContract:
        return await self.store.update_contract(contract)

    async def open_contract(
        self,
        buyer_wallet: str,
        seller_wallet: str,
        terms: EscrowTerms,
        timeout_hours: int | float,
        timeout_type: TimeoutType,
        description: Optional[str] = None,
    ) -> EscrowContract:
        """Persist a new contract with its own custodial wallet and first timeout."""
        validate_timeout_hours(timeout_hours)
        escrow_id = new_id("esc")
        wallet = await self.custody.generate_wallet(escrow_id)
        now = self.clock()
        contract = EscrowContract(
            id=escrow_id,
            buyer_wallet=buyer_wallet,
            seller_wallet=seller_wallet,
            terms=terms,
            escrow_wallet=wallet.address,
            encrypted_secret=wallet.encrypted_secret,
            description=description,
            timeout_hours=int(timeout_hours),
            created_at=now,
            expires_at=calculate_expiration(timeout_hours, now),
        )
        await self.store.insert_contract(contract)
        await self.schedule_timeout(escrow_id, timeout_type, timeout_hours)
        return contract

    @staticmethod
    def require_party(contract: EscrowContract, actor: str, action: str = "perform this action") -> PartyRole:
        role = contract.role_of(actor)
        if role is None:
            raise AuthorizationError(f"Only escrow parties can {action}", actor=actor)
        return role

    # -- timeouts ------------------------------------------------------------

    async def schedule_timeout(
        self,
        escrow_id: str,
        timeout_type: TimeoutType,
        hours: Optional[int | float] = None,
    ) -> EscrowTimeout:
        timeout = new_timeout(escrow_id, timeout_type, hours, now=self.clock())
        await self.store.insert_timeout(timeout)
        logger.info(
            "Timeout %s (%s) armed for escrow %s, expires %s",
            timeout.id, timeout_type.value, escrow_id, timeout.expires_at.isoformat(),
        )
        return timeout

    async def resolve_timeouts(
        self,
        escrow_id: str,
        resolution: str,
        types: Optional[Sequence[TimeoutType]] = None,
    ) -> int:
        """Close open timeouts of an escrow (all types unless ``types`` given)."""
        count = 0
        for timeout in await self.store.list_timeouts(escrow_id, unresolved_only=True):
            if types is not None and timeout.timeout_type not in types:
                continue
            timeout.resolved = True
            timeout.resolution = resolution
            timeout.resolved_at = self.clock()
            await self.store.update_timeout(timeout)
            count += 1
        return count

    # -- side effects --------------------------------------------------------

    async def record(
        self,
        contract: EscrowContract,
        actor: str,
        action: ActionType,
        notes: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        milestone_id: Optional[str] = None,
    ) -> None:
        await self.audit.record(contract.id, actor, action, notes, metadata, milestone_id)
        self.events.event(f"escrow.{action.value}", escrow_id=contract.id, actor=actor)

    def notify(
        self,
        recipients: str | list[str],
        event_type: NotificationType,
        contract: EscrowContract,
        message: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        self.notifications.dispatch(recipients, event_type, contract.id, message, metadata)

    async def confirmed_deposits(
        self, escrow_id: str, role: Optional[PartyRole] = None
    ) -> list[Deposit]:
        return [
            d for d in await self.store.list_deposits(escrow_id)
            if d.confirmed and (role is None or d.party_role is role)
        ]

    async def held_funds(self, contract: EscrowContract) -> dict[tuple[PartyRole, Asset], Decimal]:
        """Confirmed deposits still in custody, per depositing party and asset.

        Released milestones are paid out of the buyer's deposit. A confirmed
        swap leg has paid out its depositor's whole swap amount.
        """
        totals: dict[tuple[PartyRole, Asset], Decimal] = defaultdict(Decimal)
        for deposit in await self.confirmed_deposits(contract.id):
            totals[(deposit.party_role, deposit.asset)] += deposit.amount

        def spend(key: tuple[PartyRole, Asset], amount: Decimal) -> None:
            totals[key] = max(totals[key] - amount, Decimal("0"))

        match contract.terms:
            case MilestoneTerms(asset=asset):
                paid_keys = {
                    s.event_key for s in await self.store.list_settlements(contract.id)
                    if s.status is SettlementStatus.CONFIRMED
                }
                released = sum(
                    (m.amount for m in await self.store.list_milestones(contract.id)
                     if m.status is MilestoneStatus.RELEASED or milestone_event(m.id) in paid_keys),
                    Decimal("0"),
                )
                spend((PartyRole.BUYER, asset), released)
            case AtomicSwapTerms() as terms:
                paid = {role for leg in await self.confirmed_swap_legs(contract.id) for role in _SWAP_LEGS[leg]}
                if PartyRole.BUYER in paid:
                    spend((PartyRole.BUYER, terms.asset_a), terms.amount_a)
                if PartyRole.SELLER in paid:
                    spend((PartyRole.SELLER, terms.asset_b), terms.amount_b)
        return {key: amount for key, amount in totals.items() if amount > 0}

    async def confirmed_swap_legs(self, escrow_id: str) -> set[str]:
        """Event keys of swap settlements that reached the ledger."""
        return {
            s.event_key for s in await self.store.list_settlements(escrow_id)
            if s.event_key in _SWAP_LEGS and s.status is SettlementStatus.CONFIRMED
        }

    # -- fund movement -------------------------------------------------------

    async def settlement_in_flight(self, escrow_id: str) -> bool:
        """True from the moment a payout intent is written until it confirms or fails."""
        return any(
            s.status in (SettlementStatus.PENDING, SettlementStatus.SIGNED)
            for s in await self.store.list_settlements(escrow_id)
        )

    async def settle(
        self,
        contract: EscrowContract,
        event_key: str,
        release_type: ReleaseType,
        asset: Asset,
        transfers: Sequence[TransferInstruction],
        actor: str,
        *,
        allowed: Iterable[EscrowStatus] = PAYABLE_STATUSES,
    ) -> Settlement:
        """
        Move funds out of the contract's custodial wallet exactly once per event.

        Args:
            contract: Contract whose wallet pays
            event_key: Identifies the business event (e.g. ``"milestone:ms_1"``)
            release_type: Kind of release recorded on the intent row
            asset: Asset of every transfer
            transfers: Destinations; must be non-empty
            actor: Who triggered the movement, for the key access log
            allowed: Statuses the contract must still be in when the payout
                claims it

        Returns:
            The CONFIRMED settlement

        Raises:
            StateConflictError: The contract moved on (e.g. disputed) before signing
            LedgerRejectedError: The ledger refused it; the row is FAILED and may be retried
            ExternalFailure: Timed out or unreachable after signing; the row stays SIGNED
        """
        with escrow_context(contract.id, f"settle:{event_key}"):
            return await self._settle(
                contract, event_key, release_type, asset, transfers, actor, frozenset(allowed)
            )

    async def _settle(
        self,
        contract: EscrowContract,
        event_key: str,
        release_type: ReleaseType,
        asset: Asset,
        transfers: Sequence[TransferInstruction],
        actor: str,
        allowed: frozenset[EscrowStatus],
    ) -> Settlement:
        row = await self.store.get_settlement_by_key(contract.id, event_key)

        if row is not None and row.status is SettlementStatus.CONFIRMED:
            logger.info("Settlement %s for escrow %s already confirmed", event_key, contract.id)
            return row

        if row is not None and row.status is SettlementStatus.SIGNED:
            if not (row.tx_ref and row.payload):
                raise StateConflictError(
                    f"Settlement {row.id} is signed but has no stored transaction",
                    actual=row.status,
                )
            try:
                await self.signer.resume(SignedTransfer(row.tx_ref, row.payload))
            except LedgerRejectedError as e:
                await self._fail(row, e)
                raise
            return await self._confirm(row)

        if row is None:
            row = Settlement(
                id=new_id("rel"),
                escrow_id=contract.id,
                event_key=event_key,
                release_type=release_type,
                asset=asset,
                transfers=list(transfers),
                created_at=self.clock(),
            )
            await self.store.insert_settlement(row)
        else:
            # PENDING (never signed) or FAILED (rejected): nothing is on the ledger
            row.transfers = list(transfers)
            row.status = SettlementStatus.PENDING
            row.error = None
            row = await self.store.update_settlement(row)

        async def on_signed(signed: SignedTransfer) -> None:
            nonlocal row
            row.tx_ref = signed.tx_ref
            row.payload = signed.payload
            row.status = SettlementStatus.SIGNED
            row = await self.store.update_settlement(row)

        try:
            await self._claim(contract.id, allowed)
            keypair = await self.custody.recover_keypair(
                contract.encrypted_secret,
                actor=actor,
                purpose=f"{release_type.value}:{event_key}",
                escrow_id=contract.id,
            )
            await self.signer.transfer_to_multiple(keypair, transfers, asset, on_signed=on_signed)
        except LedgerRejectedError as e:
            await self._fail(row, e)
            raise
        except EscrowException as e:
            if row.status is SettlementStatus.PENDING:
                await self._fail(row, e)
            raise

        settlement = await self._confirm(row)
        self.events.event(
            "escrow.settlement_confirmed",
            escrow_id=contract.id,
            event_key=event_key,
            tx_ref=settlement.tx_ref,
            gross=str(settlement.gross),
        )
        return settlement

    async def _confirm(self, row: Settlement) -> Settlement:
        row.status = SettlementStatus.CONFIRMED
        row.confirmed_at = self.clock()
        row.payload = None
        return await self.store.update_settlement(row)

    async def _claim(self, escrow_id: str, allowed: frozenset[EscrowStatus]) -> None:
        """Re-read the contract before signing and bump its version.

        A status change written first stops the payout here; one based on an
        earlier read fails its own compare-and-set.
        """
        current = await self.load_contract(escrow_id)
        if current.status not in allowed:
            raise StateConflictError(
                f"Escrow {escrow_id} is {current.status.value}; payout not sent",
                expected=sorted(s.value for s in allowed),
                actual=current.status,
            )
        await self.save_contract(current)

    async def _fail(self, row: Settlement, error: EscrowException) -> None:
        logger.error("Settlement %s for escrow %s failed: %s", row.event_key, row.escrow_id, error.message)
        self.events.error("escrow.settlement_failed", error, escrow_id=row.escrow_id, event_key=row.event_key)
        row.status = SettlementStatus.FAILED
        row.error = error.message
        await self.store.update_settlement(row)


def _lower_first(label: str) -> str:
    return label[:1].lower() + label[1:]


def validate_parties(buyer_wallet: str, seller_wallet: str, labels: tuple[str, str] = ("Buyer", "Seller")) -> None:
    first, second = labels
    if not buyer_wallet or not seller_wallet:
        raise ValidationError(
            f"Both {_lower_first(first)} and {_lower_first(second)} wallet addresses are required",
            field="wallet",
        )
    if buyer_wallet == seller_wallet:
        raise ValidationError(f"{first} and {_lower_first(second)} cannot be the same wallet", field="wallet")


def positive_amount(value: Any, field_name: str, label: str) -> Decimal:
    amount = to_decimal(value, field_name)
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f"{label} must be greater than 0", field=field_name)
    return amount
