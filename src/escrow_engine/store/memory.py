"""In-memory EscrowStore for development and tests.

Records are deep-copied on the way in and out so callers never share
mutable state with the store, which keeps version checks meaningful.
"""
from __future__ import annotations

import copy
from datetime import datetime
from typing import Optional, Sequence, TypeVar

from ..exceptions import StateConflictError, ValidationError
from ..models import (
    AdminAction,
    AuditAction,
    CancellationRequest,
    Deposit,
    Dispute,
    EscrowContract,
    EscrowStatus,
    EscrowTimeout,
    Evidence,
    KeyAccessRecord,
    Milestone,
    MultiSigTransaction,
    Settlement,
)

R = TypeVar("R")


class InMemoryEscrowStore:
    """Dict-backed store. Safe for concurrent coroutines on one event loop."""

    def __init__(self) -> None:
        self._contracts: dict[str, EscrowContract] = {}
        self._milestones: dict[str, Milestone] = {}
        self._deposits: dict[str, Deposit] = {}
        self._disputes: dict[str, Dispute] = {}
        self._evidence: list[Evidence] = []
        self._cancellations: dict[str, CancellationRequest] = {}
        self._timeouts: dict[str, EscrowTimeout] = {}
        self._multisig: dict[str, MultiSigTransaction] = {}
        self._settlements: dict[str, Settlement] = {}
        self._audit: list[AuditAction] = []
        self._admin_actions: list[AdminAction] = []
        self._key_access: list[KeyAccessRecord] = []

    # -- helpers -------------------------------------------------------------

    @staticmethod
    def _insert(table: dict[str, R], record: R) -> None:
        key = record.id  # type: ignore[attr-defined]
        if key in table:
            raise ValidationError(f"Duplicate id {key}", field="id")
        table[key] = copy.deepcopy(record)

    @staticmethod
    def _get(table: dict[str, R], key: str) -> Optional[R]:
        record = table.get(key)
        return copy.deepcopy(record) if record is not None else None

    @staticmethod
    def _cas(table: dict[str, R], record: R, kind: str) -> R:
        current = table.get(record.id)  # type: ignore[attr-defined]
        if current is None:
            raise StateConflictError(f"{kind} {record.id} no longer exists")  # type: ignore[attr-defined]
        if current.version != record.version:  # type: ignore[attr-defined]
            raise StateConflictError(
                f"{kind} {record.id} was modified concurrently",  # type: ignore[attr-defined]
                expected=record.version,  # type: ignore[attr-defined]
                actual=current.version,  # type: ignore[attr-defined]
            )
        stored = copy.deepcopy(record)
        stored.version += 1  # type: ignore[attr-defined]
        table[stored.id] = stored  # type: ignore[attr-defined]
        return copy.deepcopy(stored)

    # -- contracts -----------------------------------------------------------

    async def insert_contract(self, contract: EscrowContract) -> None:
        self._insert(self._contracts, contract)

    async def get_contract(self, escrow_id: str) -> Optional[EscrowContract]:
        return self._get(self._contracts, escrow_id)

    async def update_contract(self, contract: EscrowContract) -> EscrowContract:
        return self._cas(self._contracts, contract, "Escrow")

    async def list_contracts(
        self, statuses: Optional[Sequence[EscrowStatus]] = None, limit: int = 500
    ) -> list[EscrowContract]:
        rows = [
            c for c in self._contracts.values()
            if statuses is None or c.status in statuses
        ]
        rows.sort(key=lambda c: c.created_at)
        return copy.deepcopy(rows[:limit])

    # -- milestones ----------------------------------------------------------

    async def insert_milestones(self, milestones: Sequence[Milestone]) -> None:
        for m in milestones:
            self._insert(self._milestones, m)

    async def get_milestone(self, milestone_id: str) -> Optional[Milestone]:
        return self._get(self._milestones, milestone_id)

    async def list_milestones(self, escrow_id: str) -> list[Milestone]:
        rows = [m for m in self._milestones.values() if m.escrow_id == escrow_id]
        rows.sort(key=lambda m: m.order)
        return copy.deepcopy(rows)

    async def update_milestone(self, milestone: Milestone) -> Milestone:
        return self._cas(self._milestones, milestone, "Milestone")

    # -- deposits ------------------------------------------------------------

    async def insert_deposit(self, deposit: Deposit) -> None:
        if any(d.tx_ref == deposit.tx_ref for d in self._deposits.values()):
            raise StateConflictError(f"Transaction {deposit.tx_ref} already recorded")
        self._insert(self._deposits, deposit)

    async def list_deposits(self, escrow_id: str) -> list[Deposit]:
        rows = [d for d in self._deposits.values() if d.escrow_id == escrow_id]
        rows.sort(key=lambda d: d.detected_at)
        return copy.deepcopy(rows)

    async def find_deposit_by_tx(self, tx_ref: str) -> Optional[Deposit]:
        for d in self._deposits.values():
            if d.tx_ref == tx_ref:
                return copy.deepcopy(d)
        return None

    async def update_deposit(self, deposit: Deposit) -> Deposit:
        return self._cas(self._deposits, deposit, "Deposit")

    # -- disputes and evidence -----------------------------------------------

    async def insert_dispute(self, dispute: Dispute) -> None:
        self._insert(self._disputes, dispute)

    async def get_dispute(self, dispute_id: str) -> Optional[Dispute]:
        return self._get(self._disputes, dispute_id)

    async def list_disputes(self, escrow_id: str) -> list[Dispute]:
        rows = [d for d in self._disputes.values() if d.escrow_id == escrow_id]
        rows.sort(key=lambda d: d.created_at)
        return copy.deepcopy(rows)

    async def update_dispute(self, dispute: Dispute) -> Dispute:
        return self._cas(self._disputes, dispute, "Dispute")

    async def insert_evidence(self, evidence: Evidence) -> None:
        self._evidence.append(copy.deepcopy(evidence))

    async def list_evidence(self, escrow_id: str) -> list[Evidence]:
        return copy.deepcopy([e for e in self._evidence if e.escrow_id == escrow_id])

    # -- cancellation --------------------------------------------------------

    async def insert_cancellation(self, request: CancellationRequest) -> None:
        self._insert(self._cancellations, request)

    async def get_cancellation(self, request_id: str) -> Optional[CancellationRequest]:
        return self._get(self._cancellations, request_id)

    async def list_cancellations(self, escrow_id: str) -> list[CancellationRequest]:
        rows = [r for r in self._cancellations.values() if r.escrow_id == escrow_id]
        rows.sort(key=lambda r: r.created_at)
        return copy.deepcopy(rows)

    async def update_cancellation(self, request: CancellationRequest) -> CancellationRequest:
        return self._cas(self._cancellations, request, "Cancellation request")

    # -- timeouts ------------------------------------------------------------

    async def insert_timeout(self, timeout: EscrowTimeout) -> None:
        self._insert(self._timeouts, timeout)

    async def get_timeout(self, timeout_id: str) -> Optional[EscrowTimeout]:
        return self._get(self._timeouts, timeout_id)

    async def list_timeouts(
        self, escrow_id: Optional[str] = None, unresolved_only: bool = False
    ) -> list[EscrowTimeout]:
        rows = [
            t for t in self._timeouts.values()
            if (escrow_id is None or t.escrow_id == escrow_id)
            and not (unresolved_only and t.resolved)
        ]
        rows.sort(key=lambda t: t.expires_at)
        return copy.deepcopy(rows)

    async def update_timeout(self, timeout: EscrowTimeout) -> EscrowTimeout:
        return self._cas(self._timeouts, timeout, "Timeout")

    # -- multi-sig -----------------------------------------------------------

    async def insert_multisig(self, tx: MultiSigTransaction) -> None:
        self._insert(self._multisig, tx)

    async def get_multisig(self, tx_id: str) -> Optional[MultiSigTransaction]:
        return self._get(self._multisig, tx_id)

    async def list_multisig(self, escrow_id: str) -> list[MultiSigTransaction]:
        rows = [t for t in self._multisig.values() if t.escrow_id == escrow_id]
        rows.sort(key=lambda t: t.created_at, reverse=True)
        return copy.deepcopy(rows)

    async def update_multisig(self, tx: MultiSigTransaction) -> MultiSigTransaction:
        return self._cas(self._multisig, tx, "Multi-sig transaction")

    # -- settlements ---------------------------------------------------------

    async def insert_settlement(self, settlement: Settlement) -> None:
        if any(
            s.escrow_id == settlement.escrow_id and s.event_key == settlement.event_key
            for s in self._settlements.values()
        ):
            raise StateConflictError(
                f"Settlement {settlement.event_key} already exists for escrow {settlement.escrow_id}"
            )
        self._insert(self._settlements, settlement)

    async def get_settlement_by_key(self, escrow_id: str, event_key: str) -> Optional[Settlement]:
        for s in self._settlements.values():
            if s.escrow_id == escrow_id and s.event_key == event_key:
                return copy.deepcopy(s)
        return None

    async def list_settlements(self, escrow_id: str) -> list[Settlement]:
        rows = [s for s in self._settlements.values() if s.escrow_id == escrow_id]
        rows.sort(key=lambda s: s.created_at)
        return copy.deepcopy(rows)

    async def update_settlement(self, settlement: Settlement) -> Settlement:
        return self._cas(self._settlements, settlement, "Settlement")

    # -- append-only logs ----------------------------------------------------

    async def append_audit(self, action: AuditAction) -> None:
        self._audit.append(copy.deepcopy(action))

    async def last_audit(self, escrow_id: str) -> Optional[AuditAction]:
        for action in reversed(self._audit):
            if action.escrow_id == escrow_id:
                return copy.deepcopy(action)
        return None

    async def list_audit(
        self, escrow_id: Optional[str] = None, since: Optional[datetime] = None, limit: int = 500
    ) -> list[AuditAction]:
        rows = [
            a for a in self._audit
            if (escrow_id is None or a.escrow_id == escrow_id)
            and (since is None or a.created_at >= since)
        ]
        return copy.deepcopy(rows[:limit])

    async def insert_admin_action(self, action: AdminAction) -> None:
        self._admin_actions.append(copy.deepcopy(action))

    async def list_admin_actions(
        self, escrow_id: Optional[str] = None, unresolved_only: bool = False
    ) -> list[AdminAction]:
        return copy.deepcopy([
            a for a in self._admin_actions
            if (escrow_id is None or a.escrow_id == escrow_id)
            and not (unresolved_only and a.resolved)
        ])

    async def mark_admin_actions_resolved(self, escrow_id: str) -> int:
        count = 0
        for action in self._admin_actions:
            if action.escrow_id == escrow_id and not action.resolved:
                action.resolved = True
                count += 1
        return count

    async def append_key_access(self, record: KeyAccessRecord) -> None:
        self._key_access.append(copy.deepcopy(record))

    async def list_key_access(self, escrow_id: Optional[str] = None) -> list[KeyAccessRecord]:
        return copy.deepcopy([
            r for r in self._key_access if escrow_id is None or r.escrow_id == escrow_id
        ])
