"""Persistence interface used by every engine component.

Updates of mutable records are compare-and-set on the record's ``version``:
the write succeeds only if nobody else wrote the row since it was read, and
otherwise raises ``StateConflictError``. Engine operations therefore re-read,
validate, then write, and a concurrent caller racing on the same entity
loses cleanly instead of overwriting.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol, Sequence

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


class EscrowStore(Protocol):
    # contracts
    async def insert_contract(self, contract: EscrowContract) -> None: ...
    async def get_contract(self, escrow_id: str) -> Optional[EscrowContract]: ...
    async def update_contract(self, contract: EscrowContract) -> EscrowContract: ...
    async def list_contracts(
        self, statuses: Optional[Sequence[EscrowStatus]] = None, limit: int = 500
    ) -> list[EscrowContract]: ...

    # milestones
    async def insert_milestones(self, milestones: Sequence[Milestone]) -> None: ...
    async def get_milestone(self, milestone_id: str) -> Optional[Milestone]: ...
    async def list_milestones(self, escrow_id: str) -> list[Milestone]: ...
    async def update_milestone(self, milestone: Milestone) -> Milestone: ...

    # deposits
    async def insert_deposit(self, deposit: Deposit) -> None: ...
    async def list_deposits(self, escrow_id: str) -> list[Deposit]: ...
    async def find_deposit_by_tx(self, tx_ref: str) -> Optional[Deposit]: ...
    async def update_deposit(self, deposit: Deposit) -> Deposit: ...

    # disputes and evidence
    async def insert_dispute(self, dispute: Dispute) -> None: ...
    async def get_dispute(self, dispute_id: str) -> Optional[Dispute]: ...
    async def list_disputes(self, escrow_id: str) -> list[Dispute]: ...
    async def update_dispute(self, dispute: Dispute) -> Dispute: ...
    async def insert_evidence(self, evidence: Evidence) -> None: ...
    async def list_evidence(self, escrow_id: str) -> list[Evidence]: ...

    # cancellation
    async def insert_cancellation(self, request: CancellationRequest) -> None: ...
    async def get_cancellation(self, request_id: str) -> Optional[CancellationRequest]: ...
    async def list_cancellations(self, escrow_id: str) -> list[CancellationRequest]: ...
    async def update_cancellation(self, request: CancellationRequest) -> CancellationRequest: ...

    # timeouts
    async def insert_timeout(self, timeout: EscrowTimeout) -> None: ...
    async def get_timeout(self, timeout_id: str) -> Optional[EscrowTimeout]: ...
    async def list_timeouts(
        self, escrow_id: Optional[str] = None, unresolved_only: bool = False
    ) -> list[EscrowTimeout]: ...
    async def update_timeout(self, timeout: EscrowTimeout) -> EscrowTimeout: ...

    # multi-sig
    async def insert_multisig(self, tx: MultiSigTransaction) -> None: ...
    async def get_multisig(self, tx_id: str) -> Optional[MultiSigTransaction]: ...
    async def list_multisig(self, escrow_id: str) -> list[MultiSigTransaction]: ...
    async def update_multisig(self, tx: MultiSigTransaction) -> MultiSigTransaction: ...

    # settlements
    async def insert_settlement(self, settlement: Settlement) -> None: ...
    async def get_settlement_by_key(self, escrow_id: str, event_key: str) -> Optional[Settlement]: ...
    async def list_settlements(self, escrow_id: str) -> list[Settlement]: ...
    async def update_settlement(self, settlement: Settlement) -> Settlement: ...

    # append-only logs
    async def append_audit(self, action: AuditAction) -> None: ...
    async def last_audit(self, escrow_id: str) -> Optional[AuditAction]: ...
    async def list_audit(
        self, escrow_id: Optional[str] = None, since: Optional[datetime] = None, limit: int = 500
    ) -> list[AuditAction]: ...
    async def insert_admin_action(self, action: AdminAction) -> None: ...
    async def list_admin_actions(
        self, escrow_id: Optional[str] = None, unresolved_only: bool = False
    ) -> list[AdminAction]: ...
    async def mark_admin_actions_resolved(self, escrow_id: str) -> int: ...
    async def append_key_access(self, record: KeyAccessRecord) -> None: ...
    async def list_key_access(self, escrow_id: Optional[str] = None) -> list[KeyAccessRecord]: ...
