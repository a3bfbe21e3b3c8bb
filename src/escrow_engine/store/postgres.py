"""PostgreSQL-backed EscrowStore built on ``Database`` (asyncpg)."""
from __future__ import annotations

import json
import logging
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional, Sequence

from ..database import Database
from ..exceptions import StateConflictError
from ..models import (
    ActionType,
    AdminAction,
    Asset,
    AtomicSwapTerms,
    AuditAction,
    CancellationRequest,
    CancellationStatus,
    Deposit,
    Dispute,
    DisputePriority,
    DisputeStatus,
    EscrowContract,
    EscrowKind,
    EscrowStatus,
    EscrowTerms,
    EscrowTimeout,
    Evidence,
    EvidenceType,
    KeyAccessRecord,
    KeyOperation,
    Milestone,
    MilestoneStatus,
    MilestoneTerms,
    MultiSigProvider,
    MultiSigStatus,
    MultiSigTransaction,
    PartyRole,
    ReleaseType,
    ResolutionAction,
    Settlement,
    SettlementStatus,
    TimeoutType,
    TraditionalTerms,
    TransferInstruction,
)

logger = logging.getLogger(__name__)


# =============================================================================
# JSON codecs for nested values
# =============================================================================

def _dumps(value: Any) -> str:
    return json.dumps(value, default=str)


def _loads(value: Any) -> Any:
    if value is None or isinstance(value, (dict, list)):
        return value
    return json.loads(value)


def asset_to_json(asset: Asset) -> dict[str, Any]:
    return {"symbol": asset.symbol, "mint": asset.mint, "decimals": asset.decimals}


def asset_from_json(data: dict[str, Any]) -> Asset:
    return Asset(data["symbol"], data.get("mint"), int(data["decimals"]))


def _opt_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def terms_to_json(terms: EscrowTerms) -> dict[str, Any]:
    match terms:
        case TraditionalTerms():
            return {
                "buyer_amount": str(terms.buyer_amount),
                "seller_deposit": str(terms.seller_deposit),
                "asset": asset_to_json(terms.asset),
                "buyer_confirmed": terms.buyer_confirmed,
                "seller_confirmed": terms.seller_confirmed,
                "buyer_confirmed_at": terms.buyer_confirmed_at.isoformat() if terms.buyer_confirmed_at else None,
                "seller_confirmed_at": terms.seller_confirmed_at.isoformat() if terms.seller_confirmed_at else None,
            }
        case MilestoneTerms():
            return {
                "total_amount": str(terms.total_amount),
                "asset": asset_to_json(terms.asset),
            }
        case AtomicSwapTerms():
            return {
                "asset_a": asset_to_json(terms.asset_a),
                "amount_a": str(terms.amount_a),
                "asset_b": asset_to_json(terms.asset_b),
                "amount_b": str(terms.amount_b),
                "swap_executed": terms.swap_executed,
                "swap_tx_refs": list(terms.swap_tx_refs),
                "executed_at": terms.executed_at.isoformat() if terms.executed_at else None,
            }
    raise TypeError(f"Unknown escrow terms: {type(terms).__name__}")


def terms_from_json(kind: EscrowKind, data: dict[str, Any]) -> EscrowTerms:
    match kind:
        case EscrowKind.TRADITIONAL:
            return TraditionalTerms(
                buyer_amount=Decimal(data["buyer_amount"]),
                seller_deposit=Decimal(data["seller_deposit"]),
                asset=asset_from_json(data["asset"]),
                buyer_confirmed=data.get("buyer_confirmed", False),
                seller_confirmed=data.get("seller_confirmed", False),
                buyer_confirmed_at=_opt_dt(data.get("buyer_confirmed_at")),
                seller_confirmed_at=_opt_dt(data.get("seller_confirmed_at")),
            )
        case EscrowKind.MILESTONE:
            return MilestoneTerms(
                total_amount=Decimal(data["total_amount"]),
                asset=asset_from_json(data["asset"]),
            )
        case EscrowKind.ATOMIC_SWAP:
            return AtomicSwapTerms(
                asset_a=asset_from_json(data["asset_a"]),
                amount_a=Decimal(data["amount_a"]),
                asset_b=asset_from_json(data["asset_b"]),
                amount_b=Decimal(data["amount_b"]),
                swap_executed=data.get("swap_executed", False),
                swap_tx_refs=list(data.get("swap_tx_refs", [])),
                executed_at=_opt_dt(data.get("executed_at")),
            )
    raise ValueError(f"Unknown escrow kind: {kind}")


def _transfers_to_json(transfers: Sequence[TransferInstruction]) -> list[dict[str, str]]:
    return [
        {"recipient": t.recipient, "amount": str(t.amount), "purpose": t.purpose.value}
        for t in transfers
    ]


def _transfers_from_json(data: list[dict[str, str]]) -> list[TransferInstruction]:
    return [
        TransferInstruction(d["recipient"], Decimal(d["amount"]), ReleaseType(d["purpose"]))
        for d in data
    ]


def _check_updated(status: str, kind: str, record_id: str, version: int) -> None:
    # asyncpg returns "UPDATE <n>"
    if status.split()[-1] == "0":
        raise StateConflictError(
            f"{kind} {record_id} was modified concurrently or no longer exists",
            expected=version,
        )


class PostgresEscrowStore:
    """EscrowStore over the escrow_* tables in ``SCHEMA_SQL``."""

    def __init__(self, database: Database) -> None:
        self._db = database

    # -- contracts -----------------------------------------------------------

    async def insert_contract(self, contract: EscrowContract) -> None:
        await self._db.execute(
            """
            INSERT INTO escrow_contracts (
                id, escrow_type, buyer_wallet, seller_wallet, escrow_wallet,
                encrypted_private_key, status, buyer_deposited, seller_deposited,
                terms, description, timeout_hours, created_at, funded_at,
                completed_at, cancelled_at, expires_at, version
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10::jsonb, $11, $12,
                      $13, $14, $15, $16, $17, $18)
            """,
            contract.id,
            contract.kind.value,
            contract.buyer_wallet,
            contract.seller_wallet,
            contract.escrow_wallet,
            contract.encrypted_secret,
            contract.status.value,
            contract.buyer_deposited,
            contract.seller_deposited,
            _dumps(terms_to_json(contract.terms)),
            contract.description,
            contract.timeout_hours,
            contract.created_at,
            contract.funded_at,
            contract.completed_at,
            contract.cancelled_at,
            contract.expires_at,
            contract.version,
        )

    async def get_contract(self, escrow_id: str) -> Optional[EscrowContract]:
        row = await self._db.fetchrow("SELECT * FROM escrow_contracts WHERE id = $1", escrow_id)
        return self._row_to_contract(row) if row else None

    async def update_contract(self, contract: EscrowContract) -> EscrowContract:
        status = await self._db.execute(
            """
            UPDATE escrow_contracts SET
                status = $3, buyer_deposited = $4, seller_deposited = $5,
                terms = $6::jsonb, funded_at = $7, completed_at = $8,
                cancelled_at = $9, expires_at = $10, version = version + 1
            WHERE id = $1 AND version = $2
            """,
            contract.id,
            contract.version,
            contract.status.value,
            contract.buyer_deposited,
            contract.seller_deposited,
            _dumps(terms_to_json(contract.terms)),
            contract.funded_at,
            contract.completed_at,
            contract.cancelled_at,
            contract.expires_at,
        )
        _check_updated(status, "Escrow", contract.id, contract.version)
        return replace(contract, version=contract.version + 1)

    async def list_contracts(
        self, statuses: Optional[Sequence[EscrowStatus]] = None, limit: int = 500
    ) -> list[EscrowContract]:
        if statuses is None:
            rows = await self._db.fetch(
                "SELECT * FROM escrow_contracts ORDER BY created_at LIMIT $1", limit
            )
        else:
            rows = await self._db.fetch(
                "SELECT * FROM escrow_contracts WHERE status = ANY($1::text[]) "
                "ORDER BY created_at LIMIT $2",
                [s.value for s in statuses],
                limit,
            )
        return [self._row_to_contract(r) for r in rows]

    @staticmethod
    def _row_to_contract(row) -> EscrowContract:
        kind = EscrowKind(row["escrow_type"])
        return EscrowContract(
            id=row["id"],
            buyer_wallet=row["buyer_wallet"],
            seller_wallet=row["seller_wallet"],
            terms=terms_from_json(kind, _loads(row["terms"])),
            escrow_wallet=row["escrow_wallet"],
            encrypted_secret=row["encrypted_private_key"],
            status=EscrowStatus(row["status"]),
            buyer_deposited=row["buyer_deposited"],
            seller_deposited=row["seller_deposited"],
            description=row["description"],
            timeout_hours=row["timeout_hours"],
            created_at=row["created_at"],
            funded_at=row["funded_at"],
            completed_at=row["completed_at"],
            cancelled_at=row["cancelled_at"],
            expires_at=row["expires_at"],
            version=row["version"],
        )

    # -- milestones ----------------------------------------------------------

    async def insert_milestones(self, milestones: Sequence[Milestone]) -> None:
        async with self._db.transaction() as conn:
            for m in milestones:
                await conn.execute(
                    """
                    INSERT INTO escrow_milestones (
                        id, escrow_id, milestone_order, description, percentage,
                        amount, status, created_at, version
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                    """,
                    m.id, m.escrow_id, m.order, m.description, m.percentage,
                    m.amount, m.status.value, m.created_at, m.version,
                )

    async def get_milestone(self, milestone_id: str) -> Optional[Milestone]:
        row = await self._db.fetchrow("SELECT * FROM escrow_milestones WHERE id = $1", milestone_id)
        return self._row_to_milestone(row) if row else None

    async def list_milestones(self, escrow_id: str) -> list[Milestone]:
        rows = await self._db.fetch(
            "SELECT * FROM escrow_milestones WHERE escrow_id = $1 ORDER BY milestone_order",
            escrow_id,
        )
        return [self._row_to_milestone(r) for r in rows]

    async def update_milestone(self, milestone: Milestone) -> Milestone:
        m = milestone
        status = await self._db.execute(
            """
            UPDATE escrow_milestones SET
                status = $3, seller_notes = $4, seller_evidence_urls = $5::jsonb,
                seller_submitted_at = $6, buyer_notes = $7, buyer_approved_at = $8,
                released_at = $9, tx_signature = $10, version = version + 1
            WHERE id = $1 AND version = $2
            """,
            m.id, m.version, m.status.value, m.seller_notes, _dumps(m.seller_evidence),
            m.submitted_at, m.buyer_notes, m.approved_at, m.released_at, m.tx_ref,
        )
        _check_updated(status, "Milestone", m.id, m.version)
        return replace(m, version=m.version + 1)

    @staticmethod
    def _row_to_milestone(row) -> Milestone:
        return Milestone(
            id=row["id"],
            escrow_id=row["escrow_id"],
            order=row["milestone_order"],
            description=row["description"],
            percentage=Decimal(row["percentage"]),
            amount=Decimal(row["amount"]),
            status=MilestoneStatus(row["status"]),
            seller_notes=row["seller_notes"],
            seller_evidence=list(_loads(row["seller_evidence_urls"]) or []),
            submitted_at=row["seller_submitted_at"],
            buyer_notes=row["buyer_notes"],
            approved_at=row["buyer_approved_at"],
            released_at=row["released_at"],
            tx_ref=row["tx_signature"],
            created_at=row["created_at"],
            version=row["version"],
        )

    # -- deposits ------------------------------------------------------------

    async def insert_deposit(self, deposit: Deposit) -> None:
        d = deposit
        result = await self._db.execute(
            """
            INSERT INTO escrow_deposits (
                id, escrow_id, depositor_wallet, party_role, amount, asset,
                tx_signature, confirmed, deposited_at, confirmed_at, version
            ) VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7, $8, $9, $10, $11)
            ON CONFLICT (tx_signature) DO NOTHING
            """,
            d.id, d.escrow_id, d.depositor_wallet, d.party_role.value, d.amount,
            _dumps(asset_to_json(d.asset)), d.tx_ref, d.confirmed, d.detected_at,
            d.confirmed_at, d.version,
        )
        if result.split()[-1] == "0":
            raise StateConflictError(f"Transaction {d.tx_ref} already recorded")

    async def list_deposits(self, escrow_id: str) -> list[Deposit]:
        rows = await self._db.fetch(
            "SELECT * FROM escrow_deposits WHERE escrow_id = $1 ORDER BY deposited_at", escrow_id
        )
        return [self._row_to_deposit(r) for r in rows]

    async def find_deposit_by_tx(self, tx_ref: str) -> Optional[Deposit]:
        row = await self._db.fetchrow("SELECT * FROM escrow_deposits WHERE tx_signature = $1", tx_ref)
        return self._row_to_deposit(row) if row else None

    async def update_deposit(self, deposit: Deposit) -> Deposit:
        status = await self._db.execute(
            """
            UPDATE escrow_deposits SET confirmed = $3, confirmed_at = $4, version = version + 1
            WHERE id = $1 AND version = $2
            """,
            deposit.id, deposit.version, deposit.confirmed, deposit.confirmed_at,
        )
        _check_updated(status, "Deposit", deposit.id, deposit.version)
        return replace(deposit, version=deposit.version + 1)

    @staticmethod
    def _row_to_deposit(row) -> Deposit:
        return Deposit(
            id=row["id"],
            escrow_id=row["escrow_id"],
            depositor_wallet=row["depositor_wallet"],
            party_role=PartyRole(row["party_role"]),
            amount=Decimal(row["amount"]),
            asset=asset_from_json(_loads(row["asset"])),
            tx_ref=row["tx_signature"],
            confirmed=row["confirmed"],
            detected_at=row["deposited_at"],
            confirmed_at=row["confirmed_at"],
            version=row["version"],
        )

    # -- disputes and evidence -----------------------------------------------

    async def insert_dispute(self, dispute: Dispute) -> None:
        d = dispute
        await self._db.execute(
            """
            INSERT INTO escrow_disputes (
                id, escrow_id, milestone_id, raised_by, party_role, reason,
                description, priority, status, created_at, version
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            """,
            d.id, d.escrow_id, d.milestone_id, d.raised_by, d.party_role.value,
            d.reason, d.description, d.priority.value, d.status.value, d.created_at, d.version,
        )

    async def get_dispute(self, dispute_id: str) -> Optional[Dispute]:
        row = await self._db.fetchrow("SELECT * FROM escrow_disputes WHERE id = $1", dispute_id)
        return self._row_to_dispute(row) if row else None

    async def list_disputes(self, escrow_id: str) -> list[Dispute]:
        rows = await self._db.fetch(
            "SELECT * FROM escrow_disputes WHERE escrow_id = $1 ORDER BY created_at", escrow_id
        )
        return [self._row_to_dispute(r) for r in rows]

    async def update_dispute(self, dispute: Dispute) -> Dispute:
        d = dispute
        status = await self._db.execute(
            """
            UPDATE escrow_disputes SET
                status = $3, resolution_action = $4, resolution_notes = $5,
                resolved_by = $6, resolved_at = $7, resolution_tx_refs = $8::jsonb,
                version = version + 1
            WHERE id = $1 AND version = $2
            """,
            d.id, d.version, d.status.value,
            d.resolution_action.value if d.resolution_action else None,
            d.resolution_notes, d.resolved_by, d.resolved_at, _dumps(d.resolution_tx_refs),
        )
        _check_updated(status, "Dispute", d.id, d.version)
        return replace(d, version=d.version + 1)

    @staticmethod
    def _row_to_dispute(row) -> Dispute:
        return Dispute(
            id=row["id"],
            escrow_id=row["escrow_id"],
            raised_by=row["raised_by"],
            party_role=PartyRole(row["party_role"]),
            reason=row["reason"],
            milestone_id=row["milestone_id"],
            description=row["description"],
            priority=DisputePriority(row["priority"]),
            status=DisputeStatus(row["status"]),
            resolution_action=ResolutionAction(row["resolution_action"]) if row["resolution_action"] else None,
            resolution_notes=row["resolution_notes"],
            resolved_by=row["resolved_by"],
            resolved_at=row["resolved_at"],
            resolution_tx_refs=list(_loads(row["resolution_tx_refs"]) or []),
            created_at=row["created_at"],
            version=row["version"],
        )

    async def insert_evidence(self, evidence: Evidence) -> None:
        e = evidence
        await self._db.execute(
            """
            INSERT INTO escrow_evidence (
                id, escrow_id, dispute_id, milestone_id, submitted_by, party_role,
                evidence_type, content, file_url, created_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
            """,
            e.id, e.escrow_id, e.dispute_id, e.milestone_id, e.submitted_by,
            e.party_role.value, e.evidence_type.value, e.content, e.file_url, e.created_at,
        )

    async def list_evidence(self, escrow_id: str) -> list[Evidence]:
        rows = await self._db.fetch(
            "SELECT * FROM escrow_evidence WHERE escrow_id = $1 ORDER BY created_at", escrow_id
        )
        return [
            Evidence(
                id=r["id"],
                escrow_id=r["escrow_id"],
                submitted_by=r["submitted_by"],
                party_role=PartyRole(r["party_role"]),
                evidence_type=EvidenceType(r["evidence_type"]),
                content=r["content"],
                file_url=r["file_url"],
                dispute_id=r["dispute_id"],
                milestone_id=r["milestone_id"],
                created_at=r["created_at"],
            )
            for r in rows
        ]

    # -- cancellation --------------------------------------------------------

    async def insert_cancellation(self, request: CancellationRequest) -> None:
        r = request
        await self._db.execute(
            """
            INSERT INTO escrow_cancellation_requests (
                id, escrow_id, requested_by, reason, buyer_approved, seller_approved,
                buyer_approved_at, seller_approved_at, status, created_at, version
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            """,
            r.id, r.escrow_id, r.requested_by, r.reason, r.buyer_approved,
            r.seller_approved, r.buyer_approved_at, r.seller_approved_at,
            r.status.value, r.created_at, r.version,
        )

    async def get_cancellation(self, request_id: str) -> Optional[CancellationRequest]:
        row = await self._db.fetchrow(
            "SELECT * FROM escrow_cancellation_requests WHERE id = $1", request_id
        )
        return self._row_to_cancellation(row) if row else None

    async def list_cancellations(self, escrow_id: str) -> list[CancellationRequest]:
        rows = await self._db.fetch(
            "SELECT * FROM escrow_cancellation_requests WHERE escrow_id = $1 ORDER BY created_at",
            escrow_id,
        )
        return [self._row_to_cancellation(r) for r in rows]

    async def update_cancellation(self, request: CancellationRequest) -> CancellationRequest:
        r = request
        status = await self._db.execute(
            """
            UPDATE escrow_cancellation_requests SET
                buyer_approved = $3, seller_approved = $4, buyer_approved_at = $5,
                seller_approved_at = $6, status = $7, refund_tx_refs = $8::jsonb,
                executed_at = $9, version = version + 1
            WHERE id = $1 AND version = $2
            """,
            r.id, r.version, r.buyer_approved, r.seller_approved, r.buyer_approved_at,
            r.seller_approved_at, r.status.value, _dumps(r.refund_tx_refs), r.executed_at,
        )
        _check_updated(status, "Cancellation request", r.id, r.version)
        return replace(r, version=r.version + 1)

    @staticmethod
    def _row_to_cancellation(row) -> CancellationRequest:
        return CancellationRequest(
            id=row["id"],
            escrow_id=row["escrow_id"],
            requested_by=row["requested_by"],
            reason=row["reason"],
            buyer_approved=row["buyer_approved"],
            seller_approved=row["seller_approved"],
            buyer_approved_at=row["buyer_approved_at"],
            seller_approved_at=row["seller_approved_at"],
            status=CancellationStatus(row["status"]),
            refund_tx_refs=list(_loads(row["refund_tx_refs"]) or []),
            executed_at=row["executed_at"],
            created_at=row["created_at"],
            version=row["version"],
        )

    # -- timeouts ------------------------------------------------------------

    async def insert_timeout(self, timeout: EscrowTimeout) -> None:
        t = timeout
        await self._db.execute(
            """
            INSERT INTO escrow_timeouts (
                id, escrow_id, timeout_type, expires_at, warning_at, warning_sent,
                expired, resolved, created_at, version
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
            """,
            t.id, t.escrow_id, t.timeout_type.value, t.expires_at, t.warning_at,
            t.warning_sent, t.expired, t.resolved, t.created_at, t.version,
        )

    async def get_timeout(self, timeout_id: str) -> Optional[EscrowTimeout]:
        row = await self._db.fetchrow("SELECT * FROM escrow_timeouts WHERE id = $1", timeout_id)
        return self._row_to_timeout(row) if row else None

    async def list_timeouts(
        self, escrow_id: Optional[str] = None, unresolved_only: bool = False
    ) -> list[EscrowTimeout]:
        clauses = []
        args: list[Any] = []
        if escrow_id is not None:
            args.append(escrow_id)
            clauses.append(f"escrow_id = ${len(args)}")
        if unresolved_only:
            clauses.append("resolved = FALSE")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self._db.fetch(
            f"SELECT * FROM escrow_timeouts {where} ORDER BY expires_at", *args
        )
        return [self._row_to_timeout(r) for r in rows]

    async def update_timeout(self, timeout: EscrowTimeout) -> EscrowTimeout:
        t = timeout
        status = await self._db.execute(
            """
            UPDATE escrow_timeouts SET
                expires_at = $3, warning_at = $4, warning_sent = $5, expired = $6,
                resolved = $7, resolution = $8, resolved_at = $9, version = version + 1
            WHERE id = $1 AND version = $2
            """,
            t.id, t.version, t.expires_at, t.warning_at, t.warning_sent, t.expired,
            t.resolved, t.resolution, t.resolved_at,
        )
        _check_updated(status, "Timeout", t.id, t.version)
        return replace(t, version=t.version + 1)

    @staticmethod
    def _row_to_timeout(row) -> EscrowTimeout:
        return EscrowTimeout(
            id=row["id"],
            escrow_id=row["escrow_id"],
            timeout_type=TimeoutType(row["timeout_type"]),
            expires_at=row["expires_at"],
            warning_at=row["warning_at"],
            warning_sent=row["warning_sent"],
            expired=row["expired"],
            resolved=row["resolved"],
            resolution=row["resolution"],
            created_at=row["created_at"],
            resolved_at=row["resolved_at"],
            version=row["version"],
        )

    # -- multi-sig -----------------------------------------------------------

    async def insert_multisig(self, tx: MultiSigTransaction) -> None:
        await self._db.execute(
            """
            INSERT INTO escrow_multisig_transactions (
                id, escrow_id, multisig_wallet, provider, required_signatures,
                authorized_signers, signed_by, status, transaction_data, created_at, version
            ) VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7::jsonb, $8, $9, $10, $11)
            """,
            tx.id, tx.escrow_id, tx.wallet, tx.provider.value, tx.required_signatures,
            _dumps(tx.authorized_signers), _dumps(tx.signed_by), tx.status.value,
            tx.transaction_data, tx.created_at, tx.version,
        )

    async def get_multisig(self, tx_id: str) -> Optional[MultiSigTransaction]:
        row = await self._db.fetchrow(
            "SELECT * FROM escrow_multisig_transactions WHERE id = $1", tx_id
        )
        return self._row_to_multisig(row) if row else None

    async def list_multisig(self, escrow_id: str) -> list[MultiSigTransaction]:
        rows = await self._db.fetch(
            "SELECT * FROM escrow_multisig_transactions WHERE escrow_id = $1 "
            "ORDER BY created_at DESC",
            escrow_id,
        )
        return [self._row_to_multisig(r) for r in rows]

    async def update_multisig(self, tx: MultiSigTransaction) -> MultiSigTransaction:
        status = await self._db.execute(
            """
            UPDATE escrow_multisig_transactions SET
                signed_by = $3::jsonb, status = $4, tx_signature = $5, executed_at = $6,
                version = version + 1
            WHERE id = $1 AND version = $2
            """,
            tx.id, tx.version, _dumps(tx.signed_by), tx.status.value, tx.tx_ref, tx.executed_at,
        )
        _check_updated(status, "Multi-sig transaction", tx.id, tx.version)
        return replace(tx, version=tx.version + 1)

    @staticmethod
    def _row_to_multisig(row) -> MultiSigTransaction:
        return MultiSigTransaction(
            id=row["id"],
            escrow_id=row["escrow_id"],
            wallet=row["multisig_wallet"],
            provider=MultiSigProvider(row["provider"]),
            required_signatures=row["required_signatures"],
            authorized_signers=list(_loads(row["authorized_signers"])),
            signed_by=list(_loads(row["signed_by"]) or []),
            status=MultiSigStatus(row["status"]),
            transaction_data=row["transaction_data"],
            tx_ref=row["tx_signature"],
            created_at=row["created_at"],
            executed_at=row["executed_at"],
            version=row["version"],
        )

    # -- settlements ---------------------------------------------------------

    async def insert_settlement(self, settlement: Settlement) -> None:
        s = settlement
        result = await self._db.execute(
            """
            INSERT INTO escrow_releases (
                id, escrow_id, event_key, release_type, asset, transfers, status,
                tx_signature, payload, created_at, version
            ) VALUES ($1, $2, $3, $4, $5::jsonb, $6::jsonb, $7, $8, $9, $10, $11)
            ON CONFLICT (escrow_id, event_key) DO NOTHING
            """,
            s.id, s.escrow_id, s.event_key, s.release_type.value,
            _dumps(asset_to_json(s.asset)), _dumps(_transfers_to_json(s.transfers)),
            s.status.value, s.tx_ref, s.payload, s.created_at, s.version,
        )
        if result.split()[-1] == "0":
            raise StateConflictError(
                f"Settlement {s.event_key} already exists for escrow {s.escrow_id}"
            )

    async def get_settlement_by_key(self, escrow_id: str, event_key: str) -> Optional[Settlement]:
        row = await self._db.fetchrow(
            "SELECT * FROM escrow_releases WHERE escrow_id = $1 AND event_key = $2",
            escrow_id, event_key,
        )
        return self._row_to_settlement(row) if row else None

    async def list_settlements(self, escrow_id: str) -> list[Settlement]:
        rows = await self._db.fetch(
            "SELECT * FROM escrow_releases WHERE escrow_id = $1 ORDER BY created_at", escrow_id
        )
        return [self._row_to_settlement(r) for r in rows]

    async def update_settlement(self, settlement: Settlement) -> Settlement:
        s = settlement
        status = await self._db.execute(
            """
            UPDATE escrow_releases SET
                status = $3, tx_signature = $4, payload = $5, error = $6,
                confirmed_at = $7, version = version + 1
            WHERE id = $1 AND version = $2
            """,
            s.id, s.version, s.status.value, s.tx_ref, s.payload, s.error, s.confirmed_at,
        )
        _check_updated(status, "Settlement", s.id, s.version)
        return replace(s, version=s.version + 1)

    @staticmethod
    def _row_to_settlement(row) -> Settlement:
        return Settlement(
            id=row["id"],
            escrow_id=row["escrow_id"],
            event_key=row["event_key"],
            release_type=ReleaseType(row["release_type"]),
            asset=asset_from_json(_loads(row["asset"])),
            transfers=_transfers_from_json(_loads(row["transfers"])),
            status=SettlementStatus(row["status"]),
            tx_ref=row["tx_signature"],
            payload=row["payload"],
            error=row["error"],
            created_at=row["created_at"],
            confirmed_at=row["confirmed_at"],
            version=row["version"],
        )

    # -- append-only logs ----------------------------------------------------

    async def append_audit(self, action: AuditAction) -> None:
        a = action
        await self._db.execute(
            """
            INSERT INTO escrow_actions (
                id, escrow_id, milestone_id, actor_wallet, action_type, notes,
                metadata, previous_hash, entry_hash, created_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8, $9, $10)
            """,
            a.id, a.escrow_id, a.milestone_id, a.actor, a.action.value, a.notes,
            _dumps(a.metadata), a.previous_hash, a.entry_hash, a.created_at,
        )

    async def last_audit(self, escrow_id: str) -> Optional[AuditAction]:
        row = await self._db.fetchrow(
            "SELECT * FROM escrow_actions WHERE escrow_id = $1 "
            "ORDER BY created_at DESC, id DESC LIMIT 1",
            escrow_id,
        )
        return self._row_to_audit(row) if row else None

    async def list_audit(
        self, escrow_id: Optional[str] = None, since: Optional[datetime] = None, limit: int = 500
    ) -> list[AuditAction]:
        rows = await self._db.fetch(
            """
            SELECT * FROM escrow_actions
            WHERE ($1::text IS NULL OR escrow_id = $1)
              AND ($2::timestamptz IS NULL OR created_at >= $2)
            ORDER BY created_at, id
            LIMIT $3
            """,
            escrow_id, since, limit,
        )
        return [self._row_to_audit(r) for r in rows]

    @staticmethod
    def _row_to_audit(row) -> AuditAction:
        return AuditAction(
            id=row["id"],
            escrow_id=row["escrow_id"],
            actor=row["actor_wallet"],
            action=ActionType(row["action_type"]),
            notes=row["notes"],
            metadata=_loads(row["metadata"]) or {},
            milestone_id=row["milestone_id"],
            created_at=row["created_at"],
            previous_hash=row["previous_hash"],
            entry_hash=row["entry_hash"],
        )

    async def insert_admin_action(self, action: AdminAction) -> None:
        a = action
        await self._db.execute(
            """
            INSERT INTO escrow_admin_actions (
                id, escrow_id, dispute_id, timeout_id, admin_wallet, action, decision,
                notes, amount_to_buyer, amount_to_seller, tx_refs, metadata, resolved, created_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11::jsonb, $12::jsonb, $13, $14)
            """,
            a.id, a.escrow_id, a.dispute_id, a.timeout_id, a.admin_wallet, a.action,
            a.decision, a.notes, a.amount_to_buyer, a.amount_to_seller,
            _dumps(a.tx_refs), _dumps(a.metadata), a.resolved, a.created_at,
        )

    async def list_admin_actions(
        self, escrow_id: Optional[str] = None, unresolved_only: bool = False
    ) -> list[AdminAction]:
        rows = await self._db.fetch(
            """
            SELECT * FROM escrow_admin_actions
            WHERE ($1::text IS NULL OR escrow_id = $1)
              AND (NOT $2 OR resolved = FALSE)
            ORDER BY created_at
            """,
            escrow_id, unresolved_only,
        )
        return [
            AdminAction(
                id=r["id"],
                escrow_id=r["escrow_id"],
                admin_wallet=r["admin_wallet"],
                action=r["action"],
                decision=r["decision"],
                notes=r["notes"],
                dispute_id=r["dispute_id"],
                timeout_id=r["timeout_id"],
                amount_to_buyer=r["amount_to_buyer"],
                amount_to_seller=r["amount_to_seller"],
                tx_refs=list(_loads(r["tx_refs"]) or []),
                metadata=_loads(r["metadata"]) or {},
                resolved=r["resolved"],
                created_at=r["created_at"],
            )
            for r in rows
        ]

    async def mark_admin_actions_resolved(self, escrow_id: str) -> int:
        status = await self._db.execute(
            "UPDATE escrow_admin_actions SET resolved = TRUE WHERE escrow_id = $1 AND resolved = FALSE",
            escrow_id,
        )
        return int(status.split()[-1])

    async def append_key_access(self, record: KeyAccessRecord) -> None:
        r = record
        await self._db.execute(
            """
            INSERT INTO escrow_key_access_log (
                id, escrow_id, operation, actor, purpose, success, key_fingerprint, error, created_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            """,
            r.id, r.escrow_id, r.operation.value, r.actor, r.purpose, r.success,
            r.key_fingerprint, r.error, r.created_at,
        )

    async def list_key_access(self, escrow_id: Optional[str] = None) -> list[KeyAccessRecord]:
        rows = await self._db.fetch(
            """
            SELECT * FROM escrow_key_access_log
            WHERE ($1::text IS NULL OR escrow_id = $1)
            ORDER BY created_at
            """,
            escrow_id,
        )
        return [
            KeyAccessRecord(
                id=r["id"],
                operation=KeyOperation(r["operation"]),
                actor=r["actor"],
                purpose=r["purpose"],
                success=r["success"],
                escrow_id=r["escrow_id"],
                key_fingerprint=r["key_fingerprint"],
                error=r["error"],
                created_at=r["created_at"],
            )
            for r in rows
        ]
