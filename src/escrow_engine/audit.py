"""
Append-only audit trail for escrow contracts.

Every mutating engine operation appends exactly one row. Rows for the same
escrow form a hash chain: each entry's hash covers its content and the hash of
the previous entry, so editing or deleting a row is detectable with
``verify_chain``.
"""
from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Optional

from .models import ActionType, AuditAction, new_id, utcnow
from .logging import mask_sensitive_data
from .store.base import EscrowStore

logger = logging.getLogger(__name__)

GENESIS_HASH = "genesis"


def compute_entry_hash(action: AuditAction) -> str:
    """Compute the chained hash of an audit entry."""
    data = {
        "id": action.id,
        "escrow_id": action.escrow_id,
        "milestone_id": action.milestone_id,
        "actor": action.actor,
        "action": action.action.value,
        "notes": action.notes,
        "metadata": action.metadata,
        "created_at": action.created_at.isoformat(),
        "previous_hash": action.previous_hash,
    }
    content = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(content.encode()).hexdigest()


class AuditLog:
    """
    Writes and verifies the per-escrow audit chain.

    Appends for one escrow are serialized by an in-process lock so two
    concurrent operations cannot both link to the same predecessor.
    """

    def __init__(self, store: EscrowStore):
        self._store = store
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def record(
        self,
        escrow_id: str,
        actor: str,
        action: ActionType,
        notes: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        milestone_id: Optional[str] = None,
    ) -> AuditAction:
        """
        Append one audit row.

        Args:
            escrow_id: Contract the action belongs to
            actor: Wallet or system actor that performed the action
            action: Action type
            notes: Free-text notes
            metadata: Extra structured data; secret-bearing keys are masked
            milestone_id: Milestone the action targets, if any

        Returns:
            The stored AuditAction with its chain hashes set
        """
        async with self._locks[escrow_id]:
            previous = await self._store.last_audit(escrow_id)
            entry = AuditAction(
                id=new_id("act"),
                escrow_id=escrow_id,
                actor=actor,
                action=action,
                notes=notes,
                metadata=mask_sensitive_data(metadata or {}),
                milestone_id=milestone_id,
                created_at=utcnow(),
                previous_hash=previous.entry_hash if previous else GENESIS_HASH,
            )
            entry.entry_hash = compute_entry_hash(entry)
            await self._store.append_audit(entry)

        logger.info(
            "AUDIT %s escrow:%s actor:%s milestone:%s",
            action.value, escrow_id, actor, milestone_id or "-",
        )
        return entry

    async def history(
        self,
        escrow_id: str,
        since: Optional[datetime] = None,
        limit: int = 500,
    ) -> list[AuditAction]:
        """Read-only view of an escrow's audit trail, oldest first."""
        return await self._store.list_audit(escrow_id=escrow_id, since=since, limit=limit)

    async def verify_chain(self, escrow_id: str) -> tuple[bool, list[str]]:
        """
        Verify the hash chain integrity for an escrow.

        Returns:
            Tuple of (is_valid, list of error messages)
        """
        entries = await self._store.list_audit(escrow_id=escrow_id, limit=100_000)

        errors = []
        expected_previous = GENESIS_HASH

        for entry in entries:
            if entry.previous_hash != expected_previous:
                errors.append(
                    f"Entry {entry.id}: previous hash mismatch "
                    f"(expected {expected_previous[:8]}..., got {entry.previous_hash[:8]}...)"
                )

            computed = compute_entry_hash(entry)
            if entry.entry_hash != computed:
                errors.append(
                    f"Entry {entry.id}: hash verification failed "
                    f"(stored {entry.entry_hash[:8]}..., computed {computed[:8]}...)"
                )

            expected_previous = entry.entry_hash

        if errors:
            logger.warning("Audit chain for escrow %s is broken: %d errors", escrow_id, len(errors))
        return len(errors) == 0, errors
