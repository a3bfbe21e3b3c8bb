"""Fire-and-forget notifications to escrow parties.

Delivery channels (email, push, chat) live outside the engine behind the
``Notifier`` protocol. The engine never waits on, or fails because of, a
notification: dispatches run as tracked background tasks and their
errors are logged.
"""
from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Optional, Protocol

logger = logging.getLogger(__name__)


class NotificationType(str, Enum):
    ESCROW_CREATED = "escrow.created"
    DEPOSIT_RECEIVED = "escrow.deposit_received"
    ESCROW_FUNDED = "escrow.funded"
    PARTY_CONFIRMED = "escrow.party_confirmed"
    FUNDS_RELEASED = "escrow.funds_released"
    WORK_SUBMITTED = "milestone.work_submitted"
    MILESTONE_APPROVED = "milestone.approved"
    MILESTONE_RELEASED = "milestone.released"
    SWAP_EXECUTED = "swap.executed"
    REFUND_ISSUED = "escrow.refund_issued"
    DISPUTE_RAISED = "dispute.raised"
    DISPUTE_RESOLVED = "dispute.resolved"
    EVIDENCE_SUBMITTED = "dispute.evidence_submitted"
    CANCELLATION_REQUESTED = "cancellation.requested"
    CANCELLATION_APPROVED = "cancellation.approved"
    ESCROW_CANCELLED = "escrow.cancelled"
    TIMEOUT_WARNING = "timeout.warning"
    TIMEOUT_EXPIRED = "timeout.expired"
    ADMIN_REVIEW = "timeout.admin_review"


class Notifier(Protocol):
    async def notify(
        self,
        recipient_wallet: str,
        event_type: str,
        escrow_id: str,
        message: str,
        metadata: dict[str, Any],
    ) -> None: ...


class LoggingNotifier:
    """Notifier that only logs; the default when no channel is wired."""

    async def notify(
        self,
        recipient_wallet: str,
        event_type: str,
        escrow_id: str,
        message: str,
        metadata: dict[str, Any],
    ) -> None:
        logger.info("NOTIFY %s -> %s [%s]: %s", event_type, recipient_wallet, escrow_id, message)


class NotificationDispatcher:
    """Schedules notifier calls in the background and tracks them."""

    def __init__(self, notifier: Optional[Notifier] = None):
        self._notifier = notifier or LoggingNotifier()
        self._background_tasks: set[asyncio.Task[Any]] = set()

    def dispatch(
        self,
        recipients: str | list[str],
        event_type: NotificationType,
        escrow_id: str,
        message: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        if isinstance(recipients, str):
            recipients = [recipients]
        for recipient in dict.fromkeys(r for r in recipients if r):
            task = asyncio.create_task(
                self._notifier.notify(
                    recipient, event_type.value, escrow_id, message, dict(metadata or {})
                )
            )
            self._background_tasks.add(task)
            task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        """Remove completed task and surface errors in logs."""
        self._background_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Notification delivery failed: %s", exc, exc_info=exc)

    async def wait_for_background_tasks(self, timeout: Optional[float] = None) -> None:
        """Wait for all currently tracked notifications to complete."""
        if not self._background_tasks:
            return
        pending = list(self._background_tasks)
        await asyncio.wait_for(asyncio.gather(*pending, return_exceptions=True), timeout=timeout)
