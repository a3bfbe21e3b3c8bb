"""
Timeout monitor.

One scan walks every unresolved timeout ordered by expiry:
- past expiry: hand it to ``TimeoutHandler`` (which resolves it)
- inside its warning window and not yet warned: notify the parties who
  still owe an action, then flag it as warned

A second scan with nothing changed does nothing, because handled timeouts
are resolved and warned timeouts are flagged.
"""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from typing import Any, Optional

from ..engines.atomic_swap import SYSTEM_ACTOR
from ..engines.base import EngineContext
from ..exceptions import EscrowException, NotFoundError, StateConflictError
from ..models import (
    ActionType,
    AdminAction,
    AtomicSwapTerms,
    EscrowContract,
    EscrowTimeout,
    MilestoneStatus,
    MilestoneTerms,
    TimeoutType,
    TraditionalTerms,
)
from ..notifications import NotificationType
from .config import calculate_warning, format_time_remaining, validate_timeout_hours
from .handler import MANUAL_INTERVENTION, TimeoutHandler

logger = logging.getLogger(__name__)


@dataclass
class TimeoutCheckResult:
    total_checked: int = 0
    expired_count: int = 0
    warnings_sent: int = 0
    escalated_to_admin: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class EscrowTimeoutCheck:
    has_expired: bool
    expired_timeouts: list[EscrowTimeout]
    active_timeouts: list[EscrowTimeout]


@dataclass
class TimeoutStatistics:
    total: int = 0
    active: int = 0
    expired: int = 0
    resolved: int = 0
    by_type: dict[str, int] = field(default_factory=dict)
    avg_resolution_hours: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class AdminReviewItem:
    contract: EscrowContract
    timeout: Optional[EscrowTimeout]
    admin_action: AdminAction


class TimeoutMonitor:
    """Periodic timeout scan plus timeout read models."""

    def __init__(self, ctx: EngineContext, handler: TimeoutHandler) -> None:
        self.ctx = ctx
        self.handler = handler

    async def check_expired_escrows(self) -> TimeoutCheckResult:
        """
        Run one scan over every unresolved timeout.

        Failures on one timeout are collected in ``errors`` and do not stop
        the scan.
        """
        result = TimeoutCheckResult()
        timeouts = sorted(
            await self.ctx.store.list_timeouts(unresolved_only=True),
            key=lambda t: t.expires_at,
        )
        result.total_checked = len(timeouts)
        if not timeouts:
            logger.debug("No active timeouts to check")
            return result

        now = self.ctx.clock()
        for timeout in timeouts:
            try:
                if timeout.expires_at <= now:
                    logger.info("Timeout %s (%s) expired", timeout.id, timeout.timeout_type.value)
                    outcome = await self.handler.handle(timeout)
                    if outcome.resolved:
                        result.expired_count += 1
                    if outcome.escalated:
                        result.escalated_to_admin += 1
                elif not timeout.warning_sent and timeout.warning_at and timeout.warning_at <= now:
                    if await self.send_pre_expiration_warning(timeout):
                        result.warnings_sent += 1
            except EscrowException as e:
                logger.error("Error processing timeout %s: %s", timeout.id, e.message)
                result.errors.append(f"Timeout {timeout.id}: {e.message}")

        logger.info(
            "Timeout scan: %d checked, %d expired, %d warnings, %d escalated, %d errors",
            result.total_checked, result.expired_count, result.warnings_sent,
            result.escalated_to_admin, len(result.errors),
        )
        return result

    async def check_escrow_timeouts(self, escrow_id: str) -> EscrowTimeoutCheck:
        now = self.ctx.clock()
        expired, active = [], []
        for timeout in await self.ctx.store.list_timeouts(escrow_id, unresolved_only=True):
            (expired if timeout.expires_at <= now else active).append(timeout)
        return EscrowTimeoutCheck(bool(expired), expired, active)

    # -- warnings ------------------------------------------------------------

    async def send_pre_expiration_warning(self, timeout: EscrowTimeout) -> bool:
        contract = await self.ctx.load_contract(timeout.escrow_id)
        recipients = await self._warning_recipients(contract, timeout)
        remaining = format_time_remaining(timeout.expires_at, self.ctx.clock())
        for wallet, message in recipients:
            self.ctx.notify(
                wallet,
                NotificationType.TIMEOUT_WARNING,
                contract,
                f"{message} Time remaining: {remaining}.",
                {"timeout_id": timeout.id, "timeout_type": timeout.timeout_type.value},
            )

        timeout.warning_sent = True
        await self.ctx.store.update_timeout(timeout)
        logger.info("Pre-expiration warning for %s sent to %d recipient(s)", timeout.id, len(recipients))
        return bool(recipients)

    async def _warning_recipients(
        self, contract: EscrowContract, timeout: EscrowTimeout
    ) -> list[tuple[str, str]]:
        recipients = []
        terms = contract.terms
        match timeout.timeout_type:
            case TimeoutType.DEPOSIT | TimeoutType.SWAP:
                for role in contract.required_roles():
                    if contract.has_deposited(role):
                        continue
                    asset, amount = contract.expected_deposit(role)  # type: ignore[misc]
                    recipients.append((
                        contract.wallet_for(role),
                        f"Please deposit {amount} {asset.symbol} to the escrow wallet.",
                    ))
            case TimeoutType.CONFIRMATION if isinstance(terms, TraditionalTerms):
                if not terms.buyer_confirmed:
                    recipients.append((contract.buyer_wallet, "Please confirm the transaction to release funds."))
                if not terms.seller_confirmed:
                    recipients.append((contract.seller_wallet, "Please confirm the transaction to release funds."))
            case TimeoutType.MILESTONE if isinstance(terms, MilestoneTerms):
                recipients.extend(await self._milestone_recipients(contract))
            case TimeoutType.DISPUTE:
                message = "The dispute resolution period is ending. An administrator will make a decision soon."
                recipients = [(contract.buyer_wallet, message), (contract.seller_wallet, message)]
        return recipients

    async def _milestone_recipients(self, contract: EscrowContract) -> list[tuple[str, str]]:
        for milestone in sorted(await self.ctx.store.list_milestones(contract.id), key=lambda m: m.order):
            if milestone.status is MilestoneStatus.PENDING:
                return [(contract.seller_wallet, f"Please submit work for milestone {milestone.order}.")]
            if milestone.status is MilestoneStatus.WORK_SUBMITTED:
                return [(contract.buyer_wallet, f"Please review the work submitted for milestone {milestone.order}.")]
            if milestone.status is not MilestoneStatus.RELEASED:
                return []
        return []

    # -- admin tools ---------------------------------------------------------

    async def extend_timeout(
        self, timeout_id: str, additional_hours: int | float, extended_by: str = SYSTEM_ACTOR
    ) -> EscrowTimeout:
        """Push an unresolved timeout's expiry back and re-arm its warning."""
        validate_timeout_hours(additional_hours)
        timeout = await self.ctx.store.get_timeout(timeout_id)
        if timeout is None:
            raise NotFoundError("Timeout", timeout_id)
        if timeout.resolved:
            raise StateConflictError(
                f"Timeout {timeout_id} is already resolved ({timeout.resolution})"
            )
        timeout.expires_at = timeout.expires_at + timedelta(hours=additional_hours)
        timeout.warning_at = calculate_warning(timeout.expires_at, timeout.timeout_type)
        timeout.warning_sent = False
        timeout.expired = False
        timeout = await self.ctx.store.update_timeout(timeout)

        if timeout.timeout_type is TimeoutType.SWAP:
            contract = await self.ctx.load_contract(timeout.escrow_id)
            if isinstance(contract.terms, AtomicSwapTerms):
                contract.expires_at = timeout.expires_at
                await self.ctx.save_contract(contract)
        await self.ctx.audit.record(
            timeout.escrow_id,
            extended_by,
            ActionType.TIMEOUT_EXTENDED,
            notes=f"{timeout.timeout_type.value} extended by {additional_hours}h",
            metadata={"timeout_id": timeout.id, "expires_at": timeout.expires_at.isoformat()},
        )
        logger.info("Timeout %s extended by %sh to %s", timeout_id, additional_hours, timeout.expires_at.isoformat())
        return timeout

    async def get_timeout_statistics(self) -> TimeoutStatistics:
        stats = TimeoutStatistics(by_type={t.value: 0 for t in TimeoutType})
        by_type: Counter[str] = Counter()
        resolution_seconds = 0.0
        resolved_with_time = 0

        timeouts = await self.ctx.store.list_timeouts()
        stats.total = len(timeouts)
        for timeout in timeouts:
            by_type[timeout.timeout_type.value] += 1
            if timeout.resolved:
                stats.resolved += 1
                if timeout.resolved_at:
                    resolution_seconds += (timeout.resolved_at - timeout.created_at).total_seconds()
                    resolved_with_time += 1
            elif timeout.expired:
                stats.expired += 1
            else:
                stats.active += 1

        stats.by_type.update(by_type)
        if resolved_with_time:
            stats.avg_resolution_hours = resolution_seconds / resolved_with_time / 3600
        return stats

    async def get_admin_review_queue(self) -> list[AdminReviewItem]:
        """Escalations still waiting for an administrator, oldest first."""
        queue = []
        actions = [
            a for a in await self.ctx.store.list_admin_actions(unresolved_only=True)
            if a.action == MANUAL_INTERVENTION
        ]
        for action in sorted(actions, key=lambda a: a.created_at):
            contract = await self.ctx.store.get_contract(action.escrow_id)
            if contract is None:
                continue
            timeout = await self.ctx.store.get_timeout(action.timeout_id) if action.timeout_id else None
            queue.append(AdminReviewItem(contract, timeout, action))
        return queue
