"""Kind-specific handling of an expired timeout.

Atomic swaps resolve themselves from deposit state. Everything else
(traditional and milestone contracts, and any dispute deadline) is subjective
and goes to an administrator as a ``manual_intervention`` admin action.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from ..engines.atomic_swap import SYSTEM_ACTOR, AtomicSwapEngine, SwapTimeoutResult
from ..engines.base import EngineContext
from ..models import (
    ActionType,
    AdminAction,
    EscrowContract,
    EscrowKind,
    EscrowStatus,
    EscrowTimeout,
    TimeoutType,
    new_id,
)
from ..notifications import NotificationType

logger = logging.getLogger(__name__)

MANUAL_INTERVENTION = "manual_intervention"
ESCALATED = "escalated_to_admin"


@dataclass(frozen=True)
class TimeoutOutcome:
    action: str
    escalated: bool = False
    resolved: bool = True


class TimeoutHandler:
    """Routes an expired timeout to the handling rule of its contract kind."""

    def __init__(self, ctx: EngineContext, swap_engine: AtomicSwapEngine) -> None:
        self.ctx = ctx
        self.swap_engine = swap_engine

    async def handle(self, timeout: EscrowTimeout) -> TimeoutOutcome:
        contract = await self.ctx.load_contract(timeout.escrow_id)
        logger.info(
            "Handling %s for escrow %s (%s, %s)",
            timeout.timeout_type.value, contract.id, contract.kind.value, contract.status.value,
        )

        if contract.is_terminal:
            outcome = TimeoutOutcome(f"escrow_{contract.status.value}")
        elif (
            contract.kind is EscrowKind.ATOMIC_SWAP
            and timeout.timeout_type is TimeoutType.SWAP
            and contract.status is not EscrowStatus.DISPUTED
        ):
            outcome = await self._handle_swap(contract)
        else:
            outcome = await self.escalate(contract, timeout)

        if outcome.resolved:
            await self._resolve(timeout.id, outcome.action)
        return outcome

    async def _handle_swap(self, contract: EscrowContract) -> TimeoutOutcome:
        result = await self.swap_engine.handle_timeout(contract.id)
        if result is SwapTimeoutResult.NOT_EXPIRED:
            # swap deadline was extended after this timeout was armed
            return TimeoutOutcome(result.value, resolved=False)
        return TimeoutOutcome(f"swap_{result.value}")

    async def escalate(self, contract: EscrowContract, timeout: EscrowTimeout) -> TimeoutOutcome:
        """
        Queue the contract for administrative review.

        One admin action per timeout; re-escalating the same timeout is a
        no-op.
        """
        existing = await self._open_escalation(contract.id, timeout.id)
        if existing is not None:
            logger.info("Timeout %s already escalated as %s", timeout.id, existing.id)
            return TimeoutOutcome(ESCALATED, escalated=False)

        now = self.ctx.clock()
        action = AdminAction(
            id=new_id("adm"),
            escrow_id=contract.id,
            admin_wallet=SYSTEM_ACTOR,
            action=MANUAL_INTERVENTION,
            decision="Escalated due to timeout",
            notes=f"Timeout expired: {timeout.timeout_type.value}. Requires admin review and decision.",
            timeout_id=timeout.id,
            metadata={
                "timeout_type": timeout.timeout_type.value,
                "escalated_at": now.isoformat(),
            },
            created_at=now,
        )
        await self.ctx.store.insert_admin_action(action)
        await self.ctx.record(
            contract,
            SYSTEM_ACTOR,
            ActionType.ADMIN_ACTION,
            f"Escalated to admin review due to {timeout.timeout_type.value} expiration",
            {"timeout_id": timeout.id, "admin_action_id": action.id},
        )
        self.ctx.notify(
            [contract.buyer_wallet, contract.seller_wallet],
            NotificationType.ADMIN_REVIEW,
            contract,
            "A deadline on this escrow has passed. An administrator will review it and decide.",
            {"timeout_id": timeout.id, "timeout_type": timeout.timeout_type.value},
        )
        logger.warning("Escrow %s escalated to admin review (%s)", contract.id, timeout.timeout_type.value)
        return TimeoutOutcome(ESCALATED, escalated=True)

    async def _open_escalation(self, escrow_id: str, timeout_id: str) -> Optional[AdminAction]:
        for action in await self.ctx.store.list_admin_actions(escrow_id, unresolved_only=True):
            if action.action == MANUAL_INTERVENTION and action.timeout_id == timeout_id:
                return action
        return None

    async def _resolve(self, timeout_id: str, resolution: str) -> None:
        timeout = await self.ctx.store.get_timeout(timeout_id)
        if timeout is None or timeout.resolved:
            return
        timeout.expired = True
        timeout.resolved = True
        timeout.resolution = resolution
        timeout.resolved_at = self.ctx.clock()
        await self.ctx.store.update_timeout(timeout)
