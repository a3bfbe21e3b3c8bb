"""
Cancellation coordinator.

Mutual cancellation works at any point before the contract closes: the
requester approves implicitly, the counterparty approves explicitly, and
once both have agreed every confirmed deposit still in custody is refunded
minus the cancellation fee. Unilateral cancellation is the buyer's escape
hatch for a contract that was never fully funded.

A cancellation never races a dispute, an approved milestone waiting for
its payout, any payout in progress, or a swap that has partly executed.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from decimal import Decimal
from typing import Any, Optional

from .constants import CancellationLimits
from .exceptions import (
    AuthorizationError,
    LedgerRejectedError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from .models import (
    PRE_FUNDING_STATUSES,
    ActionType,
    Asset,
    AtomicSwapTerms,
    CancellationRequest,
    CancellationStatus,
    EscrowContract,
    EscrowStatus,
    MilestoneStatus,
    PartyRole,
    ReleaseType,
    TransferInstruction,
    new_id,
)
from .notifications import NotificationType
from .engines.base import EngineContext, payouts, transition

logger = logging.getLogger(__name__)

_OPEN_REQUEST = (CancellationStatus.PENDING, CancellationStatus.APPROVED)


class CancellationCoordinator:
    """Mutual and unilateral cancellation with refunds."""

    def __init__(self, ctx: EngineContext) -> None:
        self.ctx = ctx

    async def _load_request(self, request_id: str) -> CancellationRequest:
        request = await self.ctx.store.get_cancellation(request_id)
        if request is None:
            raise NotFoundError("Cancellation request", request_id)
        return request

    async def _guard(self, contract: EscrowContract, *, resuming: bool = False) -> None:
        """Refuse while the contract is closed, disputed or mid-payout."""
        if contract.status is EscrowStatus.COMPLETED:
            raise StateConflictError("Cannot cancel completed escrow", actual=contract.status)
        if contract.status is EscrowStatus.CANCELLED:
            raise StateConflictError("Escrow is already cancelled", actual=contract.status)
        if contract.status is EscrowStatus.REFUNDED:
            raise StateConflictError("Escrow has already been refunded", actual=contract.status)
        if contract.status is EscrowStatus.DISPUTED or any(
            d.is_open for d in await self.ctx.store.list_disputes(contract.id)
        ):
            raise StateConflictError("Cannot cancel while a dispute is open", actual=contract.status)
        if any(
            m.status is MilestoneStatus.APPROVED
            for m in await self.ctx.store.list_milestones(contract.id)
        ):
            raise StateConflictError(
                "Cannot cancel while an approved milestone is awaiting release",
                actual=MilestoneStatus.APPROVED,
            )
        if not resuming and await self.ctx.settlement_in_flight(contract.id):
            raise StateConflictError("Cannot cancel while a payout is in progress")
        if isinstance(contract.terms, AtomicSwapTerms) and await self.ctx.confirmed_swap_legs(contract.id):
            raise StateConflictError(
                "Cannot cancel a partially executed swap. It will be completed on retry, "
                "or can be sent to admin review by raising a dispute.",
                actual=contract.status,
            )

    # -- mutual --------------------------------------------------------------

    async def request_cancellation(
        self, escrow_id: str, requester: str, reason: str
    ) -> CancellationRequest:
        """
        Open a mutual cancellation request, approved on behalf of the requester.

        Raises:
            AuthorizationError: Requester is not a party
            ValidationError: Reason shorter than 10 characters
            StateConflictError: Contract closed or disputed, a milestone
                awaiting release, a payout in flight, or a request already open
        """
        reason = (reason or "").strip()
        if len(reason) < CancellationLimits.MIN_REASON_LENGTH:
            raise ValidationError(
                f"Cancellation reason must be at least {CancellationLimits.MIN_REASON_LENGTH} characters",
                field="reason",
            )
        contract = await self.ctx.load_contract(escrow_id)
        role = contract.role_of(requester)
        if role is None:
            raise AuthorizationError("Only buyer or seller can request cancellation", actor=requester)
        await self._guard(contract)
        if any(r.status in _OPEN_REQUEST for r in await self.ctx.store.list_cancellations(escrow_id)):
            raise StateConflictError("A cancellation request is already pending for this escrow")

        now = self.ctx.clock()
        request = CancellationRequest(
            id=new_id("cnl"),
            escrow_id=escrow_id,
            requested_by=requester,
            reason=reason,
            buyer_approved=role is PartyRole.BUYER,
            seller_approved=role is PartyRole.SELLER,
            buyer_approved_at=now if role is PartyRole.BUYER else None,
            seller_approved_at=now if role is PartyRole.SELLER else None,
            created_at=now,
        )
        await self.ctx.store.insert_cancellation(request)

        await self.ctx.record(
            contract,
            requester,
            ActionType.CANCELLED,
            f"Cancellation requested: {reason}",
            {"cancellation_id": request.id, "stage": "requested"},
        )
        counterparty = contract.seller_wallet if role is PartyRole.BUYER else contract.buyer_wallet
        self.ctx.notify(
            counterparty,
            NotificationType.CANCELLATION_REQUESTED,
            contract,
            f"The {role.value} requested to cancel this escrow: {reason}",
            {"cancellation_id": request.id},
        )
        logger.info("Cancellation %s requested on escrow %s by %s", request.id, escrow_id, role.value)
        return request

    async def approve_cancellation(self, request_id: str, approver: str) -> CancellationRequest:
        """
        Add a party's approval; the second approval executes the cancellation.

        If the refund is rejected by the ledger the request ends ``rejected``.
        If the ledger could not be reached it stays ``approved`` and
        ``execute_cancellation`` can be retried.
        """
        request = await self._load_request(request_id)
        if request.status is not CancellationStatus.PENDING:
            raise StateConflictError(
                f"Cancellation request is {request.status.value}",
                expected=CancellationStatus.PENDING,
                actual=request.status,
            )
        contract = await self.ctx.load_contract(request.escrow_id)
        role = contract.role_of(approver)
        if role is None:
            raise AuthorizationError("Only buyer or seller can approve cancellation", actor=approver)
        if (role is PartyRole.BUYER and request.buyer_approved) or (
            role is PartyRole.SELLER and request.seller_approved
        ):
            raise StateConflictError("You have already approved this cancellation")
        await self._guard(contract)

        now = self.ctx.clock()
        if role is PartyRole.BUYER:
            request.buyer_approved = True
            request.buyer_approved_at = now
        else:
            request.seller_approved = True
            request.seller_approved_at = now
        if request.fully_approved:
            request.status = CancellationStatus.APPROVED
        request = await self.ctx.store.update_cancellation(request)

        if request.fully_approved:
            self.ctx.notify(
                [contract.buyer_wallet, contract.seller_wallet],
                NotificationType.CANCELLATION_APPROVED,
                contract,
                "Both parties approved the cancellation; refunds are being processed",
                {"cancellation_id": request.id},
            )
            return await self.execute_cancellation(request.id, approver)

        await self.ctx.record(
            contract,
            approver,
            ActionType.APPROVED,
            "Cancellation approved",
            {"cancellation_id": request.id, "stage": "approved"},
        )
        return request

    async def execute_cancellation(self, request_id: str, triggered_by: str = "system") -> CancellationRequest:
        """Refund confirmed deposits minus the cancellation fee and cancel the escrow."""
        request = await self._load_request(request_id)
        if request.status is not CancellationStatus.APPROVED:
            raise StateConflictError(
                f"Cancellation request is {request.status.value}",
                expected=CancellationStatus.APPROVED,
                actual=request.status,
            )
        contract = await self.ctx.load_contract(request.escrow_id)
        # a signed refund from an earlier attempt is rebroadcast by settle()
        await self._guard(contract, resuming=True)

        try:
            tx_refs, refunds = await self._refund(contract, triggered_by, charge_fee=True)
        except LedgerRejectedError as e:
            request.status = CancellationStatus.REJECTED
            await self.ctx.store.update_cancellation(request)
            await self.ctx.record(
                contract,
                triggered_by,
                ActionType.CANCELLED,
                f"Cancellation refund rejected by the ledger: {e.message}",
                {"cancellation_id": request.id, "stage": "rejected"},
            )
            raise

        now = self.ctx.clock()
        request.status = CancellationStatus.EXECUTED
        request.refund_tx_refs = tx_refs
        request.executed_at = now
        request = await self.ctx.store.update_cancellation(request)

        contract = await self._close(contract)
        await self.ctx.record(
            contract,
            triggered_by,
            ActionType.CANCELLED,
            "Mutual cancellation executed. Refunds processed minus cancellation fee.",
            {"cancellation_id": request.id, "tx_refs": tx_refs, "refunds": refunds},
        )
        self.ctx.notify(
            [contract.buyer_wallet, contract.seller_wallet],
            NotificationType.ESCROW_CANCELLED,
            contract,
            "Escrow cancelled by mutual agreement. Deposits have been refunded minus the cancellation fee.",
            {"tx_refs": tx_refs},
        )
        logger.info("Cancellation %s executed for escrow %s", request.id, contract.id)
        return request

    async def get_cancellation_status(self, escrow_id: str) -> dict[str, Any]:
        requests = await self.ctx.store.list_cancellations(escrow_id)
        if not requests:
            return {"escrow_id": escrow_id, "has_request": False}
        latest = max(requests, key=lambda r: r.created_at)
        return {
            "escrow_id": escrow_id,
            "has_request": True,
            "id": latest.id,
            "status": latest.status.value,
            "requested_by": latest.requested_by,
            "reason": latest.reason,
            "buyer_approved": latest.buyer_approved,
            "seller_approved": latest.seller_approved,
            "refund_tx_refs": list(latest.refund_tx_refs),
        }

    # -- unilateral ----------------------------------------------------------

    async def cancel_unilateral(
        self, escrow_id: str, requester: str, reason: Optional[str] = None
    ) -> EscrowContract:
        """
        Buyer cancels a contract that never reached ``fully_funded``.

        Partial deposits are refunded; the cancellation fee is withheld only
        when the fee policy says so.
        """
        contract = await self.ctx.load_contract(escrow_id)
        if requester != contract.buyer_wallet:
            raise AuthorizationError(
                "Only the escrow creator can cancel an unfunded escrow", actor=requester
            )
        await self._guard(contract)
        if contract.status not in PRE_FUNDING_STATUSES or contract.funded_at is not None:
            raise StateConflictError(
                "Cannot cancel fully funded escrow. Use mutual cancellation instead.",
                expected=[s.value for s in PRE_FUNDING_STATUSES],
                actual=contract.status,
            )

        tx_refs, refunds = await self._refund(
            contract, requester, charge_fee=self.ctx.fees.unilateral_cancellation_fee
        )
        contract = await self._close(contract)
        await self.ctx.record(
            contract,
            requester,
            ActionType.CANCELLED,
            reason or "Unfunded escrow cancelled by creator",
            {"tx_refs": tx_refs, "refunds": refunds, "unilateral": True},
        )
        self.ctx.notify(
            [contract.buyer_wallet, contract.seller_wallet],
            NotificationType.ESCROW_CANCELLED,
            contract,
            "Escrow cancelled before it was funded"
            + (". Deposits have been refunded." if tx_refs else ""),
            {"tx_refs": tx_refs},
        )
        return contract

    # -- shared --------------------------------------------------------------

    async def _refund(
        self, contract: EscrowContract, actor: str, *, charge_fee: bool
    ) -> tuple[list[str], list[dict[str, str]]]:
        """Refund every confirmed deposit still held, one transaction per asset."""
        held = await self.ctx.held_funds(contract)
        by_asset: dict[Asset, list[TransferInstruction]] = defaultdict(list)
        refunds = []
        for (role, asset), amount in held.items():
            recipient = contract.wallet_for(role)
            fee = Decimal("0")
            if charge_fee:
                fee = self.ctx.fees.cancellation(amount, asset.quantum, confirmed=True).fee
            by_asset[asset].extend(payouts([
                (recipient, amount - fee, ReleaseType.REFUND),
                (self.ctx.fees.treasury_wallet, fee, ReleaseType.PLATFORM_FEE),
            ]))
            refunds.append({
                "recipient": recipient,
                "asset": asset.symbol,
                "gross": str(amount),
                "fee": str(fee),
                "net": str(amount - fee),
            })

        tx_refs = []
        for asset, transfers in by_asset.items():
            if not transfers:
                continue
            settlement = await self.ctx.settle(
                contract, f"cancellation:{asset.symbol}", ReleaseType.REFUND, asset, transfers, actor,
            )
            if settlement.tx_ref:
                tx_refs.append(settlement.tx_ref)
        return tx_refs, refunds

    async def _close(self, contract: EscrowContract) -> EscrowContract:
        contract = await self.ctx.load_contract(contract.id)
        transition(contract, EscrowStatus.CANCELLED)
        contract.cancelled_at = self.ctx.clock()
        contract = await self.ctx.save_contract(contract)
        await self.ctx.resolve_timeouts(contract.id, "cancelled")
        return contract
