"""
Milestone escrow: the buyer funds the whole contract up front and the seller
is paid in percentage slices, one milestone at a time.

Milestones are strictly sequential. Milestone N+1 cannot be submitted or
approved until milestone N has been released, and percentages are fixed
when the contract is created.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from typing import Any, Optional, Sequence

from ..constants import FeeDefaults, MilestoneLimits
from ..exceptions import AuthorizationError, NotFoundError, StateConflictError, ValidationError
from ..models import (
    ActionType,
    Asset,
    EscrowContract,
    EscrowStatus,
    Milestone,
    MilestoneStatus,
    MilestoneTerms,
    ReleaseType,
    TimeoutType,
    new_id,
    to_decimal,
)
from ..notifications import NotificationType
from ..results import ValidationReport
from .base import (
    EngineContext,
    milestone_event,
    payouts,
    positive_amount,
    require_status,
    transition,
    validate_parties,
)

logger = logging.getLogger(__name__)

_HUNDRED = Decimal(100)


@dataclass(frozen=True)
class MilestoneInput:
    description: str
    percentage: Decimal | int | str


@dataclass(frozen=True)
class MilestoneAmount:
    order: int
    description: str
    percentage: Decimal
    amount: Decimal


@dataclass(frozen=True)
class MilestoneRelease:
    milestone: Milestone
    escrow_completed: bool


@dataclass(frozen=True)
class MilestoneStats:
    total: int
    pending: int
    submitted: int
    approved: int
    released: int
    disputed: int
    completion_percentage: Decimal
    released_amount: Decimal
    remaining_amount: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "pending": self.pending,
            "submitted": self.submitted,
            "approved": self.approved,
            "released": self.released,
            "disputed": self.disputed,
            "completion_percentage": str(self.completion_percentage),
            "released_amount": str(self.released_amount),
            "remaining_amount": str(self.remaining_amount),
        }


def _percentage(value: Any) -> Optional[Decimal]:
    try:
        pct = to_decimal(value, "percentage")
    except ValidationError:
        return None
    return pct if pct.is_finite() else None


def validate_milestones(
    milestones: Sequence[MilestoneInput],
    total_amount: Decimal,
    max_milestones: int = MilestoneLimits.MAX_MILESTONES,
) -> ValidationReport:
    """
    Check a milestone plan before anything is persisted.

    Percentages must add up to exactly 100. A single milestone, or one under
    5%, is allowed but reported as a warning.
    """
    errors: list[str] = []
    warnings: list[str] = []

    if not milestones:
        return ValidationReport(valid=False, errors=("At least one milestone is required",))

    if len(milestones) > max_milestones:
        errors.append(f"Maximum {max_milestones} milestones allowed")

    percentages: list[Decimal] = []
    for index, milestone in enumerate(milestones, start=1):
        description = (milestone.description or "").strip()
        if not description:
            errors.append(f"Milestone {index}: Description is required")
        elif len(milestone.description) > MilestoneLimits.MAX_DESCRIPTION_LENGTH:
            errors.append(
                f"Milestone {index}: Description too long "
                f"(max {MilestoneLimits.MAX_DESCRIPTION_LENGTH} characters)"
            )

        pct = _percentage(milestone.percentage)
        if pct is None:
            errors.append(f"Milestone {index}: Percentage must be a number")
            continue
        if pct <= 0:
            errors.append(f"Milestone {index}: Percentage must be greater than 0")
        elif pct > _HUNDRED:
            errors.append(f"Milestone {index}: Percentage cannot exceed 100")
        percentages.append(pct)

    total_pct = sum(percentages, Decimal("0"))
    if len(percentages) == len(milestones) and total_pct != _HUNDRED:
        errors.append(f"Milestone percentages must sum to 100% (current total: {total_pct:.2f}%)")

    if total_amount <= 0:
        errors.append("Total amount must be greater than 0")

    if len(milestones) == 1:
        warnings.append("Single milestone escrow: Consider using traditional escrow instead")
    if any(p < MilestoneLimits.SMALL_MILESTONE_WARNING_PCT for p in percentages):
        warnings.append("Some milestones are less than 5% - consider combining small milestones")

    return ValidationReport(valid=not errors, errors=tuple(errors), warnings=tuple(warnings))


def calculate_milestone_amounts(
    milestones: Sequence[MilestoneInput],
    total_amount: Decimal,
    quantum: Decimal = FeeDefaults.DEFAULT_QUANTUM,
) -> list[MilestoneAmount]:
    """Split ``total_amount`` by percentage, ordering milestones 1..N.

    Each amount is rounded down to ``quantum``; the last milestone takes the
    remainder so the amounts always add up to the total.
    """
    result: list[MilestoneAmount] = []
    allocated = Decimal("0")
    last = len(milestones)
    for order, milestone in enumerate(milestones, start=1):
        pct = to_decimal(milestone.percentage, "percentage")
        if order == last:
            amount = total_amount - allocated
        else:
            amount = (total_amount * pct / _HUNDRED).quantize(quantum, rounding=ROUND_DOWN)
        allocated += amount
        result.append(MilestoneAmount(order, milestone.description.strip(), pct, amount))
    return result


def _terms(contract: EscrowContract) -> MilestoneTerms:
    if not isinstance(contract.terms, MilestoneTerms):
        raise StateConflictError(
            f"Escrow {contract.id} is not a milestone escrow",
            expected="milestone",
            actual=contract.kind.value,
        )
    return contract.terms


class MilestoneEscrowEngine:
    """Sequential, percentage-weighted releases of a buyer-funded escrow."""

    def __init__(self, ctx: EngineContext) -> None:
        self.ctx = ctx

    # -- creation ------------------------------------------------------------

    async def create(
        self,
        buyer_wallet: str,
        seller_wallet: str,
        total_amount: Decimal | str | int,
        asset: Asset,
        milestones: Sequence[MilestoneInput],
        timeout_hours: int = 168,
        description: Optional[str] = None,
    ) -> tuple[EscrowContract, list[Milestone]]:
        """
        Create a milestone escrow and its milestones.

        Args:
            buyer_wallet: Wallet funding the full amount
            seller_wallet: Wallet paid as milestones are released
            total_amount: Amount the buyer deposits
            asset: Asset of the deposit and every release
            milestones: Description and percentage of each milestone, in order
            timeout_hours: Hours the buyer has to fund the escrow

        Raises:
            ValidationError: Invalid parties, amount or milestone plan
        """
        validate_parties(buyer_wallet, seller_wallet)
        total_amount = positive_amount(total_amount, "total_amount", "Total amount")

        report = validate_milestones(milestones, total_amount, self.ctx.max_milestones)
        if not report.valid:
            raise ValidationError("; ".join(report.errors), field="milestones")
        for warning in report.warnings:
            logger.warning("Milestone plan warning: %s", warning)

        terms = MilestoneTerms(total_amount=total_amount, asset=asset)
        contract = await self.ctx.open_contract(
            buyer_wallet, seller_wallet, terms, timeout_hours, TimeoutType.DEPOSIT, description,
        )

        now = self.ctx.clock()
        rows = [
            Milestone(
                id=new_id("ms"),
                escrow_id=contract.id,
                order=m.order,
                description=m.description,
                percentage=m.percentage,
                amount=m.amount,
                created_at=now,
            )
            for m in calculate_milestone_amounts(milestones, total_amount, asset.quantum)
        ]
        await self.ctx.store.insert_milestones(rows)

        await self.ctx.record(
            contract,
            buyer_wallet,
            ActionType.CREATED,
            f"Milestone escrow created with {len(rows)} milestones",
            {
                "total_amount": str(total_amount),
                "token": asset.symbol,
                "milestones": [{"order": m.order, "percentage": str(m.percentage)} for m in rows],
            },
        )
        self.ctx.notify(
            [buyer_wallet, seller_wallet],
            NotificationType.ESCROW_CREATED,
            contract,
            f"Milestone escrow created: {total_amount} {asset.symbol} over {len(rows)} milestones",
            {"escrow_wallet": contract.escrow_wallet},
        )
        logger.info("Created milestone escrow %s with %d milestones", contract.id, len(rows))
        return contract, rows

    # -- reads ---------------------------------------------------------------

    async def get_milestones(self, escrow_id: str) -> list[Milestone]:
        return sorted(await self.ctx.store.list_milestones(escrow_id), key=lambda m: m.order)

    async def get_milestone(self, milestone_id: str) -> Milestone:
        milestone = await self.ctx.store.get_milestone(milestone_id)
        if milestone is None:
            raise NotFoundError("Milestone", milestone_id)
        return milestone

    async def get_next_pending_milestone(self, escrow_id: str) -> Optional[Milestone]:
        for milestone in await self.get_milestones(escrow_id):
            if milestone.status in (MilestoneStatus.PENDING, MilestoneStatus.WORK_SUBMITTED):
                return milestone
        return None

    async def get_milestone_stats(self, escrow_id: str) -> MilestoneStats:
        milestones = await self.get_milestones(escrow_id)

        def count(status: MilestoneStatus) -> int:
            return sum(1 for m in milestones if m.status is status)

        released = [m for m in milestones if m.status is MilestoneStatus.RELEASED]
        return MilestoneStats(
            total=len(milestones),
            pending=count(MilestoneStatus.PENDING),
            submitted=count(MilestoneStatus.WORK_SUBMITTED),
            approved=count(MilestoneStatus.APPROVED),
            released=len(released),
            disputed=count(MilestoneStatus.DISPUTED),
            completion_percentage=sum((m.percentage for m in released), Decimal("0")),
            released_amount=sum((m.amount for m in released), Decimal("0")),
            remaining_amount=sum(
                (m.amount for m in milestones if m.status is not MilestoneStatus.RELEASED),
                Decimal("0"),
            ),
        )

    async def _previous_released(self, milestone: Milestone) -> bool:
        return all(
            m.status is MilestoneStatus.RELEASED
            for m in await self.ctx.store.list_milestones(milestone.escrow_id)
            if m.order < milestone.order
        )

    async def _load(self, milestone_id: str) -> tuple[Milestone, EscrowContract]:
        milestone = await self.get_milestone(milestone_id)
        contract = await self.ctx.load_contract(milestone.escrow_id)
        _terms(contract)
        return milestone, contract

    async def _rearm_timeout(self, escrow_id: str, resolution: str) -> None:
        await self.ctx.resolve_timeouts(escrow_id, resolution, [TimeoutType.MILESTONE])
        await self.ctx.schedule_timeout(escrow_id, TimeoutType.MILESTONE)

    # -- seller --------------------------------------------------------------

    async def submit_work(
        self,
        milestone_id: str,
        seller_wallet: str,
        notes: Optional[str] = None,
        evidence: Optional[Sequence[str]] = None,
    ) -> Milestone:
        """
        Seller marks a milestone's work as delivered.

        The first submission moves the contract from ``fully_funded`` to
        ``active``.

        Raises:
            AuthorizationError: Caller is not the seller
            StateConflictError: Contract not funded, milestone not pending, or
                an earlier milestone is not yet released
        """
        milestone, contract = await self._load(milestone_id)
        if seller_wallet != contract.seller_wallet:
            raise AuthorizationError("Only the seller can submit work", actor=seller_wallet)
        require_status(
            contract, EscrowStatus.FULLY_FUNDED, EscrowStatus.ACTIVE,
            message=f"Escrow must be funded before submitting work (current status: {contract.status.value})",
        )
        if milestone.status is not MilestoneStatus.PENDING:
            raise StateConflictError(
                f"Milestone cannot be submitted (current status: {milestone.status.value})",
                expected=MilestoneStatus.PENDING,
                actual=milestone.status,
            )
        if not await self._previous_released(milestone):
            raise StateConflictError(
                "Previous milestones must be completed",
                expected="previous_released",
                actual="previous_pending",
            )

        milestone.status = MilestoneStatus.WORK_SUBMITTED
        milestone.seller_notes = notes
        milestone.seller_evidence = list(evidence or [])
        milestone.submitted_at = self.ctx.clock()
        milestone = await self.ctx.store.update_milestone(milestone)

        if contract.status is EscrowStatus.FULLY_FUNDED:
            await self._activate(contract)
        await self._rearm_timeout(contract.id, "work_submitted")

        await self.ctx.record(
            contract,
            seller_wallet,
            ActionType.SUBMITTED,
            notes or f"Work submitted for milestone {milestone.order}",
            {"milestone_order": milestone.order, "evidence_count": len(milestone.seller_evidence)},
            milestone_id=milestone.id,
        )
        self.ctx.notify(
            contract.buyer_wallet,
            NotificationType.WORK_SUBMITTED,
            contract,
            f"Work submitted for milestone {milestone.order}. Please review and approve.",
            {"milestone_id": milestone.id},
        )
        return milestone

    async def _activate(self, contract: EscrowContract) -> None:
        try:
            transition(contract, EscrowStatus.ACTIVE)
            await self.ctx.save_contract(contract)
        except StateConflictError:
            current = await self.ctx.load_contract(contract.id)
            if current.status is not EscrowStatus.ACTIVE:
                raise

    async def update_submission(
        self,
        milestone_id: str,
        seller_wallet: str,
        notes: Optional[str] = None,
        evidence: Optional[Sequence[str]] = None,
    ) -> Milestone:
        """Replace notes or evidence of a submission still awaiting review."""
        milestone, contract = await self._load(milestone_id)
        if seller_wallet != contract.seller_wallet:
            raise AuthorizationError(
                "Only the seller can update this submission", actor=seller_wallet
            )
        if milestone.status is not MilestoneStatus.WORK_SUBMITTED:
            raise StateConflictError(
                "Can only update submissions that are pending review",
                expected=MilestoneStatus.WORK_SUBMITTED,
                actual=milestone.status,
            )
        if notes:
            milestone.seller_notes = notes
        if evidence:
            milestone.seller_evidence = list(evidence)
        milestone = await self.ctx.store.update_milestone(milestone)
        await self.ctx.record(
            contract, seller_wallet, ActionType.SUBMITTED, "Updated work submission",
            {"action": "update_submission"}, milestone_id=milestone.id,
        )
        return milestone

    # -- buyer ---------------------------------------------------------------

    async def approve(
        self, milestone_id: str, buyer_wallet: str, notes: Optional[str] = None
    ) -> Milestone:
        """
        Buyer accepts a submitted milestone, making it eligible for release.

        Raises:
            AuthorizationError: Caller is not the buyer
            StateConflictError: Work not submitted, contract not active, or an
                earlier milestone is not yet released
        """
        milestone, contract = await self._load(milestone_id)
        if buyer_wallet != contract.buyer_wallet:
            raise AuthorizationError("Only the buyer can approve milestones", actor=buyer_wallet)
        require_status(
            contract, EscrowStatus.FULLY_FUNDED, EscrowStatus.ACTIVE,
            message=f"Milestones cannot be approved while escrow is {contract.status.value}",
        )
        if milestone.status is not MilestoneStatus.WORK_SUBMITTED:
            raise StateConflictError(
                f"Milestone cannot be approved (current status: {milestone.status.value}). "
                "Work must be submitted first.",
                expected=MilestoneStatus.WORK_SUBMITTED,
                actual=milestone.status,
            )
        if not await self._previous_released(milestone):
            raise StateConflictError(
                "Previous milestones must be completed",
                expected="previous_released",
                actual="previous_pending",
            )

        milestone.status = MilestoneStatus.APPROVED
        milestone.buyer_notes = notes
        milestone.approved_at = self.ctx.clock()
        milestone = await self.ctx.store.update_milestone(milestone)

        await self.ctx.record(
            contract,
            buyer_wallet,
            ActionType.APPROVED,
            notes or "Milestone approved by buyer",
            {"milestone_order": milestone.order, "amount": str(milestone.amount)},
            milestone_id=milestone.id,
        )
        self.ctx.notify(
            contract.seller_wallet,
            NotificationType.MILESTONE_APPROVED,
            contract,
            f"Milestone {milestone.order} approved. Funds will be released.",
            {"milestone_id": milestone.id},
        )
        return milestone

    # -- release -------------------------------------------------------------

    async def release_milestone(self, milestone_id: str, triggered_by: str) -> MilestoneRelease:
        """
        Pay an approved milestone to the seller, net of the platform fee.

        The payout is keyed per milestone; retrying after an ExternalFailure
        resumes the same transaction instead of paying twice.
        """
        milestone, contract = await self._load(milestone_id)
        terms = _terms(contract)
        require_status(
            contract, EscrowStatus.FULLY_FUNDED, EscrowStatus.ACTIVE,
            message=f"Milestone funds cannot be released while escrow is {contract.status.value}",
        )
        if milestone.status is not MilestoneStatus.APPROVED:
            raise StateConflictError(
                f"Milestone must be approved before release (current status: {milestone.status.value})",
                expected=MilestoneStatus.APPROVED,
                actual=milestone.status,
            )

        fee = self.ctx.fees.platform(milestone.amount, terms.asset.quantum)
        settlement = await self.ctx.settle(
            contract,
            milestone_event(milestone.id),
            ReleaseType.MILESTONE_RELEASE,
            terms.asset,
            payouts([
                (contract.seller_wallet, fee.net, ReleaseType.MILESTONE_RELEASE),
                (self.ctx.fees.treasury_wallet, fee.fee, ReleaseType.PLATFORM_FEE),
            ]),
            triggered_by,
            allowed=(EscrowStatus.FULLY_FUNDED, EscrowStatus.ACTIVE),
        )
        if settlement.tx_ref is None:
            raise StateConflictError(f"Milestone payout {settlement.id} confirmed without a transaction")
        return await self.release_funds(milestone.id, settlement.tx_ref, triggered_by)

    async def release_funds(self, milestone_id: str, tx_ref: str, triggered_by: str) -> MilestoneRelease:
        """
        Record a confirmed milestone payout; completes the escrow after the last one.

        Args:
            milestone_id: Milestone that was paid
            tx_ref: Confirmed ledger transaction of the payout
            triggered_by: Wallet or job that triggered the release

        Returns:
            The released milestone and whether the escrow is now completed
        """
        milestone, contract = await self._load(milestone_id)
        require_status(
            contract, EscrowStatus.FULLY_FUNDED, EscrowStatus.ACTIVE,
            message=f"Milestone release cannot be recorded while escrow is {contract.status.value}",
        )
        if milestone.status is not MilestoneStatus.APPROVED:
            raise StateConflictError(
                f"Milestone must be approved before release (current status: {milestone.status.value})",
                expected=MilestoneStatus.APPROVED,
                actual=milestone.status,
            )

        milestone.status = MilestoneStatus.RELEASED
        milestone.tx_ref = tx_ref
        milestone.released_at = self.ctx.clock()
        milestone = await self.ctx.store.update_milestone(milestone)

        all_released = all(
            m.status is MilestoneStatus.RELEASED
            for m in await self.ctx.store.list_milestones(contract.id)
        )
        if all_released:
            transition(contract, EscrowStatus.COMPLETED)
            contract.completed_at = self.ctx.clock()
            contract = await self.ctx.save_contract(contract)
            await self.ctx.resolve_timeouts(contract.id, "completed")
        else:
            await self._rearm_timeout(contract.id, "milestone_released")

        await self.ctx.record(
            contract,
            triggered_by,
            ActionType.RELEASED,
            f"Milestone {milestone.order} funds released to seller"
            + (", escrow completed" if all_released else ""),
            {"milestone_order": milestone.order, "amount": str(milestone.amount), "tx_ref": tx_ref},
            milestone_id=milestone.id,
        )
        self.ctx.notify(
            [contract.buyer_wallet, contract.seller_wallet],
            NotificationType.MILESTONE_RELEASED,
            contract,
            f"Milestone {milestone.order} released"
            + (". All milestones complete." if all_released else ""),
            {"milestone_id": milestone.id, "tx_ref": tx_ref},
        )
        logger.info(
            "Released milestone %s (%d) of escrow %s%s",
            milestone.id, milestone.order, contract.id, " - escrow completed" if all_released else "",
        )
        return MilestoneRelease(milestone=milestone, escrow_completed=all_released)
