"""Tests for milestone escrow: plan validation, sequential release, stats."""
from __future__ import annotations

from decimal import Decimal

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from conftest import BUYER, OUTSIDER, SELLER, TREASURY
from escrow_engine.engines.milestone import (
    MilestoneInput,
    calculate_milestone_amounts,
    validate_milestones,
)
from escrow_engine.exceptions import AuthorizationError, StateConflictError, ValidationError
from escrow_engine.models import (
    USDC,
    EscrowKind,
    EscrowStatus,
    MilestoneStatus,
    TimeoutType,
)

PLAN = [
    MilestoneInput("Design", 30),
    MilestoneInput("Build", 50),
    MilestoneInput("Launch", 20),
]


class TestValidateMilestones:
    """Tests for validate_milestones."""

    def test_valid_plan(self):
        report = validate_milestones(PLAN, Decimal("1000"))

        assert report.valid is True
        assert report.errors == ()
        assert report.warnings == ()

    def test_empty_plan(self):
        report = validate_milestones([], Decimal("1000"))

        assert report.valid is False
        assert report.errors == ("At least one milestone is required",)

    def test_percentages_must_sum_to_hundred(self):
        report = validate_milestones(
            [MilestoneInput("A", 40), MilestoneInput("B", 50)], Decimal("1000")
        )

        assert report.valid is False
        assert "Milestone percentages must sum to 100% (current total: 90.00%)" in report.errors

    def test_missing_description(self):
        report = validate_milestones([MilestoneInput(" ", 100)], Decimal("10"))

        assert "Milestone 1: Description is required" in report.errors

    def test_non_numeric_percentage(self):
        report = validate_milestones([MilestoneInput("A", "lots")], Decimal("10"))

        assert "Milestone 1: Percentage must be a number" in report.errors

    def test_too_many_milestones(self):
        plan = [MilestoneInput(f"Step {i}", 25) for i in range(4)]

        report = validate_milestones(plan, Decimal("10"), max_milestones=3)

        assert "Maximum 3 milestones allowed" in report.errors

    def test_single_milestone_warns(self):
        report = validate_milestones([MilestoneInput("Everything", 100)], Decimal("10"))

        assert report.valid is True
        assert report.warnings == ("Single milestone escrow: Consider using traditional escrow instead",)

    def test_small_milestone_warns(self):
        report = validate_milestones(
            [MilestoneInput("Kickoff", 4), MilestoneInput("Rest", 96)], Decimal("10")
        )

        assert report.valid is True
        assert "Some milestones are less than 5% - consider combining small milestones" in report.warnings


class TestCalculateMilestoneAmounts:
    """Tests for calculate_milestone_amounts."""

    def test_amounts_follow_percentages(self):
        amounts = calculate_milestone_amounts(PLAN, Decimal("1000"), Decimal("0.000001"))

        assert [a.order for a in amounts] == [1, 2, 3]
        assert [a.amount for a in amounts] == [Decimal("300"), Decimal("500"), Decimal("200")]

    def test_last_milestone_takes_remainder(self):
        plan = [MilestoneInput("A", "33.33"), MilestoneInput("B", "33.33"), MilestoneInput("C", "33.34")]

        amounts = calculate_milestone_amounts(plan, Decimal("1"), Decimal("0.000001"))

        assert amounts[0].amount == Decimal("0.333300")
        assert amounts[1].amount == Decimal("0.333300")
        assert amounts[2].amount == Decimal("0.333400")

    @given(
        weights=st.lists(st.integers(min_value=1, max_value=100), min_size=1, max_size=20),
        total=st.decimals(min_value="0.000001", max_value=10**7, places=6, allow_nan=False, allow_infinity=False),
    )
    @settings(max_examples=200, deadline=None)
    def test_amounts_always_sum_to_total(self, weights, total):
        """Rounding never loses or creates value."""
        scale = Decimal(100) / sum(weights)
        plan = [MilestoneInput(f"M{i}", Decimal(w) * scale) for i, w in enumerate(weights)]

        amounts = calculate_milestone_amounts(plan, total, Decimal("0.000001"))

        assert sum(a.amount for a in amounts) == total
        assert all(a.amount >= 0 for a in amounts[:-1])


@pytest.fixture
def create(milestones):
    async def _create(plan=PLAN, total="1000"):
        return await milestones.create(BUYER, SELLER, total, USDC, plan, description="Website")

    return _create


@pytest.fixture
def funded(create, fund):
    async def _funded(plan=PLAN):
        contract, rows = await create(plan)
        await fund(contract, BUYER)
        return contract, rows

    return _funded


class TestCreate:
    """Tests for creating a milestone escrow."""

    @pytest.mark.asyncio
    async def test_create_persists_milestones(self, create, store):
        contract, rows = await create()

        assert contract.kind is EscrowKind.MILESTONE
        stored = await store.list_milestones(contract.id)
        assert [m.order for m in stored] == [1, 2, 3]
        assert [m.amount for m in stored] == [Decimal("300"), Decimal("500"), Decimal("200")]
        assert all(m.status is MilestoneStatus.PENDING for m in stored)

    @pytest.mark.asyncio
    async def test_invalid_plan_rejected(self, create):
        with pytest.raises(ValidationError, match="must sum to 100%"):
            await create([MilestoneInput("A", 60)] * 2)

    @pytest.mark.asyncio
    async def test_buyer_alone_funds_contract(self, funded, store):
        contract, _ = await funded()

        stored = await store.get_contract(contract.id)
        assert stored.status is EscrowStatus.FULLY_FUNDED
        assert stored.funded_at is not None
        types = {t.timeout_type for t in await store.list_timeouts(contract.id, unresolved_only=True)}
        assert types == {TimeoutType.MILESTONE}

    @pytest.mark.asyncio
    async def test_seller_cannot_deposit(self, create, fund):
        contract, _ = await create()

        with pytest.raises(ValidationError, match="does not deposit"):
            await fund(contract, SELLER, amount=Decimal("10"))


class TestMilestoneFlow:
    """Tests for submit, approve and release."""

    @pytest.mark.asyncio
    async def test_submit_activates_contract(self, funded, milestones, store):
        contract, rows = await funded()

        submitted = await milestones.submit_work(rows[0].id, SELLER, "Mockups ready", ["https://files/1"])

        assert submitted.status is MilestoneStatus.WORK_SUBMITTED
        assert submitted.seller_evidence == ["https://files/1"]
        assert (await store.get_contract(contract.id)).status is EscrowStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_submit_before_funding_rejected(self, create, milestones):
        _, rows = await create()

        with pytest.raises(StateConflictError, match="must be funded before submitting work"):
            await milestones.submit_work(rows[0].id, SELLER)

    @pytest.mark.asyncio
    async def test_only_seller_submits(self, funded, milestones):
        _, rows = await funded()

        with pytest.raises(AuthorizationError, match="Only the seller can submit work"):
            await milestones.submit_work(rows[0].id, BUYER)

    @pytest.mark.asyncio
    async def test_milestones_are_sequential(self, funded, milestones):
        _, rows = await funded()

        with pytest.raises(StateConflictError, match="Previous milestones must be completed"):
            await milestones.submit_work(rows[1].id, SELLER)

    @pytest.mark.asyncio
    async def test_approve_requires_submission(self, funded, milestones):
        _, rows = await funded()

        with pytest.raises(StateConflictError, match="Work must be submitted first"):
            await milestones.approve(rows[0].id, BUYER)

    @pytest.mark.asyncio
    async def test_only_buyer_approves(self, funded, milestones):
        _, rows = await funded()
        await milestones.submit_work(rows[0].id, SELLER)

        with pytest.raises(AuthorizationError, match="Only the buyer can approve milestones"):
            await milestones.approve(rows[0].id, OUTSIDER)

    @pytest.mark.asyncio
    async def test_release_requires_approval(self, funded, milestones):
        _, rows = await funded()
        await milestones.submit_work(rows[0].id, SELLER)

        with pytest.raises(StateConflictError, match="must be approved before release"):
            await milestones.release_milestone(rows[0].id, BUYER)

    @pytest.mark.asyncio
    async def test_release_pays_net_of_fee(self, funded, milestones, ledger):
        """Should pay 291 to the seller and 9 to the treasury for a 300 milestone."""
        contract, rows = await funded()
        await milestones.submit_work(rows[0].id, SELLER)
        await milestones.approve(rows[0].id, BUYER)

        result = await milestones.release_milestone(rows[0].id, BUYER)

        assert result.escrow_completed is False
        assert result.milestone.status is MilestoneStatus.RELEASED
        assert result.milestone.tx_ref is not None
        assert ledger.balance_of(SELLER, USDC) == Decimal("291")
        assert ledger.balance_of(TREASURY, USDC) == Decimal("9")
        assert ledger.balance_of(contract.escrow_wallet, USDC) == Decimal("700")

    @pytest.mark.asyncio
    async def test_all_releases_complete_escrow(self, funded, milestones, ledger, store):
        contract, rows = await funded()

        for row in rows:
            await milestones.submit_work(row.id, SELLER)
            await milestones.approve(row.id, BUYER)
            result = await milestones.release_milestone(row.id, BUYER)

        assert result.escrow_completed is True
        stored = await store.get_contract(contract.id)
        assert stored.status is EscrowStatus.COMPLETED
        assert ledger.balance_of(SELLER, USDC) == Decimal("970")
        assert ledger.balance_of(TREASURY, USDC) == Decimal("30")
        assert ledger.balance_of(contract.escrow_wallet, USDC) == 0
        assert await store.list_timeouts(contract.id, unresolved_only=True) == []

    @pytest.mark.asyncio
    async def test_released_milestone_cannot_be_released_again(self, funded, milestones):
        _, rows = await funded()
        await milestones.submit_work(rows[0].id, SELLER)
        await milestones.approve(rows[0].id, BUYER)
        await milestones.release_milestone(rows[0].id, BUYER)

        with pytest.raises(StateConflictError):
            await milestones.release_milestone(rows[0].id, BUYER)

    @pytest.mark.asyncio
    async def test_update_submission(self, funded, milestones):
        _, rows = await funded()
        await milestones.submit_work(rows[0].id, SELLER, "First draft")

        updated = await milestones.update_submission(rows[0].id, SELLER, "Second draft", ["doc.pdf"])

        assert updated.seller_notes == "Second draft"
        assert updated.seller_evidence == ["doc.pdf"]

    @pytest.mark.asyncio
    async def test_update_requires_pending_review(self, funded, milestones):
        _, rows = await funded()

        with pytest.raises(StateConflictError, match="pending review"):
            await milestones.update_submission(rows[0].id, SELLER, "notes")


class TestMilestoneReads:
    """Tests for next-milestone lookup and stats."""

    @pytest.mark.asyncio
    async def test_next_pending_milestone(self, funded, milestones):
        contract, rows = await funded()
        await milestones.submit_work(rows[0].id, SELLER)
        await milestones.approve(rows[0].id, BUYER)
        await milestones.release_milestone(rows[0].id, BUYER)

        nxt = await milestones.get_next_pending_milestone(contract.id)

        assert nxt.id == rows[1].id

    @pytest.mark.asyncio
    async def test_stats(self, funded, milestones):
        contract, rows = await funded()
        await milestones.submit_work(rows[0].id, SELLER)
        await milestones.approve(rows[0].id, BUYER)
        await milestones.release_milestone(rows[0].id, BUYER)
        await milestones.submit_work(rows[1].id, SELLER)

        stats = await milestones.get_milestone_stats(contract.id)

        assert stats.total == 3
        assert stats.released == 1
        assert stats.submitted == 1
        assert stats.pending == 1
        assert stats.completion_percentage == Decimal("30")
        assert stats.released_amount == Decimal("300")
        assert stats.remaining_amount == Decimal("700")
        assert stats.to_dict()["completion_percentage"] == "30"
