"""Tests for raising, documenting and resolving disputes."""
from __future__ import annotations

from decimal import Decimal

import pytest

from conftest import ADMIN, BUYER, OUTSIDER, SELLER, TREASURY
from escrow_engine.deposits import DepositMonitor
from escrow_engine.engines.base import payouts, transition
from escrow_engine.engines.milestone import MilestoneInput
from escrow_engine.exceptions import (
    AuthorizationError,
    ExternalFailure,
    LedgerRejectedError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from escrow_engine.models import (
    SOL,
    USDC,
    DisputePriority,
    DisputeStatus,
    EscrowStatus,
    MilestoneStatus,
    PartyRole,
    ReleaseType,
    ResolutionAction,
    SettlementStatus,
    TimeoutType,
)

REASON = "Item never arrived at my address"
NOTES = "Tracking shows the parcel was returned to the sender."


@pytest.fixture
def funded(traditional, fund):
    async def _funded():
        contract = await traditional.create(BUYER, SELLER, "100", "10", USDC)
        await fund(contract, BUYER)
        await fund(contract, SELLER)
        return contract

    return _funded


class TestRaiseDispute:
    """Tests for raise_dispute."""

    @pytest.mark.asyncio
    async def test_dispute_freezes_contract(self, funded, disputes, store, ctx, notifier):
        contract = await funded()

        dispute = await disputes.raise_dispute(contract.id, BUYER, REASON, priority="high")
        await ctx.notifications.wait_for_background_tasks()

        assert dispute.party_role is PartyRole.BUYER
        assert dispute.priority is DisputePriority.HIGH
        assert dispute.status is DisputeStatus.OPEN
        assert (await store.get_contract(contract.id)).status is EscrowStatus.DISPUTED
        open_types = [t.timeout_type for t in await store.list_timeouts(contract.id, unresolved_only=True)]
        assert open_types == [TimeoutType.DISPUTE]
        calls = [c.args for c in notifier.notify.await_args_list]
        assert (SELLER, "dispute.raised") in [(a[0], a[1]) for a in calls]

    @pytest.mark.asyncio
    async def test_frozen_contract_cannot_be_confirmed(self, funded, disputes, traditional):
        contract = await funded()
        await disputes.raise_dispute(contract.id, SELLER, "Buyer refuses to confirm delivery")

        with pytest.raises(StateConflictError):
            await traditional.confirm(contract.id, BUYER)

    @pytest.mark.asyncio
    async def test_outsider_cannot_raise(self, funded, disputes):
        contract = await funded()

        with pytest.raises(AuthorizationError, match="Only escrow parties can raise disputes"):
            await disputes.raise_dispute(contract.id, OUTSIDER, REASON)

    @pytest.mark.asyncio
    async def test_short_reason_rejected(self, funded, disputes):
        contract = await funded()

        with pytest.raises(ValidationError, match="at least 10 characters"):
            await disputes.raise_dispute(contract.id, BUYER, "  bad  ")

    @pytest.mark.asyncio
    async def test_unknown_priority_rejected(self, funded, disputes):
        contract = await funded()

        with pytest.raises(ValidationError, match="Invalid priority. Must be one of: low, normal, high, urgent"):
            await disputes.raise_dispute(contract.id, BUYER, REASON, priority="critical")

    @pytest.mark.asyncio
    async def test_second_open_dispute_rejected(self, funded, disputes):
        contract = await funded()
        await disputes.raise_dispute(contract.id, BUYER, REASON)

        with pytest.raises(StateConflictError, match="A dispute is already open for this escrow"):
            await disputes.raise_dispute(contract.id, SELLER, "Buyer is acting in bad faith")

    @pytest.mark.asyncio
    async def test_closed_contract_cannot_be_disputed(self, funded, disputes, traditional):
        contract = await funded()
        await traditional.confirm(contract.id, BUYER)
        await traditional.confirm(contract.id, SELLER)

        with pytest.raises(StateConflictError, match="Cannot dispute an escrow that is completed"):
            await disputes.raise_dispute(contract.id, BUYER, REASON)

    @pytest.mark.asyncio
    async def test_dispute_blocked_while_payout_in_flight(self, funded, disputes, traditional, ledger):
        contract = await funded()
        await traditional.confirm(contract.id, BUYER)
        ledger.fail_next_broadcast(ExternalFailure("RPC unreachable", operation="broadcast"))
        with pytest.raises(ExternalFailure):
            await traditional.confirm(contract.id, SELLER)

        with pytest.raises(StateConflictError, match="while a payout is in progress"):
            await disputes.raise_dispute(contract.id, BUYER, REASON)


class TestDisputeAgainstPayout:
    """A payout and a dispute on the same escrow cannot both win."""

    @pytest.mark.asyncio
    async def test_dispute_refused_while_milestone_pays(self, milestones, fund, disputes, ledger, store, monkeypatch):
        contract, rows = await milestones.create(
            BUYER, SELLER, "1000", USDC, [MilestoneInput("Everything", 100)], description="Website"
        )
        await fund(contract, BUYER)
        await milestones.submit_work(rows[0].id, SELLER)
        await milestones.approve(rows[0].id, BUYER)

        real_build = ledger.build_transfer
        refused = []

        async def build_transfer(keypair, transfers, asset):
            try:
                await disputes.raise_dispute(contract.id, BUYER, REASON)
            except StateConflictError as e:
                refused.append(e)
            return await real_build(keypair, transfers, asset)

        monkeypatch.setattr(ledger, "build_transfer", build_transfer)

        result = await milestones.release_milestone(rows[0].id, BUYER)

        assert [e.message for e in refused] == ["Cannot raise a dispute while a payout is in progress"]
        assert result.escrow_completed is True
        assert (await store.get_contract(contract.id)).status is EscrowStatus.COMPLETED
        assert await store.list_disputes(contract.id) == []
        assert ledger.balance_of(SELLER, USDC) == Decimal("970")

    @pytest.mark.asyncio
    async def test_payout_not_sent_after_dispute(self, funded, disputes, ctx, ledger, store):
        stale = await funded()
        await disputes.raise_dispute(stale.id, BUYER, REASON)

        with pytest.raises(StateConflictError, match="is disputed; payout not sent"):
            await ctx.settle(
                stale,
                "release",
                ReleaseType.FULL_RELEASE,
                USDC,
                payouts([(SELLER, Decimal("97"), ReleaseType.FULL_RELEASE)]),
                SELLER,
            )

        row = await store.get_settlement_by_key(stale.id, "release")
        assert row.status is SettlementStatus.FAILED
        assert ledger.balance_of(SELLER, USDC) == 0
        assert (await store.get_contract(stale.id)).status is EscrowStatus.DISPUTED
        assert await ctx.settlement_in_flight(stale.id) is False

    @pytest.mark.asyncio
    async def test_disputed_escrow_closes_only_through_resolution(self, funded, disputes, ctx):
        contract = await funded()
        await disputes.raise_dispute(contract.id, BUYER, REASON)
        disputed = await ctx.load_contract(contract.id)

        for target in (EscrowStatus.COMPLETED, EscrowStatus.REFUNDED, EscrowStatus.ACTIVE):
            with pytest.raises(StateConflictError, match="cannot move from disputed"):
                transition(disputed, target)

        with pytest.raises(StateConflictError):
            transition(disputed, EscrowStatus.ACTIVE, resolving_dispute=True)
        transition(disputed, EscrowStatus.COMPLETED, resolving_dispute=True)
        assert disputed.status is EscrowStatus.COMPLETED


class TestEvidence:
    """Tests for evidence submission."""

    @pytest.mark.asyncio
    async def test_submit_and_list_evidence(self, funded, disputes):
        contract = await funded()
        dispute = await disputes.raise_dispute(contract.id, BUYER, REASON)

        await disputes.submit_evidence(contract.id, BUYER, "text", content="Courier says undeliverable")
        await disputes.submit_evidence(
            contract.id, SELLER, "image", file_url="https://files/receipt.png", dispute_id=dispute.id
        )

        assert len(await disputes.list_evidence(contract.id)) == 2
        linked = await disputes.list_evidence(contract.id, dispute_id=dispute.id)
        assert [e.party_role for e in linked] == [PartyRole.SELLER]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kind,kwargs,message", [
        ("text", {}, "Text evidence requires content"),
        ("image", {"content": "see photo"}, "image evidence requires a file URL"),
        ("link", {}, "Link evidence requires content with the URL"),
        ("video", {"content": "x"}, "Invalid evidence type"),
    ])
    async def test_invalid_evidence(self, funded, disputes, kind, kwargs, message):
        contract = await funded()

        with pytest.raises(ValidationError, match=message):
            await disputes.submit_evidence(contract.id, BUYER, kind, **kwargs)

    @pytest.mark.asyncio
    async def test_outsider_cannot_submit(self, funded, disputes):
        contract = await funded()

        with pytest.raises(AuthorizationError, match="Only buyer or seller can submit evidence"):
            await disputes.submit_evidence(contract.id, OUTSIDER, "text", content="hello")

    @pytest.mark.asyncio
    async def test_unknown_dispute(self, funded, disputes):
        contract = await funded()

        with pytest.raises(NotFoundError):
            await disputes.submit_evidence(contract.id, BUYER, "text", content="x", dispute_id="dsp_missing")


class TestResolveDispute:
    """Tests for admin resolution of a traditional escrow dispute."""

    @pytest.mark.asyncio
    async def test_refund_to_buyer(self, funded, disputes, ledger, store):
        """Buyer gets the payment back, seller its deposit, no fee is charged."""
        contract = await funded()
        dispute = await disputes.raise_dispute(contract.id, BUYER, REASON)

        resolved = await disputes.resolve_dispute(dispute.id, ADMIN, "refund_to_buyer", NOTES)

        assert resolved.status is DisputeStatus.RESOLVED
        assert resolved.resolution_action is ResolutionAction.REFUND_TO_BUYER
        assert len(resolved.resolution_tx_refs) == 1
        assert ledger.balance_of(BUYER, USDC) == Decimal("100")
        assert ledger.balance_of(SELLER, USDC) == Decimal("10")
        assert ledger.balance_of(TREASURY, USDC) == 0
        stored = await store.get_contract(contract.id)
        assert stored.status is EscrowStatus.REFUNDED
        assert await store.list_timeouts(contract.id, unresolved_only=True) == []

    @pytest.mark.asyncio
    async def test_release_to_seller(self, funded, disputes, ledger, store):
        contract = await funded()
        dispute = await disputes.raise_dispute(contract.id, SELLER, "Buyer refuses to confirm delivery")

        await disputes.resolve_dispute(dispute.id, ADMIN, ResolutionAction.RELEASE_TO_SELLER, NOTES)

        assert ledger.balance_of(SELLER, USDC) == Decimal("110")
        assert (await store.get_contract(contract.id)).status is EscrowStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_partial_split(self, funded, disputes, ledger, store):
        contract = await funded()
        dispute = await disputes.raise_dispute(contract.id, BUYER, "Item arrived damaged in transit")

        await disputes.resolve_dispute(
            dispute.id, ADMIN, "partial_split", NOTES, amount_to_buyer="60", amount_to_seller="40"
        )

        assert ledger.balance_of(BUYER, USDC) == Decimal("60")
        assert ledger.balance_of(SELLER, USDC) == Decimal("50")
        actions = await store.list_admin_actions(contract.id)
        assert actions[-1].action == "resolved_dispute"
        assert actions[-1].amount_to_buyer == Decimal("60")
        assert actions[-1].resolved is True

    @pytest.mark.asyncio
    async def test_split_must_match_escrowed_amount(self, funded, disputes):
        contract = await funded()
        dispute = await disputes.raise_dispute(contract.id, BUYER, REASON)

        with pytest.raises(ValidationError, match="must add up to the escrowed amount of 100 USDC"):
            await disputes.resolve_dispute(
                dispute.id, ADMIN, "partial_split", NOTES, amount_to_buyer="60", amount_to_seller="50"
            )

    @pytest.mark.asyncio
    async def test_split_requires_both_amounts(self, funded, disputes):
        contract = await funded()
        dispute = await disputes.raise_dispute(contract.id, BUYER, REASON)

        with pytest.raises(ValidationError, match="requires amount_to_buyer and amount_to_seller"):
            await disputes.resolve_dispute(dispute.id, ADMIN, "partial_split", NOTES, amount_to_buyer="60")

    @pytest.mark.asyncio
    async def test_short_notes_rejected(self, funded, disputes):
        contract = await funded()
        dispute = await disputes.raise_dispute(contract.id, BUYER, REASON)

        with pytest.raises(ValidationError, match="at least 20 characters"):
            await disputes.resolve_dispute(dispute.id, ADMIN, "refund_to_buyer", "Refund it")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("actor,message", [
        (SELLER, "Escrow parties cannot resolve disputes"),
        (OUTSIDER, "Only administrators can resolve disputes"),
    ])
    async def test_only_admin_resolves(self, funded, disputes, actor, message):
        contract = await funded()
        dispute = await disputes.raise_dispute(contract.id, BUYER, REASON)

        with pytest.raises(AuthorizationError, match=message):
            await disputes.resolve_dispute(dispute.id, actor, "refund_to_buyer", NOTES)

    @pytest.mark.asyncio
    async def test_resolved_dispute_cannot_be_resolved_again(self, funded, disputes):
        contract = await funded()
        dispute = await disputes.raise_dispute(contract.id, BUYER, REASON)
        await disputes.resolve_dispute(dispute.id, ADMIN, "refund_to_buyer", NOTES)

        with pytest.raises(StateConflictError, match="Dispute is already resolved"):
            await disputes.resolve_dispute(dispute.id, ADMIN, "release_to_seller", NOTES)


class TestMilestoneDisputes:
    """Tests for disputes targeting one milestone."""

    @pytest.fixture
    def in_progress(self, milestones, fund):
        async def _in_progress():
            contract, rows = await milestones.create(
                BUYER, SELLER, "1000", USDC,
                [MilestoneInput("Design", 30), MilestoneInput("Build", 70)],
            )
            await fund(contract, BUYER)
            await milestones.submit_work(rows[0].id, SELLER)
            await milestones.approve(rows[0].id, BUYER)
            await milestones.release_milestone(rows[0].id, BUYER)
            await milestones.submit_work(rows[1].id, SELLER)
            return contract, rows

        return _in_progress

    @pytest.mark.asyncio
    async def test_milestone_dispute_marks_milestone(self, in_progress, disputes, store):
        contract, rows = await in_progress()

        dispute = await disputes.raise_dispute(contract.id, BUYER, "Build is missing features", milestone_id=rows[1].id)

        assert dispute.milestone_id == rows[1].id
        assert (await store.get_milestone(rows[1].id)).status is MilestoneStatus.DISPUTED

    @pytest.mark.asyncio
    async def test_released_milestone_cannot_be_disputed(self, in_progress, disputes):
        contract, rows = await in_progress()

        with pytest.raises(StateConflictError, match="Released milestones cannot be disputed"):
            await disputes.raise_dispute(contract.id, BUYER, REASON, milestone_id=rows[0].id)

    @pytest.mark.asyncio
    async def test_release_pays_only_unreleased_funds(self, in_progress, disputes, ledger, store):
        """The seller already has 291 from the first milestone and gets the 700 still held."""
        contract, rows = await in_progress()
        dispute = await disputes.raise_dispute(contract.id, SELLER, "Buyer stopped responding", milestone_id=rows[1].id)

        await disputes.resolve_dispute(dispute.id, ADMIN, "release_to_seller", NOTES)

        assert ledger.balance_of(SELLER, USDC) == Decimal("991")
        assert ledger.balance_of(contract.escrow_wallet, USDC) == Decimal("0")
        assert all(m.status is MilestoneStatus.RELEASED for m in await store.list_milestones(contract.id))


class TestAdminReview:
    """Tests for open_admin_review and swap disputes."""

    @pytest.mark.asyncio
    async def test_open_admin_review(self, funded, disputes, store):
        contract = await funded()

        dispute = await disputes.open_admin_review(contract.id, ADMIN, "Escalated after timeout")
        again = await disputes.open_admin_review(contract.id, ADMIN, "Second look")

        assert dispute.party_role is PartyRole.ADMIN
        assert again.id == dispute.id
        assert (await store.get_contract(contract.id)).status is EscrowStatus.DISPUTED

    @pytest.mark.asyncio
    async def test_party_cannot_open_review(self, funded, disputes):
        contract = await funded()

        with pytest.raises(AuthorizationError):
            await disputes.open_admin_review(contract.id, BUYER, "Let me decide")

    @pytest.mark.asyncio
    async def test_partial_swap_released_by_admin(self, ctx, swaps, disputes, ledger, store, monkeypatch):
        """The failed second leg is completed fee-free by the admin."""
        contract = await swaps.create(BUYER, SELLER, SOL, "2", USDC, "300")
        monitor = DepositMonitor(ctx)
        for wallet in (BUYER, SELLER):
            asset, amount = contract.expected_deposit(contract.role_of(wallet))
            tx_ref = ledger.credit(contract.escrow_wallet, asset, amount, sender=wallet)
            await monitor.record_deposit(contract.id, wallet, amount, asset, tx_ref)

        real_broadcast = ledger.broadcast
        sent = []

        async def flaky_broadcast(signed):
            sent.append(signed.tx_ref)
            if len(sent) == 2:
                raise LedgerRejectedError("Token account frozen", operation="broadcast")
            return await real_broadcast(signed)

        monkeypatch.setattr(ledger, "broadcast", flaky_broadcast)
        with pytest.raises(LedgerRejectedError):
            await swaps.execute(contract.id)
        monkeypatch.setattr(ledger, "broadcast", real_broadcast)

        dispute = (await store.list_disputes(contract.id))[0]
        with pytest.raises(ValidationError, match="Partial split is not supported for atomic swaps"):
            await disputes.resolve_dispute(dispute.id, ADMIN, "partial_split", NOTES, "1", "1")

        await disputes.resolve_dispute(dispute.id, ADMIN, "release_to_seller", NOTES)

        stored = await store.get_contract(contract.id)
        assert stored.status is EscrowStatus.COMPLETED
        assert stored.terms.swap_executed is True
        assert ledger.balance_of(SELLER, SOL) == Decimal("1.94")
        assert ledger.balance_of(BUYER, USDC) == Decimal("300")
