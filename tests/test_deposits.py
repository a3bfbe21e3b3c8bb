"""Tests for deposit recording, funding detection and the deposit scan."""
from __future__ import annotations

from decimal import Decimal

import pytest

from conftest import BUYER, OUTSIDER, SELLER
from escrow_engine.deposits import DepositMonitor, _required_deposit
from escrow_engine.engines.milestone import MilestoneInput
from escrow_engine.exceptions import AuthorizationError, StateConflictError, ValidationError
from escrow_engine.models import SOL, USDC, EscrowStatus, PartyRole, TimeoutType


@pytest.fixture
def create(traditional):
    async def _create():
        return await traditional.create(BUYER, SELLER, "100", "10", USDC)

    return _create


class TestRecordDeposit:
    """Tests for DepositMonitor.record_deposit."""

    @pytest.mark.asyncio
    async def test_first_deposit_moves_to_buyer_deposited(self, create, fund, store):
        contract = await create()

        deposit = await fund(contract, BUYER)

        assert deposit.confirmed is True
        assert deposit.amount == Decimal("100")
        stored = await store.get_contract(contract.id)
        assert stored.status is EscrowStatus.BUYER_DEPOSITED
        assert stored.buyer_deposited is True
        assert stored.seller_deposited is False

    @pytest.mark.asyncio
    async def test_both_deposits_fund_the_escrow(self, create, fund, store, ctx, notifier):
        contract = await create()
        await fund(contract, SELLER)
        await fund(contract, BUYER)
        await ctx.notifications.wait_for_background_tasks()

        stored = await store.get_contract(contract.id)
        assert stored.status is EscrowStatus.FULLY_FUNDED
        assert stored.funded_at is not None
        types = {c.args[1] for c in notifier.notify.await_args_list}
        assert "escrow.funded" in types
        timeouts = await store.list_timeouts(contract.id, unresolved_only=True)
        assert [t.timeout_type for t in timeouts] == [TimeoutType.CONFIRMATION]

    @pytest.mark.asyncio
    async def test_funded_escrow_rejects_deposits(self, create, fund, ledger, deposits):
        contract = await create()
        await fund(contract, BUYER)
        await fund(contract, SELLER)
        tx_ref = ledger.credit(contract.escrow_wallet, USDC, Decimal("100"), sender=BUYER)

        with pytest.raises(StateConflictError, match="current status: fully_funded"):
            await deposits.record_deposit(contract.id, BUYER, "100", USDC, tx_ref)

    @pytest.mark.asyncio
    async def test_outsider_rejected(self, create, fund):
        contract = await create()

        with pytest.raises(AuthorizationError, match="not a party"):
            await fund(contract, OUTSIDER)

    @pytest.mark.asyncio
    async def test_wrong_asset_rejected(self, create, fund):
        contract = await create()

        with pytest.raises(ValidationError, match="Expected a USDC deposit, got SOL"):
            await fund(contract, BUYER, asset=SOL)

    @pytest.mark.asyncio
    async def test_short_deposit_rejected(self, create, fund):
        contract = await create()

        with pytest.raises(ValidationError, match="below the required 100"):
            await fund(contract, BUYER, amount=Decimal("99.5"))

    @pytest.mark.asyncio
    async def test_second_deposit_from_same_party(self, create, fund):
        contract = await create()
        await fund(contract, BUYER)

        with pytest.raises(StateConflictError, match="buyer has already deposited"):
            await fund(contract, BUYER)

    @pytest.mark.asyncio
    async def test_transaction_recorded_once(self, traditional, ledger, deposits):
        first = await traditional.create(BUYER, SELLER, "100", "10", USDC)
        second = await traditional.create(BUYER, SELLER, "100", "10", USDC)
        tx_ref = ledger.credit(first.escrow_wallet, USDC, Decimal("100"), sender=BUYER)
        await deposits.record_deposit(first.id, BUYER, "100", USDC, tx_ref)

        with pytest.raises(StateConflictError, match="has already been recorded"):
            await deposits.record_deposit(second.id, BUYER, "100", USDC, tx_ref)

    @pytest.mark.asyncio
    async def test_transaction_must_pay_the_escrow_wallet(self, create, ledger, deposits):
        contract = await create()
        tx_ref = ledger.credit(OUTSIDER, USDC, Decimal("100"), sender=BUYER)

        with pytest.raises(ValidationError, match="Transaction verification failed"):
            await deposits.record_deposit(contract.id, BUYER, "100", USDC, tx_ref)

    @pytest.mark.asyncio
    async def test_unknown_transaction(self, create, deposits):
        contract = await create()

        with pytest.raises(ValidationError, match="Transaction verification failed"):
            await deposits.record_deposit(contract.id, BUYER, "100", USDC, "5nknownTx")

    @pytest.mark.asyncio
    async def test_milestone_seller_does_not_deposit(self, milestones, ledger, deposits):
        contract, _ = await milestones.create(
            BUYER, SELLER, "500", USDC, [MilestoneInput("Draft", 50), MilestoneInput("Final", 50)]
        )
        tx_ref = ledger.credit(contract.escrow_wallet, USDC, Decimal("500"), sender=SELLER)

        with pytest.raises(ValidationError, match="seller does not deposit"):
            await deposits.record_deposit(contract.id, SELLER, "500", USDC, tx_ref)


class TestPendingConfirmation:
    """Tests for deposits detected before the ledger confirms them."""

    @pytest.mark.asyncio
    async def test_unconfirmed_deposit_does_not_fund(self, create, fund, deposits, store):
        contract = await create()

        await fund(contract, BUYER, confirmed=False)
        snapshot = await deposits.monitor(contract.id)

        assert snapshot.buyer_deposited is False
        assert snapshot.fully_funded is False
        assert snapshot.deposits == []
        assert (await store.get_contract(contract.id)).status is EscrowStatus.CREATED

    @pytest.mark.asyncio
    async def test_scan_confirms_and_funds(self, create, fund, deposits, ledger, store):
        contract = await create()
        buyer_deposit = await fund(contract, BUYER, confirmed=False)
        seller_deposit = await fund(contract, SELLER, confirmed=False)

        quiet = await deposits.scan()
        assert quiet["deposits_confirmed"] == 0
        assert quiet["newly_funded"] == 0

        ledger.settle(buyer_deposit.tx_ref)
        ledger.settle(seller_deposit.tx_ref)
        result = await deposits.scan()

        assert result["escrows_checked"] == 1
        assert result["deposits_confirmed"] == 2
        assert result["newly_funded"] == 1
        assert result["errors"] == 0
        stored = await store.get_contract(contract.id)
        assert stored.status is EscrowStatus.FULLY_FUNDED
        assert all(d.confirmed for d in await store.list_deposits(contract.id))

    @pytest.mark.asyncio
    async def test_scan_executes_funded_swap(self, swaps, ctx, ledger, deposits, store):
        contract = await swaps.create(BUYER, SELLER, SOL, "2", USDC, "300")
        manual = DepositMonitor(ctx)
        for wallet, asset, amount in ((BUYER, SOL, "2"), (SELLER, USDC, "300")):
            tx_ref = ledger.credit(contract.escrow_wallet, asset, Decimal(amount), sender=wallet)
            await manual.record_deposit(contract.id, wallet, amount, asset, tx_ref)
        assert (await store.get_contract(contract.id)).status is EscrowStatus.FULLY_FUNDED

        result = await deposits.scan()

        assert result["swaps_executed"] == 1
        assert (await store.get_contract(contract.id)).status is EscrowStatus.COMPLETED
        assert ledger.balance_of(SELLER, SOL) == Decimal("1.94")


class TestFundingReads:
    """Tests for the funding read model and balance scan."""

    @pytest.mark.asyncio
    async def test_funded_swap_executes_automatically(self, swaps, fund, store, ledger):
        contract = await swaps.create(BUYER, SELLER, SOL, "2", USDC, "300")

        await fund(contract, BUYER)
        await fund(contract, SELLER)

        assert (await store.get_contract(contract.id)).status is EscrowStatus.COMPLETED
        assert ledger.balance_of(BUYER, USDC) == Decimal("291")

    @pytest.mark.asyncio
    async def test_deposit_status(self, create, fund, deposits):
        contract = await create()
        deposit = await fund(contract, BUYER)

        status = await deposits.get_deposit_status(contract.id)

        assert status["status"] == "buyer_deposited"
        assert status["fully_funded"] is False
        assert status["buyer"]["deposited"] is True
        assert status["buyer"]["expected_amount"] == "100"
        assert status["buyer"]["deposits"][0]["tx_ref"] == deposit.tx_ref
        assert status["seller"]["deposited"] is False
        assert status["seller"]["deposits"] == []

    @pytest.mark.asyncio
    async def test_milestone_status_has_no_seller_side(self, milestones, deposits):
        contract, _ = await milestones.create(
            BUYER, SELLER, "500", USDC, [MilestoneInput("Draft", 50), MilestoneInput("Final", 50)]
        )

        status = await deposits.get_deposit_status(contract.id)

        assert status["seller"] is None
        assert status["buyer"]["asset"] == "USDC"

    @pytest.mark.asyncio
    async def test_wallet_balance_shortfall(self, create, fund, deposits):
        contract = await create()
        await fund(contract, BUYER)

        reports = await deposits.scan_wallet_balances()

        assert len(reports) == 1
        assert reports[0].escrow_id == contract.id
        assert reports[0].expected == Decimal("110")
        assert reports[0].balance == Decimal("100")
        assert reports[0].shortfall == Decimal("10")

    @pytest.mark.asyncio
    async def test_swap_reports_each_asset(self, swaps, deposits):
        await swaps.create(BUYER, SELLER, SOL, "2", USDC, "300")

        reports = await deposits.scan_wallet_balances()

        assert {r.asset.symbol: r.shortfall for r in reports} == {"SOL": Decimal("2"), "USDC": Decimal("300")}


class TestRequiredDeposit:
    """Tests for looking up what a party owes."""

    @pytest.mark.asyncio
    async def test_buyer_owes_milestone_total(self, milestones):
        contract, _ = await milestones.create(BUYER, SELLER, "500", USDC, [MilestoneInput("All", 100)])

        assert _required_deposit(contract, PartyRole.BUYER) == (USDC, Decimal("500"))

    @pytest.mark.asyncio
    async def test_party_owing_nothing_is_a_conflict(self, milestones):
        contract, _ = await milestones.create(BUYER, SELLER, "500", USDC, [MilestoneInput("All", 100)])

        with pytest.raises(StateConflictError, match="expects no deposit from the seller"):
            _required_deposit(contract, PartyRole.SELLER)
