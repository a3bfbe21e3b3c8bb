"""Shared fixtures: an engine context over the in-memory store and simulated ledger."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional
from unittest.mock import AsyncMock

import pytest

from escrow_engine.audit import AuditLog
from escrow_engine.cancellation import CancellationCoordinator
from escrow_engine.custody import WalletCustody
from escrow_engine.deposits import DepositMonitor
from escrow_engine.disputes import DisputeCoordinator
from escrow_engine.engines import (
    AtomicSwapEngine,
    EngineContext,
    MilestoneEscrowEngine,
    TraditionalEscrowEngine,
)
from escrow_engine.fees import FeePolicy
from escrow_engine.ledger.signer import TransactionSigner
from escrow_engine.ledger.simulated import SimulatedLedgerClient
from escrow_engine.logging import LoggingEventSink
from escrow_engine.models import Asset, Deposit, EscrowContract, PartyRole
from escrow_engine.multisig import MultiSigCoordinator
from escrow_engine.notifications import NotificationDispatcher
from escrow_engine.retry import NO_RETRY
from escrow_engine.service import EscrowService
from escrow_engine.store.memory import InMemoryEscrowStore
from escrow_engine.timeouts.handler import TimeoutHandler
from escrow_engine.timeouts.monitor import TimeoutMonitor

BUYER = "BuyerWa11et1111111111111111111111111111111"
SELLER = "Se11erWa11et111111111111111111111111111111"
TREASURY = "TreasuryWa11et1111111111111111111111111111"
ADMIN = "AdminWa11et1111111111111111111111111111111"
OUTSIDER = "OutsiderWa11et1111111111111111111111111111"
ENCRYPTION_KEY = "11" * 32

START = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Injectable clock that only moves when a test advances it."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryEscrowStore()


@pytest.fixture
def ledger():
    return SimulatedLedgerClient()


@pytest.fixture
def signer(ledger):
    return TransactionSigner(ledger, poll_interval=0, max_polls=3, retry_config=NO_RETRY)


@pytest.fixture
def fees():
    return FeePolicy(
        platform_pct=Decimal("3"),
        cancellation_pct=Decimal("1"),
        treasury_wallet=TREASURY,
    )


@pytest.fixture
def notifier():
    return AsyncMock()


@pytest.fixture
def events():
    return LoggingEventSink()


@pytest.fixture
def ctx(store, signer, fees, notifier, events, clock):
    return EngineContext(
        store=store,
        custody=WalletCustody(ENCRYPTION_KEY, store),
        signer=signer,
        fees=fees,
        audit=AuditLog(store),
        notifications=NotificationDispatcher(notifier),
        events=events,
        clock=clock,
    )


@pytest.fixture
def traditional(ctx):
    return TraditionalEscrowEngine(ctx)


@pytest.fixture
def milestones(ctx):
    return MilestoneEscrowEngine(ctx)


@pytest.fixture
def swaps(ctx):
    return AtomicSwapEngine(ctx)


@pytest.fixture
def deposits(ctx, swaps):
    return DepositMonitor(ctx, swaps)


@pytest.fixture
def disputes(ctx):
    return DisputeCoordinator(ctx, {ADMIN})


@pytest.fixture
def cancellations(ctx):
    return CancellationCoordinator(ctx)


@pytest.fixture
def multisig(ctx):
    return MultiSigCoordinator(ctx.store, ctx.signer, ctx.audit, clock=ctx.clock)


@pytest.fixture
def timeout_monitor(ctx, swaps):
    return TimeoutMonitor(ctx, TimeoutHandler(ctx, swaps))


@pytest.fixture
def service(ctx):
    return EscrowService(ctx, admin_wallets={ADMIN})


@pytest.fixture
def fund(ledger, deposits):
    """Credit the escrow wallet from a party and record the deposit."""

    async def _fund(
        contract: EscrowContract,
        wallet: str,
        *,
        amount: Optional[Decimal] = None,
        asset: Optional[Asset] = None,
        confirmed: bool = True,
    ) -> Deposit:
        role = contract.role_of(wallet)
        expected = contract.expected_deposit(role) if role else None
        if expected is None:
            # outsiders and non-depositing sellers send the buyer's asset
            expected = contract.expected_deposit(PartyRole.BUYER)
        asset = asset or expected[0]
        amount = expected[1] if amount is None else amount
        tx_ref = ledger.credit(contract.escrow_wallet, asset, amount, sender=wallet, confirmed=confirmed)
        return await deposits.record_deposit(contract.id, wallet, amount, asset, tx_ref)

    return _fund
