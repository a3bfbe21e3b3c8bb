"""
Escrow service facade.

Wires the engines, coordinators and monitors over one ``EngineContext`` and
exposes every mutating operation as a coroutine returning
``OperationResult``. Engine exceptions never escape these methods; anything
else is a bug and propagates.

Usage:
    service = EscrowService.from_settings(load_settings())
    await service.start()
    result = await service.create_traditional_escrow(buyer, seller, "100", "10", "USDC")
    if result.success:
        contract = result.value
"""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Collection, Optional, Sequence

from .audit import AuditLog
from .cancellation import CancellationCoordinator
from .config import EscrowSettings, load_settings
from .custody import WalletCustody
from .database import Database
from .deposits import DepositMonitor
from .disputes import DisputeCoordinator
from .engines import (
    AtomicSwapEngine,
    EngineContext,
    MilestoneEscrowEngine,
    MilestoneInput,
    SwapReadiness,
    TraditionalEscrowEngine,
)
from .engines.atomic_swap import SYSTEM_ACTOR
from .engines.milestone import MilestoneRelease, MilestoneStats
from .fees import FeePolicy
from .ledger.base import LedgerClient
from .ledger.signer import TransactionSigner
from .ledger.solana import SolanaLedgerClient
from .logging_config import setup_logging
from .models import (
    Asset,
    AuditAction,
    CancellationRequest,
    Deposit,
    Dispute,
    DisputePriority,
    EscrowContract,
    EscrowTimeout,
    Evidence,
    Milestone,
    MultiSigProvider,
    MultiSigTransaction,
    ResolutionAction,
    resolve_asset,
)
from .multisig import MultiSigCoordinator, MultiSigWalletInfo
from .notifications import NotificationDispatcher, Notifier
from .results import OperationResult, boundary
from .scheduler import EscrowScheduler
from .store.base import EscrowStore
from .store.memory import InMemoryEscrowStore
from .store.postgres import PostgresEscrowStore
from .timeouts.handler import TimeoutHandler
from .timeouts.monitor import TimeoutCheckResult, TimeoutMonitor, TimeoutStatistics

logger = logging.getLogger(__name__)

Amount = Decimal | str | int


def _asset(value: Asset | str) -> Asset:
    return value if isinstance(value, Asset) else resolve_asset(value)


class EscrowService:
    """One entry point for every escrow operation."""

    def __init__(
        self,
        ctx: EngineContext,
        *,
        admin_wallets: Optional[Collection[str]] = None,
        database: Optional[Database] = None,
        deposit_scan_interval_seconds: int = 60,
        timeout_scan_interval_seconds: int = 300,
    ) -> None:
        self.ctx = ctx
        self._database = database
        self._scan_intervals = (deposit_scan_interval_seconds, timeout_scan_interval_seconds)
        self._scheduler: Optional[EscrowScheduler] = None

        self.traditional = TraditionalEscrowEngine(ctx)
        self.milestones = MilestoneEscrowEngine(ctx)
        self.swaps = AtomicSwapEngine(ctx)
        self.deposits = DepositMonitor(ctx, self.swaps)
        self.disputes = DisputeCoordinator(ctx, admin_wallets)
        self.cancellations = CancellationCoordinator(ctx)
        self.multisig = MultiSigCoordinator(ctx.store, ctx.signer, ctx.audit, clock=ctx.clock)
        self.timeouts = TimeoutMonitor(ctx, TimeoutHandler(ctx, self.swaps))

    @classmethod
    def from_settings(
        cls,
        settings: Optional[EscrowSettings] = None,
        *,
        ledger: Optional[LedgerClient] = None,
        notifier: Optional[Notifier] = None,
        configure_logging: bool = False,
    ) -> "EscrowService":
        """Build the service: Postgres when a database URL is configured, in-memory otherwise."""
        settings = settings or load_settings()
        if configure_logging:
            setup_logging(settings.log_level, json_format=settings.log_json)

        database = None
        store: EscrowStore
        if settings.uses_postgres:
            database = Database(settings.database_url)
            store = PostgresEscrowStore(database)
        else:
            if settings.environment == "prod":
                logger.warning("No database configured in prod; using the in-memory store")
            store = InMemoryEscrowStore()

        signer = TransactionSigner(
            ledger or SolanaLedgerClient.from_settings(settings),
            timeout=settings.rpc_timeout_seconds,
            poll_interval=settings.confirmation_poll_interval,
            max_polls=settings.confirmation_max_polls,
        )
        ctx = EngineContext(
            store=store,
            custody=WalletCustody(settings.encryption_key, store),
            signer=signer,
            fees=FeePolicy.from_settings(settings),
            audit=AuditLog(store),
            notifications=NotificationDispatcher(notifier),
            max_milestones=settings.max_milestones,
        )
        return cls(
            ctx,
            admin_wallets=settings.admin_wallets,
            database=database,
            deposit_scan_interval_seconds=settings.deposit_scan_interval_seconds,
            timeout_scan_interval_seconds=settings.timeout_scan_interval_seconds,
        )

    # -- lifecycle -----------------------------------------------------------

    async def start(self, *, run_scans: bool = False) -> None:
        """Open the database (creating the schema) and optionally start the scans."""
        if self._database is not None:
            await self._database.connect()
            await self._database.init_schema()
        if run_scans:
            deposit_interval, timeout_interval = self._scan_intervals
            self._scheduler = EscrowScheduler()
            self._scheduler.register_scans(
                self.deposits,
                self.timeouts,
                deposit_interval_seconds=deposit_interval,
                timeout_interval_seconds=timeout_interval,
            )
            await self._scheduler.start()
        logger.info("Escrow service started")

    async def close(self) -> None:
        if self._scheduler is not None:
            await self._scheduler.shutdown()
            self._scheduler = None
        await self.ctx.notifications.wait_for_background_tasks(timeout=5)
        await self.ctx.signer.ledger.close()
        if self._database is not None:
            await self._database.close()
        logger.info("Escrow service stopped")

    # -- traditional ---------------------------------------------------------

    @boundary
    async def create_traditional_escrow(
        self,
        buyer_wallet: str,
        seller_wallet: str,
        buyer_amount: Amount,
        seller_deposit: Amount,
        asset: Asset | str,
        timeout_hours: int = 72,
        description: Optional[str] = None,
    ) -> EscrowContract:
        return await self.traditional.create(
            buyer_wallet, seller_wallet, buyer_amount, seller_deposit, _asset(asset),
            timeout_hours, description,
        )

    @boundary
    async def confirm_traditional_escrow(
        self, escrow_id: str, actor: str, notes: Optional[str] = None
    ) -> EscrowContract:
        return await self.traditional.confirm(escrow_id, actor, notes)

    @boundary
    async def release_traditional_escrow(self, escrow_id: str, triggered_by: str) -> EscrowContract:
        return await self.traditional.release(escrow_id, triggered_by)

    # -- milestone -----------------------------------------------------------

    @boundary
    async def create_milestone_escrow(
        self,
        buyer_wallet: str,
        seller_wallet: str,
        total_amount: Amount,
        asset: Asset | str,
        milestones: Sequence[MilestoneInput],
        timeout_hours: int = 168,
        description: Optional[str] = None,
    ) -> tuple[EscrowContract, list[Milestone]]:
        return await self.milestones.create(
            buyer_wallet, seller_wallet, total_amount, _asset(asset), milestones,
            timeout_hours, description,
        )

    @boundary
    async def submit_milestone_work(
        self,
        milestone_id: str,
        seller_wallet: str,
        notes: Optional[str] = None,
        evidence: Optional[Sequence[str]] = None,
    ) -> Milestone:
        return await self.milestones.submit_work(milestone_id, seller_wallet, notes, evidence)

    @boundary
    async def update_milestone_submission(
        self,
        milestone_id: str,
        seller_wallet: str,
        notes: Optional[str] = None,
        evidence: Optional[Sequence[str]] = None,
    ) -> Milestone:
        return await self.milestones.update_submission(milestone_id, seller_wallet, notes, evidence)

    @boundary
    async def approve_milestone(
        self,
        milestone_id: str,
        buyer_wallet: str,
        notes: Optional[str] = None,
        *,
        release: bool = True,
    ) -> Milestone | MilestoneRelease:
        """Approve a submitted milestone and, unless ``release`` is False, pay it out.

        If the payout fails the milestone stays ``approved`` and
        ``release_milestone`` can be retried.
        """
        milestone = await self.milestones.approve(milestone_id, buyer_wallet, notes)
        if not release:
            return milestone
        return await self.milestones.release_milestone(milestone_id, buyer_wallet)

    @boundary
    async def release_milestone(self, milestone_id: str, triggered_by: str) -> MilestoneRelease:
        return await self.milestones.release_milestone(milestone_id, triggered_by)

    @boundary
    async def get_milestones(self, escrow_id: str) -> list[Milestone]:
        return await self.milestones.get_milestones(escrow_id)

    @boundary
    async def get_milestone_stats(self, escrow_id: str) -> MilestoneStats:
        return await self.milestones.get_milestone_stats(escrow_id)

    # -- atomic swap ---------------------------------------------------------

    @boundary
    async def create_atomic_swap(
        self,
        party_a: str,
        party_b: str,
        asset_a: Asset | str,
        amount_a: Amount,
        asset_b: Asset | str,
        amount_b: Amount,
        timeout_hours: int = 24,
        description: Optional[str] = None,
    ) -> EscrowContract:
        return await self.swaps.create(
            party_a, party_b, _asset(asset_a), amount_a, _asset(asset_b), amount_b,
            timeout_hours, description,
        )

    @boundary
    async def execute_swap(self, escrow_id: str, triggered_by: str = "system") -> EscrowContract:
        return await self.swaps.execute(escrow_id, triggered_by)

    @boundary
    async def check_swap_readiness(self, escrow_id: str) -> SwapReadiness:
        return await self.swaps.check_swap_readiness(escrow_id)

    # -- deposits ------------------------------------------------------------

    @boundary
    async def record_deposit(
        self,
        escrow_id: str,
        depositor: str,
        amount: Amount,
        asset: Asset | str,
        tx_ref: str,
    ) -> Deposit:
        return await self.deposits.record_deposit(escrow_id, depositor, amount, _asset(asset), tx_ref)

    @boundary
    async def check_funding(self, escrow_id: str) -> bool:
        return await self.deposits.check_and_update_funding_status(escrow_id)

    @boundary
    async def get_deposit_status(self, escrow_id: str) -> dict[str, Any]:
        return await self.deposits.get_deposit_status(escrow_id)

    @boundary
    async def scan_deposits(self) -> dict[str, int]:
        return await self.deposits.scan()

    # -- disputes ------------------------------------------------------------

    @boundary
    async def raise_dispute(
        self,
        escrow_id: str,
        actor: str,
        reason: str,
        milestone_id: Optional[str] = None,
        description: Optional[str] = None,
        priority: DisputePriority | str = DisputePriority.NORMAL,
    ) -> Dispute:
        return await self.disputes.raise_dispute(
            escrow_id, actor, reason, milestone_id, description, priority
        )

    @boundary
    async def submit_evidence(
        self,
        escrow_id: str,
        submitted_by: str,
        evidence_type: str,
        content: Optional[str] = None,
        file_url: Optional[str] = None,
        dispute_id: Optional[str] = None,
    ) -> Evidence:
        return await self.disputes.submit_evidence(
            escrow_id, submitted_by, evidence_type, content, file_url, dispute_id
        )

    @boundary
    async def open_admin_review(self, escrow_id: str, admin_wallet: str, reason: str) -> Dispute:
        return await self.disputes.open_admin_review(escrow_id, admin_wallet, reason)

    @boundary
    async def resolve_dispute(
        self,
        dispute_id: str,
        admin_wallet: str,
        action: ResolutionAction | str,
        notes: str,
        amount_to_buyer: Optional[Amount] = None,
        amount_to_seller: Optional[Amount] = None,
    ) -> Dispute:
        return await self.disputes.resolve_dispute(
            dispute_id, admin_wallet, action, notes, amount_to_buyer, amount_to_seller
        )

    # -- cancellation --------------------------------------------------------

    @boundary
    async def request_cancellation(
        self, escrow_id: str, requester: str, reason: str
    ) -> CancellationRequest:
        return await self.cancellations.request_cancellation(escrow_id, requester, reason)

    @boundary
    async def approve_cancellation(self, request_id: str, approver: str) -> CancellationRequest:
        return await self.cancellations.approve_cancellation(request_id, approver)

    @boundary
    async def execute_cancellation(
        self, request_id: str, triggered_by: str = "system"
    ) -> CancellationRequest:
        return await self.cancellations.execute_cancellation(request_id, triggered_by)

    @boundary
    async def cancel_unfunded_escrow(
        self, escrow_id: str, requester: str, reason: Optional[str] = None
    ) -> EscrowContract:
        return await self.cancellations.cancel_unilateral(escrow_id, requester, reason)

    @boundary
    async def get_cancellation_status(self, escrow_id: str) -> dict[str, Any]:
        return await self.cancellations.get_cancellation_status(escrow_id)

    # -- multi-sig -----------------------------------------------------------

    @boundary
    async def detect_multisig(self, address: str) -> MultiSigWalletInfo:
        return await self.multisig.detect(address)

    @boundary
    async def check_escrow_multisig(self, escrow_id: str) -> dict[str, Any]:
        contract = await self.ctx.load_contract(escrow_id)
        return await self.multisig.check_escrow_multisig(contract.buyer_wallet, contract.seller_wallet)

    @boundary
    async def create_multisig_transaction(
        self,
        escrow_id: str,
        wallet: str,
        provider: MultiSigProvider,
        required_signatures: int,
        authorized_signers: list[str],
        transaction_data: str = "",
    ) -> MultiSigTransaction:
        await self.ctx.load_contract(escrow_id)
        return await self.multisig.create_transaction(
            escrow_id, wallet, provider, required_signatures, authorized_signers, transaction_data
        )

    @boundary
    async def sign_multisig_transaction(self, tx_id: str, signer_wallet: str) -> MultiSigTransaction:
        return await self.multisig.sign(tx_id, signer_wallet)

    @boundary
    async def mark_multisig_executed(self, tx_id: str, tx_ref: str) -> MultiSigTransaction:
        return await self.multisig.mark_executed(tx_id, tx_ref)

    @boundary
    async def cancel_multisig_transaction(self, tx_id: str) -> MultiSigTransaction:
        return await self.multisig.cancel(tx_id)

    # -- timeouts ------------------------------------------------------------

    @boundary
    async def process_timeouts(self) -> TimeoutCheckResult:
        return await self.timeouts.check_expired_escrows()

    @boundary
    async def extend_timeout(
        self, timeout_id: str, additional_hours: int | float, extended_by: str = SYSTEM_ACTOR
    ) -> EscrowTimeout:
        return await self.timeouts.extend_timeout(timeout_id, additional_hours, extended_by)

    @boundary
    async def get_timeout_statistics(self) -> TimeoutStatistics:
        return await self.timeouts.get_timeout_statistics()

    # -- read models ---------------------------------------------------------

    @boundary
    async def get_escrow(self, escrow_id: str) -> EscrowContract:
        return await self.ctx.load_contract(escrow_id)

    @boundary
    async def get_audit_trail(self, escrow_id: str) -> list[AuditAction]:
        await self.ctx.load_contract(escrow_id)
        return await self.ctx.audit.history(escrow_id)


__all__ = ["EscrowService", "OperationResult"]
