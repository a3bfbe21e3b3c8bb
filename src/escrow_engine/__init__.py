"""Escrow settlement engine: custodial wallets, milestone releases, atomic swaps,
disputes, cancellations and timeouts."""

from .config import EscrowSettings, load_settings
from .exceptions import (
    AuthorizationError,
    ConfigurationError,
    EscrowException,
    ExternalFailure,
    LedgerRejectedError,
    NotFoundError,
    SecurityFailure,
    StateConflictError,
    ValidationError,
)
from .results import OperationResult, ValidationReport
from .models import (
    SOL,
    USDC,
    USDT,
    Asset,
    EscrowContract,
    EscrowKind,
    EscrowStatus,
    Milestone,
    MilestoneStatus,
    PartyRole,
    ResolutionAction,
    resolve_asset,
)
from .fees import FeePolicy, cancellation_fee, platform_fee
from .engines import (
    AtomicSwapEngine,
    EngineContext,
    MilestoneEscrowEngine,
    MilestoneInput,
    TraditionalEscrowEngine,
    calculate_milestone_amounts,
    validate_milestones,
)
from .deposits import DepositMonitor
from .disputes import DisputeCoordinator
from .cancellation import CancellationCoordinator
from .multisig import MultiSigCoordinator, validate_threshold
from .timeouts.monitor import TimeoutMonitor
from .service import EscrowService

__version__ = "0.1.0"

__all__ = [
    "EscrowSettings",
    "load_settings",
    "EscrowException",
    "ValidationError",
    "AuthorizationError",
    "StateConflictError",
    "NotFoundError",
    "ExternalFailure",
    "LedgerRejectedError",
    "SecurityFailure",
    "ConfigurationError",
    "OperationResult",
    "ValidationReport",
    "Asset",
    "SOL",
    "USDC",
    "USDT",
    "EscrowContract",
    "EscrowKind",
    "EscrowStatus",
    "Milestone",
    "MilestoneStatus",
    "PartyRole",
    "ResolutionAction",
    "resolve_asset",
    "FeePolicy",
    "platform_fee",
    "cancellation_fee",
    "EngineContext",
    "TraditionalEscrowEngine",
    "MilestoneEscrowEngine",
    "MilestoneInput",
    "AtomicSwapEngine",
    "calculate_milestone_amounts",
    "validate_milestones",
    "DepositMonitor",
    "DisputeCoordinator",
    "CancellationCoordinator",
    "MultiSigCoordinator",
    "validate_threshold",
    "TimeoutMonitor",
    "EscrowService",
]
