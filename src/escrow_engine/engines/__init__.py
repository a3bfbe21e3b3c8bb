"""Contract-kind engines sharing one EngineContext."""
from .atomic_swap import AtomicSwapEngine, SwapReadiness, SwapTimeoutResult
from .base import VALID_TRANSITIONS, EngineContext, transition
from .milestone import (
    MilestoneEscrowEngine,
    MilestoneInput,
    calculate_milestone_amounts,
    validate_milestones,
)
from .traditional import TraditionalEscrowEngine

__all__ = [
    "AtomicSwapEngine",
    "EngineContext",
    "MilestoneEscrowEngine",
    "MilestoneInput",
    "SwapReadiness",
    "SwapTimeoutResult",
    "TraditionalEscrowEngine",
    "VALID_TRANSITIONS",
    "calculate_milestone_amounts",
    "transition",
    "validate_milestones",
]
