"""Timeouts: durations and expiry arithmetic (``config``), kind-specific
handling (``handler``) and the periodic scan (``monitor``).

Only ``config`` is re-exported here; ``handler`` and ``monitor`` depend on
the engines, which themselves import ``config``.
"""
from .config import (
    DEFAULT_TIMEOUTS,
    TIMEOUT_CONFIGS,
    TimeRemaining,
    TimeoutRule,
    calculate_expiration,
    calculate_warning,
    format_time_remaining,
    get_default_timeout,
    get_timeout_config,
    new_timeout,
    time_remaining,
    validate_timeout_hours,
)

__all__ = [
    "DEFAULT_TIMEOUTS",
    "TIMEOUT_CONFIGS",
    "TimeRemaining",
    "TimeoutRule",
    "calculate_expiration",
    "calculate_warning",
    "format_time_remaining",
    "get_default_timeout",
    "get_timeout_config",
    "new_timeout",
    "time_remaining",
    "validate_timeout_hours",
]
