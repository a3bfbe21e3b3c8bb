"""Timeout durations and expiry arithmetic.

Pure functions only; persisting and scanning timeouts is done by the
engines and ``TimeoutMonitor``.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from ..constants import TimeoutDefaults
from ..exceptions import ValidationError
from ..models import EscrowKind, EscrowTimeout, TimeoutType, new_id, utcnow


@dataclass(frozen=True)
class TimeoutRule:
    default_hours: int
    warning_hours_before: int
    description: str


DEFAULT_TIMEOUTS: dict[EscrowKind, int] = {
    EscrowKind.TRADITIONAL: TimeoutDefaults.TRADITIONAL_HOURS,
    EscrowKind.MILESTONE: TimeoutDefaults.MILESTONE_HOURS,
    EscrowKind.ATOMIC_SWAP: TimeoutDefaults.ATOMIC_SWAP_HOURS,
}

TIMEOUT_CONFIGS: dict[TimeoutType, TimeoutRule] = {
    TimeoutType.DEPOSIT: TimeoutRule(72, 24, "Waiting for deposits from parties"),
    TimeoutType.CONFIRMATION: TimeoutRule(48, 12, "Waiting for confirmation from parties"),
    TimeoutType.MILESTONE: TimeoutRule(168, 48, "Waiting for milestone work submission or approval"),
    TimeoutType.DISPUTE: TimeoutRule(336, 72, "Waiting for dispute resolution"),
    TimeoutType.SWAP: TimeoutRule(24, 6, "Waiting for swap deposits"),
}


def get_default_timeout(kind: EscrowKind) -> int:
    return DEFAULT_TIMEOUTS[kind]


def get_timeout_config(timeout_type: TimeoutType) -> TimeoutRule:
    return TIMEOUT_CONFIGS[timeout_type]


def validate_timeout_hours(hours: int | float) -> None:
    if hours <= 0:
        raise ValidationError("Timeout hours must be greater than 0", field="timeout_hours")
    if hours > TimeoutDefaults.MAX_TIMEOUT_HOURS:
        raise ValidationError(
            f"Timeout hours cannot exceed 1 year ({TimeoutDefaults.MAX_TIMEOUT_HOURS} hours)",
            field="timeout_hours",
        )


def calculate_expiration(hours: int | float, now: Optional[datetime] = None) -> datetime:
    return (now or utcnow()) + timedelta(hours=hours)


def calculate_warning(expires_at: datetime, timeout_type: TimeoutType) -> datetime:
    """When the pre-expiration warning becomes due."""
    return expires_at - timedelta(hours=TIMEOUT_CONFIGS[timeout_type].warning_hours_before)


def new_timeout(
    escrow_id: str,
    timeout_type: TimeoutType,
    hours: Optional[int | float] = None,
    now: Optional[datetime] = None,
) -> EscrowTimeout:
    """Build (not persist) a timeout; ``hours`` defaults to the type's rule."""
    if hours is None:
        hours = TIMEOUT_CONFIGS[timeout_type].default_hours
    validate_timeout_hours(hours)
    now = now or utcnow()
    expires_at = calculate_expiration(hours, now)
    return EscrowTimeout(
        id=new_id("tmo"),
        escrow_id=escrow_id,
        timeout_type=timeout_type,
        expires_at=expires_at,
        warning_at=calculate_warning(expires_at, timeout_type),
        created_at=now,
    )


@dataclass(frozen=True)
class TimeRemaining:
    seconds: int
    minutes: int
    hours: int
    days: int
    expired: bool


def time_remaining(expires_at: datetime, now: Optional[datetime] = None) -> TimeRemaining:
    diff = int((expires_at - (now or utcnow())).total_seconds())
    if diff <= 0:
        return TimeRemaining(0, 0, 0, 0, True)
    return TimeRemaining(diff, diff // 60, diff // 3600, diff // 86400, False)


def _plural(n: int, unit: str) -> str:
    return f"{n} {unit}{'' if n == 1 else 's'}"


def format_time_remaining(expires_at: datetime, now: Optional[datetime] = None) -> str:
    remaining = time_remaining(expires_at, now)
    if remaining.expired:
        return "Expired"
    if remaining.days > 0:
        return _plural(remaining.days, "day")
    if remaining.hours > 0:
        return _plural(remaining.hours, "hour")
    if remaining.minutes > 0:
        return _plural(remaining.minutes, "minute")
    return "Less than 1 minute"
