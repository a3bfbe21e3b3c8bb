"""Constants shared across the escrow engine.

Grouped by concern so call sites read as ``FeeDefaults.PLATFORM_FEE_PCT``
rather than bare module globals.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Final


class FeeDefaults:
    """Fee-related constants."""

    PLATFORM_FEE_PCT: Final[Decimal] = Decimal("3")
    MAINNET_PLATFORM_FEE_PCT: Final[Decimal] = Decimal("1")
    CANCELLATION_FEE_PCT: Final[Decimal] = Decimal("1")

    # Percentages above this are allowed but logged as suspicious
    HIGH_FEE_WARNING_PCT: Final[Decimal] = Decimal("10")

    # Smallest unit fees are rounded to when no asset precision is given
    DEFAULT_QUANTUM: Final[Decimal] = Decimal("0.000000001")


class MilestoneLimits:
    """Validation limits for milestone contracts."""

    MAX_MILESTONES: Final[int] = 20
    MAX_DESCRIPTION_LENGTH: Final[int] = 500
    SMALL_MILESTONE_WARNING_PCT: Final[Decimal] = Decimal("5")


class TimeoutDefaults:
    """Timeout durations in hours."""

    TRADITIONAL_HOURS: Final[int] = 72
    MILESTONE_HOURS: Final[int] = 168
    ATOMIC_SWAP_HOURS: Final[int] = 24

    MAX_TIMEOUT_HOURS: Final[int] = 8760  # one year


class CancellationLimits:
    """Cancellation request constraints."""

    MIN_REASON_LENGTH: Final[int] = 10


class DisputeLimits:
    """Dispute and admin resolution constraints."""

    MIN_REASON_LENGTH: Final[int] = 10
    MIN_RESOLUTION_NOTES_LENGTH: Final[int] = 20
    MAX_RESOLUTION_NOTES_LENGTH: Final[int] = 2000


class MultiSigLimits:
    """Multi-signature constraints."""

    MAX_SIGNERS: Final[int] = 20
    SQUADS_ASSUMED_THRESHOLD: Final[int] = 2
    SQUADS_ASSUMED_SIGNERS: Final[int] = 3


class CustodyDefaults:
    """Custodial key handling constants."""

    KEY_BYTES: Final[int] = 32
    NONCE_BYTES: Final[int] = 12
    TAG_BYTES: Final[int] = 16
    LOG_HASH_CHARS: Final[int] = 8


class LedgerDefaults:
    """Ledger network interaction constants."""

    RPC_TIMEOUT_SECONDS: Final[float] = 30.0
    CONFIRMATION_POLL_INTERVAL: Final[float] = 2.0
    CONFIRMATION_MAX_POLLS: Final[int] = 30
    LAMPORTS_PER_SOL: Final[int] = 1_000_000_000


class RetryDefaults:
    """Retry configuration for external calls."""

    DEFAULT_MAX_RETRIES: Final[int] = 3
    DEFAULT_BASE_DELAY: Final[float] = 1.0
    DEFAULT_MAX_DELAY: Final[float] = 60.0
    DEFAULT_EXPONENTIAL_BASE: Final[float] = 2.0
    DEFAULT_JITTER: Final[float] = 0.1

    # RPC call retry
    RPC_MAX_RETRIES: Final[int] = 5
    RPC_BASE_DELAY: Final[float] = 0.5
    RPC_MAX_DELAY: Final[float] = 10.0

    # Database operation retry
    DB_MAX_RETRIES: Final[int] = 3
    DB_BASE_DELAY: Final[float] = 0.5
    DB_MAX_DELAY: Final[float] = 5.0


class LoggingDefaults:
    """Logging-related constants."""

    MASK_PATTERN: Final[str] = "***MASKED***"
    MAX_LOG_MESSAGE_LENGTH: Final[int] = 10000

    SENSITIVE_FIELDS: Final[frozenset[str]] = frozenset({
        "password",
        "secret",
        "secret_key",
        "private_key",
        "privateKey",
        "encrypted_secret",
        "encrypted_private_key",
        "encryption_key",
        "seed",
        "keypair",
        "token_secret",
        "authorization",
        "credential",
        "credentials",
    })
