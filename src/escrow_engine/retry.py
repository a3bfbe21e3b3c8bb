"""
Retry utilities with exponential backoff.

Only failures flagged retryable (``ExternalFailure`` with ``retryable=True``)
are retried by default. Reads and pre-confirmation ledger calls go through
here; broadcasts of new fund movements do not.

Usage:
    from escrow_engine.retry import RPC_RETRY_CONFIG, retry_async

    balance = await retry_async(client.get_balance, address, config=RPC_RETRY_CONFIG)
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, ParamSpec, TypeVar

from .constants import RetryDefaults
from .exceptions import ExternalFailure, is_retryable

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry behavior.

    Attributes:
        max_retries: Maximum number of retry attempts (0 means no retries)
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
        exponential_base: Base for exponential backoff calculation
        jitter: Maximum jitter factor (0.0-1.0) added to delays
        retry_condition: Decides whether an exception is retried
        on_retry: Optional callback called before each retry
    """

    max_retries: int = RetryDefaults.DEFAULT_MAX_RETRIES
    base_delay: float = RetryDefaults.DEFAULT_BASE_DELAY
    max_delay: float = RetryDefaults.DEFAULT_MAX_DELAY
    exponential_base: float = RetryDefaults.DEFAULT_EXPONENTIAL_BASE
    jitter: float = RetryDefaults.DEFAULT_JITTER
    retry_condition: Callable[[BaseException], bool] = is_retryable
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None

    def calculate_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based), capped and jittered."""
        delay = self.base_delay * (self.exponential_base ** attempt)
        delay = min(delay, self.max_delay)

        if self.jitter > 0:
            jitter_range = delay * self.jitter
            delay = delay + random.uniform(-jitter_range, jitter_range)

        return max(0.0, delay)

    def should_retry(self, exception: BaseException) -> bool:
        return self.retry_condition(exception)


RPC_RETRY_CONFIG = RetryConfig(
    max_retries=RetryDefaults.RPC_MAX_RETRIES,
    base_delay=RetryDefaults.RPC_BASE_DELAY,
    max_delay=RetryDefaults.RPC_MAX_DELAY,
    jitter=0.2,
)

DB_RETRY_CONFIG = RetryConfig(
    max_retries=RetryDefaults.DB_MAX_RETRIES,
    base_delay=RetryDefaults.DB_BASE_DELAY,
    max_delay=RetryDefaults.DB_MAX_DELAY,
    jitter=0.1,
)

NO_RETRY = RetryConfig(max_retries=0)


class RetryExhausted(ExternalFailure):
    """All retry attempts failed. Still an ExternalFailure so callers may
    schedule a later reconciliation pass."""

    error_code = "RETRY_EXHAUSTED"

    def __init__(self, message: str, attempts: int, original_exception: BaseException) -> None:
        operation = getattr(original_exception, "operation", None)
        super().__init__(message, operation=operation, retryable=True, details={"attempts": attempts})
        self.attempts = attempts
        self.original_exception = original_exception


async def retry_async(
    func: Callable[P, Awaitable[T]],
    *args: P.args,
    config: Optional[RetryConfig] = None,
    **kwargs: P.kwargs,
) -> T:
    """Execute an async function with retry logic.

    Raises:
        RetryExhausted: If all retry attempts fail with retryable errors
    """
    if config is None:
        config = RetryConfig()

    last_exception: Optional[BaseException] = None
    name = getattr(func, "__name__", repr(func))

    for attempt in range(config.max_retries + 1):
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            last_exception = e

            if not config.should_retry(e):
                raise

            if attempt >= config.max_retries:
                break

            delay = config.calculate_delay(attempt)
            logger.warning(
                "Retry %d/%d for %s after %s: %s. Waiting %.2fs",
                attempt + 1, config.max_retries, name, type(e).__name__, e, delay,
            )
            if config.on_retry:
                config.on_retry(attempt + 1, e, delay)

            await asyncio.sleep(delay)

    if last_exception is None:
        raise ValueError(f"max_retries must not be negative, got {config.max_retries}")
    if config.max_retries == 0:
        raise last_exception
    raise RetryExhausted(
        f"All {config.max_retries + 1} attempts failed for {name}",
        attempts=config.max_retries + 1,
        original_exception=last_exception,
    ) from last_exception
