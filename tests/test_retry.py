"""Tests for retry utilities."""
from __future__ import annotations

import pytest

from escrow_engine.exceptions import ExternalFailure, LedgerRejectedError, ValidationError
from escrow_engine.retry import NO_RETRY, RetryConfig, RetryExhausted, retry_async

FAST = RetryConfig(max_retries=2, base_delay=0, jitter=0)


class TestRetryConfig:
    """Tests for RetryConfig delay calculation."""

    def test_exponential_delay(self):
        config = RetryConfig(base_delay=1.0, exponential_base=2.0, jitter=0)

        assert config.calculate_delay(0) == 1.0
        assert config.calculate_delay(1) == 2.0
        assert config.calculate_delay(3) == 8.0

    def test_delay_is_capped(self):
        config = RetryConfig(base_delay=1.0, max_delay=5.0, jitter=0)

        assert config.calculate_delay(10) == 5.0

    def test_jitter_stays_in_range(self):
        config = RetryConfig(base_delay=10.0, jitter=0.1)

        for _ in range(50):
            assert 9.0 <= config.calculate_delay(0) <= 11.0

    def test_only_retryable_failures_retried(self):
        config = RetryConfig()

        assert config.should_retry(ExternalFailure("timeout")) is True
        assert config.should_retry(ExternalFailure("bad request", retryable=False)) is False
        assert config.should_retry(LedgerRejectedError("rejected")) is False
        assert config.should_retry(ValidationError("bad input")) is False
        assert config.should_retry(ValueError("boom")) is False


class TestRetryAsync:
    """Tests for retry_async."""

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failure(self):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise ExternalFailure("temporarily unavailable")
            return "ok"

        assert await retry_async(flaky, config=FAST) == "ok"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_exhaustion_wraps_last_error(self):
        async def down():
            raise ExternalFailure("unreachable", operation="get_balance")

        with pytest.raises(RetryExhausted) as exc_info:
            await retry_async(down, config=FAST)

        assert exc_info.value.attempts == 3
        assert exc_info.value.operation == "get_balance"
        assert isinstance(exc_info.value.original_exception, ExternalFailure)

    @pytest.mark.asyncio
    async def test_non_retryable_raised_immediately(self):
        calls = []

        async def rejected():
            calls.append(1)
            raise LedgerRejectedError("Insufficient funds")

        with pytest.raises(LedgerRejectedError):
            await retry_async(rejected, config=FAST)
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_no_retry_reraises_original(self):
        async def down():
            raise ExternalFailure("unreachable")

        with pytest.raises(ExternalFailure) as exc_info:
            await retry_async(down, config=NO_RETRY)

        assert not isinstance(exc_info.value, RetryExhausted)

    @pytest.mark.asyncio
    async def test_on_retry_callback(self):
        seen = []
        config = RetryConfig(
            max_retries=1, base_delay=0, jitter=0, on_retry=lambda n, e, d: seen.append((n, e.message))
        )

        async def down():
            raise ExternalFailure("unreachable")

        with pytest.raises(RetryExhausted):
            await retry_async(down, config=config)
        assert seen == [(1, "unreachable")]
