"""Tests for secret masking, the event sink and structured log records."""
from __future__ import annotations

import json
import logging

import pytest

from conftest import BUYER, SELLER
from escrow_engine.logging import LoggingEventSink, mask_sensitive_data, mask_value
from escrow_engine.logging_config import (
    EscrowContextFilter,
    StructuredFormatter,
    escrow_context,
    escrow_id_var,
)
from escrow_engine.models import USDC


def _record(message: str, **extra) -> logging.LogRecord:
    record = logging.LogRecord("escrow_engine.test", logging.INFO, __file__, 10, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestMasking:
    """Tests for mask_value and mask_sensitive_data."""

    def test_mask_value(self):
        assert mask_value("abcdefghijkl") == "abcd...ijkl"
        assert mask_value("short") == "***MASKED***"

    def test_sensitive_keys_masked_recursively(self):
        data = {
            "escrow_id": "esc_1",
            "wallet": {"encrypted_private_key": "aa:bb:cc", "address": "Addr1"},
            "items": [{"password": "hunter2"}],
        }

        masked = mask_sensitive_data(data)

        assert masked["escrow_id"] == "esc_1"
        assert masked["wallet"]["encrypted_private_key"] == "***MASKED***"
        assert masked["wallet"]["address"] == "Addr1"
        assert masked["items"][0]["password"] == "***MASKED***"

    def test_token_is_not_a_secret(self):
        assert mask_sensitive_data({"token": "USDC"}) == {"token": "USDC"}

    def test_inline_key_material(self):
        text = "key " + "ab" * 32 + " via https://user:pw@rpc.example.com"

        masked = mask_sensitive_data(text)

        assert "ab" * 32 not in masked
        assert "***KEY***" in masked
        assert "user:pw" not in masked

    def test_inline_ciphertext(self):
        ciphertext = f"{'1' * 24}:{'2' * 32}:{'3' * 40}"

        assert mask_sensitive_data(f"stored {ciphertext}") == "stored ***CIPHERTEXT***"


class TestLoggingEventSink:
    """Tests for LoggingEventSink."""

    def test_counts_and_masks(self, caplog):
        sink = LoggingEventSink()

        with caplog.at_level(logging.INFO, logger="escrow_engine.events"):
            sink.event("escrow.created", escrow_id="esc_1", private_key="deadbeef")
            sink.event("escrow.created", escrow_id="esc_2")
            sink.error("settlement.failed", RuntimeError("rpc down"), escrow_id="esc_1")

        assert sink.counters["escrow.created"] == 2
        assert sink.counters["settlement.failed"] == 1
        assert caplog.records[0].fields["private_key"] == "***MASKED***"
        assert caplog.records[-1].levelno == logging.ERROR

    @pytest.mark.asyncio
    async def test_engine_reports_events(self, traditional, ctx):
        await traditional.create(BUYER, SELLER, "100", "10", USDC)

        assert sum(ctx.events.counters.values()) >= 1


class TestStructuredFormatter:
    """Tests for JSON records carrying escrow context."""

    def test_context_attached(self):
        record = _record("releasing")

        with escrow_context("esc_42", "settle:release"):
            EscrowContextFilter().filter(record)

        payload = json.loads(StructuredFormatter().format(record))
        assert payload["escrow_id"] == "esc_42"
        assert payload["operation"] == "settle:release"
        assert payload["message"] == "releasing"
        assert escrow_id_var.get() is None

    def test_extra_fields_masked(self):
        record = _record("stored", encrypted_secret="aa:bb", amount="97")
        EscrowContextFilter().filter(record)

        payload = json.loads(StructuredFormatter().format(record))

        assert payload["encrypted_secret"] == "***MASKED***"
        assert payload["amount"] == "97"
        assert "escrow_id" not in payload
