"""Tests for multi-sig detection and signature collection."""
from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from hypothesis import given
from hypothesis import strategies as st

from conftest import BUYER, OUTSIDER, SELLER
from escrow_engine.exceptions import (
    AuthorizationError,
    ExternalFailure,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from escrow_engine.ledger.base import AccountInfo
from escrow_engine.models import ActionType, MultiSigProvider, MultiSigStatus
from escrow_engine.multisig import validate_threshold

SQUADS_V4 = "SQDS4ep65T869zMMBKyuUq6aD6EgTu8psMjkvj52pCf"
GOKI = "GokivDYuQXPZCWRkwMhdH2h91KpDQXBEmpgBgs55bnpH"
SYSTEM_PROGRAM = "11111111111111111111111111111111"

SIGNERS = ["signer_one", "signer_two", "signer_three"]


class TestValidateThreshold:
    """Tests for validate_threshold."""

    def test_two_of_three(self):
        assert validate_threshold(2, 3).valid is True

    def test_zero_threshold(self):
        report = validate_threshold(0, 3)

        assert report.errors == ("Threshold must be at least 1",)

    def test_threshold_above_signers(self):
        report = validate_threshold(4, 3)

        assert report.errors == ("Threshold cannot exceed total signers",)

    def test_too_many_signers(self):
        report = validate_threshold(2, 21)

        assert report.errors == ("Maximum 20 signers supported",)

    @given(
        threshold=st.integers(min_value=-5, max_value=30),
        signers=st.integers(min_value=0, max_value=30),
    )
    def test_valid_exactly_when_in_range(self, threshold, signers):
        report = validate_threshold(threshold, signers)

        assert report.valid == (1 <= threshold <= signers <= 20)


class TestDetection:
    """Tests for multi-sig detection by owning program."""

    @pytest.mark.asyncio
    async def test_squads_wallet_detected(self, multisig, ledger):
        ledger.register_account(BUYER, AccountInfo(SQUADS_V4, 2_000_000, 512))

        info = await multisig.detect(BUYER)

        assert info.is_multisig is True
        assert info.provider is MultiSigProvider.SQUADS
        assert info.threshold == 2
        assert info.total_signers == 3
        assert info.to_dict()["metadata"]["program"] == "squads_v4"

    @pytest.mark.asyncio
    async def test_goki_threshold_unknown(self, multisig, ledger):
        ledger.register_account(SELLER, AccountInfo(GOKI, 1_000_000, 256))

        info = await multisig.detect(SELLER)

        assert info.provider is MultiSigProvider.GOKI
        assert info.threshold is None

    @pytest.mark.asyncio
    async def test_plain_wallet(self, multisig, ledger):
        ledger.register_account(BUYER, AccountInfo(SYSTEM_PROGRAM, 5_000_000, 0))

        assert (await multisig.detect(BUYER)).is_multisig is False

    @pytest.mark.asyncio
    async def test_unknown_account(self, multisig):
        info = await multisig.detect(OUTSIDER)

        assert info.is_multisig is False
        assert info.provider is None

    @pytest.mark.asyncio
    async def test_ledger_failure_propagates(self, multisig, ledger, monkeypatch):
        monkeypatch.setattr(
            ledger, "get_account_info", AsyncMock(side_effect=ExternalFailure("RPC down", retryable=False))
        )

        with pytest.raises(ExternalFailure):
            await multisig.detect(BUYER)

    @pytest.mark.asyncio
    async def test_check_escrow_multisig(self, multisig, ledger):
        ledger.register_account(SELLER, AccountInfo(SQUADS_V4, 2_000_000, 512))

        result = await multisig.check_escrow_multisig(BUYER, SELLER)

        assert result["buyer_is_multisig"] is False
        assert result["seller_is_multisig"] is True
        assert result["buyer_info"] is None
        assert result["seller_info"].provider is MultiSigProvider.SQUADS


class TestSignatureCollection:
    """Tests for signing a multi-sig transaction."""

    @pytest.fixture
    def create_tx(self, multisig):
        async def _create(required=2, signers=SIGNERS):
            return await multisig.create_transaction(
                "esc_1", BUYER, MultiSigProvider.SQUADS, required, signers, "payload"
            )

        return _create

    @pytest.mark.asyncio
    async def test_status_progression(self, create_tx, multisig):
        tx = await create_tx()
        assert tx.status is MultiSigStatus.PENDING

        tx = await multisig.sign(tx.id, "signer_one")
        assert tx.status is MultiSigStatus.PARTIALLY_SIGNED
        assert await multisig.is_ready(tx.id) is False

        tx = await multisig.sign(tx.id, "signer_three")
        assert tx.status is MultiSigStatus.READY
        assert tx.signed_by == ["signer_one", "signer_three"]
        assert await multisig.is_ready(tx.id) is True

        executed = await multisig.mark_executed(tx.id, "5igTxRef")
        assert executed.status is MultiSigStatus.EXECUTED
        assert executed.tx_ref == "5igTxRef"
        assert executed.executed_at is not None

    @pytest.mark.asyncio
    async def test_invalid_threshold_rejected(self, create_tx):
        with pytest.raises(ValidationError, match="Threshold cannot exceed total signers"):
            await create_tx(required=3, signers=["a", "b", "a"])

    @pytest.mark.asyncio
    async def test_unauthorized_signer(self, create_tx, multisig):
        tx = await create_tx()

        with pytest.raises(AuthorizationError, match="not authorized"):
            await multisig.sign(tx.id, OUTSIDER)

    @pytest.mark.asyncio
    async def test_double_signing_rejected(self, create_tx, multisig):
        tx = await create_tx()
        await multisig.sign(tx.id, "signer_one")

        with pytest.raises(StateConflictError, match="already signed"):
            await multisig.sign(tx.id, "signer_one")

    @pytest.mark.asyncio
    async def test_execute_requires_threshold(self, create_tx, multisig):
        tx = await create_tx()
        await multisig.sign(tx.id, "signer_one")

        with pytest.raises(StateConflictError, match="needs 2 signatures before execution, has 1"):
            await multisig.mark_executed(tx.id, "5igTxRef")

    @pytest.mark.asyncio
    async def test_can_wallet_sign(self, create_tx, multisig):
        tx = await create_tx()
        await multisig.sign(tx.id, "signer_one")

        assert (await multisig.can_wallet_sign(tx.id, "signer_two")).can_sign is True
        assert (await multisig.can_wallet_sign(tx.id, "signer_one")).reason == "Already signed by this wallet"
        assert (await multisig.can_wallet_sign(tx.id, OUTSIDER)).reason == "Wallet not authorized to sign"
        assert (await multisig.can_wallet_sign("msig_missing", OUTSIDER)).reason == "Transaction not found"

    @pytest.mark.asyncio
    async def test_cancelled_transaction_cannot_be_signed(self, create_tx, multisig):
        tx = await create_tx()
        await multisig.cancel(tx.id)

        with pytest.raises(StateConflictError, match="Transaction already cancelled"):
            await multisig.sign(tx.id, "signer_one")
        assert await multisig.get_pending("esc_1") == []

    @pytest.mark.asyncio
    async def test_get_pending(self, create_tx, multisig):
        first = await create_tx()
        second = await create_tx()
        await multisig.sign(second.id, "signer_one")

        pending = await multisig.get_pending("esc_1")

        assert {t.id for t in pending} == {first.id, second.id}

    @pytest.mark.asyncio
    async def test_unknown_transaction(self, multisig):
        with pytest.raises(NotFoundError):
            await multisig.sign("msig_missing", "signer_one")

    @pytest.mark.asyncio
    async def test_execution_time_from_clock(self, create_tx, multisig, clock):
        tx = await create_tx(required=1)
        await multisig.sign(tx.id, "signer_two")
        clock.advance(hours=2)

        executed = await multisig.mark_executed(tx.id, "5igTxRef")

        assert executed.executed_at == clock()


class TestMultiSigAuditTrail:
    """Every multi-sig mutation leaves one audit row on the escrow."""

    @pytest.mark.asyncio
    async def test_sign_is_audited(self, multisig, ctx):
        tx = await multisig.create_transaction("esc_1", BUYER, MultiSigProvider.SQUADS, 2, SIGNERS)

        await multisig.sign(tx.id, "signer_one")

        entries = await ctx.audit.history("esc_1")
        assert [e.action for e in entries] == [ActionType.MULTISIG_CREATED, ActionType.MULTISIG_SIGNED]
        signed = entries[-1]
        assert signed.actor == "signer_one"
        assert signed.metadata["multisig_id"] == tx.id
        assert signed.metadata["signatures"] == 1
        assert await ctx.audit.verify_chain("esc_1") == (True, [])

    @pytest.mark.asyncio
    async def test_execution_and_cancellation_audited(self, multisig, ctx):
        executed = await multisig.create_transaction("esc_1", BUYER, MultiSigProvider.SQUADS, 1, SIGNERS)
        cancelled = await multisig.create_transaction("esc_1", BUYER, MultiSigProvider.SQUADS, 1, SIGNERS)
        await multisig.sign(executed.id, "signer_one")

        await multisig.mark_executed(executed.id, "5igTxRef", actor="signer_one")
        await multisig.cancel(cancelled.id)

        entries = await ctx.audit.history("esc_1")
        assert [e.action for e in entries][-2:] == [
            ActionType.MULTISIG_EXECUTED,
            ActionType.MULTISIG_CANCELLED,
        ]
        assert entries[-2].actor == "signer_one"
        assert entries[-1].actor == BUYER
        assert len(entries) == 5

    @pytest.mark.asyncio
    async def test_rejected_signature_not_audited(self, multisig, ctx):
        tx = await multisig.create_transaction("esc_1", BUYER, MultiSigProvider.SQUADS, 2, SIGNERS)

        with pytest.raises(AuthorizationError):
            await multisig.sign(tx.id, OUTSIDER)

        assert len(await ctx.audit.history("esc_1")) == 1
