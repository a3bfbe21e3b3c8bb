"""Tests for the PostgreSQL store's row mapping, using a mocked Database."""
from __future__ import annotations

from contextlib import asynccontextmanager
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import BUYER, SELLER
from escrow_engine.engines.milestone import MilestoneInput
from escrow_engine.database import Database
from escrow_engine.exceptions import ExternalFailure, StateConflictError
from escrow_engine.models import SOL, USDC, EscrowKind, EscrowStatus
from escrow_engine.retry import RetryConfig, RetryExhausted
from escrow_engine.store.postgres import PostgresEscrowStore, terms_from_json, terms_to_json

CONTRACT_COLUMNS = (
    "id", "escrow_type", "buyer_wallet", "seller_wallet", "escrow_wallet",
    "encrypted_private_key", "status", "buyer_deposited", "seller_deposited",
    "terms", "description", "timeout_hours", "created_at", "funded_at",
    "completed_at", "cancelled_at", "expires_at", "version",
)


@pytest.fixture
def db():
    database = MagicMock()
    database.execute = AsyncMock(return_value="UPDATE 1")
    database.fetchrow = AsyncMock(return_value=None)
    database.fetch = AsyncMock(return_value=[])
    return database


@pytest.fixture
def pg_store(db):
    return PostgresEscrowStore(db)


class TestTermsCodec:
    """Tests for the JSON encoding of kind-specific terms."""

    @pytest.mark.asyncio
    async def test_traditional_terms(self, traditional, fund, ctx):
        contract = await traditional.create(BUYER, SELLER, "100", "10", USDC)
        await fund(contract, BUYER)
        await fund(contract, SELLER)
        confirmed = await traditional.confirm(contract.id, BUYER)

        decoded = terms_from_json(EscrowKind.TRADITIONAL, terms_to_json(confirmed.terms))

        assert decoded == confirmed.terms
        assert decoded.buyer_confirmed_at is not None

    @pytest.mark.asyncio
    async def test_swap_terms(self, swaps):
        contract = await swaps.create(BUYER, SELLER, SOL, "2", USDC, "300")

        encoded = terms_to_json(contract.terms)

        assert encoded["amount_a"] == "2"
        assert encoded["asset_b"]["mint"] == USDC.mint
        assert terms_from_json(EscrowKind.ATOMIC_SWAP, encoded) == contract.terms

    @pytest.mark.asyncio
    async def test_milestone_terms_use_historical_kind(self, milestones):
        contract, _ = await milestones.create(
            BUYER, SELLER, "500", USDC, [MilestoneInput("Draft", 50), MilestoneInput("Final", 50)]
        )

        assert contract.kind.value == "simple_buyer"
        assert terms_from_json(EscrowKind("simple_buyer"), terms_to_json(contract.terms)).total_amount == Decimal("500")


class TestContracts:
    """Tests for contract rows."""

    @pytest.mark.asyncio
    async def test_inserted_row_reads_back(self, traditional, pg_store, db):
        contract = await traditional.create(BUYER, SELLER, "100", "10", USDC, description="Logo design")

        await pg_store.insert_contract(contract)
        row = dict(zip(CONTRACT_COLUMNS, db.execute.await_args.args[1:]))
        db.fetchrow.return_value = row
        loaded = await pg_store.get_contract(contract.id)

        assert row["escrow_type"] == "traditional"
        assert loaded == contract

    @pytest.mark.asyncio
    async def test_update_increments_version(self, traditional, pg_store, db):
        contract = await traditional.create(BUYER, SELLER, "100", "10", USDC)

        updated = await pg_store.update_contract(contract)

        query, escrow_id, version = db.execute.await_args.args[:3]
        assert "WHERE id = $1 AND version = $2" in query
        assert (escrow_id, version) == (contract.id, contract.version)
        assert updated.version == contract.version + 1

    @pytest.mark.asyncio
    async def test_stale_update_conflicts(self, traditional, pg_store, db):
        contract = await traditional.create(BUYER, SELLER, "100", "10", USDC)
        db.execute.return_value = "UPDATE 0"

        with pytest.raises(StateConflictError, match="modified concurrently"):
            await pg_store.update_contract(contract)

    @pytest.mark.asyncio
    async def test_list_by_status(self, pg_store, db):
        await pg_store.list_contracts([EscrowStatus.CREATED, EscrowStatus.BUYER_DEPOSITED])

        query, statuses, limit = db.fetch.await_args.args
        assert "ANY($1::text[])" in query
        assert statuses == ["created", "buyer_deposited"]
        assert limit == 500

    @pytest.mark.asyncio
    async def test_missing_contract(self, pg_store):
        assert await pg_store.get_contract("esc_missing") is None


class TestDatabaseReads:
    """Tests for read retries on the connection pool wrapper."""

    @staticmethod
    def _database(monkeypatch, conn) -> Database:
        database = Database(
            "postgres://user:pw@db:5432/escrow",
            retry_config=RetryConfig(max_retries=2, base_delay=0, jitter=0),
        )

        @asynccontextmanager
        async def connection():
            yield conn

        monkeypatch.setattr(database, "connection", connection)
        return database

    def test_heroku_dsn_normalized(self, monkeypatch):
        assert self._database(monkeypatch, MagicMock()).dsn.startswith("postgresql://")

    @pytest.mark.asyncio
    async def test_read_retried_after_transient_failure(self, monkeypatch):
        conn = MagicMock()
        conn.fetchrow = AsyncMock(side_effect=[ExternalFailure("Database unavailable"), {"id": "esc_1"}])
        database = self._database(monkeypatch, conn)

        assert await database.fetchrow("SELECT * FROM escrow_contracts WHERE id = $1", "esc_1") == {"id": "esc_1"}
        assert conn.fetchrow.await_count == 2

    @pytest.mark.asyncio
    async def test_read_gives_up(self, monkeypatch):
        conn = MagicMock()
        conn.fetch = AsyncMock(side_effect=ExternalFailure("Database unavailable"))
        database = self._database(monkeypatch, conn)

        with pytest.raises(RetryExhausted):
            await database.fetch("SELECT * FROM escrow_contracts")
        assert conn.fetch.await_count == 3

    @pytest.mark.asyncio
    async def test_write_runs_once(self, monkeypatch):
        conn = MagicMock()
        conn.execute = AsyncMock(side_effect=ExternalFailure("Database unavailable"))
        database = self._database(monkeypatch, conn)

        with pytest.raises(ExternalFailure):
            await database.execute("UPDATE escrow_contracts SET version = version + 1")
        assert conn.execute.await_count == 1
