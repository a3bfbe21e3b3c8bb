"""PostgreSQL connection management and schema for the escrow engine.

The engine never reaches for a global connection: a ``Database`` instance
is built once at startup and handed to ``PostgresEscrowStore``.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import asyncpg
from asyncpg import Pool

from .exceptions import ExternalFailure
from .retry import DB_RETRY_CONFIG, RetryConfig, retry_async

logger = logging.getLogger(__name__)

# asyncpg errors that mean "the datastore is unreachable", not "bad query"
_TRANSIENT_ERRORS = (
    asyncpg.exceptions.ConnectionDoesNotExistError,
    asyncpg.exceptions.CannotConnectNowError,
    asyncpg.exceptions.TooManyConnectionsError,
    asyncpg.exceptions.SerializationError,
    asyncpg.exceptions.DeadlockDetectedError,
    asyncpg.exceptions.InterfaceError,
    ConnectionError,
    OSError,
    asyncio.TimeoutError,
)


class Database:
    """PostgreSQL connection pool bound to one DSN."""

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 2,
        max_size: int = 10,
        command_timeout: float = 30.0,
        retry_config: RetryConfig = DB_RETRY_CONFIG,
    ) -> None:
        if dsn.startswith("postgres://"):
            dsn = dsn.replace("postgres://", "postgresql://", 1)
        self.dsn = dsn
        self._pool_kwargs: dict[str, Any] = {
            "min_size": min_size,
            "max_size": max_size,
            "command_timeout": command_timeout,
        }
        self._pool: Optional[Pool] = None
        self._retry = retry_config

    async def connect(self) -> Pool:
        """Create the connection pool if it does not exist yet."""
        if self._pool is None:
            try:
                self._pool = await asyncpg.create_pool(self.dsn, **self._pool_kwargs)
            except _TRANSIENT_ERRORS as e:
                raise ExternalFailure(f"Cannot connect to database: {e}", operation="connect") from e
        return self._pool

    async def close(self) -> None:
        """Close the connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None

    @asynccontextmanager
    async def connection(self) -> AsyncGenerator[asyncpg.Connection, None]:
        """Get a connection from the pool."""
        pool = await self.connect()
        try:
            async with pool.acquire() as conn:
                yield conn
        except _TRANSIENT_ERRORS as e:
            raise ExternalFailure(f"Database unavailable: {e}", operation="query") from e

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[asyncpg.Connection, None]:
        """Get a connection with an active transaction."""
        async with self.connection() as conn:
            async with conn.transaction():
                yield conn

    async def execute(self, query: str, *args) -> str:
        async with self.connection() as conn:
            return await conn.execute(query, *args)

    # reads retry transient failures; writes run exactly once

    async def _read(self, method: str, query: str, *args):
        async def run():
            async with self.connection() as conn:
                return await getattr(conn, method)(query, *args)

        return await retry_async(run, config=self._retry)

    async def fetch(self, query: str, *args) -> list:
        return await self._read("fetch", query, *args)

    async def fetchrow(self, query: str, *args):
        return await self._read("fetchrow", query, *args)

    async def fetchval(self, query: str, *args):
        return await self._read("fetchval", query, *args)

    async def init_schema(self) -> None:
        """Create tables if missing. Production deployments run migrations instead."""
        async with self.connection() as conn:
            await conn.execute(SCHEMA_SQL)
        logger.info("Escrow schema initialized")


SCHEMA_SQL = """
-- =============================================================================
-- Escrow engine schema
-- =============================================================================

CREATE TABLE IF NOT EXISTS escrow_contracts (
    id VARCHAR(64) PRIMARY KEY,
    escrow_type VARCHAR(20) NOT NULL,
    buyer_wallet VARCHAR(64) NOT NULL,
    seller_wallet VARCHAR(64) NOT NULL,
    escrow_wallet VARCHAR(64) NOT NULL UNIQUE,
    encrypted_private_key TEXT NOT NULL,
    status VARCHAR(20) NOT NULL DEFAULT 'created',
    buyer_deposited BOOLEAN NOT NULL DEFAULT FALSE,
    seller_deposited BOOLEAN NOT NULL DEFAULT FALSE,
    terms JSONB NOT NULL,
    description TEXT,
    timeout_hours INTEGER NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    funded_at TIMESTAMPTZ,
    completed_at TIMESTAMPTZ,
    cancelled_at TIMESTAMPTZ,
    expires_at TIMESTAMPTZ,
    version INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_escrow_contracts_status ON escrow_contracts(status);

CREATE TABLE IF NOT EXISTS escrow_milestones (
    id VARCHAR(64) PRIMARY KEY,
    escrow_id VARCHAR(64) NOT NULL REFERENCES escrow_contracts(id),
    milestone_order INTEGER NOT NULL,
    description TEXT NOT NULL,
    percentage NUMERIC(9,4) NOT NULL,
    amount NUMERIC(30,9) NOT NULL,
    status VARCHAR(20) NOT NULL DEFAULT 'pending',
    seller_notes TEXT,
    seller_evidence_urls JSONB NOT NULL DEFAULT '[]',
    seller_submitted_at TIMESTAMPTZ,
    buyer_notes TEXT,
    buyer_approved_at TIMESTAMPTZ,
    released_at TIMESTAMPTZ,
    tx_signature VARCHAR(128),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    version INTEGER NOT NULL DEFAULT 0,
    UNIQUE(escrow_id, milestone_order)
);

CREATE TABLE IF NOT EXISTS escrow_deposits (
    id VARCHAR(64) PRIMARY KEY,
    escrow_id VARCHAR(64) NOT NULL REFERENCES escrow_contracts(id),
    depositor_wallet VARCHAR(64) NOT NULL,
    party_role VARCHAR(10) NOT NULL,
    amount NUMERIC(30,9) NOT NULL,
    asset JSONB NOT NULL,
    tx_signature VARCHAR(128) NOT NULL UNIQUE,
    confirmed BOOLEAN NOT NULL DEFAULT FALSE,
    deposited_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    confirmed_at TIMESTAMPTZ,
    version INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_escrow_deposits_escrow ON escrow_deposits(escrow_id);

CREATE TABLE IF NOT EXISTS escrow_disputes (
    id VARCHAR(64) PRIMARY KEY,
    escrow_id VARCHAR(64) NOT NULL REFERENCES escrow_contracts(id),
    milestone_id VARCHAR(64),
    raised_by VARCHAR(64) NOT NULL,
    party_role VARCHAR(10) NOT NULL,
    reason TEXT NOT NULL,
    description TEXT,
    priority VARCHAR(10) NOT NULL DEFAULT 'normal',
    status VARCHAR(20) NOT NULL DEFAULT 'open',
    resolution_action VARCHAR(30),
    resolution_notes TEXT,
    resolved_by VARCHAR(64),
    resolved_at TIMESTAMPTZ,
    resolution_tx_refs JSONB NOT NULL DEFAULT '[]',
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    version INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS escrow_evidence (
    id VARCHAR(64) PRIMARY KEY,
    escrow_id VARCHAR(64) NOT NULL REFERENCES escrow_contracts(id),
    dispute_id VARCHAR(64),
    milestone_id VARCHAR(64),
    submitted_by VARCHAR(64) NOT NULL,
    party_role VARCHAR(10) NOT NULL,
    evidence_type VARCHAR(20) NOT NULL,
    content TEXT,
    file_url TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS escrow_cancellation_requests (
    id VARCHAR(64) PRIMARY KEY,
    escrow_id VARCHAR(64) NOT NULL REFERENCES escrow_contracts(id),
    requested_by VARCHAR(64) NOT NULL,
    reason TEXT NOT NULL,
    buyer_approved BOOLEAN NOT NULL DEFAULT FALSE,
    seller_approved BOOLEAN NOT NULL DEFAULT FALSE,
    buyer_approved_at TIMESTAMPTZ,
    seller_approved_at TIMESTAMPTZ,
    status VARCHAR(20) NOT NULL DEFAULT 'pending',
    refund_tx_refs JSONB NOT NULL DEFAULT '[]',
    executed_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    version INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS escrow_timeouts (
    id VARCHAR(64) PRIMARY KEY,
    escrow_id VARCHAR(64) NOT NULL REFERENCES escrow_contracts(id),
    timeout_type VARCHAR(30) NOT NULL,
    expires_at TIMESTAMPTZ NOT NULL,
    warning_at TIMESTAMPTZ,
    warning_sent BOOLEAN NOT NULL DEFAULT FALSE,
    expired BOOLEAN NOT NULL DEFAULT FALSE,
    resolved BOOLEAN NOT NULL DEFAULT FALSE,
    resolution TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    resolved_at TIMESTAMPTZ,
    version INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_escrow_timeouts_open
    ON escrow_timeouts(expires_at) WHERE resolved = FALSE;

CREATE TABLE IF NOT EXISTS escrow_multisig_transactions (
    id VARCHAR(64) PRIMARY KEY,
    escrow_id VARCHAR(64) NOT NULL REFERENCES escrow_contracts(id),
    multisig_wallet VARCHAR(64) NOT NULL,
    provider VARCHAR(10) NOT NULL,
    required_signatures INTEGER NOT NULL,
    authorized_signers JSONB NOT NULL,
    signed_by JSONB NOT NULL DEFAULT '[]',
    status VARCHAR(20) NOT NULL DEFAULT 'pending',
    transaction_data TEXT NOT NULL DEFAULT '',
    tx_signature VARCHAR(128),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    executed_at TIMESTAMPTZ,
    version INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS escrow_releases (
    id VARCHAR(64) PRIMARY KEY,
    escrow_id VARCHAR(64) NOT NULL REFERENCES escrow_contracts(id),
    event_key VARCHAR(128) NOT NULL,
    release_type VARCHAR(30) NOT NULL,
    asset JSONB NOT NULL,
    transfers JSONB NOT NULL,
    status VARCHAR(20) NOT NULL DEFAULT 'pending',
    tx_signature VARCHAR(128),
    payload TEXT,
    error TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    confirmed_at TIMESTAMPTZ,
    version INTEGER NOT NULL DEFAULT 0,
    UNIQUE(escrow_id, event_key)
);

-- Append-only audit trail; survives contract deletion
CREATE TABLE IF NOT EXISTS escrow_actions (
    id VARCHAR(64) PRIMARY KEY,
    escrow_id VARCHAR(64) NOT NULL,
    milestone_id VARCHAR(64),
    actor_wallet VARCHAR(64) NOT NULL,
    action_type VARCHAR(20) NOT NULL,
    notes TEXT,
    metadata JSONB NOT NULL DEFAULT '{}',
    previous_hash VARCHAR(64) NOT NULL DEFAULT '',
    entry_hash VARCHAR(64) NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_escrow_actions_escrow ON escrow_actions(escrow_id, created_at);

CREATE TABLE IF NOT EXISTS escrow_admin_actions (
    id VARCHAR(64) PRIMARY KEY,
    escrow_id VARCHAR(64) NOT NULL,
    dispute_id VARCHAR(64),
    timeout_id VARCHAR(64),
    admin_wallet VARCHAR(64) NOT NULL,
    action VARCHAR(30) NOT NULL,
    decision TEXT NOT NULL,
    notes TEXT NOT NULL,
    amount_to_buyer NUMERIC(30,9),
    amount_to_seller NUMERIC(30,9),
    tx_refs JSONB NOT NULL DEFAULT '[]',
    metadata JSONB NOT NULL DEFAULT '{}',
    resolved BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS escrow_key_access_log (
    id VARCHAR(64) PRIMARY KEY,
    escrow_id VARCHAR(64),
    operation VARCHAR(20) NOT NULL,
    actor VARCHAR(64) NOT NULL,
    purpose TEXT NOT NULL,
    success BOOLEAN NOT NULL,
    key_fingerprint VARCHAR(16),
    error TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""
