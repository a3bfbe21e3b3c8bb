"""Configuration surface for the escrow engine."""
from __future__ import annotations

import logging
import os
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings

from .constants import FeeDefaults, LedgerDefaults, MilestoneLimits
from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# Well-known all-zero key used only when nothing is configured in dev
_DEV_ENCRYPTION_KEY = "00" * 32


class EscrowSettings(BaseSettings):
    """Main escrow engine configuration."""

    # Environment
    environment: Literal["dev", "sandbox", "prod"] = "dev"
    network: Literal["devnet", "testnet", "mainnet"] = "devnet"

    # Database - PostgreSQL; empty means the in-memory store
    database_url: str = ""

    # Fees (percent)
    platform_fee_pct: Optional[Decimal] = None
    cancellation_fee_pct: Decimal = FeeDefaults.CANCELLATION_FEE_PCT
    treasury_wallet: str = ""
    # Whether a unilateral cancel of a never-funded contract charges the
    # cancellation fee on refunded partial deposits
    unilateral_cancellation_fee: bool = False

    # Custody
    encryption_key: str = ""

    # Ledger
    rpc_url: str = "https://api.devnet.solana.com"
    rpc_timeout_seconds: float = LedgerDefaults.RPC_TIMEOUT_SECONDS
    commitment: Literal["processed", "confirmed", "finalized"] = "confirmed"
    confirmation_poll_interval: float = LedgerDefaults.CONFIRMATION_POLL_INTERVAL
    confirmation_max_polls: int = LedgerDefaults.CONFIRMATION_MAX_POLLS

    # Periodic scans
    deposit_scan_interval_seconds: int = 60
    timeout_scan_interval_seconds: int = 300

    # Administration: wallets allowed to resolve disputes and timeouts
    admin_wallets: list[str] = []

    # Milestones
    max_milestones: int = MilestoneLimits.MAX_MILESTONES

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    class Config:
        env_prefix = "ESCROW_"
        env_file = ".env"
        extra = "ignore"

    @field_validator("database_url", mode="before")
    @classmethod
    def normalize_database_url(cls, v: Optional[str]) -> str:
        """Fall back to DATABASE_URL and accept Heroku-style postgres:// DSNs."""
        if not v:
            v = os.getenv("DATABASE_URL", "")
        if v.startswith("postgres://"):
            v = v.replace("postgres://", "postgresql://", 1)
        return v

    @field_validator("cancellation_fee_pct")
    @classmethod
    def validate_cancellation_fee(cls, v: Decimal) -> Decimal:
        if v < 0 or v > 100:
            raise ValueError("cancellation_fee_pct must be between 0 and 100")
        return v

    @field_validator("encryption_key")
    @classmethod
    def validate_encryption_key(cls, v: str) -> str:
        if not v:
            return v
        try:
            raw = bytes.fromhex(v)
        except ValueError as e:
            raise ValueError("encryption_key must be hex encoded") from e
        if len(raw) != 32:
            raise ValueError(
                "encryption_key must be 64 hex characters (32 bytes). "
                "Generate with: python -c \"import secrets; print(secrets.token_hex(32))\""
            )
        return v.lower()

    @model_validator(mode="after")
    def apply_environment_defaults(self) -> "EscrowSettings":
        if self.platform_fee_pct is None:
            self.platform_fee_pct = (
                FeeDefaults.MAINNET_PLATFORM_FEE_PCT
                if self.network == "mainnet"
                else FeeDefaults.PLATFORM_FEE_PCT
            )
        if self.platform_fee_pct < 0 or self.platform_fee_pct > 100:
            raise ValueError("platform_fee_pct must be between 0 and 100")
        if self.platform_fee_pct == 0:
            logger.warning("Platform fee is 0%%; no fees will be collected")
        elif self.platform_fee_pct > FeeDefaults.HIGH_FEE_WARNING_PCT:
            logger.warning(
                "Platform fee %s%% is unusually high (> %s%%)",
                self.platform_fee_pct,
                FeeDefaults.HIGH_FEE_WARNING_PCT,
            )

        if not self.encryption_key:
            if self.environment != "dev":
                raise ValueError(
                    "ESCROW_ENCRYPTION_KEY is required outside the dev environment"
                )
            self.encryption_key = _DEV_ENCRYPTION_KEY
        return self

    @property
    def fee_pct(self) -> Decimal:
        if self.platform_fee_pct is None:
            raise ConfigurationError("Platform fee percentage was not resolved")
        return self.platform_fee_pct

    @property
    def uses_postgres(self) -> bool:
        return self.database_url.startswith("postgresql://")


@lru_cache
def load_settings(env_file: str | None = None) -> EscrowSettings:
    """Load EscrowSettings once per process to keep services consistent."""
    env_path = Path(env_file) if env_file else None
    return EscrowSettings(_env_file=env_path)
