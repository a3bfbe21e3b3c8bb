"""Tests for EscrowSettings."""
from __future__ import annotations

from decimal import Decimal

import pytest
from pydantic import ValidationError

from escrow_engine.config import EscrowSettings
from escrow_engine.fees import FeePolicy


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    for name in ("ENVIRONMENT", "NETWORK", "DATABASE_URL", "ENCRYPTION_KEY", "PLATFORM_FEE_PCT"):
        monkeypatch.delenv(f"ESCROW_{name}", raising=False)


def make(**kwargs) -> EscrowSettings:
    return EscrowSettings(_env_file=None, **kwargs)


class TestDefaults:
    """Tests for environment-dependent defaults."""

    def test_dev_defaults(self):
        settings = make()

        assert settings.fee_pct == Decimal("3")
        assert settings.encryption_key == "00" * 32
        assert settings.uses_postgres is False
        assert settings.unilateral_cancellation_fee is False

    def test_mainnet_fee(self):
        assert make(network="mainnet").fee_pct == Decimal("1")

    def test_explicit_fee_wins(self):
        assert make(network="mainnet", platform_fee_pct=Decimal("2.5")).fee_pct == Decimal("2.5")

    def test_key_required_outside_dev(self):
        with pytest.raises(ValidationError, match="ESCROW_ENCRYPTION_KEY is required"):
            make(environment="prod")


class TestValidation:
    """Tests for field validators."""

    def test_encryption_key_normalized(self):
        assert make(encryption_key="AB" * 32).encryption_key == "ab" * 32

    @pytest.mark.parametrize("key", ["xyz", "ab" * 16])
    def test_bad_encryption_key(self, key):
        with pytest.raises(ValidationError, match="encryption_key"):
            make(encryption_key=key)

    def test_fee_out_of_range(self):
        with pytest.raises(ValidationError, match="platform_fee_pct must be between 0 and 100"):
            make(platform_fee_pct=Decimal("150"))

    def test_cancellation_fee_out_of_range(self):
        with pytest.raises(ValidationError, match="cancellation_fee_pct"):
            make(cancellation_fee_pct=Decimal("-1"))

    def test_heroku_database_url(self):
        settings = make(database_url="postgres://user:pw@db:5432/escrow")

        assert settings.database_url == "postgresql://user:pw@db:5432/escrow"
        assert settings.uses_postgres is True

    def test_database_url_env_fallback(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgresql://db/escrow")

        assert make().database_url == "postgresql://db/escrow"


class TestEnvironment:
    """Tests for loading from ESCROW_ variables."""

    def test_prefixed_variables(self, monkeypatch):
        monkeypatch.setenv("ESCROW_NETWORK", "mainnet")
        monkeypatch.setenv("ESCROW_ADMIN_WALLETS", '["AdminWallet1"]')
        monkeypatch.setenv("ESCROW_UNILATERAL_CANCELLATION_FEE", "true")

        settings = make()

        assert settings.network == "mainnet"
        assert settings.admin_wallets == ["AdminWallet1"]
        assert settings.unilateral_cancellation_fee is True

    def test_fee_policy_from_settings(self):
        settings = make(treasury_wallet="Treasury1", cancellation_fee_pct=Decimal("0.5"))

        policy = FeePolicy.from_settings(settings)

        assert policy.platform_pct == Decimal("3")
        assert policy.cancellation_pct == Decimal("0.5")
        assert policy.treasury_wallet == "Treasury1"
