from decimal import Decimal

import pytest
from pydantic import ValidationError as SettingsError

from balance_engine.config import Settings

from .factories import make_settings


class TestSettings:
    def test_defaults(self):
        settings = make_settings()

        assert settings.TIER1_COMMISSION_RATE == Decimal("0.65")
        assert settings.TIER2_COMMISSION_RATE == Decimal("0.05")
        assert settings.MIN_WITHDRAWAL_AMOUNT == Decimal("100")
        assert settings.HOLDING_PERIOD_DAYS == 14
        assert settings.CURRENCY == "NPR"

    def test_percentage_rates_are_normalized(self):
        settings = make_settings(TIER1_COMMISSION_RATE=65, TIER2_COMMISSION_RATE="5")

        assert settings.TIER1_COMMISSION_RATE == Decimal("0.65")
        assert settings.TIER2_COMMISSION_RATE == Decimal("0.05")

    def test_rate_out_of_range(self):
        with pytest.raises(SettingsError):
            make_settings(TIER1_COMMISSION_RATE=-1)

    def test_minimum_must_be_positive(self):
        with pytest.raises(SettingsError):
            make_settings(MIN_WITHDRAWAL_AMOUNT=0)

    def test_environment_variables_are_read(self, monkeypatch):
        monkeypatch.setenv("HOLDING_PERIOD_DAYS", "7")
        monkeypatch.setenv("ENVIRONMENT", "production")

        settings = Settings(_env_file=None)

        assert settings.HOLDING_PERIOD_DAYS == 7
        assert settings.is_production
        assert settings.strict_invariants is False
