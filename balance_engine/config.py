import logging
from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Balance engine settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # development | staging | production
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    CURRENCY: str = "NPR"

    # Commission policy
    TIER1_COMMISSION_RATE: Decimal = Decimal("0.65")
    TIER2_COMMISSION_RATE: Decimal = Decimal("0.05")

    # Withdrawals
    MIN_WITHDRAWAL_AMOUNT: Decimal = Decimal("100")

    # Days a commission stays in pending before it can be withdrawn
    HOLDING_PERIOD_DAYS: int = 14

    # Store capability: multi-document transactions
    SUPPORTS_TRANSACTIONS: bool = True

    # None means strict everywhere except production
    STRICT_INVARIANTS: Optional[bool] = None

    # Reconciliation sweep
    SYNC_MAX_WORKERS: int = 4
    RECONCILE_MAX_ATTEMPTS: int = 3

    RECENT_TRANSACTIONS_LIMIT: int = 10

    # Shared secret for the cron trigger
    CRON_SECRET_TOKEN: Optional[str] = None

    @field_validator("TIER1_COMMISSION_RATE", "TIER2_COMMISSION_RATE", mode="before")
    @classmethod
    def parse_rate(cls, v):
        # Rates are stored as percentages in some deployments (65 -> 0.65)
        rate = Decimal(str(v))
        if rate > 1:
            rate = rate / Decimal("100")
        if rate < 0 or rate > 1:
            raise ValueError(f"Commission rate must be between 0 and 100 percent, got {v!r}")
        return rate

    @field_validator("MIN_WITHDRAWAL_AMOUNT")
    @classmethod
    def positive_minimum(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("MIN_WITHDRAWAL_AMOUNT must be positive")
        return v

    @field_validator("HOLDING_PERIOD_DAYS", "RECENT_TRANSACTIONS_LIMIT")
    @classmethod
    def non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("value must not be negative")
        return v

    @field_validator("SYNC_MAX_WORKERS", "RECONCILE_MAX_ATTEMPTS")
    @classmethod
    def at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @property
    def is_production(self) -> bool:
        return (self.ENVIRONMENT or "").strip().lower() == "production"

    @property
    def strict_invariants(self) -> bool:
        if self.STRICT_INVARIANTS is not None:
            return self.STRICT_INVARIANTS
        return not self.is_production


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def configure_logging(settings: Optional[Settings] = None) -> None:
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
