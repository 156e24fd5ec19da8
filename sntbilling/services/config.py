"""Billing engine configuration from environment variables and .env file."""

from decimal import Decimal
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BillingSettings(BaseSettings):
    """Billing settings loaded from BILLING_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="BILLING_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Database
    database_url: str = Field(
        default="sqlite:///./sntbilling.db",
        description="SQLAlchemy database URL",
    )
    database_echo: bool = Field(default=False, description="Log SQL queries")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_file: str = Field(default="logs/billing.log", description="Log file path")

    # Penalty policy
    penalty_annual_rate: Decimal = Field(
        default=Decimal("0.1"),
        ge=0,
        description="Default annual penalty rate (0.1 = 10% per year)",
    )
    penalty_min_amount: Decimal = Field(
        default=Decimal("0"),
        ge=0,
        description="Penalties below this amount are not created",
    )
    penalty_policy_version: str = Field(
        default="v1.0",
        description="Policy version stamped on every penalty calculation",
    )
    recalc_sample_size: int = Field(
        default=5,
        ge=0,
        description="Number of before/after samples returned by recalculation",
    )

    # Import
    default_payment_category: str = Field(
        default="membership",
        description="Category for imported payments that carry no category hint",
    )


@lru_cache
def get_settings() -> BillingSettings:
    """Return the process-wide settings instance."""
    return BillingSettings()


__all__ = ["BillingSettings", "get_settings"]
