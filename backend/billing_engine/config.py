"""
Application configuration using pydantic-settings.
Loads environment variables from .env file.

Nested config groups (BillingConfig, SettingsDefaults) are env-overridable
via the double-underscore delimiter, e.g.:
    BILLING__STORAGE_BACKEND=supabase
    BILLING__RUNNER_MAX_CONCURRENCY=4
    BILLING__DEFAULTS__CURRENCY=USD
"""

from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SettingsDefaults(BaseModel):
    """Values a tenant's BillingSettings start with when created lazily."""

    currency: str = "EUR"
    tax_rate: Decimal = Decimal("0")
    invoice_prefix: str = "INV-"
    invoice_number_start: int = 1000
    payment_terms_days: int = 30
    grace_period_days: int = 0
    max_retry_attempts: int = 3
    retry_interval_days: int = 3


class BillingConfig(BaseModel):
    """Billing engine configuration.

    Env-overridable via BILLING__KEY format, e.g.:
        BILLING__STORAGE_BACKEND=supabase
        BILLING__WRITE_MAX_ATTEMPTS=5
    """

    storage_backend: Literal["memory", "supabase"] = "memory"

    # Supabase tables
    billing_cycles_table: str = "billing_cycles"
    plans_table: str = "plans"
    subscriptions_table: str = "subscriptions"
    usage_records_table: str = "usage_records"
    invoices_table: str = "invoices"
    recurring_invoices_table: str = "recurring_invoices"
    billing_settings_table: str = "billing_settings"
    payments_table: str = "payments"

    # Retry policy for the invoice write (transient persistence failures)
    write_max_attempts: int = Field(default=3, ge=1)
    write_backoff_seconds: float = Field(default=0.5, ge=0)
    write_backoff_max_seconds: float = Field(default=5.0, ge=0)

    # Recurring runner: parallelism across distinct subscriptions
    runner_max_concurrency: int = Field(default=1, ge=1)

    defaults: SettingsDefaults = Field(default_factory=SettingsDefaults)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # Supabase
    supabase_url: str = ""
    supabase_secret_key: str = ""

    # App Settings
    debug: bool = False
    cors_origins: list[str] = ["http://localhost:3000"]

    billing: BillingConfig = Field(default_factory=BillingConfig)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
