"""
Application configuration using pydantic-settings.
Loads environment variables from .env file.

Nested config groups (SubscriptionConfig, SchedulerConfig, StripeConfig) are
env-overridable via the double-underscore delimiter, e.g.:
    SUBSCRIPTION__QUOTA_RESET_POLICY=full_grant
    SCHEDULER__EXPIRY_HOUR_UTC=4
    STRIPE__WEBHOOK_SECRET=whsec_...
"""

from enum import Enum
from functools import lru_cache

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class QuotaResetPolicy(str, Enum):
    """How the anniversary reset replenishes quota."""

    # Each period adds quota_total * period / duration, capped at quota_total
    CUMULATIVE_TRANCHE = "cumulative_tranche"
    # Each period restores quota_total
    FULL_GRANT = "full_grant"


class SubscriptionConfig(BaseModel):
    """Lifecycle policy parameters."""

    trial_duration_days: int = 7
    trial_quota: int = 1
    quota_period_days: int = 30
    quota_reset_policy: QuotaResetPolicy = QuotaResetPolicy.CUMULATIVE_TRANCHE
    # activate_tier grants quota_grant * (1 - discount%); false keeps the full grant
    discount_scales_quota: bool = True
    # Conditional-write attempts before giving up with InvalidTransition
    max_write_attempts: int = Field(default=3, ge=1)


class SchedulerConfig(BaseModel):
    """Daily sweep timing (UTC)."""

    enabled: bool = True
    expiry_hour_utc: int = Field(default=2, ge=0, le=23)
    quota_reset_hour_utc: int = Field(default=3, ge=0, le=23)


class StripeConfig(BaseModel):
    """Stripe webhook verification."""

    secret_key: str = ""
    webhook_secret: str = ""


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
    entitlements_table: str = "entitlements"
    webhook_events_table: str = "payment_webhook_events"
    # Concurrent conditional writes during a bulk sweep
    store_write_concurrency: int = Field(default=10, ge=1)

    # Shared key for admin/scheduler endpoints
    admin_api_key: str = ""

    # App Settings
    debug: bool = False
    cors_origins: list[str] = ["http://localhost:3000"]

    # Nested config groups (env-overridable via SECTION__KEY format)
    subscription: SubscriptionConfig = Field(default_factory=SubscriptionConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    stripe: StripeConfig = Field(default_factory=StripeConfig)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
