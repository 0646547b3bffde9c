"""Application settings for the MealGate entitlement engine."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Centralised configuration loaded from environment variables."""

    model_config = SettingsConfigDict(env_prefix="MEALGATE_", case_sensitive=False)

    app_name: str = "MealGate"
    environment: Literal["development", "staging", "production"] = "development"

    # Database
    data_dir: Path = Field(default_factory=lambda: Path.cwd() / "instance")
    database_url: str | None = None

    # Quotas
    quota_timezone: str = "UTC"
    usage_retention_days: int = 90

    # Subscriptions
    grace_period_days: int = 3
    renewal_reminder_days: int = 3
    monthly_period_days: int = 30
    annual_period_days: int = 365
    transition_retry_limit: int = 5

    # Referrals
    referral_grant_plan: str = "premium"
    referral_grant_days: int = 30
    referral_referrer_points: int = 100
    referral_referrer_credit: float = 10.0
    referral_referrer_extension_days: int = 30
    referral_referee_points: int = 50
    referral_referee_discount: float = 10.0
    referral_discount_valid_days: int = 30
    referral_max_failures: int = 5
    referral_failure_window_seconds: int = 15 * 60
    referral_lockout_seconds: int = 15 * 60

    # Deferred tasks
    task_max_attempts: int = 5
    task_retry_backoff_seconds: int = 60
    task_lease_seconds: int = 300
    task_sweep_interval_seconds: int = 30
    task_sweep_batch_size: int = 100

    # Task queue
    task_queue_backend: Literal["inline", "celery"] = "inline"
    celery_broker_url: str | None = None
    celery_result_backend: str | None = None

    # Stripe / billing
    stripe_api_key: str | None = None
    stripe_webhook_secret: str | None = None

    # Notifications
    smtp_host: str | None = None
    smtp_port: int = 25
    smtp_username: str | None = None
    smtp_password: str | None = None
    smtp_from: str = "noreply@mealgate.app"
    operator_email: str | None = None

    # Service access
    service_token: str | None = None

    # Rate limiting / monitoring
    rate_limit_requests: int = 100
    rate_limit_window_seconds: int = 60
    rate_limit_storage_url: str | None = None
    redis_url: str | None = None
    sentry_dsn: str | None = None
    enable_prometheus: bool = True
    metrics_namespace: str = "mealgate"

    @property
    def resolved_database_url(self) -> str:
        """Return the configured database URL defaulting to a local SQLite file."""
        if self.database_url:
            return self.database_url

        self.data_dir.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{(self.data_dir / 'mealgate.db').as_posix()}"

    @property
    def resolved_rate_limit_storage(self) -> str:
        if self.rate_limit_storage_url:
            return self.rate_limit_storage_url
        if self.redis_url:
            return f"redis://{self.redis_url.split('://')[-1]}"
        return "memory://"


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    settings = Settings()
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    return settings


__all__ = ["Settings", "get_settings"]
