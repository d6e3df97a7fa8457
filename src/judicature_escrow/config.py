"""Application configuration via pydantic-settings.

Reads from .env file or environment variables. Values are validated
when the settings object is first built, so a bad value stops startup.

Escrow business rules (fee percent, minimum amount, request expiry) are not
read by the services directly. They are frozen into an ``EscrowPolicy`` and
injected at construction time:

    from judicature_escrow.config import get_settings
    settings = get_settings()
    policy = settings.escrow_policy()
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from judicature_escrow.domain.policy import EscrowPolicy


class Settings(BaseSettings):
    """Central configuration for the Judicature escrow service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Application ---
    app_env: Literal["development", "staging", "production"] = "development"
    app_debug: bool = True
    app_log_level: str = "DEBUG"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    cors_origins: str = "*"

    # --- Database (PostgreSQL) ---
    database_url: str = (
        "postgresql+asyncpg://judicature:judicature_dev"
        "@localhost:5432/judicature_escrow"
    )
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_timeout: int = 30
    db_echo_sql: bool = False

    # --- Redis ---
    redis_url: str = "redis://localhost:6379/0"
    webhook_dedup_ttl_seconds: int = 30 * 86400  # 30 days
    webhook_inflight_ttl_seconds: int = 300

    # --- Stripe ---
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_simulate: bool = True
    stripe_webhook_tolerance_seconds: int = 300

    # --- Escrow rules ---
    platform_fee_percent: float = Field(default=10.0, ge=0, le=100)
    min_amount_minor: int = Field(default=100, ge=1)
    payment_request_expiry_days: int = Field(default=7, ge=1)
    supported_currencies: str = "inr,usd"
    default_currency: str = "inr"

    # --- Collaborators ---
    user_directory_url: str = "http://localhost:8001"
    user_directory_timeout_seconds: float = 5.0
    notifications_channel: str = "judicature.notifications"

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def supported_currency_list(self) -> list[str]:
        """Parse comma-separated currency codes into a lower-cased list."""
        return [c.strip().lower() for c in self.supported_currencies.split(",") if c.strip()]

    def escrow_policy(self) -> EscrowPolicy:
        """Freeze the escrow rules into the immutable policy the services consume."""
        return EscrowPolicy(
            platform_fee_percent=self.platform_fee_percent,
            min_amount=self.min_amount_minor,
            request_expiry_days=self.payment_request_expiry_days,
            supported_currencies=frozenset(self.supported_currency_list),
            default_currency=self.default_currency.lower(),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached singleton of the application settings."""
    return Settings()
