"""
config.py - Centralized Application Settings

PURPOSE:
    Single pydantic-settings model shared by every service module. Values come from
    environment variables (or a local .env file) and fall back to development defaults.

KEY GROUPS:
    - Database: PostgreSQL connection parts, or DATABASE_URL to override everything
    - Messaging: Kafka bootstrap servers and an on/off switch for the outbox publisher
    - Redis: rate limiting state for /checkout/verify
    - Paystack: secret key (also the webhook HMAC key), API base URL, currency
    - Checkout timing: hold TTL, sweep interval, retry bounds and backoff
    - SMTP: order confirmation emails

USAGE:
    from shared.config import get_settings
    settings = get_settings()
    settings.hold_ttl_seconds  # 900
"""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    service_name: str = "ordering-service"
    service_port: int = 8000
    log_level: str = "INFO"

    # Database
    postgres_user: str = "postgres"
    postgres_password: str = "postgres"
    postgres_host: str = "localhost"
    postgres_port: str = "5432"
    postgres_db: str = "ecom_orders"
    database_url: Optional[str] = None

    # Messaging
    kafka_bootstrap_servers: str = "localhost:9092"
    kafka_enabled: bool = False
    outbox_poll_interval_seconds: int = 2

    # Redis
    redis_url: str = "redis://localhost:6379/0"

    # Paystack
    paystack_secret_key: str = ""
    paystack_base_url: str = "https://api.paystack.co"
    paystack_currency: str = "NGN"
    client_success_url: str = "http://localhost:3000"

    # Auth
    access_token_secret: str = "change-me"

    # Checkout timing
    hold_ttl_seconds: int = 15 * 60
    sweep_interval_seconds: int = 30 * 60
    materializer_max_retries: int = 3
    materializer_retry_delay_seconds: float = 1.0
    webhook_max_retries: int = 3
    webhook_retry_base_delay_seconds: float = 1.0

    # /checkout/verify rate limit: 100 requests per 15 minutes per client
    verify_rate_limit: int = 100
    verify_rate_window_seconds: int = 15 * 60

    # SMTP
    smtp_host: str = "localhost"
    smtp_port: int = 1025
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_from: str = "noreply@ecom-orders.local"
    smtp_use_tls: bool = False

    @property
    def sqlalchemy_url(self) -> str:
        """Connection URL, preferring an explicit DATABASE_URL."""
        if self.database_url:
            return self.database_url
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}@"
            f"{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide settings instance."""
    return Settings()
