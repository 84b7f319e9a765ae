"""Application settings using Pydantic for environment-based configuration."""
import math
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Longest backoff between gateway retries.
GATEWAY_RETRY_MAX_WAIT_SECONDS = 4.0
# Ledger lock waits one webhook can make: order and payment, then the
# payment again for each unit of work of an automatic refund.
WEBHOOK_LOCK_WAITS = 4
CLAIM_TTL_MARGIN_SECONDS = 10


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Stripe Configuration
    stripe_secret_key: str = Field(..., description="Stripe secret API key (sk_test_...)")
    stripe_webhook_secret: str = Field(..., description="Stripe webhook signing secret")
    stripe_api_version: str = Field(default="2023-10-16", description="Stripe API version")
    webhook_tolerance_seconds: int = Field(
        default=300, description="Max age of a signed Stripe webhook timestamp"
    )

    # Other webhook sources
    shipping_webhook_secret: Optional[str] = Field(
        default=None, description="HMAC secret for shipping carrier webhooks"
    )
    email_webhook_secret: Optional[str] = Field(
        default=None, description="HMAC secret for email provider webhooks"
    )
    custom_webhook_secret: Optional[str] = Field(
        default=None, description="HMAC secret for custom integration webhooks"
    )

    # Ledger / Database Configuration
    ledger_backend: str = Field(default="sql", description="Ledger backend (sql/memory)")
    database_url: str = Field(..., description="PostgreSQL connection URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")
    lock_timeout_seconds: float = Field(
        default=5.0, description="Max wait for a per-order or per-payment row lock"
    )

    # Redis Configuration
    redis_url: str = Field(..., description="Redis connection URL")
    webhook_claim_ttl_seconds: int = Field(
        default=60, description="Minimum time an in-flight webhook claim is held"
    )
    webhook_processed_ttl_seconds: int = Field(
        default=7 * 86400, description="How long processed webhook ids are remembered"
    )
    notification_stream_key: str = Field(
        default="order-engine:notifications", description="Redis stream for notifications"
    )

    # Gateway
    gateway_timeout_seconds: float = Field(default=10.0, description="Per-call gateway timeout")
    gateway_retry_max_attempts: int = Field(default=3, description="Max gateway retry attempts")
    circuit_breaker_failure_threshold: int = Field(
        default=5, description="Consecutive failures before the circuit opens"
    )
    circuit_breaker_recovery_seconds: int = Field(
        default=60, description="Seconds before an open circuit is probed again"
    )

    # Collaborators
    catalog_service_url: Optional[str] = Field(
        default=None, description="Base URL of the catalog/inventory service"
    )
    customer_service_url: Optional[str] = Field(
        default=None, description="Base URL of the customer directory"
    )
    collaborator_timeout_seconds: float = Field(default=5.0, description="HTTP timeout")

    # Orders
    max_line_items: int = Field(default=100, description="Max line items per order")
    order_number_max_retries: int = Field(
        default=5, description="Retries when two orders race for the same number"
    )

    # Stale payment sweep
    stale_payment_minutes: int = Field(
        default=30, description="Age after which a pending payment is re-checked"
    )
    sweep_interval_seconds: int = Field(default=300, description="Sweeper loop interval")
    sweep_batch_size: int = Field(default=100, description="Payments checked per sweep")

    # Application Configuration
    app_name: str = Field(default="order-engine", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("stripe_secret_key")
    @classmethod
    def validate_stripe_key(cls, v: str) -> str:
        """Validate that the Stripe secret key is a test or live key."""
        if not v.startswith("sk_test_") and not v.startswith("sk_live_"):
            raise ValueError(
                "Invalid Stripe secret key format. Must start with 'sk_test_' or 'sk_live_'"
            )
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("ledger_backend")
    @classmethod
    def validate_ledger_backend(cls, v: str) -> str:
        if v.lower() not in ("sql", "memory"):
            raise ValueError("Invalid ledger backend. Must be one of: ['sql', 'memory']")
        return v.lower()

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def claim_ttl_seconds(self) -> int:
        """
        TTL for in-flight webhook claims.

        A claim must outlive the slowest delivery: every ledger lock wait plus
        a fully retried gateway refund. ``webhook_claim_ttl_seconds`` is used
        when it is longer.
        """
        gateway = self.gateway_retry_max_attempts * (
            self.gateway_timeout_seconds + GATEWAY_RETRY_MAX_WAIT_SECONDS
        )
        locks = WEBHOOK_LOCK_WAITS * self.lock_timeout_seconds
        floor = math.ceil(gateway + locks) + CLAIM_TTL_MARGIN_SECONDS
        return max(self.webhook_claim_ttl_seconds, floor)

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_test_mode(self) -> bool:
        """Check if using Stripe test mode."""
        return self.stripe_secret_key.startswith("sk_test_")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
