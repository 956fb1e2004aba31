"""
Application Configuration - Pydantic Settings for type-safe config.

FAIL FAST - Missing verification secrets stop the process at startup,
never per request.
"""

import sys
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_read_url: str | None = None  # Optional read replica
    database_pool_size: int = 10
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations_on_startup: bool = False

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 5000
    api_title: str = "PromptLens API"
    api_version: str = "1.0.0"
    api_description: str = "Authentication, quota and subscription core for PromptLens"
    environment: Literal["development", "production", "test"] = "development"

    # Token verification
    # NEXTAUTH_SECRET decrypts the web session tokens (5 segments),
    # JWT_SECRET verifies and signs backend access tokens (3 segments).
    nextauth_secret: str = ""
    jwt_secret: str = ""
    jwt_issuer: str = "promptlens-backend"
    jwt_expires_days: int = 7
    token_leeway_seconds: int = 0

    # Payment Provider - Razorpay
    razorpay_key_id: str = ""
    razorpay_key_secret: str = ""
    razorpay_webhook_secret: str = ""
    razorpay_pro_monthly_plan_id: str = "plan_pro_monthly_test"
    razorpay_pro_yearly_plan_id: str = "plan_pro_yearly_test"
    razorpay_api_base: str = "https://api.razorpay.com/v1"
    razorpay_subscription_total_count: int = 12
    provider_timeout_seconds: float = 10.0

    # Webhook idempotency ledger
    # "delivery_id" keys on the signed event id; "event_type" keys on the
    # event name, which collapses distinct deliveries of the same type.
    webhook_event_key_strategy: Literal["delivery_id", "event_type"] = "delivery_id"
    processed_event_retention_days: int = 30

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "promptlens-api"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        A process with no way to verify credentials must not start.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if not self.nextauth_secret and not self.jwt_secret:
            errors.append("At least one of NEXTAUTH_SECRET or JWT_SECRET must be set")

        if self.razorpay_key_id and not self.razorpay_key_secret:
            errors.append("RAZORPAY_KEY_SECRET is required when RAZORPAY_KEY_ID is set")

        if self.razorpay_key_id and not self.razorpay_webhook_secret:
            errors.append("RAZORPAY_WEBHOOK_SECRET is required when RAZORPAY_KEY_ID is set")

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def read_database_url(self) -> str:
        """Get read database URL (fallback to primary if no replica)."""
        return self.database_read_url or self.database_url

    @property
    def payment_provider_configured(self) -> bool:
        """True when Razorpay credentials are present."""
        return bool(self.razorpay_key_id and self.razorpay_key_secret)

    @property
    def is_development(self) -> bool:
        return self.environment == "development"


# Global settings instance - validates at import time
settings = Settings()
