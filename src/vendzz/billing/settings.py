"""Centralized configuration using pydantic-settings.

All configuration is loaded from environment variables and .env files.
This is the single source of truth for billing engine configuration; the
resulting ``Settings`` object is passed explicitly to every component.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Application environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TEST = "test"


class GatewayKind(str, Enum):
    """Supported payment gateway implementations."""

    STRIPE = "stripe"
    PAGARME = "pagarme"
    NULL = "null"


class GatewayConfig(BaseModel):
    """A single configured payment gateway."""

    name: str = Field(..., description="Unique gateway name, stored on customers and subscriptions")
    kind: GatewayKind = Field(..., description="Adapter implementation")
    priority: int = Field(100, description="Selection priority (lower wins)")
    markets: list[str] = Field(
        default_factory=list,
        description="Locales or country codes this gateway is preferred for (e.g. pt-BR, BR)",
    )
    api_key: str | None = Field(None, description="Provider secret API key")
    webhook_secret: str | None = Field(None, description="Default webhook signing secret")
    base_url: str | None = Field(None, description="Override provider API base URL")
    is_async: bool = Field(
        False, description="Charges settle asynchronously via webhook (null gateway only)"
    )


class Settings(BaseSettings):
    """Main billing engine settings.

    All settings can be overridden via environment variables.
    For nested settings, use double underscore: SWEEP__MAX_CONCURRENCY=20
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    # ============================================================
    # Core Application Settings
    # ============================================================

    app_name: str = Field("vendzz-billing", description="Application name")
    app_version: str = Field("1.0.0", description="Application version")
    environment: Environment = Field(Environment.DEVELOPMENT, description="Deployment environment")
    debug: bool = Field(False, description="Debug mode")
    testing: bool = Field(False, description="Testing mode")

    # ============================================================
    # Database Configuration
    # ============================================================

    class DatabaseSettings(BaseModel):
        """Database configuration."""

        url: str | None = Field(None, description="Full async database URL")
        host: str = Field("localhost", description="Database host")
        port: int = Field(5432, description="Database port")
        database: str = Field("vendzz", description="Database name")
        username: str = Field("vendzz", description="Database username")
        password: str = Field("", description="Database password")

        pool_size: int = Field(10, description="Connection pool size")
        max_overflow: int = Field(20, description="Max overflow connections")
        pool_pre_ping: bool = Field(True, description="Test connections before use")
        echo: bool = Field(False, description="Echo SQL statements")

        @property
        def sqlalchemy_url(self) -> str:
            """Build SQLAlchemy async database URL."""
            if self.url:
                return self.url
            if not self.password:
                return "sqlite+aiosqlite:///./vendzz_billing.sqlite"
            return (
                f"postgresql+asyncpg://{self.username}:{self.password}"
                f"@{self.host}:{self.port}/{self.database}"
            )

    database: DatabaseSettings = DatabaseSettings()  # type: ignore[call-arg]

    # ============================================================
    # Observability
    # ============================================================

    class ObservabilitySettings(BaseModel):
        """Logging configuration."""

        log_level: str = Field("INFO", description="Root log level")
        log_format: str = Field("json", description="Log renderer: json or console")
        enable_correlation_ids: bool = Field(True, description="Add thread name to log records")

    observability: ObservabilitySettings = ObservabilitySettings()  # type: ignore[call-arg]

    # ============================================================
    # Billing Configuration
    # ============================================================

    class BillingSettings(BaseModel):
        """Billing lifecycle configuration."""

        default_currency: str = Field("BRL", description="Default currency for new products")
        delegate_recurring_to_gateway: bool = Field(
            False,
            description="Create gateway-native recurring subscriptions when a plan ref exists",
        )
        retry_backoff_hours: list[int] = Field(
            default_factory=lambda: [24, 72, 168],
            description="Cooldown before retrying a past_due subscription, per failed attempt",
        )

    billing: BillingSettings = BillingSettings()  # type: ignore[call-arg]

    # ============================================================
    # Billing Sweep
    # ============================================================

    class SweepSettings(BaseModel):
        """Billing sweep configuration."""

        enabled: bool = Field(True, description="Register the periodic sweep task")
        secret: str = Field("change-me-sweep-secret", description="Shared secret for the trigger")
        interval_seconds: int = Field(300, description="Periodic sweep interval")
        batch_size: int = Field(500, description="Max subscriptions selected per sweep")
        max_concurrency: int = Field(10, description="Subscriptions charged in parallel")
        claim_ttl_seconds: int = Field(
            900, description="Age after which an abandoned claim may be taken over"
        )

    sweep: SweepSettings = SweepSettings()  # type: ignore[call-arg]

    # ============================================================
    # Payment Gateways
    # ============================================================

    class GatewaySettings(BaseModel):
        """Payment gateway configuration."""

        timeout_seconds: float = Field(20.0, description="Per-call gateway timeout")
        gateways: list[GatewayConfig] = Field(
            default_factory=list, description="Configured gateways"
        )
        tenant_gateways: dict[str, list[str]] = Field(
            default_factory=dict, description="Gateways enabled per tenant (default: all)"
        )
        webhook_secrets: dict[str, dict[str, str]] = Field(
            default_factory=dict,
            description="Per-tenant webhook secrets: {tenant_id: {gateway_name: secret}}",
        )

    gateways: GatewaySettings = GatewaySettings()  # type: ignore[call-arg]

    # ============================================================
    # Celery
    # ============================================================

    class CelerySettings(BaseModel):
        """Celery configuration."""

        broker_url: str = Field("redis://localhost:6379/0", description="Celery broker URL")
        result_backend: str = Field("redis://localhost:6379/1", description="Result backend")

    celery: CelerySettings = CelerySettings()  # type: ignore[call-arg]

    # ============================================================
    # Validation & Helpers
    # ============================================================

    @field_validator("environment", mode="before")
    @classmethod
    def validate_environment(cls, v: Any) -> Any:
        """Validate environment."""
        if isinstance(v, str):
            return Environment(v.lower())
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == Environment.PRODUCTION

    @property
    def is_testing(self) -> bool:
        """Check if running in test mode."""
        return self.testing or self.environment == Environment.TEST


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get global settings instance (singleton)."""
    global _settings
    if _settings is None:
        _settings = Settings()  # type: ignore
    return _settings


def reset_settings() -> None:
    """Reset settings (mainly for testing)."""
    global _settings
    _settings = None
