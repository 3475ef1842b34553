"""
Application Configuration
=========================

Centralized configuration using Pydantic Settings.
Loads from environment variables with validation.
"""

from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    ENVIRONMENT: str = Field(default="development")

    # Server
    PORT: int = Field(default=8000)

    # Database
    DATABASE_URL: str = Field(default="")

    # Redis
    REDIS_URL: str = Field(default="redis://localhost:6379/0")

    # App Configuration
    ALLOWED_ORIGINS: str = Field(default="http://localhost:3000,http://localhost:8000")

    # Cron trigger (Bearer token expected on /api/v1/cron/*)
    CRON_SECRET: str = Field(default="")

    # Store APIs
    STORE_HTTP_TIMEOUT_SECONDS: float = Field(default=15.0)
    STORE_RETRY_ATTEMPTS: int = Field(
        default=1,
        description="Extra attempts after a transient store failure during receipt validation",
    )
    APPLE_SANDBOX_FALLBACK: bool = Field(
        default=True,
        description="Retry against the App Store sandbox host when production answers 404",
    )

    # Outbound webhooks
    WEBHOOK_MAX_ATTEMPTS: int = Field(default=3)
    WEBHOOK_TIMEOUT_SECONDS: float = Field(default=30.0)
    WEBHOOK_BACKOFF_BASE_SECONDS: float = Field(default=1.0)
    WEBHOOK_USER_AGENT: str = Field(default="Entitled-Webhooks/1.0")
    WEBHOOK_WORKER_ENABLED: bool = Field(default=True)

    # Inbound store notifications
    GOOGLE_PUBSUB_AUDIENCE: str = Field(
        default="",
        description="When set, Pub/Sub pushes must carry an OIDC token for this audience",
    )

    # Lifecycle sweep
    EXPIRING_SOON_HOURS: int = Field(default=24)
    RENEWAL_LEEWAY_HOURS: int = Field(
        default=24,
        description="How long an auto-renewing subscription may sit past expiry waiting for a renewal",
    )
    BILLING_RETRY_WINDOW_DAYS: int = Field(default=60)
    SWEEP_BATCH_SIZE: int = Field(default=500)

    # Cache
    SUBSCRIBER_CACHE_TTL: int = Field(default=300)  # 5 minutes
    NOTIFICATION_IDEMPOTENCY_TTL: int = Field(default=86400 * 7)  # 7 days

    @property
    def allowed_origins_list(self) -> List[str]:
        """Parse ALLOWED_ORIGINS into a list."""
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",")]

    @property
    def database_url_async(self) -> str:
        """Convert database URL to async format for asyncpg."""
        if self.DATABASE_URL:
            return self.DATABASE_URL.replace(
                "postgresql://", "postgresql+asyncpg://"
            )
        return ""

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.ENVIRONMENT.lower() == "development"

    @field_validator("WEBHOOK_MAX_ATTEMPTS")
    @classmethod
    def validate_max_attempts(cls, v: int) -> int:
        """At least one delivery attempt is always made."""
        if v < 1:
            raise ValueError("WEBHOOK_MAX_ATTEMPTS must be at least 1")
        return v


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are loaded only once.
    """
    return Settings()


# Export a default settings instance
settings = get_settings()
