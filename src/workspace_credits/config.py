"""Credit ledger configuration using Pydantic Settings."""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Credit ledger settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Application
    VERSION: str = "0.1.0"
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Redis (balance and reservation store)
    REDIS_URL: str = "redis://localhost:6379"
    REDIS_KEY_PREFIX: str = "credits"

    # Error tracking
    SENTRY_DSN: str | None = None

    # ============== Reservations ==============
    RESERVATION_TTL_SECONDS: int = Field(default=15 * 60, gt=0)
    CREDIT_MAX_RETRIES: int = Field(default=3, ge=0)

    # Feature flags, used to roll out checks without a redeploy
    ENABLE_CREDIT_VALIDATION: bool = True
    ENABLE_CREDIT_DEDUCTION: bool = True
    ENABLE_SPENDING_LIMIT_CHECKS: bool = True

    # ============== Sweeper ==============
    SWEEPER_INTERVAL_SECONDS: float = Field(default=300.0, gt=0)

    # Platform markup applied to provider-reported costs (5.5%)
    TOOL_MARKUP_RATE: float = Field(default=0.055, ge=0)

    @property
    def is_production(self) -> bool:
        """Whether the service runs in production."""
        return self.ENVIRONMENT == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
