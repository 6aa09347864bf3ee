"""Application configuration using Pydantic Settings."""

import os
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from overseer_credits.exceptions import DefaultAdminKeyError, ShortAdminKeyError

# Minimum length for the admin API key in production
MIN_ADMIN_KEY_LENGTH = 32


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

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
    LOG_JSON: bool | None = None  # None = auto-detect from ENVIRONMENT

    # Database
    # NOTE: In production, DATABASE_URL must be set via environment variable
    DATABASE_URL: str = "postgresql+asyncpg://localhost:5432/overseer"
    DB_ECHO: bool = False
    DB_POOL_SIZE: int = 10  # Minimum connections in pool
    DB_POOL_MAX_OVERFLOW: int = 20  # Max additional connections above pool_size
    DB_POOL_TIMEOUT: int = 30  # Seconds to wait for connection from pool
    DB_POOL_RECYCLE: int = 1800  # Recycle connections after 30 minutes

    # Privileged ledger mutations (grant, refund, monthly reset)
    ADMIN_API_KEY: str | None = None

    # Batch processing
    DEFAULT_MODEL: str = "gpt-4o"
    TOKEN_ESTIMATE_MULTIPLIER: float = Field(default=1.2, ge=1.0)
    BATCH_MAX_ITEMS: int = Field(default=1000, gt=0)
    BATCH_SHUTDOWN_TIMEOUT: float = 30.0  # Seconds to let running jobs finish on shutdown

    # LLM providers
    OPENAI_API_KEY: str | None = None
    ANTHROPIC_API_KEY: str | None = None
    LLM_REQUEST_TIMEOUT: float = 120.0

    # Sentry
    SENTRY_DSN: str | None = None
    SENTRY_TRACES_SAMPLE_RATE: float | None = None

    @field_validator("ADMIN_API_KEY")
    @classmethod
    def validate_admin_key(cls, v: str | None) -> str | None:
        """Validate the admin key meets security requirements in production."""
        # ENVIRONMENT may not be validated yet, read it from the process env
        if os.environ.get("ENVIRONMENT", "development") == "production":
            if not v:
                raise DefaultAdminKeyError
            if len(v) < MIN_ADMIN_KEY_LENGTH:
                raise ShortAdminKeyError(MIN_ADMIN_KEY_LENGTH)
        return v

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def creates_schema(self) -> bool:
        """Whether the schema is created from models instead of migrations."""
        return self.ENVIRONMENT in ("development", "test")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
