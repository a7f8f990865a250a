"""
Reconciliation Core - Configuration Management

Centralized configuration for the reconciliation engine.
This module ensures:
- No hardcoded credentials
- Matching tolerances and windows live in one place
- Environment-specific settings (dev/staging/prod)
"""

from decimal import Decimal
from typing import List
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
import logging

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when the engine cannot start because configuration is missing."""


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Uses pydantic-settings for validation and type coercion.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ==================== ENVIRONMENT ====================
    ENVIRONMENT: str = Field(
        default="development",
        description="Runtime environment: development, staging, production"
    )
    DEBUG: bool = Field(
        default=False,
        description="Enable debug mode (auto-enabled in development)"
    )

    # ==================== DATABASE ====================
    DATABASE_URL: str = Field(
        default="",
        description="PostgreSQL connection URL (required)"
    )
    POSTGRES_HOST: str = Field(default="")
    POSTGRES_PORT: int = Field(default=5432)
    POSTGRES_DB: str = Field(default="postgres")
    POSTGRES_USER: str = Field(default="")
    POSTGRES_PASSWORD: str = Field(default="")
    POSTGRES_SSLMODE: str = Field(default="")
    DB_POOL_SIZE: int = Field(default=5)
    DB_MAX_OVERFLOW: int = Field(default=10)

    # ==================== OBSERVABILITY ====================
    SENTRY_DSN: str = Field(
        default="",
        description="Sentry DSN for error tracking"
    )
    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level: DEBUG, INFO, WARNING, ERROR"
    )
    LOG_JSON: bool = Field(
        default=False,
        description="Force JSON log output outside production"
    )

    # ==================== API ====================
    INTERNAL_API_KEY: str = Field(
        default="",
        description="Key expected in the X-Internal-Api-Key header"
    )
    INTERNAL_API_KEYS: str = Field(
        default="",
        description="Comma-separated legacy keys still accepted"
    )
    API_TITLE: str = Field(default="Payments Reconciliation Core")
    API_VERSION: str = Field(default="1.0.0")

    # ==================== BATCHING ====================
    PAGE_SIZE: int = Field(
        default=1000,
        description="Rows per paginated read"
    )
    MAX_PAGES: int = Field(
        default=500,
        description="Upper bound on pages per read loop"
    )
    WRITE_BATCH_SIZE: int = Field(
        default=50,
        description="Writes per chunk"
    )
    WRITE_CONCURRENCY: int = Field(
        default=10,
        description="Maximum in-flight writes"
    )
    LEASE_TTL_SECONDS: int = Field(
        default=1800,
        description="Single-writer lease lifetime"
    )

    # ==================== MATCHING ====================
    AMOUNT_TOLERANCE: Decimal = Field(
        default=Decimal("1.00"),
        description="Currency-unit tolerance for email/domain/date strategies"
    )
    ORDER_ID_AMOUNT_TOLERANCE: Decimal = Field(
        default=Decimal("0.01"),
        description="Tolerance used to verify order-id matches"
    )
    DOMAIN_WINDOW_DAYS: int = Field(default=3)
    AMOUNT_DATE_WINDOW_DAYS: int = Field(default=7)
    NAME_WINDOW_DAYS: int = Field(default=5)
    AMOUNT_DATE_ALL_SOURCES: bool = Field(
        default=False,
        description="Run the amount+date fallback for every source, not only those without reliable email"
    )
    DOMAIN_MIN_VOTES: int = Field(default=2)
    NAME_CONTAINMENT_MIN_LENGTH: int = Field(default=5)

    # ==================== DISBURSEMENTS ====================
    DISBURSEMENT_WINDOW_DAYS: int = Field(default=5)
    DISBURSEMENT_TOLERANCE_PERCENT: Decimal = Field(default=Decimal("0.02"))

    # ==================== REPAIR ====================
    REPAIR_DESCRIPTION_PREFIX: int = Field(default=25)
    REPAIR_DELIMITER: str = Field(default=";")
    REPAIR_SKIP_GROUPS: str = Field(
        default="Budget,Balance Adjustment",
        description="Comma-separated extract groups that never reconcile"
    )
    SWEEP_MAX_DAYS: int = Field(
        default=14,
        description="Maximum bank/disbursement date gap before a match is considered false"
    )

    # ==================== REPORTING ====================
    SAMPLE_SIZE: int = Field(
        default=15,
        description="Rows shown in run samples"
    )

    # ==================== COMPUTED PROPERTIES ====================

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.lower() == "development"

    @property
    def debug_enabled(self) -> bool:
        """Enable debug in development or when explicitly set"""
        return self.DEBUG or self.is_development

    @property
    def json_logs(self) -> bool:
        return self.LOG_JSON or self.is_production

    @property
    def repair_skip_groups(self) -> List[str]:
        return [g.strip() for g in self.REPAIR_SKIP_GROUPS.split(",") if g.strip()]

    @property
    def internal_api_keys(self) -> List[str]:
        keys = []
        if self.INTERNAL_API_KEY:
            keys.append(self.INTERNAL_API_KEY)
        if self.INTERNAL_API_KEYS:
            keys.extend(k.strip() for k in self.INTERNAL_API_KEYS.split(",") if k.strip())
        return keys

    def validate_production_config(self) -> List[str]:
        """
        Validate configuration for production deployment.
        Returns list of validation errors.
        """
        errors = []

        if not self.DATABASE_URL and not (self.POSTGRES_HOST and self.POSTGRES_USER):
            errors.append("DATABASE_URL is required")

        if self.is_production:
            if "localhost" in self.DATABASE_URL.lower():
                errors.append("DATABASE_URL cannot point to localhost in production")

            if self.DEBUG:
                errors.append("DEBUG should be False in production")

            if not self.internal_api_keys:
                errors.append("INTERNAL_API_KEY is required in production")

        if self.WRITE_BATCH_SIZE < 1 or self.WRITE_CONCURRENCY < 1 or self.PAGE_SIZE < 1:
            errors.append("PAGE_SIZE, WRITE_BATCH_SIZE and WRITE_CONCURRENCY must be positive")

        return errors

    def get_database_url(self) -> str:
        """Get the appropriate database URL"""
        if self.DATABASE_URL:
            return self.DATABASE_URL

        # Build from components if DATABASE_URL not set
        if self.POSTGRES_HOST and self.POSTGRES_USER and self.POSTGRES_PASSWORD:
            ssl = f"?ssl={self.POSTGRES_SSLMODE}" if self.POSTGRES_SSLMODE else ""
            return f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}{ssl}"

        raise ConfigurationError("No database configuration found. Set DATABASE_URL or POSTGRES_* variables.")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Settings are loaded once and cached for the process lifetime.
    """
    settings = Settings()

    logger.debug(f"Environment: {settings.ENVIRONMENT}")

    if settings.is_production:
        errors = settings.validate_production_config()
        if errors:
            for error in errors:
                logger.error(f"Configuration error: {error}")
            raise ConfigurationError(f"Production configuration invalid: {', '.join(errors)}")

    return settings
