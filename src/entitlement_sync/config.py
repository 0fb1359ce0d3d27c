"""Application configuration using Pydantic Settings."""

import json
import os
import secrets
import warnings
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from entitlement_sync.exceptions import DefaultSecretKeyError, ShortSecretKeyError

# Minimum length for JWT secret key in production
MIN_JWT_SECRET_LENGTH = 32

# SECURITY: Generate a random secret for development if not explicitly set
_ENV_JWT_SECRET = os.environ.get("JWT_SECRET_KEY")
if _ENV_JWT_SECRET:
    _DEV_JWT_SECRET = _ENV_JWT_SECRET
else:
    _DEV_JWT_SECRET = secrets.token_urlsafe(48)
    if os.environ.get("ENVIRONMENT", "development") != "test":
        warnings.warn(
            "JWT_SECRET_KEY not set - using auto-generated secret. "
            "Tokens issued by the auth service will not validate against this process.",
            stacklevel=2,
        )


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
    PORT: int = 3002
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Database
    # NOTE: In production, DATABASE_URL must be set via environment variable
    DATABASE_URL: str = "postgresql+asyncpg://localhost:5432/entitlements"
    DB_POOL_SIZE: int = 10
    DB_POOL_MAX_OVERFLOW: int = 20
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 1800

    # Redis
    REDIS_URL: str = "redis://localhost:6379"
    CACHE_PREFIX: str = "entitlements:cache:"
    BILLING_STATUS_CACHE_TTL: int = 60

    # Auth
    JWT_SECRET_KEY: str = _DEV_JWT_SECRET
    JWT_ALGORITHM: str = "HS256"

    @field_validator("JWT_SECRET_KEY")
    @classmethod
    def validate_jwt_secret(cls, v: str, _info: object) -> str:
        """Validate JWT secret meets security requirements in production."""
        env = os.environ.get("ENVIRONMENT", "development")
        if env == "production":
            if not os.environ.get("JWT_SECRET_KEY"):
                raise DefaultSecretKeyError
            if len(v) < MIN_JWT_SECRET_LENGTH:
                raise ShortSecretKeyError
        return v

    # Shared secret for the scheduler calling the reconciliation endpoint
    CRON_SECRET: str | None = None

    # Stripe
    STRIPE_SECRET_KEY: str | None = None
    STRIPE_WEBHOOK_SECRET: str | None = None
    STRIPE_WEBHOOK_TOLERANCE: int = 300  # seconds between signature timestamp and now
    STRIPE_API_TIMEOUT: float = 10.0  # seconds per read-back call

    # Price id -> plan code, stored raw to avoid pydantic-settings JSON parsing issues
    STRIPE_PRICE_PLANS_RAW: str = Field(
        default="{}",
        validation_alias="STRIPE_PRICE_PLANS",
    )

    @property
    def STRIPE_PRICE_PLANS(self) -> dict[str, str]:  # noqa: N802 - matches env var name
        """Parse the price mapping from a JSON object or `price=plan` pairs."""
        v = self.STRIPE_PRICE_PLANS_RAW.strip() if self.STRIPE_PRICE_PLANS_RAW else ""
        if not v:
            return {}
        if v.startswith("{"):
            try:
                parsed = json.loads(v)
            except json.JSONDecodeError:
                return {}
            return {str(k): str(p) for k, p in parsed.items()} if isinstance(parsed, dict) else {}
        # Comma-separated pairs (e.g., "price_123=standard,price_456=team")
        pairs = (item.split("=", 1) for item in v.split(",") if "=" in item)
        return {price.strip(): plan.strip() for price, plan in pairs if price.strip()}

    # Metadata key written at checkout time that links a subscription to a user
    USER_ID_METADATA_KEY: str = "user_id"

    # Webhooks
    # When true, provider outages during read-back answer 500 so Stripe redelivers
    WEBHOOK_RETRY_ON_PROVIDER_ERROR: bool = False
    WEBHOOK_DEDUP_WINDOW_DAYS: int = 30  # Stripe retries for up to 3 days; keep markers longer

    # ============== Reconciliation ==============
    RECONCILIATION_ENABLED: bool = True
    RECONCILIATION_INTERVAL_SECONDS: int = 3600
    RECONCILIATION_BATCH_SIZE: int = 100
    RECONCILIATION_MAX_BATCHES: int = 50
    RECONCILIATION_CONCURRENCY: int = 5
    RECONCILIATION_PRO_WITHOUT_SUB_LIMIT: int = 50
    RECONCILIATION_STALE_CUSTOMER_LIMIT: int = 20

    # ============== Billing health ==============
    HEALTH_STUCK_WEBHOOK_MINUTES: int = 30
    HEALTH_RECONCILIATION_MAX_AGE_HOURS: int = 2
    HEALTH_PRO_COUNT_TOLERANCE: float = 0.1
    HEALTH_STRIPE_MAX_PAGES: int = 10

    # Sentry
    SENTRY_DSN: str | None = None
    SENTRY_TRACES_SAMPLE_RATE: float = 0.2
    SENTRY_PROFILES_SAMPLE_RATE: float = 0.1


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
