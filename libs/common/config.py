from functools import lru_cache
from typing import Literal, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Global application settings."""

    # Application
    ENVIRONMENT: Literal["local", "test", "development", "production"] = "local"
    LOG_LEVEL: str = "INFO"
    APP_URL: str = "http://localhost:3000"
    TIMEZONE: str = "Africa/Lagos"

    # Database
    DATABASE_URL: str
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 1800

    # Auth (tokens are issued by the identity provider, we only validate them)
    JWT_SECRET: str = "test-jwt-secret"
    JWT_ALGORITHM: str = "HS256"

    # Paystack
    PAYSTACK_SECRET_KEY: str = ""
    PAYSTACK_BASE_URL: str = "https://api.paystack.co"
    PAYSTACK_TIMEOUT_SECONDS: float = 15.0

    # Checkout
    CURRENCY: str = "NGN"
    DELIVERY_FEE_KOBO: int = 200000  # ₦2,000 flat

    # Subscriptions (null limit = unlimited)
    PLAN_PRODUCT_LIMITS: dict[str, Optional[int]] = {
        "free": 10,
        "basic": 20,
        "standard": 50,
        "premium": None,
    }
    PLAN_PRICES_KOBO: dict[str, int] = {
        "free": 0,
        "basic": 500000,
        "standard": 1200000,
        "premium": 2500000,
    }

    # Audit trail
    AUDIT_QUEUE_MAXSIZE: int = 1000
    AUDIT_RETENTION_DAYS: int = 90

    # Rate limiting
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_STORAGE_URI: str = "memory://"
    WEBHOOK_RATE_LIMIT: str = "10/minute"

    # Redis (arq worker)
    REDIS_URL: str = "redis://localhost:6379/0"

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator("DATABASE_URL")
    @classmethod
    def assemble_db_connection(cls, v: Optional[str]) -> str:
        if isinstance(v, str):
            if v.startswith("postgresql://"):
                return v.replace("postgresql://", "postgresql+psycopg://", 1)
        return v

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")


@lru_cache
def get_settings() -> Settings:
    """
    Return the global settings instance, cached.
    """
    return Settings()
