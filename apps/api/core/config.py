"""
Centralized configuration management with validation.

All environment variables are loaded and validated here.
Runtime-editable values (delivery slots, message templates) live in the
database and are read through services.settings_service instead.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    """Application settings with validation."""

    # Pydantic v2 configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"
    )

    # Database Configuration
    POSTGRES_USER: str = Field(default="postgres")
    POSTGRES_PASSWORD: str = Field(default="postgres")
    POSTGRES_DB: str = Field(default="dailypath")
    POSTGRES_HOST: str = Field(default="postgres")
    POSTGRES_PORT: int = Field(default=5432)
    # Full URL override (e.g. sqlite for local runs). Takes precedence over POSTGRES_*.
    DATABASE_URL: Optional[str] = Field(default=None)

    # Database Pool Configuration
    DB_POOL_SIZE: int = Field(default=10)
    DB_MAX_OVERFLOW: int = Field(default=10)
    DB_POOL_TIMEOUT: int = Field(default=30)
    DB_POOL_RECYCLE: int = Field(default=3600)  # 1 hour

    # Redis Configuration
    REDIS_URL: str = Field(default="redis://redis:6379/0")

    # Celery Configuration
    CELERY_BROKER_URL: str = Field(default="redis://redis:6379/0")
    CELERY_RESULT_BACKEND: str = Field(default="redis://redis:6379/0")

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")  # json or text

    # Telegram Bot API (outbound messages + gift deep links)
    BOT_TOKEN: Optional[str] = Field(default=None)
    BOT_USERNAME: Optional[str] = Field(default=None)
    TELEGRAM_API_URL: str = Field(default="https://api.telegram.org")

    # Shared secret for bot -> API calls on the internal routers
    INTERNAL_API_TOKEN: Optional[str] = Field(default=None)

    # Delivery schedule defaults (HH:MM local time). The app_settings table wins.
    # Leaving a slot unset disables it; there is no implicit default time.
    MORNING_TIME: Optional[str] = Field(default=None)
    EVENING_TIME: Optional[str] = Field(default=None)
    SETTINGS_CACHE_TTL_S: int = Field(default=60)

    # External API Configuration
    EXTERNAL_API_TIMEOUT: int = Field(default=15)

    # Payments: when enabled, checkout skips gateway I/O and grants immediately
    PAYMENTS_TEST_MODE: bool = Field(default=False)

    # Stripe (card checkout)
    STRIPE_SECRET_KEY: Optional[str] = Field(default=None)
    STRIPE_WEBHOOK_SECRET: Optional[str] = Field(default=None)
    STRIPE_CURRENCY: str = Field(default="rub")
    STRIPE_CHECKOUT_SUCCESS_URL: Optional[str] = Field(default=None)
    STRIPE_CHECKOUT_CANCEL_URL: Optional[str] = Field(default=None)

    # Crypto Pay (crypto invoices)
    CRYPTO_PAY_API_TOKEN: Optional[str] = Field(default=None)
    CRYPTO_PAY_API_URL: str = Field(default="https://pay.crypt.bot/api")

    # Tribute (external subscription webhooks)
    TRIBUTE_API_KEY: Optional[str] = Field(default=None)
    # Channel subscription link users are sent to; Tribute has no per-order checkout.
    TRIBUTE_SUBSCRIPTION_URL: Optional[str] = Field(default=None)

    # Environment
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)

    # CORS - comma-separated list of allowed origins for production
    CORS_ORIGINS: Optional[str] = Field(default=None)

    # Sentry Error Tracking
    SENTRY_DSN: Optional[str] = Field(default=None)
    SENTRY_TRACES_SAMPLE_RATE: float = Field(default=0.1)  # 10% of transactions


# Global settings instance
settings = Settings()
