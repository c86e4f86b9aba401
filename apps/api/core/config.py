"""
Centralized configuration management with validation.

All environment variables are loaded and validated here.
This ensures consistent configuration across the API, the worker and tests.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Literal, Optional
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
    POSTGRES_DB: str = Field(default="practice_progress")
    POSTGRES_HOST: str = Field(default="postgres")
    POSTGRES_PORT: int = Field(default=5432)
    # Full URL override (tests use sqlite+pysqlite:///:memory:)
    DATABASE_URL: Optional[str] = Field(default=None)

    # Database Pool Configuration
    DB_POOL_SIZE: int = Field(default=20)
    DB_MAX_OVERFLOW: int = Field(default=10)
    DB_POOL_TIMEOUT: int = Field(default=30)
    DB_POOL_RECYCLE: int = Field(default=3600)  # 1 hour

    # Redis Configuration
    REDIS_URL: str = Field(default="redis://redis:6379/0")
    # Cache calls must never stall the write path.
    CACHE_SOCKET_TIMEOUT_S: float = Field(default=0.5)

    # Cache TTL tiers (seconds)
    CACHE_TTL_SHORT: int = Field(default=300)  # 5 minutes
    CACHE_TTL_MEDIUM: int = Field(default=1800)  # 30 minutes
    CACHE_TTL_LONG: int = Field(default=3600)  # 1 hour
    CACHE_TTL_DAILY: int = Field(default=86400)  # 24 hours

    # Celery Configuration
    CELERY_BROKER_URL: str = Field(default="redis://redis:6379/0")
    CELERY_RESULT_BACKEND: str = Field(default="redis://redis:6379/0")
    CELERY_BROKER_CONNECT_TIMEOUT_S: float = Field(default=2.0)

    # Background recompute retries (exponential backoff)
    RECOMPUTE_MAX_RETRIES: int = Field(default=3, ge=0, le=10)
    RECOMPUTE_BACKOFF_MAX_S: int = Field(default=60)
    RECOMPUTE_TIME_LIMIT_S: int = Field(default=60)

    # Calendar day boundaries for streaks and time-of-day analysis
    ACTIVITY_TIMEZONE: str = Field(default="UTC")

    # What to do with completions dated before the streak's last activity day.
    # "ignore": record the entry, leave the streak untouched.
    # "reject": refuse the whole completion.
    STREAK_BACKFILL_POLICY: Literal["ignore", "reject"] = Field(default="ignore")

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")  # json or text

    # Environment
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql://{self.POSTGRES_USER}:"
            f"{self.POSTGRES_PASSWORD}@"
            f"{self.POSTGRES_HOST}:"
            f"{self.POSTGRES_PORT}/"
            f"{self.POSTGRES_DB}"
        )


# Global settings instance
settings = Settings()
