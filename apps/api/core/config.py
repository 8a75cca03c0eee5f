"""
Centralized configuration management with validation.

All environment variables are loaded and validated here.
This ensures consistent configuration across the application.
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
    # DATABASE_URL wins when set (tests point it at SQLite).
    DATABASE_URL: Optional[str] = Field(default=None)
    POSTGRES_USER: str = Field(default="postgres")
    POSTGRES_PASSWORD: str = Field(default="postgres")
    POSTGRES_DB: str = Field(default="progressive_dinner")
    POSTGRES_HOST: str = Field(default="postgres")
    POSTGRES_PORT: int = Field(default=5432)

    # Database Pool Configuration
    DB_POOL_SIZE: int = Field(default=20)
    DB_MAX_OVERFLOW: int = Field(default=10)
    DB_POOL_TIMEOUT: int = Field(default=30)
    DB_POOL_RECYCLE: int = Field(default=3600)  # 1 hour

    # Redis Configuration
    REDIS_URL: str = Field(default="redis://redis:6379/0")

    # Celery Configuration
    CELERY_BROKER_URL: str = Field(default="redis://redis:6379/0")
    CELERY_RESULT_BACKEND: str = Field(default="redis://redis:6379/0")

    # API Configuration
    API_HOST: str = Field(default="0.0.0.0")
    API_PORT: int = Field(default=8000)

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")  # json or text

    # Routing provider (OpenRouteService). Without a key every lookup
    # is a straight-line estimate.
    OPENROUTESERVICE_API_KEY: Optional[str] = Field(default=None)
    OPENROUTESERVICE_URL: str = Field(
        default="https://api.openrouteservice.org/v2/directions/cycling-regular"
    )
    EXTERNAL_API_TIMEOUT: int = Field(default=10)
    # Caps concurrent routing lookups within one batch.
    DISTANCE_LOOKUP_CONCURRENCY: int = Field(default=4, ge=1, le=32)
    DISTANCE_CACHE_TTL: int = Field(default=86400)  # 24 hours
    CYCLING_SPEED_KMH: float = Field(default=15.0, gt=0)

    # Matching
    MIN_COUPLES_FOR_MATCHING: int = Field(default=3, ge=3)
    DEFAULT_MAX_GUESTS: int = Field(default=6, ge=1)
    DEFAULT_FLEX_EXTRA_CAPACITY: int = Field(default=4, ge=0)
    PREFERENCE_SATISFACTION_WARNING: float = Field(default=0.8, ge=0, le=1)
    PAIRING_DISTANCE_AWARE: bool = Field(default=True)

    # Envelope reveal
    EVENT_TIMEZONE: str = Field(default="Europe/Stockholm")
    CLUES_PER_COURSE: int = Field(default=2, ge=1)
    MIN_FUN_FACTS: int = Field(default=6, ge=0)
    DEFAULT_AFTERPARTY_TIME: str = Field(default="22:00")

    # Environment
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)

    # CORS - comma-separated list of allowed origins for production
    CORS_ORIGINS: Optional[str] = Field(default=None)


# Global settings instance
settings = Settings()
