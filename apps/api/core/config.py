"""
Centralized configuration management with validation.

All environment variables are loaded and validated here.
This ensures consistent configuration across the API and the worker.
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
    POSTGRES_DB: str = Field(default="fitness_plans")
    POSTGRES_HOST: str = Field(default="postgres")
    POSTGRES_PORT: int = Field(default=5432)
    # Full URL override (e.g. sqlite:// for local runs and tests)
    DATABASE_URL: Optional[str] = Field(default=None)

    # Database Pool Configuration
    DB_POOL_SIZE: int = Field(default=20)
    DB_MAX_OVERFLOW: int = Field(default=10)
    DB_POOL_TIMEOUT: int = Field(default=30)
    DB_POOL_RECYCLE: int = Field(default=3600)  # 1 hour

    # Redis Configuration
    REDIS_URL: str = Field(default="redis://redis:6379/0")

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")  # json or text

    # Celery Configuration
    CELERY_BROKER_URL: str = Field(default="redis://redis:6379/0")
    CELERY_RESULT_BACKEND: str = Field(default="redis://redis:6379/0")

    # External plan providers
    WORKOUT_PLAN_SERVICE_URL: str = Field(default="https://mock-workout-service.herokuapp.com/api/v1")
    WORKOUT_PLAN_SERVICE_API_KEY: Optional[str] = Field(default=None)
    DIET_PLAN_SERVICE_URL: str = Field(default="https://mock-diet-service.herokuapp.com/api/v1")
    DIET_PLAN_SERVICE_API_KEY: Optional[str] = Field(default=None)
    DIET_PLAN_SERVICE_HMAC_SECRET: Optional[str] = Field(default=None)
    PLAN_PROVIDER_TIMEOUT_S: float = Field(default=30.0, gt=0)
    # Serve deterministic mock payloads instead of calling the providers
    PLAN_PROVIDER_MOCK_MODE: bool = Field(default=True)

    # Look-aside cache TTLs (seconds), independent of plan cache_expiry
    CACHE_TTL_WORKOUT_PLANS: int = Field(default=86400)  # 24 hours
    CACHE_TTL_DIET_PLANS: int = Field(default=86400)  # 24 hours

    # Plan lifecycle
    PLAN_REFRESH_INTERVAL_DAYS: int = Field(default=14)
    PLAN_CACHE_EXPIRY_HOURS: int = Field(default=24)
    PLAN_REFRESH_RETRY_DAYS: int = Field(default=7)

    # Refresh sweep pacing between provider calls (seconds)
    WORKOUT_REFRESH_PACING_S: float = Field(default=1.0, ge=0)
    DIET_REFRESH_PACING_S: float = Field(default=2.0, ge=0)
    # Cross-worker single-flight latch for a sweep run
    PLAN_REFRESH_LOCK_TTL_S: int = Field(default=3600)

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
