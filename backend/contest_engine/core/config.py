"""
Application configuration management
Loads environment variables and provides type-safe configuration access
Supports both local .env files and cloud environment variables
"""

from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal


def get_env_file() -> str | None:
    """
    Determine which .env file to use (if any).
    Priority: .env.production > .env > None (cloud env vars only)
    """
    if Path(".env.production").exists():
        return ".env.production"
    elif Path(".env").exists():
        return ".env"
    return None


class Settings(BaseSettings):
    """
    Engine settings loaded from environment variables.

    Every field has a development default so the service (and the test
    suite) can start without any environment at all. Production deployments
    are expected to override DATABASE_URL, REDIS_URL and JWT_SECRET.
    """

    model_config = SettingsConfigDict(
        env_file=get_env_file(),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Database (sqlite+aiosqlite for dev, postgresql+asyncpg in production)
    DATABASE_URL: str = "sqlite+aiosqlite:///./contests.db"
    DATABASE_ECHO: bool = False

    # Redis (optional price cache / pub-sub mirror)
    REDIS_URL: str | None = None

    # JWT verification. Tokens are issued by the external auth service.
    JWT_SECRET: str | None = None
    JWT_SECRET_KEY: str | None = None
    JWT_ALGORITHM: str = "HS256"

    @property
    def jwt_secret(self) -> str:
        """Get JWT secret from either JWT_SECRET or JWT_SECRET_KEY"""
        secret = self.JWT_SECRET or self.JWT_SECRET_KEY
        if not secret:
            if self.ENVIRONMENT == "production":
                raise ValueError("Either JWT_SECRET or JWT_SECRET_KEY must be set")
            return "dev-secret-change-me"
        return secret

    # HTTP surface
    API_PREFIX: str = "/api/contests"
    FRONTEND_URL: str = "http://localhost:5173"

    # Environment
    ENVIRONMENT: Literal["development", "staging", "production", "test"] = "development"
    DEBUG: bool = False

    # CORS
    @property
    def CORS_ORIGINS(self) -> list[str]:
        """Get allowed CORS origins"""
        origins = [self.FRONTEND_URL]
        if self.ENVIRONMENT == "development":
            origins.extend([
                "http://localhost:3000",
                "http://localhost:5173",
                "http://localhost:8000"
            ])
        return origins

    # Rate Limiting
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_TRADES: str = "30/minute"

    # Market data
    PRICE_PROVIDER: Literal["yahoo", "simulated", "static"] = "simulated"
    YAHOO_BASE_URL: str = "https://query1.finance.yahoo.com"
    MARKET_SUFFIX: str = ".NS"
    PRICE_TICK_SECONDS: float = 5.0
    QUOTE_TIMEOUT_SECONDS: float = 4.0
    MAX_QUOTE_AGE_SECONDS: float = 60.0
    RECENT_SYMBOL_TTL_SECONDS: float = 900.0
    PRICE_CACHE_TTL_SECONDS: int = 60

    # Engine
    LOCK_TIMEOUT_SECONDS: float = 5.0
    STATUS_SWEEP_SECONDS: float = 15.0
    INVITE_CODE_LENGTH: int = 8
    BACKGROUND_TASKS_ENABLED: bool = True
    SUBSCRIBER_QUEUE_SIZE: int = 256


# Global settings instance
settings = Settings()
