from decimal import Decimal
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Persistence
    STORE_BACKEND: Literal["postgres", "memory"] = "postgres"
    DATABASE_URL: str | None = None

    # Presence
    PRESENCE_BACKEND: Literal["memory", "redis"] = "memory"
    REDIS_URL: str | None = None
    PRESENCE_TTL_S: int = 120

    # Token verification (shared by HTTP and WebSocket handshake)
    JWT_SECRET: str | None = None
    JWT_JWKS_URL: str | None = None
    JWT_AUDIENCE: str | None = None

    # Push notifications
    EXPO_PUSH_URL: str = "https://exp.host/--/api/v2/push/send"
    EXPO_ACCESS_TOKEN: str | None = None
    PUSH_ENABLED: bool = False

    # Payments
    STRIPE_SECRET_KEY: str | None = None
    STRIPE_API_URL: str = "https://api.stripe.com/v1"
    PAYMENT_WEBHOOK_SECRET: str | None = None
    PAYMENT_CURRENCY: str = "usd"

    CORS_ALLOWED_ORIGINS: list[str] = ["http://localhost:8081", "http://localhost:19006"]

    # Request context (client IP behind a load balancer)
    TRUST_X_FORWARDED_FOR: bool = False
    TRUSTED_PROXY_IPS: list[str] = []

    # =================================================================
    # BUSINESS RULES - override per deployment
    # =================================================================
    DEFAULT_TAX_RATE: Decimal = Decimal("0.08")
    DEPOSIT_FRACTION: Decimal = Decimal("0.20")
    QUOTE_VALIDITY_DAYS: int = 7

    # =================================================================
    # DATABASE POOL SETTINGS
    # =================================================================
    DB_POOL_MIN_SIZE: int = 3
    DB_POOL_MAX_SIZE: int = 12
    DB_POOL_TIMEOUT: float = 30.0
    DB_POOL_MAX_IDLE: float = 600.0  # 10 minutes
    DB_POOL_MAX_LIFETIME: float = 3600.0  # 1 hour

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def get_db_pool_config(self) -> dict:
        """
        Get database pool configuration.
        Adjust environment-specific settings based on self.environment.
        """
        config = {
            "min_size": self.DB_POOL_MIN_SIZE,
            "max_size": self.DB_POOL_MAX_SIZE,
            "timeout": self.DB_POOL_TIMEOUT,
            "max_idle": self.DB_POOL_MAX_IDLE,
            "max_lifetime": self.DB_POOL_MAX_LIFETIME,
        }

        if self.environment == "development":
            config.update(
                {
                    "min_size": min(self.DB_POOL_MIN_SIZE, 2),
                    "max_size": min(self.DB_POOL_MAX_SIZE, 6),
                    "timeout": 15.0,
                }
            )

        return config

    def push_configured(self) -> bool:
        return self.PUSH_ENABLED and bool(self.EXPO_PUSH_URL)


settings = Settings()
