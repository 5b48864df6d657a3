from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration - required
    DATABASE_URL: str

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Key used to sign proof artifacts - required
    SIGNING_SECRET: str

    # Base of the one-click unsubscribe links handed to subscribers
    UNSUBSCRIBE_BASE_URL: str = "https://stamp-bot.example.com"

    # Sender identity and trust tier inputs for the rate-limit check
    SENDER_ID: str = "stamp-bot"
    SENDER_ACCOUNT_CREATED: Optional[int] = None  # epoch ms, falls back to first activity
    DAILY_MESSAGE_LIMIT: int = 1000

    # Periodic broadcast, disabled when 0
    BROADCAST_INTERVAL_SECONDS: int = 0


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
