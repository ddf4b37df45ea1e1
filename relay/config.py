from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Relay settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration - required, the process refuses to start without it
    DATABASE_URL: str

    LOG_LEVEL: str = "INFO"

    # Identity used to decide message direction and as sender of outbound sends
    BUSINESS_NUMBER: str = "me"

    # Default directory for `relay ingest`
    PAYLOAD_DIR: str = "sample_payloads"

    # Change feed tuning
    FEED_POLL_INTERVAL_SECONDS: float = 0.5
    FEED_BATCH_SIZE: int = 100
    FEED_MAX_FAILURES: int = 5
    FEED_RETRY_BACKOFF_SECONDS: float = 1.0

    # Events buffered per real-time subscriber before the oldest is dropped
    SUBSCRIBER_QUEUE_SIZE: int = 256


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every call.
    Raises pydantic.ValidationError when DATABASE_URL is missing.
    """
    return Settings()
