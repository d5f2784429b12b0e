"""
Application configuration using Pydantic Settings.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Broker (required, no default)
    REDIS_URL: str = ""

    # Job queue
    JOB_QUEUE_NAME: str = "youtube_urls"
    # prefix; each consumer appends host, pid and a random suffix
    CONSUMER_TAG: str = "youtube_consumer"
    CONSUMER_HEARTBEAT_TTL_SECONDS: int = 30
    QUEUE_POLL_TIMEOUT_SECONDS: int = 5
    JOB_MAX_ATTEMPTS: int = 3

    # Intake
    ALLOWED_HOSTS: List[str] = [
        "youtube.com",
        "www.youtube.com",
        "m.youtube.com",
        "music.youtube.com",
        "youtu.be",
    ]

    # Download tool
    DOWNLOADER_BINARY: str = "yt-dlp"
    DOWNLOAD_DIR: str = "."
    METADATA_TIMEOUT_SECONDS: float = 120.0
    DOWNLOAD_TIMEOUT_SECONDS: float = 3600.0

    # Feed documents
    FEED_DIR: str = "."
    MEDIA_BASE_URL: str = ""
    FEED_OWNER_EMAIL: str = "noreply@example.com"
    FEED_IMAGE_URL: str = "https://example.com/podcast.jpg"
    FEED_SKIP_DUPLICATE_GUIDS: bool = True
    FEED_LOCK_TIMEOUT_SECONDS: int = 60

    # Telegram
    TELEGRAM_BOT_TOKEN: str = ""
    TELEGRAM_API_BASE: str = "https://api.telegram.org"
    TELEGRAM_POLL_TIMEOUT_SECONDS: int = 30
    NOTIFY_ON_FAILURE: bool = True

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True)


settings = Settings()


def require_broker_url() -> str:
    """Return the configured broker URL or raise a configuration error."""
    broker_url = (settings.REDIS_URL or "").strip()
    if not broker_url:
        raise ValueError("REDIS_URL must be set")
    return broker_url


def validate_runtime_settings() -> None:
    """Fail fast when settings would make the pipeline misbehave."""
    require_broker_url()
    if int(settings.JOB_MAX_ATTEMPTS) < 1:
        raise ValueError("JOB_MAX_ATTEMPTS must be at least 1.")
    if not settings.ALLOWED_HOSTS:
        raise ValueError("ALLOWED_HOSTS is empty. Configure at least one recognized host.")
    if int(settings.CONSUMER_HEARTBEAT_TTL_SECONDS) < 3:
        raise ValueError("CONSUMER_HEARTBEAT_TTL_SECONDS must be at least 3.")
