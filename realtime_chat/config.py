from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration, read from the environment or a ``.env`` file."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)

    # Storage and transport
    mongo_url: str = Field(default="mongodb://localhost:27017", alias="MONGO_URL")
    mongo_db: str = Field(default="realtime_chat", alias="MONGO_DB")
    redis_url: str = Field(default="redis://localhost:6379", alias="REDIS_URL")

    # Push (FCM HTTP v1 through pyfcm)
    fcm_service_account_file: str | None = Field(default=None, alias="FCM_SERVICE_ACCOUNT_FILE")
    fcm_project_id: str | None = Field(default=None, alias="FCM_PROJECT_ID")

    # Presence
    presence_ttl_seconds: float = Field(default=60.0, alias="PRESENCE_TTL_SECONDS")
    presence_poll_interval_seconds: float = Field(default=30.0, alias="PRESENCE_POLL_INTERVAL_SECONDS")
    presence_heartbeat_seconds: float = Field(default=30.0, alias="PRESENCE_HEARTBEAT_SECONDS")
    presence_report_debounce_seconds: float = Field(default=2.0, alias="PRESENCE_REPORT_DEBOUNCE_SECONDS")

    # Typing
    typing_window_seconds: float = Field(default=3.0, alias="TYPING_WINDOW_SECONDS")

    # Messages
    reconcile_window_seconds: float = Field(default=10.0, alias="RECONCILE_WINDOW_SECONDS")
    max_message_length: int = Field(default=4000, alias="MAX_MESSAGE_LENGTH")
    history_page_size: int = Field(default=50, alias="HISTORY_PAGE_SIZE")

    # Notifications
    default_timezone: str = Field(default="UTC", alias="DEFAULT_TIMEZONE")
    # how long a delivered (message, recipient) claim blocks other app instances
    notification_claim_ttl_seconds: int = Field(default=86400, alias="NOTIFICATION_CLAIM_TTL_SECONDS")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_format: Literal["text", "json"] = Field(default="text", alias="LOG_FORMAT")


@lru_cache
def get_settings() -> Settings:
    return Settings()
