"""Application settings via pydantic-settings."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Configuration loaded from environment variables with ACTIVITY_SYNC_ prefix."""

    model_config = SettingsConfigDict(
        env_prefix="ACTIVITY_SYNC_",
        env_file=".env",
        case_sensitive=False,
    )

    # --- Collections ---
    chat_rooms_collection: str = "chatRooms"
    chat_messages_collection: str = "chatMessages"
    notifications_collection: str = "notifications"

    # --- Chat ---
    direct_chat_prefix: str = "direct"
    direct_chat_separator: str = "_"
    message_page_size: int = 50
    message_subscription_limit: int = 100

    # --- Notifications ---
    notification_page_size: int = 50
    notification_retention_days: int = 30
    notification_text_limit: int = 100
    cleanup_interval_seconds: int = 3600

    # --- Logging ---
    log_level: str = "INFO"
    log_format: str = "console"


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
