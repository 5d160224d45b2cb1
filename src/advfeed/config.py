"""Engine settings via pydantic-settings."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine configuration loaded from environment variables with ADVFEED_ prefix."""

    model_config = SettingsConfigDict(
        env_prefix="ADVFEED_",
        env_file=".env",
        case_sensitive=False,
    )

    # --- Core ---
    app_version: str = "0.1.0"
    environment: str = "development"
    log_level: str = "INFO"
    log_format: str = "json"

    # --- Record store ---
    redis_url: str = "redis://localhost:6379/0"
    redis_key_prefix: str = "advfeed"
    store_timeout_seconds: float = 5.0
    subscribe_block_ms: int = 1000

    # --- Follow graph ---
    follow_retry_attempts: int = 3
    follow_retry_base_delay_seconds: float = 0.05
    follow_retry_max_delay_seconds: float = 1.0
    notify_new_follower: bool = True

    # --- Ratings ---
    rating_min: int = 1
    rating_max: int = 5
    rating_conflict_retries: int = 5

    # --- Activity workflow ---
    auto_complete_grace_days: int = 1


@lru_cache
def get_settings() -> Settings:
    """Get cached engine settings."""
    return Settings()
