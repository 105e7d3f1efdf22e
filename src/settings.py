"""Centralized settings for the Xsite push-notification service.

Uses pydantic-settings to load from environment variables (prefixed XSITE_)
with defaults matching the values the notification system shipped with.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Push-notification service settings loaded from environment variables."""

    app_name: str = "xsite-push"

    # --- Token store ---
    use_database: bool = False
    database_url: str = "sqlite:///./push_tokens.db"
    store_timeout_seconds: float = 5.0

    # --- Push gateway (Expo) ---
    expo_push_url: str = "https://exp.host/--/api/v2/push/send"
    expo_access_token: str = ""
    gateway_timeout_seconds: float = 10.0
    gateway_max_chunk_size: int = 100
    gateway_chunk_delay_seconds: float = 0.1
    message_ttl_seconds: int = 3600

    # --- Token health ---
    health_score_cutoff: int = 50
    low_score_deactivation: int = 25
    failure_deactivation_threshold: int = 5
    unhealthy_failure_threshold: int = 3

    # --- Recipient resolution ---
    recipient_cache_ttl_seconds: float = 300.0
    recipient_cache_max_entries: int = 1024

    # --- Maintenance ---
    maintenance_enabled: bool = True
    maintenance_interval_hours: float = 24.0
    max_token_age_days: int = 30
    hard_delete_age_days: int = 90
    maintenance_history_size: int = 50
    alert_unhealthy_token_pct: float = 25.0
    alert_failed_jobs_count: int = 3
    alert_failed_jobs_window: int = 10
    alert_processing_time_minutes: float = 10.0

    # --- API ---
    cron_secret: str = "default-secret"

    # --- Logging ---
    log_level: str = "INFO"
    log_format: str = "json"

    model_config = {
        "env_prefix": "XSITE_",
        "env_file": ".env",
        "extra": "ignore",
    }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton."""
    return Settings()
