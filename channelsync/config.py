from pydantic_settings import BaseSettings
from pydantic import Field, field_validator
from functools import lru_cache
from typing import List
import json


class Settings(BaseSettings):
    # Environment
    environment: str = Field(default="development", alias="ENVIRONMENT")

    # Database - PostgreSQL for production, SQLite for development
    database_url: str = Field(
        default="sqlite:///./channelsync.db",
        alias="DATABASE_URL"
    )

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=True, alias="LOG_JSON")

    # JSON list or comma-separated substrings; matched case-insensitively
    log_redact_keys: str = Field(
        default='["token","authorization","email","phone"]',
        alias="LOG_REDACT_KEYS"
    )

    # ==============================================
    # Beds24 API (Server-Side Only!)
    # ==============================================
    beds24_base_url: str = Field(
        default="https://api.beds24.com/v2",
        alias="BEDS24_BASE_URL"
    )

    # Organization identifier sent with every call
    beds24_organization: str = Field(default="", alias="BEDS24_ORGANIZATION")

    # Long-lived refresh credentials, one per token type
    beds24_read_refresh_token: str = Field(default="", alias="BEDS24_READ_REFRESH_TOKEN")
    beds24_write_refresh_token: str = Field(default="", alias="BEDS24_WRITE_REFRESH_TOKEN")

    # HTTP timeout for every external call
    beds24_timeout_seconds: float = Field(default=20, alias="BEDS24_TIMEOUT_SECONDS")

    # Refresh tokens this long before they actually expire
    token_refresh_buffer_minutes: int = Field(default=5, alias="TOKEN_REFRESH_BUFFER_MINUTES")

    # ==============================================
    # Delta sync
    # ==============================================
    bookings_sync_interval_minutes: int = Field(default=60, alias="BOOKINGS_SYNC_INTERVAL_MINUTES")
    calendar_sync_interval_hours: int = Field(default=6, alias="CALENDAR_SYNC_INTERVAL_HOURS")
    bookings_default_lookback_days: int = Field(default=7, alias="BOOKINGS_DEFAULT_LOOKBACK_DAYS")
    # Timer ticks jitter by a few seconds; a tick this close to the interval still runs
    sync_throttle_grace_seconds: int = Field(default=60, alias="SYNC_THROTTLE_GRACE_SECONDS")

    # Full-window resync; every cycle re-reads the whole year
    calendar_window_days: int = Field(default=365, alias="CALENDAR_WINDOW_DAYS")

    # ==============================================
    # Scheduler
    # ==============================================
    scheduler_enabled: bool = Field(default=False, alias="SCHEDULER_ENABLED")
    scheduler_timezone: str = Field(default="UTC", alias="SCHEDULER_TIMEZONE")
    calendar_sync_hour_modulo: int = Field(default=6, alias="CALENDAR_SYNC_HOUR_MODULO")
    scheduler_min_credits: int = Field(default=50, alias="SCHEDULER_MIN_CREDITS")
    alert_low_credits: int = Field(default=20, alias="ALERT_LOW_CREDITS")
    alert_error_count: int = Field(default=10, alias="ALERT_ERROR_COUNT")

    # ==============================================
    # Recovery
    # ==============================================
    systemic_error_threshold: int = Field(default=3, alias="SYSTEMIC_ERROR_THRESHOLD")
    recovery_window_hours: int = Field(default=24, alias="RECOVERY_WINDOW_HOURS")

    @field_validator('beds24_base_url')
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """External API must be reached over TLS"""
        if not v.startswith("https://"):
            raise ValueError("BEDS24_BASE_URL must use https")
        return v.rstrip("/")

    @property
    def redact_key_list(self) -> List[str]:
        """
        Parse LOG_REDACT_KEYS.
        Accepts a JSON array or a comma-separated string.
        """
        raw = (self.log_redact_keys or "").strip()
        if not raw:
            return []
        if raw.startswith("["):
            try:
                return [str(k).strip() for k in json.loads(raw) if str(k).strip()]
            except json.JSONDecodeError:
                raw = raw.strip("[]")
        return [k.strip().strip('"') for k in raw.split(",") if k.strip()]

    class Config:
        env_file = ".env"
        extra = "ignore"
        populate_by_name = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


# Initialize settings on module load
settings = get_settings()
