"""Configuration for the lock reconciler."""

from datetime import time
from enum import Enum

from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigKey(str, Enum):
    """Credential keys stored in the configuration table."""

    DUVE_CSRF_TOKEN = "DUVE_CSRF_TOKEN"
    DUVE_SESSION_ID = "DUVE_SESSION_ID"
    DUVE_COOKIE = "DUVE_COOKIE"
    SIFELY_AUTH_TOKEN = "SIFELY_AUTH_TOKEN"


CONFIG_DESCRIPTIONS: dict[ConfigKey, str] = {
    ConfigKey.DUVE_CSRF_TOKEN: "CSRF token for Duve API authentication",
    ConfigKey.DUVE_SESSION_ID: "Session ID for Duve API authentication",
    ConfigKey.DUVE_COOKIE: "Cookie value for Duve API authentication",
    ConfigKey.SIFELY_AUTH_TOKEN: "Authorization token for Sifely API",
}

# Fixed check-in/check-out policy: 3 PM / 11 AM at UTC-4, expressed in UTC.
CHECK_IN_TIME_UTC = time(19, 0)
CHECK_OUT_TIME_UTC = time(15, 0)

# Reservations are fetched from today at this hour (UTC) onwards
RESERVATION_CUTOFF_TIME_UTC = time(16, 0)

# Passcode slot labels that hold guest codes (compared case-insensitively)
GUEST_CODE_NAMES = ("Guest Code 1", "Guest Code 2")

# Vendor status for an active passcode slot
ACTIVE_SLOT_STATUS = 1

# Sentinel stored on failure records when no lock could be resolved
UNKNOWN_LOCK_ID = "unknown"


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="LOCKSYNC_",
    )

    # Database
    database_url: str = "sqlite+aiosqlite:///./lock_reconciler.db"

    # Server settings
    host: str = "0.0.0.0"
    port: int = 8099
    debug: bool = False

    # Scheduling
    daily_run_hour: int = 0
    reap_interval_minutes: int = 15
    stuck_run_timeout_minutes: int = 60

    # Reservation source paging
    reservation_page_size: int = 100
    max_reservation_pages: int = 200

    # Per-lock lease used to serialize passcode changes
    lease_ttl_seconds: int = 300
    lease_wait_seconds: float = 30.0

    # Credential cache lifetime
    config_cache_ttl_seconds: int = 300

    # JSON mirror of failed updates
    failure_log_path: str = "logs/failed-lock-updates.json"

    # Credential fallbacks used when the configuration table has no value
    duve_csrf_token: str = ""
    duve_session_id: str = ""
    duve_cookie: str = ""
    sifely_auth_token: str = ""


# Global settings instance
settings = Settings()
