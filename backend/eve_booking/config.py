import os
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def _read_bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _read_positive_int_env(name: str, default: int) -> int:
    try:
        value = int(os.getenv(name, str(default)))
    except ValueError:
        return default
    return value if value > 0 else default


def _read_non_negative_int_env(name: str, default: int) -> int:
    try:
        value = int(os.getenv(name, str(default)))
    except ValueError:
        return default
    return value if value >= 0 else default


def _read_timezone_env(name: str) -> Optional[ZoneInfo]:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return None
    try:
        return ZoneInfo(raw)
    except (ZoneInfoNotFoundError, ValueError):
        return None


default_db = str(Path(__file__).resolve().parents[1] / "data" / "bookings.sqlite3")

BOOKING_DB_PATH = os.getenv("BOOKING_DB_PATH", default_db)
BOOKING_SEED_DEMO = _read_bool_env("BOOKING_SEED_DEMO", True)

CORS_ORIGINS = _parse_csv_env("CORS_ORIGINS", "*")
TRUSTED_HOSTS = _parse_csv_env("TRUSTED_HOSTS", "*")

# Wall-clock zone of provider calendars; None means the server's local zone.
BOOKING_TIMEZONE = _read_timezone_env("BOOKING_TIMEZONE")

DEFAULT_GRANULARITY_MINUTES = _read_positive_int_env("BOOKING_DEFAULT_GRANULARITY_MINUTES", 30)
DEFAULT_MIN_NOTICE_HOURS = _read_non_negative_int_env("BOOKING_DEFAULT_MIN_NOTICE_HOURS", 2)
DEFAULT_MAX_ADVANCE_DAYS = _read_positive_int_env("BOOKING_DEFAULT_MAX_ADVANCE_DAYS", 30)
