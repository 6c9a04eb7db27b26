import os
from typing import Optional


def get_setting(name: str, default: Optional[str] = None) -> Optional[str]:
    """Return an environment setting with an optional default."""
    return os.getenv(name, default)


def get_required_setting(name: str) -> str:
    """Return a required environment setting or raise a ValueError."""
    value = os.getenv(name)
    if not value:
        raise ValueError(f"Missing required environment variable: {name}")
    return value


def _int_setting(name: str, default: int) -> int:
    raw = str(os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def get_database_url() -> str:
    """
    Return the database URL for SQLAlchemy (organizations, users, memberships).
    Defaults to a local SQLite file for development if not provided.
    """
    return os.getenv("DATABASE_URL") or os.getenv("POSTGRES_CONNECTION_STRING") or "sqlite:///./data/pipeline.db"


def get_storage_connection_string() -> Optional[str]:
    """Azure Storage connection string shared by the table and blob backends."""
    return os.getenv("AZURE_STORAGE_CONNECTION_STRING") or os.getenv("AzureWebJobsStorage") or None


def get_demo_booking_settings() -> dict:
    """
    Public demo booking window. Business hours are [open_hour, close_hour) in
    the booking's local wall-clock time.
    """
    return {
        "open_hour": _int_setting("DEMO_BOOKING_OPEN_HOUR", 9),
        "close_hour": _int_setting("DEMO_BOOKING_CLOSE_HOUR", 17),
        "max_days_ahead": _int_setting("DEMO_BOOKING_MAX_DAYS_AHEAD", 60),
        "duration_minutes": _int_setting("DEMO_BOOKING_DURATION_MINUTES", 60),
        "default_owner": (os.getenv("DEMO_BOOKING_DEFAULT_OWNER") or "veeti").strip().lower(),
        "organization_slug": (os.getenv("DEMO_BOOKING_ORG_SLUG") or "").strip().lower(),
        "location": os.getenv("DEMO_BOOKING_LOCATION") or "Google Meet / Teams",
        "timezone": os.getenv("DEMO_BOOKING_TIMEZONE") or "UTC",
    }


def get_rate_limit_settings() -> dict:
    """Per-IP limit applied to the public booking endpoint."""
    return {
        "max_requests": _int_setting("PUBLIC_RATE_LIMIT_REQUESTS", 5),
        "window_seconds": _int_setting("PUBLIC_RATE_LIMIT_WINDOW_SECONDS", 60),
    }


def get_todo_window_days() -> int:
    return max(1, _int_setting("TODO_WINDOW_DAYS", 7))
