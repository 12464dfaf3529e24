"""Application configuration accessors.

Centralizes environment variable parsing & defaults so services never read
``os.environ`` directly. Every accessor is a plain function evaluated at call
time, which lets tests flip values with ``monkeypatch.setenv``.
"""
from __future__ import annotations

import os
from functools import lru_cache
from typing import Optional

APP_NAME = "bookclub"
APP_VERSION = "0.4.0"
APP_DESCRIPTION = "Server-scoped book club lifecycle and poll engine"

DEFAULT_DB_PATH = "bookclub.db"
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_DEADLINE_INTERVAL_SECONDS = 600
DEFAULT_SELECTION_POLL_INTERVAL_SECONDS = 300
DEFAULT_RATING_POLL_HOURS = 6 * 24 + 23
DEFAULT_SELECTION_POLL_SIZE = 5
DEFAULT_SELECTION_POLL_HOURS = 24
MAX_SELECTION_POLL_HOURS = 167
_TRUE = {"1", "true", "yes", "on"}


def _raw_env(name: str, default: str | None = None) -> str | None:
    val = os.getenv(name)
    return val if val is not None else default


def _clean_env(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


def env_bool(name: str, default: bool = False) -> bool:
    raw = _raw_env(name, str(default).lower())
    if raw is None:
        return default
    return raw.lower() in _TRUE


def env_int(name: str, default: int) -> int:
    raw = _clean_env(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def get_db_path() -> str:
    raw = _raw_env("BOOKCLUB_DB_PATH", DEFAULT_DB_PATH)
    if raw and raw != ":memory:" and not os.path.isabs(raw):
        data_root = os.getenv("BOOKCLUB_DATA_DIR")
        if data_root:
            return os.path.join(data_root, raw)
    return raw  # type: ignore[return-value]


def database_url() -> Optional[str]:
    """Full SQLAlchemy URL (e.g. postgresql+psycopg://...). Overrides the SQLite path."""
    return _clean_env("BOOKCLUB_DATABASE_URL")


def log_level_name() -> str:
    return _raw_env("BOOKCLUB_LOG_LEVEL", DEFAULT_LOG_LEVEL).upper()  # type: ignore[union-attr]


def deadline_watch_interval_seconds() -> int:
    return max(1, env_int("BOOKCLUB_DEADLINE_INTERVAL_SECONDS", DEFAULT_DEADLINE_INTERVAL_SECONDS))


def selection_poll_watch_interval_seconds() -> int:
    return max(1, env_int("BOOKCLUB_SELECTION_POLL_INTERVAL_SECONDS", DEFAULT_SELECTION_POLL_INTERVAL_SECONDS))


def watchers_enabled() -> bool:
    """Whether ``create_app`` starts the periodic watchers (BOOKCLUB_WATCHERS_ENABLED)."""
    return env_bool("BOOKCLUB_WATCHERS_ENABLED", default=True)


def rating_poll_hours() -> int:
    return max(1, env_int("BOOKCLUB_RATING_POLL_HOURS", DEFAULT_RATING_POLL_HOURS))


def selection_poll_default_size() -> int:
    return env_int("BOOKCLUB_SELECTION_POLL_SIZE", DEFAULT_SELECTION_POLL_SIZE)


def selection_poll_default_hours() -> int:
    return env_int("BOOKCLUB_SELECTION_POLL_HOURS", DEFAULT_SELECTION_POLL_HOURS)


def default_reading_days() -> Optional[int]:
    """Reading period applied when a poll winner has no explicit deadline.

    Environment Variable: BOOKCLUB_DEFAULT_READING_DAYS (unset = no deadline)
    """
    raw = _clean_env("BOOKCLUB_DEFAULT_READING_DAYS")
    if raw is None:
        return None
    try:
        days = int(raw)
    except ValueError:
        return None
    return days if days > 0 else None


def vote_webhook_secret() -> Optional[str]:
    """Shared secret used to verify signed vote-event webhooks."""
    return _clean_env("BOOKCLUB_VOTE_WEBHOOK_SECRET")


def command_token() -> Optional[str]:
    """Bearer token required by the admin command endpoints."""
    return _clean_env("BOOKCLUB_COMMAND_TOKEN")


def gateway_url() -> Optional[str]:
    """Base URL of the chat gateway bridge used for announcements and polls."""
    value = _clean_env("BOOKCLUB_GATEWAY_URL")
    return value.rstrip("/") if value else None


def gateway_token() -> Optional[str]:
    return _clean_env("BOOKCLUB_GATEWAY_TOKEN")


def google_books_api_base() -> str:
    return os.getenv("BOOKCLUB_GOOGLE_BOOKS_API_BASE", "https://www.googleapis.com/books/v1")


def google_books_api_key() -> Optional[str]:
    return _clean_env("GOOGLE_BOOKS_API_KEY")


def http_timeout_seconds() -> float:
    raw = _clean_env("BOOKCLUB_HTTP_TIMEOUT_SECONDS")
    if raw is None:
        return 10.0
    try:
        return max(0.5, float(raw))
    except ValueError:
        return 10.0


@lru_cache(maxsize=1)
def metadata() -> dict:
    return {
        "name": APP_NAME,
        "version": APP_VERSION,
        "description": APP_DESCRIPTION,
    }


def summarize_runtime_config() -> dict:
    return {
        "db_path": get_db_path(),
        "database_url_set": database_url() is not None,
        "log_level": log_level_name(),
        "deadline_interval_seconds": deadline_watch_interval_seconds(),
        "selection_poll_interval_seconds": selection_poll_watch_interval_seconds(),
        "rating_poll_hours": rating_poll_hours(),
        "watchers_enabled": watchers_enabled(),
        "gateway_configured": gateway_url() is not None,
    }


__all__ = [
    "APP_NAME",
    "APP_VERSION",
    "APP_DESCRIPTION",
    "MAX_SELECTION_POLL_HOURS",
    "env_bool",
    "env_int",
    "get_db_path",
    "database_url",
    "log_level_name",
    "deadline_watch_interval_seconds",
    "selection_poll_watch_interval_seconds",
    "watchers_enabled",
    "rating_poll_hours",
    "selection_poll_default_size",
    "selection_poll_default_hours",
    "default_reading_days",
    "vote_webhook_secret",
    "command_token",
    "gateway_url",
    "gateway_token",
    "google_books_api_base",
    "google_books_api_key",
    "http_timeout_seconds",
    "metadata",
    "summarize_runtime_config",
]
