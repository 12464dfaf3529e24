"""Time helpers. All persisted timestamps are naive UTC."""
from __future__ import annotations

from datetime import datetime, time, timedelta, timezone
from typing import Any, Optional


class DeadlineFormatError(ValueError):
    """Raised when a deadline string is malformed or lies in the past."""


class CompletionDateError(ValueError):
    """Raised when a past completion date is malformed or lies in the future."""


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_deadline_input(raw: Any, *, now: Optional[datetime] = None) -> Optional[datetime]:
    """Parse ``YYYY-MM-DD`` into 23:59:59 UTC of that day.

    Empty input means "no deadline". Dates before today and non-string
    values are rejected.
    """
    if raw is None:
        return None
    if not isinstance(raw, str):
        raise DeadlineFormatError("deadline_format")
    cleaned = raw.strip()
    if not cleaned:
        return None
    try:
        day = datetime.strptime(cleaned, "%Y-%m-%d").date()
    except ValueError as exc:
        raise DeadlineFormatError("deadline_format") from exc
    today = (now or utcnow()).date()
    if day < today:
        raise DeadlineFormatError("deadline_in_past")
    return datetime.combine(day, time(23, 59, 59))


def parse_completion_date(raw: Any, *, now: Optional[datetime] = None) -> Optional[datetime]:
    """Parse ``YYYY-MM-DD`` into midnight UTC of that day; today or earlier only."""
    if raw is None:
        return None
    if not isinstance(raw, str):
        raise CompletionDateError("date_format")
    cleaned = raw.strip()
    if not cleaned:
        return None
    try:
        day = datetime.strptime(cleaned, "%Y-%m-%d").date()
    except ValueError as exc:
        raise CompletionDateError("date_format") from exc
    if day > (now or utcnow()).date():
        raise CompletionDateError("date_in_future")
    return datetime.combine(day, time(0, 0, 0))


def deadline_after_days(days: Optional[int], *, now: Optional[datetime] = None) -> Optional[datetime]:
    if not days:
        return None
    return (now or utcnow()) + timedelta(days=days)


def format_deadline(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.strftime("%Y-%m-%d %H:%M UTC")


__all__ = [
    "DeadlineFormatError",
    "CompletionDateError",
    "utcnow",
    "parse_deadline_input",
    "parse_completion_date",
    "deadline_after_days",
    "format_deadline",
]
