"""Utility helpers."""
from .identity import normalize_snowflake, normalize_volume_id
from .timeutils import (
    DeadlineFormatError,
    deadline_after_days,
    format_deadline,
    parse_deadline_input,
    utcnow,
)

__all__ = [
    "normalize_snowflake",
    "normalize_volume_id",
    "DeadlineFormatError",
    "deadline_after_days",
    "format_deadline",
    "parse_deadline_input",
    "utcnow",
]
