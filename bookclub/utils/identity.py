"""Identifier normalization helpers (server / member / volume ids)."""
from __future__ import annotations

from typing import Any, Optional


def normalize_snowflake(raw: Any) -> Optional[int]:
    """Coerce an external 64-bit id (int or numeric string) to ``int``.

    Returns None for anything that is not a positive integer.
    """
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw if raw > 0 else None
    if isinstance(raw, str):
        cleaned = raw.strip()
        if not cleaned.isdigit():
            return None
        value = int(cleaned)
        return value if value > 0 else None
    return None


def normalize_volume_id(raw: Any) -> Optional[str]:
    if not isinstance(raw, str):
        return None
    cleaned = raw.strip()
    return cleaned or None


__all__ = ["normalize_snowflake", "normalize_volume_id"]
