"""Google Books metadata lookup.

Only what the lifecycle needs: title, authors, thumbnail and the maturity
flag. ``get_volume`` raises on failure and is what state-changing callers
use (through ``access_policy.require_allowed``). ``safe_volume`` and
``display_title`` are for rendering only and fall back to a placeholder title.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests

from bookclub import config as app_config
from bookclub.utils.logging import get_logger

LOG = get_logger("metadata_service")


class MetadataError(Exception):
    pass


class MetadataNotFoundError(MetadataError):
    pass


class MetadataUnavailableError(MetadataError):
    pass


@dataclass
class VolumeInfo:
    volume_id: str
    title: str
    authors: List[str] = field(default_factory=list)
    thumbnail: Optional[str] = None
    mature: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {
            "volume_id": self.volume_id,
            "title": self.title,
            "authors": list(self.authors),
            "thumbnail": self.thumbnail,
            "mature": self.mature,
        }


def fallback_title(volume_id: str) -> str:
    return f"Book ({volume_id})"


def _parse_volume(volume_id: str, data: Dict[str, Any]) -> VolumeInfo:
    info = data.get("volumeInfo") if isinstance(data.get("volumeInfo"), dict) else {}
    images = info.get("imageLinks") if isinstance(info.get("imageLinks"), dict) else {}
    thumb = images.get("thumbnail") or images.get("smallThumbnail")
    if isinstance(thumb, str) and thumb.startswith("http://"):
        thumb = "https://" + thumb[len("http://"):]
    authors = [str(a) for a in (info.get("authors") or []) if a]
    return VolumeInfo(
        volume_id=str(data.get("id") or volume_id),
        title=str(info.get("title") or fallback_title(volume_id)),
        authors=authors,
        thumbnail=thumb,
        mature=str(info.get("maturityRating") or "").upper() == "MATURE",
    )


def get_volume(volume_id: str) -> VolumeInfo:
    """Fetch one volume. Raises MetadataNotFoundError / MetadataUnavailableError."""
    base = app_config.google_books_api_base().rstrip("/")
    params: Dict[str, str] = {}
    key = app_config.google_books_api_key()
    if key:
        params["key"] = key
    try:
        r = requests.get(
            f"{base}/volumes/{volume_id}",
            params=params,
            timeout=app_config.http_timeout_seconds(),
        )
    except requests.RequestException as exc:
        LOG.warning("Metadata lookup failed volume_id=%s error=%s", volume_id, exc)
        raise MetadataUnavailableError(str(exc)) from exc
    if r.status_code in (400, 404):
        raise MetadataNotFoundError(volume_id)
    if r.status_code != 200:
        raise MetadataUnavailableError(f"http_{r.status_code}")
    try:
        data = r.json()
    except ValueError as exc:
        raise MetadataUnavailableError("invalid_json") from exc
    if not isinstance(data, dict) or data.get("error"):
        raise MetadataNotFoundError(volume_id)
    return _parse_volume(volume_id, data)


def safe_volume(volume_id: str) -> VolumeInfo:
    """Rendering lookup that never raises; failures yield a placeholder record."""
    try:
        return get_volume(volume_id)
    except MetadataError as exc:
        LOG.info("Using fallback metadata volume_id=%s reason=%s", volume_id, exc.__class__.__name__)
        return VolumeInfo(volume_id=volume_id, title=fallback_title(volume_id))


def display_title(volume_id: str) -> str:
    return safe_volume(volume_id).title


__all__ = [
    "MetadataError",
    "MetadataNotFoundError",
    "MetadataUnavailableError",
    "VolumeInfo",
    "fallback_title",
    "get_volume",
    "safe_volume",
    "display_title",
]
