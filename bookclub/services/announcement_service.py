"""Outbound announcements through the chat gateway bridge.

The gateway accepts JSON message payloads per channel and returns the
posted message id. Failures raise ``AnnouncementError``; callers that have
already committed a transition only log them.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

import requests

from bookclub import config as app_config
from bookclub.utils.logging import get_logger

LOG = get_logger("announcement_service")


class AnnouncementError(Exception):
    pass


def _headers() -> Dict[str, str]:
    headers = {"Content-Type": "application/json", "Accept": "application/json"}
    token = app_config.gateway_token()
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


def _base_url() -> str:
    base = app_config.gateway_url()
    if not base:
        raise AnnouncementError("gateway_not_configured")
    return base


def pin_message(channel_id: int, message_id: int) -> None:
    url = f"{_base_url()}/channels/{channel_id}/pins/{message_id}"
    try:
        r = requests.put(url, headers=_headers(), timeout=app_config.http_timeout_seconds())
    except requests.RequestException as exc:
        raise AnnouncementError(f"pin_failed:{exc}") from exc
    if r.status_code not in (200, 201, 204):
        raise AnnouncementError(f"pin_http_{r.status_code}")


def post_message(channel_id: int, payload: Dict[str, Any], pin: bool = False) -> int:
    """Post ``payload`` to ``channel_id`` and return the message id.

    A failed pin is logged and does not fail the post.
    """
    url = f"{_base_url()}/channels/{channel_id}/messages"
    try:
        r = requests.post(url, json=payload, headers=_headers(), timeout=app_config.http_timeout_seconds())
    except requests.RequestException as exc:
        raise AnnouncementError(f"post_failed:{exc}") from exc
    if r.status_code not in (200, 201):
        raise AnnouncementError(f"post_http_{r.status_code}")
    try:
        data = r.json()
    except ValueError as exc:
        raise AnnouncementError("invalid_json") from exc
    raw_id = data.get("id") if isinstance(data, dict) else None
    try:
        message_id = int(raw_id)
    except (TypeError, ValueError) as exc:
        raise AnnouncementError("missing_message_id") from exc
    if pin:
        try:
            pin_message(channel_id, message_id)
        except AnnouncementError as exc:
            LOG.warning("Pin failed channel_id=%s message_id=%s error=%s", channel_id, message_id, exc)
    return message_id


def try_post(channel_id: Optional[int], payload: Dict[str, Any], pin: bool = False) -> Optional[int]:
    """Best-effort post used after committed transitions."""
    if not channel_id:
        LOG.debug("No channel for announcement kind=%s", payload.get("kind"))
        return None
    try:
        return post_message(channel_id, payload, pin=pin)
    except AnnouncementError as exc:
        LOG.warning("Announcement failed channel_id=%s kind=%s error=%s", channel_id, payload.get("kind"), exc)
        return None


__all__ = [
    "AnnouncementError",
    "post_message",
    "pin_message",
    "try_post",
]
