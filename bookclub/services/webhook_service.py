"""Inbound vote webhook verification and parsing."""
from __future__ import annotations

import base64
import hashlib
import hmac
import json
from typing import Any, Dict, Mapping, Optional, Tuple

from bookclub import config as app_config
from bookclub.services.vote_events import VoteEvent
from bookclub.utils.logging import get_logger

LOG = get_logger("webhook_service")

SIGNATURE_HEADER = "X-Bookclub-Signature"


def sign(raw_body: bytes, secret: str) -> str:
    return base64.b64encode(hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()).decode()


def verify_signature(raw_body: bytes, provided: str, secret: str) -> bool:
    expected = sign(raw_body, secret)
    try:
        return hmac.compare_digest(expected, provided or "")
    except Exception:
        return False


def parse_vote_webhook(raw_body: bytes, headers: Mapping[str, str]) -> Tuple[bool, str, Optional[VoteEvent]]:
    """Verify and parse a vote webhook.

    Returns (accepted, reason, event); ``event`` is None when rejected.
    """
    secret = app_config.vote_webhook_secret()
    if not secret:
        return False, "secret_not_configured", None
    provided = headers.get(SIGNATURE_HEADER) or headers.get(SIGNATURE_HEADER.lower(), "")
    if not verify_signature(raw_body, provided, secret):
        return False, "signature_invalid", None
    try:
        payload: Dict[str, Any] = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return False, "invalid_json", None
    try:
        event = VoteEvent.from_payload(payload)
    except ValueError as exc:
        LOG.info("Rejected vote webhook reason=%s", exc)
        return False, str(exc), None
    return True, "ok", event


__all__ = ["SIGNATURE_HEADER", "sign", "verify_signature", "parse_vote_webhook"]
