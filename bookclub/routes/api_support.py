"""Helpers shared by the bearer-token JSON blueprints."""
from __future__ import annotations

import hmac
from typing import Any, Dict, Optional

from flask import jsonify, request

from bookclub import config as app_config
from bookclub.services import access_policy, metadata_service


def error_response(code: str, status: int):
    return jsonify({"ok": False, "error": code}), status


def require_command_token():
    """``before_request`` hook: compare the bearer token in constant time."""
    expected = app_config.command_token()
    if not expected:
        return error_response("command_token_not_configured", 503)
    header = request.headers.get("Authorization", "")
    provided = header[len("Bearer "):] if header.startswith("Bearer ") else ""
    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        return error_response("unauthorized", 401)
    return None


def json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def optional_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError("invalid_integer")


def volume_gate(user_id: Optional[int], server_id: int, volume_id: str):
    """Error response when ``volume_id`` may not be added on this server, else None."""
    try:
        access_policy.require_allowed(user_id, server_id, volume_id)
    except access_policy.MatureContentBlockedError:
        return error_response("mature_blocked", 403)
    except metadata_service.MetadataNotFoundError:
        return error_response("volume_not_found", 404)
    except metadata_service.MetadataUnavailableError:
        return error_response("metadata_unavailable", 503)
    return None


__all__ = ["error_response", "require_command_token", "json_body", "optional_int", "volume_gate"]
