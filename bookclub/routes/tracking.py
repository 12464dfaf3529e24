"""Member tracking endpoints: reading list, favorites and progress notes.

Same bearer token as the admin commands; the bot calls these on behalf of
the member named in the path.

/servers/<id>/members/<uid>/reading-list            GET, POST {volume_ids}
/servers/<id>/members/<uid>/reading-list/<vid>      DELETE
/servers/<id>/members/<uid>/favorites               GET, POST {volume_ids}
/servers/<id>/members/<uid>/favorites/<vid>         DELETE
/servers/<id>/members/<uid>/number-one              PUT {volume_id}
/servers/<id>/members/<uid>/progress                PUT {progress}
/servers/<id>/progress                              GET
"""
from __future__ import annotations

from typing import Any, List, Optional

from flask import Blueprint, jsonify

from bookclub.db.repositories import tracking_repo
from bookclub.routes.api_support import error_response, json_body, require_command_token, volume_gate
from bookclub.utils.identity import normalize_volume_id
from bookclub.utils.logging import get_logger

LOG = get_logger("tracking.routes")

bp = Blueprint("tracking", __name__)
bp.before_request(require_command_token)

_MEMBER = "/servers/<int:server_id>/members/<int:user_id>"


def _volume_ids(raw: Any) -> Optional[List[str]]:
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, list):
        return None
    cleaned = [normalize_volume_id(v) for v in raw]
    if not cleaned or any(v is None for v in cleaned):
        return None
    return cleaned


def _limit_error(exc: tracking_repo.LimitExceededError):
    body = {"ok": False, "error": str(exc), "limit": exc.limit, "attempted": exc.attempted}
    return jsonify(body), 409


def _gate_all(user_id: int, server_id: int, volume_ids: List[str]):
    for vid in volume_ids:
        denied = volume_gate(user_id, server_id, vid)
        if denied is not None:
            return denied
    return None


@bp.route(f"{_MEMBER}/reading-list", methods=["GET"])
def get_reading_list(server_id: int, user_id: int):
    return jsonify({"user_id": user_id, "reading_list": tracking_repo.list_reading_list(user_id, server_id)})


@bp.route(f"{_MEMBER}/reading-list", methods=["POST"])
def add_reading_list(server_id: int, user_id: int):
    volume_ids = _volume_ids(json_body().get("volume_ids"))
    if volume_ids is None:
        return error_response("volume_ids_required", 400)
    denied = _gate_all(user_id, server_id, volume_ids)
    if denied is not None:
        return denied
    try:
        added = tracking_repo.add_to_reading_list(user_id, server_id, volume_ids)
    except tracking_repo.LimitExceededError as exc:
        return _limit_error(exc)
    return (
        jsonify({"ok": True, "added": added, "reading_list": tracking_repo.list_reading_list(user_id, server_id)}),
        201,
    )


@bp.route(f"{_MEMBER}/reading-list/<volume_id>", methods=["DELETE"])
def remove_reading_list(server_id: int, user_id: int, volume_id: str):
    if not tracking_repo.remove_from_reading_list(user_id, server_id, volume_id):
        return error_response("not_in_reading_list", 404)
    return jsonify({"ok": True, "reading_list": tracking_repo.list_reading_list(user_id, server_id)})


@bp.route(f"{_MEMBER}/favorites", methods=["GET"])
def get_favorites(server_id: int, user_id: int):
    return jsonify({"user_id": user_id, "favorites": tracking_repo.list_favorites(user_id, server_id)})


@bp.route(f"{_MEMBER}/favorites", methods=["POST"])
def add_favorites(server_id: int, user_id: int):
    volume_ids = _volume_ids(json_body().get("volume_ids"))
    if volume_ids is None:
        return error_response("volume_ids_required", 400)
    denied = _gate_all(user_id, server_id, volume_ids)
    if denied is not None:
        return denied
    try:
        added = tracking_repo.add_favorites(user_id, server_id, volume_ids)
    except tracking_repo.LimitExceededError as exc:
        return _limit_error(exc)
    return jsonify({"ok": True, "added": added, "favorites": tracking_repo.list_favorites(user_id, server_id)}), 201


@bp.route(f"{_MEMBER}/favorites/<volume_id>", methods=["DELETE"])
def remove_favorite(server_id: int, user_id: int, volume_id: str):
    if not tracking_repo.remove_favorite(user_id, server_id, volume_id):
        return error_response("not_in_favorites", 404)
    return jsonify({"ok": True, "favorites": tracking_repo.list_favorites(user_id, server_id)})


@bp.route(f"{_MEMBER}/number-one", methods=["PUT"])
def put_number_one(server_id: int, user_id: int):
    volume_id = normalize_volume_id(json_body().get("volume_id"))
    if not volume_id:
        return error_response("volume_id_required", 400)
    denied = volume_gate(user_id, server_id, volume_id)
    if denied is not None:
        return denied
    try:
        tracking_repo.set_number_one(user_id, server_id, volume_id)
    except tracking_repo.LimitExceededError as exc:
        return _limit_error(exc)
    return jsonify({"ok": True, "favorites": tracking_repo.list_favorites(user_id, server_id)})


@bp.route(f"{_MEMBER}/progress", methods=["PUT"])
def put_progress(server_id: int, user_id: int):
    data = json_body()
    progress = data.get("progress")
    if progress is not None and not isinstance(progress, str):
        return error_response("progress_must_be_text", 400)
    try:
        row = tracking_repo.upsert_progress(user_id, server_id, progress, username=data.get("username"))
    except tracking_repo.NoCurrentBookError:
        return error_response("no_current_book", 409)
    return jsonify({"ok": True, "progress": row})


@bp.route("/servers/<int:server_id>/progress", methods=["GET"])
def server_progress(server_id: int):
    return jsonify({"server_id": server_id, "progress": tracking_repo.list_progress(server_id)})


def register_blueprints(app: Any) -> None:
    if getattr(app, "_tracking_bp", None):
        return
    app.register_blueprint(bp)
    setattr(app, "_tracking_bp", bp)


__all__ = ["register_blueprints", "bp"]
