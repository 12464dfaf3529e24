"""Reading history endpoints.

/servers/<id>/history                       GET (sort=rating|date, limit), POST
/servers/<id>/history/<completed_id>        DELETE
/servers/<id>/stats                         GET
/servers/<id>/members/<uid>/ratings         GET (sort=rating|date, volume_id)
"""
from __future__ import annotations

from typing import Any

from flask import Blueprint, jsonify, request

from bookclub.db.repositories import history_repo, ratings_repo
from bookclub.routes.api_support import error_response, json_body, optional_int, require_command_token, volume_gate
from bookclub.utils.identity import normalize_snowflake, normalize_volume_id
from bookclub.utils.logging import get_logger
from bookclub.utils.timeutils import CompletionDateError, parse_completion_date

LOG = get_logger("history.routes")

bp = Blueprint("history", __name__)
bp.before_request(require_command_token)


@bp.route("/servers/<int:server_id>/history", methods=["GET"])
def list_history(server_id: int):
    sort = (request.args.get("sort") or "date").strip().lower()
    try:
        limit = optional_int(request.args.get("limit"))
        books = history_repo.list_history(server_id, sort=sort, limit=limit)
    except ValueError as exc:
        return error_response(str(exc), 400)
    return jsonify({"server_id": server_id, "sort": sort, "books": books})


@bp.route("/servers/<int:server_id>/history", methods=["POST"])
def add_history(server_id: int):
    data = json_body()
    volume_id = normalize_volume_id(data.get("volume_id"))
    if not volume_id:
        return error_response("volume_id_required", 400)
    try:
        completed_at = parse_completion_date(data.get("completed_at"))
        rating = optional_int(data.get("rating"))
    except (CompletionDateError, ValueError) as exc:
        return error_response(str(exc), 400)
    user_id = normalize_snowflake(data.get("user_id"))
    if rating is not None and user_id is None:
        return error_response("rating_requires_user", 400)
    denied = volume_gate(user_id, server_id, volume_id)
    if denied is not None:
        return denied
    try:
        entry = history_repo.add_completed_book(
            server_id,
            volume_id,
            completed_at=completed_at,
            rating=rating,
            rated_by_user_id=user_id,
            rated_by_username=data.get("username"),
        )
    except ratings_repo.RatingRangeError as exc:
        return error_response(str(exc), 400)
    except history_repo.DuplicateCompletionError as exc:
        return error_response(str(exc), 409)
    return jsonify({"ok": True, "book": entry}), 201


@bp.route("/servers/<int:server_id>/history/<int:completed_id>", methods=["DELETE"])
def remove_history(server_id: int, completed_id: int):
    removed = history_repo.remove_completed_book(server_id, completed_id)
    if removed is None:
        return error_response("completed_book_not_found", 404)
    return jsonify({"ok": True, "removed": removed})


@bp.route("/servers/<int:server_id>/stats", methods=["GET"])
def stats(server_id: int):
    return jsonify(history_repo.server_stats(server_id))


@bp.route("/servers/<int:server_id>/members/<int:user_id>/ratings", methods=["GET"])
def member_ratings(server_id: int, user_id: int):
    sort = (request.args.get("sort") or "rating").strip().lower()
    volume_id = normalize_volume_id(request.args.get("volume_id"))
    try:
        rows = ratings_repo.member_ratings(server_id, user_id, sort=sort, volume_id=volume_id)
    except ValueError as exc:
        return error_response(str(exc), 400)
    return jsonify({"server_id": server_id, "user_id": user_id, "sort": sort, "ratings": rows})


def register_blueprints(app: Any) -> None:
    if getattr(app, "_history_bp", None):
        return
    app.register_blueprint(bp)
    setattr(app, "_history_bp", bp)


__all__ = ["register_blueprints", "bp"]
