"""Admin command endpoints.

All routes require ``Authorization: Bearer <BOOKCLUB_COMMAND_TOKEN>`` and
issue the same lifecycle operations as the watchers. Expected outcomes are
returned as JSON with an ``error`` code and a matching HTTP status.

/servers/<id>/state                     GET
/servers/<id>/config                    GET, PUT
/servers/<id>/queue                     GET, POST
/servers/<id>/queue/<volume_id>         DELETE
/servers/<id>/select                    POST  (mode: manual | next | random)
/servers/<id>/finish                    POST
/servers/<id>/current                   DELETE
/servers/<id>/selection-poll            POST
/servers/<id>/selection-poll/close      POST  (close the open poll now)
/servers/<id>/current/thread            PUT
/rating-polls/<poll_id>/close           POST  (close before expiry)
/servers/<id>/rankings                  GET
/servers/<id>                           DELETE (all server data)
/members/<id>                           DELETE (all member data)
/watchers/<name>/trigger                POST
"""
from __future__ import annotations

from typing import Any

from flask import Blueprint, current_app, jsonify

from bookclub.db.repositories import (
    lifecycle_repo,
    polls_repo,
    queue_repo,
    ratings_repo,
    servers_repo,
)
from bookclub.db.repositories.lifecycle_repo import TransitionFailure, TransitionResult
from bookclub.routes.api_support import error_response, json_body, optional_int, require_command_token
from bookclub.services import announcement_service, payloads, rating_poll_service, selection_poll_service
from bookclub.services.selection_poll_service import CloseStatus, OpenPollFailure
from bookclub.utils.identity import normalize_snowflake, normalize_volume_id
from bookclub.utils.logging import get_logger
from bookclub.utils.timeutils import DeadlineFormatError, parse_deadline_input

LOG = get_logger("commands.routes")

bp = Blueprint("commands", __name__)
bp.before_request(require_command_token)

_FAILURE_STATUS = {
    TransitionFailure.NOT_IN_QUEUE: 404,
    TransitionFailure.NO_CURRENT_BOOK: 404,
    TransitionFailure.ALREADY_HAS_CURRENT: 409,
    TransitionFailure.NOT_DUE: 409,
}

_POLL_FAILURE_STATUS = {
    OpenPollFailure.ALREADY_HAS_CURRENT: 409,
    OpenPollFailure.POLL_ALREADY_OPEN: 409,
    OpenPollFailure.INSUFFICIENT_CANDIDATES: 422,
    OpenPollFailure.NO_CHANNEL: 422,
    OpenPollFailure.POST_FAILED: 502,
}


def _transition_response(result: TransitionResult, success_status: int = 200):
    if result.ok:
        return jsonify(result.as_dict()), success_status
    return jsonify(result.as_dict()), _FAILURE_STATUS.get(result.failure, 400)


@bp.route("/servers/<int:server_id>/state", methods=["GET"])
def server_state(server_id: int):
    poll = polls_repo.get_open_selection_poll(server_id)
    return jsonify(
        {
            "server_id": server_id,
            "config": servers_repo.get_config(server_id),
            "current": lifecycle_repo.get_current_book(server_id),
            "queue": queue_repo.list_queue(server_id),
            "selection_poll": (
                {
                    "poll_id": poll.poll_id,
                    "message_id": poll.message_id,
                    "options": poll.options(),
                    "expires_at": poll.expires_at.isoformat(),
                }
                if poll
                else None
            ),
        }
    )


@bp.route("/servers/<int:server_id>/config", methods=["GET"])
def get_config(server_id: int):
    return jsonify(servers_repo.get_config(server_id))


@bp.route("/servers/<int:server_id>/config", methods=["PUT"])
def put_config(server_id: int):
    try:
        updated = servers_repo.upsert_config(server_id, **json_body())
    except ValueError as exc:
        return error_response(str(exc), 400)
    return jsonify(updated)


@bp.route("/servers/<int:server_id>/queue", methods=["GET"])
def list_queue(server_id: int):
    return jsonify({"server_id": server_id, "queue": queue_repo.list_queue(server_id)})


@bp.route("/servers/<int:server_id>/queue", methods=["POST"])
def add_queue(server_id: int):
    data = json_body()
    volume_id = normalize_volume_id(data.get("volume_id"))
    user_id = normalize_snowflake(data.get("user_id"))
    if not volume_id or not user_id:
        return error_response("volume_id_and_user_id_required", 400)
    try:
        entry = queue_repo.add_to_queue(
            server_id,
            volume_id,
            user_id,
            username=data.get("username"),
            at_front=bool(data.get("front")),
            enforce_enabled=not bool(data.get("admin")),
        )
    except queue_repo.QueueDisabledError:
        return error_response("queue_disabled", 403)
    except queue_repo.QueueEntryExistsError as exc:
        return error_response(str(exc), 409)
    return jsonify({"ok": True, "entry": entry}), 201


@bp.route("/servers/<int:server_id>/queue/<volume_id>", methods=["DELETE"])
def remove_queue(server_id: int, volume_id: str):
    if not queue_repo.remove_from_queue(server_id, volume_id):
        return error_response("not_in_queue", 404)
    return jsonify({"ok": True, "queue": queue_repo.list_queue(server_id)})


@bp.route("/servers/<int:server_id>/select", methods=["POST"])
def select_book(server_id: int):
    data = json_body()
    mode = str(data.get("mode") or "manual").strip().lower()
    try:
        deadline = parse_deadline_input(data.get("deadline"))
        channel_id = optional_int(data.get("channel_id"))
    except (DeadlineFormatError, ValueError) as exc:
        return error_response(str(exc), 400)
    if mode == "manual":
        volume_id = normalize_volume_id(data.get("volume_id"))
        if not volume_id:
            return error_response("volume_id_required", 400)
    elif mode == "next":
        entry = queue_repo.next_entry(server_id)
        if entry is None:
            return error_response("queue_empty", 404)
        volume_id = entry["volume_id"]
    elif mode == "random":
        entry = queue_repo.random_entry(server_id)
        if entry is None:
            return error_response("queue_empty", 404)
        volume_id = entry["volume_id"]
    else:
        return error_response("unknown_mode", 400)

    config = servers_repo.get_config(server_id)
    channel_id = channel_id or config.get("announcement_channel_id")
    result = lifecycle_repo.select_from_queue(
        server_id,
        volume_id,
        announcement_channel_id=channel_id,
        deadline=deadline,
    )
    if result.ok:
        announcement_service.try_post(
            channel_id,
            payloads.new_book_selected(
                volume_id,
                suggested_by=result.payload.get("suggested_by_username"),
                deadline=deadline,
            ),
        )
    return _transition_response(result)


@bp.route("/servers/<int:server_id>/finish", methods=["POST"])
def finish_book(server_id: int):
    data = json_body()
    try:
        channel_id = optional_int(data.get("channel_id"))
        hours = optional_int(data.get("hours"))
    except ValueError as exc:
        return error_response(str(exc), 400)
    completion = rating_poll_service.finish_and_open_rating_poll(server_id, channel_id=channel_id, hours=hours)
    if completion.ok:
        return jsonify(completion.as_dict()), 200
    return _transition_response(completion.transition)


@bp.route("/servers/<int:server_id>/current", methods=["DELETE"])
def remove_current(server_id: int):
    return _transition_response(lifecycle_repo.remove_current_book(server_id))


@bp.route("/servers/<int:server_id>/selection-poll", methods=["POST"])
def open_poll(server_id: int):
    data = json_body()
    try:
        deadline = parse_deadline_input(data.get("deadline"))
        size = optional_int(data.get("size"))
        hours = optional_int(data.get("hours"))
        channel_id = optional_int(data.get("channel_id"))
    except (DeadlineFormatError, ValueError) as exc:
        return error_response(str(exc), 400)
    result = selection_poll_service.open_selection_poll(
        server_id,
        channel_id=channel_id,
        size=size,
        hours=hours,
        deadline=deadline,
        cancel_existing=bool(data.get("cancel_existing")),
    )
    if result.ok:
        return jsonify(result.as_dict()), 201
    return jsonify(result.as_dict()), _POLL_FAILURE_STATUS.get(result.failure, 400)


_CLOSE_STATUS = {
    CloseStatus.SELECTED: 200,
    CloseStatus.NO_VOTES: 200,
    CloseStatus.SELECTION_FAILED: 409,
    CloseStatus.MATURE_BLOCKED: 409,
    CloseStatus.DEFERRED: 503,
    CloseStatus.ALREADY_PROCESSED: 409,
    CloseStatus.NOT_FOUND: 404,
}


@bp.route("/servers/<int:server_id>/selection-poll/close", methods=["POST"])
def close_poll_now(server_id: int):
    poll = polls_repo.get_open_selection_poll(server_id)
    if poll is None:
        return error_response("no_open_poll", 404)
    outcome = selection_poll_service.close_selection_poll(poll.poll_id, force=True)
    LOG.info("Selection poll closed by command poll_id=%s status=%s", outcome.poll_id, outcome.status.value)
    body = {
        "ok": outcome.status in (CloseStatus.SELECTED, CloseStatus.NO_VOTES),
        "poll_id": outcome.poll_id,
        "status": outcome.status.value,
        "winner": outcome.winner,
        "tied": list(outcome.tied),
        "error": outcome.failure,
    }
    return jsonify(body), _CLOSE_STATUS.get(outcome.status, 400)


@bp.route("/rating-polls/<int:poll_id>/close", methods=["POST"])
def close_rating_poll_now(poll_id: int):
    if not rating_poll_service.close_rating_poll(poll_id, force=True):
        return error_response("rating_poll_not_open", 409)
    return jsonify({"ok": True, "poll_id": poll_id})


@bp.route("/servers/<int:server_id>/current/thread", methods=["PUT"])
def put_discussion_thread(server_id: int):
    try:
        thread_id = optional_int(json_body().get("thread_id"))
    except ValueError as exc:
        return error_response(str(exc), 400)
    if not lifecycle_repo.set_discussion_thread(server_id, thread_id):
        return error_response("no_current_book", 404)
    return jsonify({"ok": True, "current": lifecycle_repo.get_current_book(server_id)})


@bp.route("/servers/<int:server_id>/rankings", methods=["GET"])
def rankings(server_id: int):
    return jsonify({"server_id": server_id, "rankings": ratings_repo.server_rankings(server_id)})


@bp.route("/servers/<int:server_id>", methods=["DELETE"])
def delete_server(server_id: int):
    if not servers_repo.delete_server_data(server_id):
        return error_response("server_not_found", 404)
    return jsonify({"ok": True})


@bp.route("/members/<int:user_id>", methods=["DELETE"])
def delete_member(user_id: int):
    if not servers_repo.delete_member_data(user_id):
        return error_response("member_not_found", 404)
    return jsonify({"ok": True})


@bp.route("/watchers/<name>/trigger", methods=["POST"])
def trigger_watcher(name: str):
    tasks = current_app.extensions.get("bookclub", {}).get("tasks", {})
    task = tasks.get(name)
    if task is None:
        return error_response("watcher_not_found", 404)
    task.trigger()
    return jsonify({"ok": True, "watcher": name}), 202


def register_blueprints(app: Any) -> None:
    if getattr(app, "_commands_bp", None):
        return
    app.register_blueprint(bp)
    setattr(app, "_commands_bp", bp)


__all__ = ["register_blueprints", "bp"]
