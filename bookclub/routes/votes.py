"""Vote event webhook.

POST /votes/webhook - signed vote add/remove notification from the gateway.
Queued to the vote consumer when it runs, handled inline otherwise.
"""
from __future__ import annotations

from typing import Any

from flask import Blueprint, current_app, jsonify, request

from bookclub.services import vote_events, webhook_service
from bookclub.utils.logging import get_logger

LOG = get_logger("votes.routes")

bp = Blueprint("votes", __name__, url_prefix="/votes")

_REJECT_STATUS = {
    "secret_not_configured": 503,
    "signature_invalid": 401,
}


@bp.route("/webhook", methods=["POST"])
def vote_webhook():
    raw = request.get_data(cache=False)
    accepted, reason, event = webhook_service.parse_vote_webhook(raw, request.headers)
    if not accepted or event is None:
        LOG.info("Vote webhook rejected reason=%s", reason)
        return jsonify({"status": "rejected", "error": reason}), _REJECT_STATUS.get(reason, 400)
    consumer = current_app.extensions.get("bookclub", {}).get("vote_consumer")
    if consumer is not None and consumer.running:
        consumer.submit(event)
        return jsonify({"status": "queued"}), 202
    outcome = vote_events.handle_vote_event(event)
    return jsonify({"status": "handled", "outcome": outcome.value}), 200


def register_blueprints(app: Any) -> None:
    if getattr(app, "_votes_bp", None):
        return
    app.register_blueprint(bp)
    setattr(app, "_votes_bp", bp)


__all__ = ["register_blueprints", "bp"]
