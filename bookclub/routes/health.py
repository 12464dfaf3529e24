"""Lightweight health probe endpoint.

Exposes /healthz with a trivial DB round-trip and the watcher state.
"""
from __future__ import annotations

from typing import Any

from flask import Blueprint, current_app, jsonify
from sqlalchemy import text

from bookclub import config as app_config
from bookclub.db.engine import app_session
from bookclub.utils.logging import get_logger

LOG = get_logger("health")

bp = Blueprint("health", __name__)


@bp.route("/healthz", methods=["GET"])
def healthz():
    db_ok = True
    try:
        with app_session() as s:
            s.execute(text("SELECT 1"))
    except Exception as exc:  # pragma: no cover
        db_ok = False
        LOG.debug("Health DB probe failed: %s", exc)
    runtime = current_app.extensions.get("bookclub", {})
    tasks = runtime.get("tasks", {})
    consumer = runtime.get("vote_consumer")
    body = {
        "status": "ok" if db_ok else "degraded",
        "db": db_ok,
        "version": app_config.metadata()["version"],
        "watchers": {name: task.running for name, task in tasks.items()},
        "vote_consumer": bool(consumer and consumer.running),
    }
    return jsonify(body), 200 if db_ok else 500


def register_health(app: Any) -> None:
    if getattr(app, "_health_bp", None):  # idempotent
        return
    app.register_blueprint(bp)
    setattr(app, "_health_bp", bp)
    LOG.debug("health blueprint registered")


__all__ = ["register_health"]
