"""Application initialization / wiring.

Orchestrates: DB init, route registration, vote consumer and watcher
startup. Runtime handles live in ``app.extensions["bookclub"]``.
"""
from __future__ import annotations

from typing import Any, Optional

from flask import Flask

from bookclub import config as app_config
from bookclub.db import init_engine_once
from bookclub.routes.commands import register_blueprints as register_commands
from bookclub.routes.health import register_health
from bookclub.routes.history import register_blueprints as register_history
from bookclub.routes.tracking import register_blueprints as register_tracking
from bookclub.routes.votes import register_blueprints as register_votes
from bookclub.services.deadline_watcher import build_deadline_watcher
from bookclub.services.selection_poll_watcher import build_selection_poll_watcher
from bookclub.services.vote_events import VoteEventConsumer
from bookclub.utils.logging import configure_logging, get_logger

LOG = get_logger("startup")


def start_background(app: Any) -> None:
    runtime = app.extensions["bookclub"]
    if runtime.get("started"):
        return
    runtime["vote_consumer"].start()
    for task in runtime["tasks"].values():
        task.start()
    runtime["started"] = True
    LOG.info("Background workers started watchers=%s", ",".join(sorted(runtime["tasks"])))


def stop_background(app: Any) -> None:
    runtime = app.extensions.get("bookclub")
    if not runtime or not runtime.get("started"):
        return
    for task in runtime["tasks"].values():
        task.stop()
    runtime["vote_consumer"].stop()
    runtime["started"] = False
    LOG.info("Background workers stopped")


def init_app(app: Any, *, background: Optional[bool] = None) -> None:
    LOG.debug("init_app starting")
    init_engine_once()
    LOG.debug("DB engine initialized")
    register_health(app)
    register_votes(app)
    register_commands(app)
    register_history(app)
    register_tracking(app)
    LOG.debug("Routes registered (health + votes + commands + history + tracking)")
    if "bookclub" not in app.extensions:
        app.extensions["bookclub"] = {
            "vote_consumer": VoteEventConsumer(),
            "tasks": {
                "deadline": build_deadline_watcher(),
                "selection": build_selection_poll_watcher(),
            },
            "started": False,
        }
    if background is None:
        background = app_config.watchers_enabled()
    if background:
        start_background(app)
    LOG.info("App startup wiring complete config=%s", app_config.summarize_runtime_config())


def create_app(*, background: Optional[bool] = None) -> Flask:
    configure_logging()
    app = Flask("bookclub")
    app.config["JSON_SORT_KEYS"] = False
    init_app(app, background=background)
    return app


__all__ = ["init_app", "create_app", "start_background", "stop_background"]
