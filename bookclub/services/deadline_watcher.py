"""Deadline watcher: completes overdue current books and closes rating polls."""
from __future__ import annotations

from datetime import datetime
from typing import Dict, Optional

from bookclub import config as app_config
from bookclub.db.repositories import lifecycle_repo
from bookclub.db.repositories.lifecycle_repo import TransitionFailure
from bookclub.services import rating_poll_service
from bookclub.services.scheduler import PeriodicTask
from bookclub.utils.logging import get_logger
from bookclub.utils.timeutils import utcnow

LOG = get_logger("deadline_watcher")


def run_deadline_tick(now: Optional[datetime] = None) -> Dict[str, int]:
    """One pass over due current books, then over expired rating polls.

    Each server is handled in its own transaction; the due-time guard makes a
    server that lost its book (or got a new one) since the scan a skip.
    """
    moment = now or utcnow()
    summary = {"due": 0, "completed": 0, "skipped": 0, "failed": 0}
    try:
        due = lifecycle_repo.due_current_books(moment)
    except Exception:
        LOG.error("Deadline scan failed", exc_info=True)
        due = []
    summary["due"] = len(due)
    for row in due:
        server_id = row["server_id"]
        try:
            result = rating_poll_service.finish_and_open_rating_poll(server_id, due_by=moment, now=moment)
        except Exception:
            summary["failed"] += 1
            LOG.error("Deadline completion failed server_id=%s", server_id, exc_info=True)
            continue
        if result.ok:
            summary["completed"] += 1
        elif result.transition.failure in (TransitionFailure.NO_CURRENT_BOOK, TransitionFailure.NOT_DUE):
            summary["skipped"] += 1
            LOG.info("Deadline skip server_id=%s reason=%s", server_id, result.transition.failure.value)
        else:  # pragma: no cover - finish only returns the two failures above
            summary["failed"] += 1

    polls = rating_poll_service.close_expired_rating_polls(moment)
    summary["rating_polls_closed"] = polls["closed"]
    summary["failed"] += polls["failed"]
    LOG.info(
        "Deadline tick due=%s completed=%s skipped=%s failed=%s rating_polls_closed=%s",
        summary["due"],
        summary["completed"],
        summary["skipped"],
        summary["failed"],
        summary["rating_polls_closed"],
    )
    return summary


def build_deadline_watcher(interval: Optional[int] = None) -> PeriodicTask:
    return PeriodicTask(
        "deadline-watcher",
        interval or app_config.deadline_watch_interval_seconds(),
        run_deadline_tick,
    )


__all__ = ["run_deadline_tick", "build_deadline_watcher"]
