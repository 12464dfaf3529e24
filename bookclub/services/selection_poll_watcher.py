"""Selection poll watcher: closes expired selection polls."""
from __future__ import annotations

from datetime import datetime
from typing import Dict, Optional

from bookclub import config as app_config
from bookclub.services import selection_poll_service
from bookclub.services.scheduler import PeriodicTask
from bookclub.utils.logging import get_logger
from bookclub.utils.timeutils import utcnow

LOG = get_logger("selection_poll_watcher")


def run_selection_tick(now: Optional[datetime] = None) -> Dict[str, int]:
    moment = now or utcnow()
    try:
        summary = selection_poll_service.close_expired_selection_polls(moment)
    except Exception:
        LOG.error("Selection poll scan failed", exc_info=True)
        return {"expired": 0, "closed": 0, "deferred": 0, "failed": 1}
    if summary["expired"]:
        LOG.info(
            "Selection tick expired=%s closed=%s deferred=%s failed=%s",
            summary["expired"],
            summary["closed"],
            summary["deferred"],
            summary["failed"],
        )
    return summary


def build_selection_poll_watcher(interval: Optional[int] = None) -> PeriodicTask:
    return PeriodicTask(
        "selection-poll-watcher",
        interval or app_config.selection_poll_watch_interval_seconds(),
        run_selection_tick,
    )


__all__ = ["run_selection_tick", "build_selection_poll_watcher"]
