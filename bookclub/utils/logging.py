"""Logger hierarchy for the service.

Every module logs through a child of the ``bookclub`` logger
(``get_logger("queue_repo")`` -> ``bookclub.queue_repo``). Only the root of
that hierarchy owns a handler; children propagate to it, so level and
format are decided in one place by ``configure_logging``. The root is
configured lazily on first use from ``BOOKCLUB_LOG_LEVEL``.
"""
from __future__ import annotations

import logging
import threading
from typing import IO, Optional

from bookclub import config as app_config

ROOT_NAME = "bookclub"
LOG_FORMAT = "[bookclub] %(asctime)s %(levelname)s %(name)s %(threadName)s %(message)s"

_LOCK = threading.Lock()
_HANDLER: Optional[logging.Handler] = None


def _level(level_name: Optional[str]) -> int:
    resolved = logging.getLevelName((level_name or app_config.log_level_name()).upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def configure_logging(level_name: Optional[str] = None, *, stream: Optional[IO[str]] = None) -> logging.Logger:
    """(Re)configure the ``bookclub`` root logger and return it.

    Replaces the handler installed by a previous call instead of stacking a
    second one; ``stream`` defaults to stderr.
    """
    global _HANDLER
    root = logging.getLogger(ROOT_NAME)
    with _LOCK:
        if _HANDLER is not None:
            root.removeHandler(_HANDLER)
        handler = logging.StreamHandler(stream)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
        root.setLevel(_level(level_name))
        root.propagate = False
        _HANDLER = handler
    return root


def _qualified(name: str) -> str:
    if name == ROOT_NAME or name.startswith(ROOT_NAME + "."):
        return name
    return f"{ROOT_NAME}.{name}"


def get_logger(name: str = ROOT_NAME) -> logging.Logger:
    if _HANDLER is None:
        configure_logging()
    return logging.getLogger(_qualified(name))


__all__ = ["ROOT_NAME", "configure_logging", "get_logger"]
