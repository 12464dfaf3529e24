"""Periodic background tasks (one thread per task)."""
from __future__ import annotations

import threading
from typing import Any, Callable, Optional

from bookclub.utils.logging import get_logger

LOG = get_logger("scheduler")


class PeriodicTask:
    """Runs ``func`` every ``interval`` seconds until stopped.

    ``trigger()`` wakes the thread for an immediate extra tick. A tick never
    overlaps another tick of the same task; ticks of different tasks may run
    concurrently.
    """

    def __init__(self, name: str, interval: float, func: Callable[[], Any], *, run_immediately: bool = False):
        self.name = name
        self.interval = max(0.01, float(interval))
        self.func = func
        self.run_immediately = run_immediately
        self.ticks = 0
        self.last_result: Any = None
        self._stop = threading.Event()
        self._wake = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self) -> Any:
        try:
            self.last_result = self.func()
        except Exception:
            LOG.error("Periodic task tick failed name=%s", self.name, exc_info=True)
            self.last_result = None
        self.ticks += 1
        return self.last_result

    def _loop(self) -> None:
        if self.run_immediately:
            self.run_once()
        while not self._stop.is_set():
            self._wake.wait(self.interval)
            self._wake.clear()
            if self._stop.is_set():
                break
            self.run_once()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        LOG.info("Started periodic task name=%s interval=%ss", self.name, self.interval)

    def trigger(self) -> None:
        self._wake.set()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()


__all__ = ["PeriodicTask"]
