"""PeriodicTask behaviour (trigger, failure isolation, stop)."""
from __future__ import annotations

import threading

from bookclub.services.scheduler import PeriodicTask


def test_trigger_runs_tick_without_waiting_for_interval():
    ran = threading.Event()
    task = PeriodicTask("test-trigger", 3600, ran.set)
    task.start()
    try:
        task.trigger()
        assert ran.wait(5)
    finally:
        task.stop()
    assert task.running is False
    assert task.ticks >= 1


def test_failing_tick_is_logged_and_loop_continues():
    calls = []
    done = threading.Event()

    def tick():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("first tick fails")
        done.set()
        return "ok"

    task = PeriodicTask("test-fail", 0.05, tick)
    task.start()
    try:
        assert done.wait(5)
    finally:
        task.stop()
    assert len(calls) >= 2


def test_run_once_records_result():
    task = PeriodicTask("test-once", 10, lambda: {"closed": 0})
    assert task.run_once() == {"closed": 0}
    assert task.last_result == {"closed": 0}
    assert task.ticks == 1
