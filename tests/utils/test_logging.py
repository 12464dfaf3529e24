"""Tests for the bookclub logger hierarchy."""
from __future__ import annotations

import io
import logging

import pytest

from bookclub.utils import logging as bc_logging


@pytest.fixture(autouse=True)
def fresh_root():
    yield
    bc_logging.configure_logging()


def test_module_loggers_are_children_of_root():
    assert bc_logging.get_logger("queue_repo").name == "bookclub.queue_repo"
    assert bc_logging.get_logger("bookclub.startup").name == "bookclub.startup"
    assert bc_logging.get_logger().name == "bookclub"
    assert bc_logging.get_logger("queue_repo").propagate is True


def test_children_write_through_single_root_handler():
    stream = io.StringIO()
    root = bc_logging.configure_logging("DEBUG", stream=stream)
    bc_logging.configure_logging("DEBUG", stream=stream)

    bc_logging.get_logger("ratings_repo").debug("Rating stored completed_id=%s", 5)

    lines = stream.getvalue().splitlines()
    assert len(root.handlers) == 1
    assert len(lines) == 1
    assert "DEBUG bookclub.ratings_repo" in lines[0]
    assert lines[0].endswith("Rating stored completed_id=5")


def test_level_follows_environment(monkeypatch):
    stream = io.StringIO()
    monkeypatch.setenv("BOOKCLUB_LOG_LEVEL", "warning")
    root = bc_logging.configure_logging(stream=stream)

    bc_logging.get_logger("scheduler").info("hidden")
    bc_logging.get_logger("scheduler").warning("shown")

    assert root.level == logging.WARNING
    assert stream.getvalue().count("\n") == 1
    assert "shown" in stream.getvalue()


def test_unknown_level_falls_back_to_info():
    root = bc_logging.configure_logging("CHATTY", stream=io.StringIO())
    assert root.level == logging.INFO
