"""Tests for the transition engine (select / finish / remove)."""
from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from bookclub.db.engine import app_session, init_engine_once, reset_for_tests
from bookclub.db.models import CompletedBook, CurrentBook, ReadingProgress
from bookclub.db.repositories import lifecycle_repo, queue_repo, tracking_repo
from bookclub.db.repositories.lifecycle_repo import TransitionFailure

SERVER = 2002


@pytest.fixture(autouse=True)
def in_memory_db(monkeypatch):
    reset_for_tests(drop=True)
    monkeypatch.setenv("BOOKCLUB_DB_PATH", ":memory:")
    monkeypatch.delenv("BOOKCLUB_DATABASE_URL", raising=False)
    init_engine_once()
    yield
    reset_for_tests(drop=True)


def _queue(*volume_ids: str, user_id: int = 11, username: str = "ann"):
    for vid in volume_ids:
        queue_repo.add_to_queue(SERVER, vid, user_id, username=username)


def test_select_moves_entry_to_current_and_renumbers():
    _queue("A", "B", "C")

    result = lifecycle_repo.select_from_queue(SERVER, "B")

    assert result.ok
    assert result.payload["volume_id"] == "B"
    assert result.payload["suggested_by_user_id"] == 11
    assert result.payload["suggested_by_username"] == "ann"
    assert lifecycle_repo.get_current_book(SERVER)["volume_id"] == "B"
    assert [(r["volume_id"], r["position"]) for r in queue_repo.list_queue(SERVER)] == [("A", 1), ("C", 2)]


def test_select_not_queued_fails():
    _queue("A")
    result = lifecycle_repo.select_from_queue(SERVER, "Z")
    assert not result.ok
    assert result.failure == TransitionFailure.NOT_IN_QUEUE


def test_select_unknown_server_fails_not_in_queue():
    result = lifecycle_repo.select_from_queue(999, "A")
    assert result.failure == TransitionFailure.NOT_IN_QUEUE


def test_select_with_existing_current_fails_and_keeps_queue():
    _queue("A", "B")
    assert lifecycle_repo.select_from_queue(SERVER, "A").ok

    result = lifecycle_repo.select_from_queue(SERVER, "B")

    assert result.failure == TransitionFailure.ALREADY_HAS_CURRENT
    assert [r["volume_id"] for r in queue_repo.list_queue(SERVER)] == ["B"]


def test_finish_creates_completed_row_and_clears_progress():
    _queue("A")
    deadline = datetime(2030, 1, 1, 23, 59, 59)
    lifecycle_repo.select_from_queue(SERVER, "A", deadline=deadline)
    tracking_repo.upsert_progress(21, SERVER, "chapter 3")
    tracking_repo.upsert_progress(22, SERVER, "done")

    result = lifecycle_repo.finish_current_book(SERVER)

    assert result.ok
    assert result.payload["volume_id"] == "A"
    assert result.payload["suggested_by_user_id"] == 11
    with app_session() as s:
        assert s.query(CurrentBook).count() == 0
        assert s.query(ReadingProgress).filter(ReadingProgress.server_id == SERVER).count() == 0
        book = s.get(CompletedBook, result.payload["completed_id"])
        assert book.average_rating is None
        assert book.total_ratings == 0
        assert book.started_at == result.payload["started_at"]


def test_finish_without_current_fails():
    result = lifecycle_repo.finish_current_book(SERVER)
    assert result.failure == TransitionFailure.NO_CURRENT_BOOK


def test_finish_due_guard_rejects_book_not_yet_due():
    _queue("A")
    lifecycle_repo.select_from_queue(SERVER, "A", deadline=datetime(2030, 1, 1))

    early = lifecycle_repo.finish_current_book(SERVER, due_by=datetime(2029, 12, 31))
    assert early.failure == TransitionFailure.NOT_DUE

    on_time = lifecycle_repo.finish_current_book(SERVER, due_by=datetime(2030, 1, 1))
    assert on_time.ok


def test_finish_due_guard_rejects_book_without_deadline():
    _queue("A")
    lifecycle_repo.select_from_queue(SERVER, "A")
    result = lifecycle_repo.finish_current_book(SERVER, due_by=datetime(2030, 1, 1))
    assert result.failure == TransitionFailure.NOT_DUE
    assert lifecycle_repo.get_current_book(SERVER) is not None


def test_remove_current_skips_history():
    _queue("A")
    lifecycle_repo.select_from_queue(SERVER, "A")
    tracking_repo.upsert_progress(21, SERVER, "p. 10")

    result = lifecycle_repo.remove_current_book(SERVER)

    assert result.ok
    assert lifecycle_repo.get_current_book(SERVER) is None
    assert lifecycle_repo.list_completed(SERVER) == []
    assert tracking_repo.list_progress(SERVER) == []
    assert lifecycle_repo.remove_current_book(SERVER).failure == TransitionFailure.NO_CURRENT_BOOK


def test_same_volume_can_be_read_twice():
    _queue("A")
    lifecycle_repo.select_from_queue(SERVER, "A")
    lifecycle_repo.finish_current_book(SERVER)
    _queue("A")
    lifecycle_repo.select_from_queue(SERVER, "A")
    lifecycle_repo.finish_current_book(SERVER)

    assert [row["volume_id"] for row in lifecycle_repo.list_completed(SERVER)] == ["A", "A"]


def test_due_current_books_respects_auto_complete_setting():
    from bookclub.db.repositories import servers_repo

    now = datetime(2030, 6, 1, 12, 0, 0)
    _queue("A")
    lifecycle_repo.select_from_queue(SERVER, "A", deadline=now - timedelta(hours=1))
    queue_repo.add_to_queue(SERVER + 1, "B", 11)
    lifecycle_repo.select_from_queue(SERVER + 1, "B", deadline=now - timedelta(hours=1))
    servers_repo.upsert_config(SERVER + 1, auto_complete_on_deadline=False)
    queue_repo.add_to_queue(SERVER + 2, "C", 11)
    lifecycle_repo.select_from_queue(SERVER + 2, "C", deadline=now + timedelta(days=1))

    due = lifecycle_repo.due_current_books(now)

    assert [row["server_id"] for row in due] == [SERVER]


def test_transition_result_as_dict_serializes_failure():
    result = lifecycle_repo.finish_current_book(SERVER)
    assert result.as_dict() == {"ok": False, "error": "no_current_book"}
