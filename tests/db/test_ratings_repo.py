"""Tests for rating writes and the derived aggregate columns."""
from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from bookclub.db.engine import init_engine_once, reset_for_tests
from bookclub.db.repositories import lifecycle_repo, queue_repo, ratings_repo

SERVER = 3003


@pytest.fixture(autouse=True)
def in_memory_db(monkeypatch):
    reset_for_tests(drop=True)
    monkeypatch.setenv("BOOKCLUB_DB_PATH", ":memory:")
    monkeypatch.delenv("BOOKCLUB_DATABASE_URL", raising=False)
    init_engine_once()
    yield
    reset_for_tests(drop=True)


def _completed(volume_id: str = "A") -> int:
    queue_repo.add_to_queue(SERVER, volume_id, 1)
    assert lifecycle_repo.select_from_queue(SERVER, volume_id).ok
    return lifecycle_repo.finish_current_book(SERVER).payload["completed_id"]


def test_aggregate_follows_insert_update_and_delete():
    completed_id = _completed()

    ratings_repo.upsert_rating(completed_id, 1, 5)
    agg = ratings_repo.upsert_rating(completed_id, 2, 3)
    assert agg == {"completed_id": completed_id, "average_rating": "4.00", "total_ratings": 2}

    agg = ratings_repo.upsert_rating(completed_id, 1, 4)
    assert agg["average_rating"] == "3.50"
    assert agg["total_ratings"] == 2

    assert ratings_repo.delete_rating(completed_id, 1) is True
    assert ratings_repo.get_aggregate(completed_id)["average_rating"] == "3.00"

    assert ratings_repo.delete_rating(completed_id, 2) is True
    assert ratings_repo.get_aggregate(completed_id) == {
        "completed_id": completed_id,
        "average_rating": None,
        "total_ratings": 0,
    }


def test_average_rounds_half_up_to_two_places():
    completed_id = _completed()
    for user_id, rating in ((1, 5), (2, 4), (3, 4)):
        agg = ratings_repo.upsert_rating(completed_id, user_id, rating)
    # 13 / 3 = 4.333...
    assert agg["average_rating"] == "4.33"
    assert ratings_repo._average([1, 2, 2, 2, 2, 2, 2, 2]) == Decimal("1.88")


@pytest.mark.parametrize("bad", [0, 6, -1])
def test_out_of_range_rating_rejected(bad):
    completed_id = _completed()
    with pytest.raises(ratings_repo.RatingRangeError):
        ratings_repo.upsert_rating(completed_id, 1, bad)


def test_rating_unknown_completed_book_rejected():
    with pytest.raises(ratings_repo.CompletedBookMissingError):
        ratings_repo.upsert_rating(12345, 1, 3)


def test_delete_missing_rating_returns_false():
    completed_id = _completed()
    assert ratings_repo.delete_rating(completed_id, 99) is False


def test_rankings_dense_rank_with_unrated_last():
    first = _completed("A")
    second = _completed("B")
    third = _completed("C")
    _completed("D")
    ratings_repo.upsert_rating(first, 1, 4)
    ratings_repo.upsert_rating(second, 1, 5)
    ratings_repo.upsert_rating(third, 1, 4)

    ranking = [(row["volume_id"], row["rank"]) for row in ratings_repo.server_rankings(SERVER)]

    # C and A tie on 4.00; the more recent completion is listed first.
    assert ranking == [("B", 1), ("C", 2), ("A", 2), ("D", 3)]


def test_member_ratings_sorted_by_rating_or_date(monkeypatch):
    stamps = iter(datetime(2030, 1, 1) + timedelta(days=day) for day in range(10))
    monkeypatch.setattr(ratings_repo, "utcnow", lambda: next(stamps))
    first = _completed("A")
    second = _completed("B")
    third = _completed("C")
    ratings_repo.upsert_rating(first, 1, 4)
    ratings_repo.upsert_rating(second, 1, 2)
    ratings_repo.upsert_rating(third, 1, 4)
    ratings_repo.upsert_rating(third, 2, 1)

    by_rating = ratings_repo.member_ratings(SERVER, 1)
    by_date = ratings_repo.member_ratings(SERVER, 1, sort="date")

    assert [row["volume_id"] for row in by_rating] == ["A", "C", "B"]
    assert [row["volume_id"] for row in by_date] == ["C", "B", "A"]
    assert by_rating[0]["rating"] == 4
    assert ratings_repo.member_ratings(SERVER, 3) == []
    assert ratings_repo.member_ratings(SERVER + 1, 1) == []
    with pytest.raises(ValueError, match="unknown_sort"):
        ratings_repo.member_ratings(SERVER, 1, sort="title")


def test_member_ratings_volume_filter_uses_latest_completion():
    earlier = _completed("A")
    later = _completed("A")
    ratings_repo.upsert_rating(earlier, 1, 2)
    ratings_repo.upsert_rating(later, 1, 5)

    rows = ratings_repo.member_ratings(SERVER, 1, volume_id="A")

    assert [(row["completed_id"], row["rating"]) for row in rows] == [(later, 5)]
    assert ratings_repo.member_ratings(SERVER, 1, volume_id="missing") == []
