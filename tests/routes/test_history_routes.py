"""History, stats and member-rating endpoint tests."""
from __future__ import annotations

import pytest

from bookclub.db.engine import reset_for_tests
from bookclub.db.repositories import ratings_repo
from bookclub.services import metadata_service
from bookclub.startup.wiring import create_app

TOKEN = "history-token"
AUTH = {"Authorization": f"Bearer {TOKEN}"}
SERVER = 3434


def _volume(vid: str) -> metadata_service.VolumeInfo:
    if vid == "gone":
        raise metadata_service.MetadataNotFoundError(vid)
    if vid == "flaky":
        raise metadata_service.MetadataUnavailableError(vid)
    return metadata_service.VolumeInfo(volume_id=vid, title=f"Title {vid}", mature=vid == "adult")


@pytest.fixture(autouse=True)
def in_memory_db(monkeypatch):
    reset_for_tests(drop=True)
    monkeypatch.setenv("BOOKCLUB_DB_PATH", ":memory:")
    monkeypatch.delenv("BOOKCLUB_DATABASE_URL", raising=False)
    monkeypatch.setenv("BOOKCLUB_COMMAND_TOKEN", TOKEN)
    monkeypatch.setenv("BOOKCLUB_WATCHERS_ENABLED", "false")
    monkeypatch.setattr(metadata_service, "get_volume", _volume)
    yield
    reset_for_tests(drop=True)


@pytest.fixture
def client():
    return create_app().test_client()


def _add(client, **body):
    return client.post(f"/servers/{SERVER}/history", json=body, headers=AUTH)


def test_add_history_with_rating_then_list(client):
    first = _add(client, volume_id="A", completed_at="2024-05-01", rating=5, user_id=9, username="ida")
    second = _add(client, volume_id="B", completed_at="2024-06-01", rating=2, user_id=9)

    assert first.status_code == 201
    book = first.get_json()["book"]
    assert book["completed_at"] == "2024-05-01T00:00:00"
    assert book["started_at"] == "2024-04-01T00:00:00"
    assert book["average_rating"] == "5.00"
    assert second.status_code == 201

    by_date = client.get(f"/servers/{SERVER}/history", headers=AUTH).get_json()["books"]
    by_rating = client.get(f"/servers/{SERVER}/history?sort=rating&limit=1", headers=AUTH).get_json()["books"]
    assert [b["volume_id"] for b in by_date] == ["B", "A"]
    assert [(b["volume_id"], b["rank"]) for b in by_rating] == [("A", 1)]
    assert client.get(f"/servers/{SERVER}/history?sort=title", headers=AUTH).status_code == 400


def test_add_history_validation(client):
    assert _add(client).status_code == 400
    assert _add(client, volume_id="A", completed_at="01/05/2024").get_json()["error"] == "date_format"
    assert _add(client, volume_id="A", completed_at="2999-01-01").get_json()["error"] == "date_in_future"
    assert _add(client, volume_id="A", rating=4).get_json()["error"] == "rating_requires_user"
    assert _add(client, volume_id="A", rating=7, user_id=9).get_json()["error"] == "rating_out_of_range"

    _add(client, volume_id="A", completed_at="2024-05-01")
    dup = _add(client, volume_id="A", completed_at="2024-05-01")
    assert dup.status_code == 409
    assert dup.get_json()["error"] == "duplicate_completion"


def test_add_history_checks_catalogue(client):
    assert _add(client, volume_id="gone").status_code == 404
    assert _add(client, volume_id="flaky").status_code == 503
    blocked = _add(client, volume_id="adult")
    assert blocked.status_code == 403
    assert blocked.get_json()["error"] == "mature_blocked"
    assert client.get(f"/servers/{SERVER}/history", headers=AUTH).get_json()["books"] == []


def test_remove_history_entry(client):
    completed_id = _add(client, volume_id="A", rating=3, user_id=9).get_json()["book"]["completed_id"]

    resp = client.delete(f"/servers/{SERVER}/history/{completed_id}", headers=AUTH)

    assert resp.status_code == 200
    assert resp.get_json()["removed"]["volume_id"] == "A"
    assert ratings_repo.get_rating(completed_id, 9) is None
    assert client.delete(f"/servers/{SERVER}/history/{completed_id}", headers=AUTH).status_code == 404


def test_stats_and_member_ratings(client):
    _add(client, volume_id="A", completed_at="2024-05-01", rating=5, user_id=9, username="ida")
    _add(client, volume_id="B", completed_at="2024-06-01", rating=1, user_id=9)

    stats = client.get(f"/servers/{SERVER}/stats", headers=AUTH).get_json()
    assert stats["total_books"] == 2
    assert stats["first_completed_at"] == "2024-05-01T00:00:00"
    assert stats["average_rating"] == "3.00"
    assert stats["top_book"]["volume_id"] == "A"
    assert stats["worst_book"]["volume_id"] == "B"
    assert stats["highest_rater"]["username"] == "ida"

    ratings = client.get(f"/servers/{SERVER}/members/9/ratings", headers=AUTH).get_json()["ratings"]
    assert [(r["volume_id"], r["rating"]) for r in ratings] == [("A", 5), ("B", 1)]
    filtered = client.get(f"/servers/{SERVER}/members/9/ratings?volume_id=B", headers=AUTH).get_json()
    assert [r["volume_id"] for r in filtered["ratings"]] == ["B"]
    assert client.get(f"/servers/{SERVER}/members/9/ratings?sort=odd", headers=AUTH).status_code == 400
