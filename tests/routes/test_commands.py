"""Admin command endpoint tests (full app wiring, watchers off)."""
from __future__ import annotations

import itertools

import pytest

from bookclub.db.engine import app_session, reset_for_tests
from bookclub.db.repositories import polls_repo, queue_repo
from bookclub.services import announcement_service, metadata_service
from bookclub.startup.wiring import create_app

TOKEN = "cmd-token"
AUTH = {"Authorization": f"Bearer {TOKEN}"}
SERVER = 1212


@pytest.fixture(autouse=True)
def in_memory_db(monkeypatch):
    reset_for_tests(drop=True)
    monkeypatch.setenv("BOOKCLUB_DB_PATH", ":memory:")
    monkeypatch.delenv("BOOKCLUB_DATABASE_URL", raising=False)
    monkeypatch.setenv("BOOKCLUB_COMMAND_TOKEN", TOKEN)
    monkeypatch.setenv("BOOKCLUB_WATCHERS_ENABLED", "false")
    ids = itertools.count(3000)
    monkeypatch.setattr(
        metadata_service,
        "get_volume",
        lambda vid: metadata_service.VolumeInfo(volume_id=vid, title=f"Title {vid}"),
    )
    monkeypatch.setattr(announcement_service, "post_message", lambda channel_id, payload, pin=False: next(ids))
    yield
    reset_for_tests(drop=True)


@pytest.fixture
def app():
    return create_app()


@pytest.fixture
def client(app):
    return app.test_client()


def _queue(client, *volume_ids):
    for vid in volume_ids:
        resp = client.post(f"/servers/{SERVER}/queue", json={"volume_id": vid, "user_id": 1}, headers=AUTH)
        assert resp.status_code == 201


def test_requires_bearer_token(client, monkeypatch):
    assert client.get(f"/servers/{SERVER}/state").status_code == 401
    assert client.get(f"/servers/{SERVER}/state", headers={"Authorization": "Bearer nope"}).status_code == 401
    monkeypatch.delenv("BOOKCLUB_COMMAND_TOKEN")
    assert client.get(f"/servers/{SERVER}/state", headers=AUTH).status_code == 503


def test_health_is_public(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["db"] is True
    assert body["watchers"] == {"deadline": False, "selection": False}


def test_queue_add_duplicate_and_remove(client):
    _queue(client, "A", "B", "C")
    dup = client.post(f"/servers/{SERVER}/queue", json={"volume_id": "A", "user_id": 2}, headers=AUTH)
    assert dup.status_code == 409

    resp = client.delete(f"/servers/{SERVER}/queue/B", headers=AUTH)

    assert resp.status_code == 200
    assert [(r["volume_id"], r["position"]) for r in resp.get_json()["queue"]] == [("A", 1), ("C", 2)]
    assert client.delete(f"/servers/{SERVER}/queue/B", headers=AUTH).status_code == 404


def test_queue_disabled_for_members(client):
    client.put(f"/servers/{SERVER}/config", json={"queue_enabled": False}, headers=AUTH)
    resp = client.post(f"/servers/{SERVER}/queue", json={"volume_id": "A", "user_id": 1}, headers=AUTH)
    assert resp.status_code == 403
    admin = client.post(f"/servers/{SERVER}/queue", json={"volume_id": "A", "user_id": 1, "admin": True}, headers=AUTH)
    assert admin.status_code == 201


def test_select_manual_then_conflict(client):
    _queue(client, "A", "B")

    first = client.post(f"/servers/{SERVER}/select", json={"volume_id": "A", "deadline": "2099-01-31"}, headers=AUTH)
    second = client.post(f"/servers/{SERVER}/select", json={"volume_id": "B"}, headers=AUTH)

    assert first.status_code == 200
    assert first.get_json()["volume_id"] == "A"
    assert first.get_json()["deadline"] == "2099-01-31T23:59:59"
    assert second.status_code == 409
    assert second.get_json()["error"] == "already_has_current"


def test_select_next_and_random_modes(client):
    assert client.post(f"/servers/{SERVER}/select", json={"mode": "next"}, headers=AUTH).status_code == 404
    _queue(client, "A", "B")
    resp = client.post(f"/servers/{SERVER}/select", json={"mode": "next"}, headers=AUTH)
    assert resp.get_json()["volume_id"] == "A"
    client.delete(f"/servers/{SERVER}/current", headers=AUTH)
    resp = client.post(f"/servers/{SERVER}/select", json={"mode": "random"}, headers=AUTH)
    assert resp.get_json()["volume_id"] == "B"


def test_select_rejects_bad_input(client):
    _queue(client, "A")
    assert client.post(f"/servers/{SERVER}/select", json={"volume_id": "Z"}, headers=AUTH).status_code == 404
    bad_date = client.post(f"/servers/{SERVER}/select", json={"volume_id": "A", "deadline": "2000-01-01"}, headers=AUTH)
    assert bad_date.status_code == 400
    assert bad_date.get_json()["error"] == "deadline_in_past"
    assert client.post(f"/servers/{SERVER}/select", json={"mode": "vibes"}, headers=AUTH).status_code == 400


def test_select_rejects_non_text_deadline(client):
    _queue(client, "A")

    resp = client.post(f"/servers/{SERVER}/select", json={"mode": "next", "deadline": 20300101}, headers=AUTH)

    assert resp.status_code == 400
    assert resp.get_json()["error"] == "deadline_format"
    assert client.get(f"/servers/{SERVER}/state", headers=AUTH).get_json()["current"] is None


def test_finish_opens_rating_poll_and_rankings(client):
    _queue(client, "A")
    client.post(f"/servers/{SERVER}/select", json={"volume_id": "A", "channel_id": 77}, headers=AUTH)

    resp = client.post(f"/servers/{SERVER}/finish", json={}, headers=AUTH)

    body = resp.get_json()
    assert resp.status_code == 200
    assert body["volume_id"] == "A"
    assert body["rating_poll_channel_id"] == 77
    assert body["rating_poll_message_id"] is not None
    again = client.post(f"/servers/{SERVER}/finish", json={}, headers=AUTH)
    assert again.status_code == 404
    assert again.get_json()["error"] == "no_current_book"

    rankings = client.get(f"/servers/{SERVER}/rankings", headers=AUTH).get_json()["rankings"]
    assert [(r["volume_id"], r["rank"]) for r in rankings] == [("A", 1)]


def test_open_selection_poll_endpoint(client):
    _queue(client, "A")
    resp = client.post(f"/servers/{SERVER}/selection-poll", json={"channel_id": 5}, headers=AUTH)
    assert resp.status_code == 422
    assert resp.get_json()["error"] == "insufficient_candidates"

    _queue(client, "B", "C")
    resp = client.post(f"/servers/{SERVER}/selection-poll", json={"channel_id": 5, "size": 2}, headers=AUTH)
    assert resp.status_code == 201
    assert resp.get_json()["options"] == ["A", "B"]
    conflict = client.post(f"/servers/{SERVER}/selection-poll", json={"channel_id": 5}, headers=AUTH)
    assert conflict.status_code == 409

    state = client.get(f"/servers/{SERVER}/state", headers=AUTH).get_json()
    assert state["selection_poll"]["options"] == ["A", "B"]


def test_delete_server_and_member(client):
    _queue(client, "A")
    assert client.delete("/members/1", headers=AUTH).status_code == 200
    assert queue_repo.list_queue(SERVER) == []
    assert client.delete("/members/1", headers=AUTH).status_code == 404
    assert client.delete(f"/servers/{SERVER}", headers=AUTH).status_code == 200
    assert client.delete(f"/servers/{SERVER}", headers=AUTH).status_code == 404


def test_trigger_watcher(client):
    assert client.post("/watchers/deadline/trigger", headers=AUTH).status_code == 202
    assert client.post("/watchers/nope/trigger", headers=AUTH).status_code == 404


def test_close_selection_poll_now_promotes_leader(client):
    _queue(client, "A", "B", "C")
    opened = client.post(f"/servers/{SERVER}/selection-poll", json={"channel_id": 5, "size": 2}, headers=AUTH)
    poll_id = opened.get_json()["poll_id"]
    with app_session() as s:
        polls_repo.add_selection_vote(s, poll_id, 501, 1)

    resp = client.post(f"/servers/{SERVER}/selection-poll/close", headers=AUTH)

    body = resp.get_json()
    assert resp.status_code == 200
    assert body["status"] == "selected"
    assert body["winner"] == "B"
    state = client.get(f"/servers/{SERVER}/state", headers=AUTH).get_json()
    assert state["current"]["volume_id"] == "B"
    assert state["selection_poll"] is None
    again = client.post(f"/servers/{SERVER}/selection-poll/close", headers=AUTH)
    assert again.status_code == 404
    assert again.get_json()["error"] == "no_open_poll"


def test_close_rating_poll_now(client):
    _queue(client, "A")
    client.post(f"/servers/{SERVER}/select", json={"volume_id": "A", "channel_id": 77}, headers=AUTH)
    poll_id = client.post(f"/servers/{SERVER}/finish", json={}, headers=AUTH).get_json()["rating_poll_id"]

    resp = client.post(f"/rating-polls/{poll_id}/close", headers=AUTH)

    assert resp.status_code == 200
    assert resp.get_json() == {"ok": True, "poll_id": poll_id}
    again = client.post(f"/rating-polls/{poll_id}/close", headers=AUTH)
    assert again.status_code == 409
    assert client.post("/rating-polls/9999/close", headers=AUTH).status_code == 409


def test_discussion_thread_attached_to_current_book(client):
    missing = client.put(f"/servers/{SERVER}/current/thread", json={"thread_id": 555}, headers=AUTH)
    assert missing.status_code == 404
    _queue(client, "A")
    client.post(f"/servers/{SERVER}/select", json={"volume_id": "A"}, headers=AUTH)

    resp = client.put(f"/servers/{SERVER}/current/thread", json={"thread_id": "555"}, headers=AUTH)

    assert resp.status_code == 200
    assert resp.get_json()["current"]["discussion_thread_id"] == 555
    bad = client.put(f"/servers/{SERVER}/current/thread", json={"thread_id": "abc"}, headers=AUTH)
    assert bad.status_code == 400
    assert bad.get_json()["error"] == "invalid_integer"
