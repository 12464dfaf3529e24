"""Vote event handler and consumer tests."""
from __future__ import annotations

import itertools
from datetime import datetime, timedelta

import pytest

from bookclub.db.engine import init_engine_once, reset_for_tests
from bookclub.db.repositories import lifecycle_repo, polls_repo, queue_repo, ratings_repo, servers_repo
from bookclub.services import (
    announcement_service,
    metadata_service,
    rating_poll_service,
    selection_poll_service,
    vote_events,
)
from bookclub.services.vote_events import VoteEvent, VoteEventConsumer, VoteKind, VoteOutcome

SERVER = 1111
NOW = datetime(2030, 2, 1, 9, 0, 0)


@pytest.fixture(autouse=True)
def in_memory_db(monkeypatch):
    reset_for_tests(drop=True)
    monkeypatch.setenv("BOOKCLUB_DB_PATH", ":memory:")
    monkeypatch.delenv("BOOKCLUB_DATABASE_URL", raising=False)
    init_engine_once()
    yield
    reset_for_tests(drop=True)


@pytest.fixture
def mature_ids():
    return set()


@pytest.fixture(autouse=True)
def collaborators(monkeypatch, mature_ids):
    ids = itertools.count(500)
    monkeypatch.setattr(
        metadata_service,
        "get_volume",
        lambda vid: metadata_service.VolumeInfo(volume_id=vid, title=vid, mature=vid in mature_ids),
    )
    monkeypatch.setattr(announcement_service, "post_message", lambda channel_id, payload, pin=False: next(ids))


def _rating_poll(volume_id: str = "A"):
    queue_repo.add_to_queue(SERVER, volume_id, 1)
    lifecycle_repo.select_from_queue(SERVER, volume_id, announcement_channel_id=9)
    completion = rating_poll_service.finish_and_open_rating_poll(SERVER, now=NOW)
    return completion.message_id, completion.transition.payload["completed_id"]


def _selection_poll():
    for vid in ("A", "B", "C"):
        queue_repo.add_to_queue(SERVER, vid, 1)
    opened = selection_poll_service.open_selection_poll(SERVER, channel_id=9, now=NOW)
    return opened.message_id, opened.poll_id


def _event(kind, message_id, user_id, answer_id):
    return VoteEvent(kind=kind, message_id=message_id, user_id=user_id, answer_id=answer_id)


def test_rating_votes_write_and_overwrite_ratings():
    message_id, completed_id = _rating_poll()
    at = NOW + timedelta(hours=1)

    assert vote_events.handle_vote_event(_event(VoteKind.ADD, message_id, 1, 5), now=at) == VoteOutcome.APPLIED
    assert vote_events.handle_vote_event(_event(VoteKind.ADD, message_id, 2, 3), now=at) == VoteOutcome.APPLIED
    assert ratings_repo.get_aggregate(completed_id)["average_rating"] == "4.00"

    # Changing a vote arrives as remove(old) + add(new).
    vote_events.handle_vote_event(_event(VoteKind.REMOVE, message_id, 1, 5), now=at)
    vote_events.handle_vote_event(_event(VoteKind.ADD, message_id, 1, 4), now=at)
    assert ratings_repo.get_aggregate(completed_id) == {
        "completed_id": completed_id,
        "average_rating": "3.50",
        "total_ratings": 2,
    }


def test_stale_remove_does_not_clear_newer_rating():
    message_id, completed_id = _rating_poll()
    at = NOW + timedelta(hours=1)
    vote_events.handle_vote_event(_event(VoteKind.ADD, message_id, 1, 4), now=at)

    outcome = vote_events.handle_vote_event(_event(VoteKind.REMOVE, message_id, 1, 2), now=at)

    assert outcome == VoteOutcome.REMOVED
    assert ratings_repo.get_rating(completed_id, 1) == 4


def test_removing_last_vote_resets_aggregate():
    message_id, completed_id = _rating_poll()
    at = NOW + timedelta(hours=1)
    vote_events.handle_vote_event(_event(VoteKind.ADD, message_id, 1, 2), now=at)
    vote_events.handle_vote_event(_event(VoteKind.REMOVE, message_id, 1, 2), now=at)
    assert ratings_repo.get_aggregate(completed_id)["average_rating"] is None
    assert ratings_repo.get_aggregate(completed_id)["total_ratings"] == 0


def test_unknown_message_is_poll_not_found():
    assert vote_events.handle_vote_event(_event(VoteKind.ADD, 123456, 1, 1), now=NOW) == VoteOutcome.POLL_NOT_FOUND


def test_expired_or_processed_rating_poll_discards_vote():
    message_id, completed_id = _rating_poll()
    late = NOW + timedelta(hours=200)
    assert vote_events.handle_vote_event(_event(VoteKind.ADD, message_id, 1, 5), now=late) == VoteOutcome.POLL_CLOSED

    rating_poll_service.close_expired_rating_polls(late)
    assert vote_events.handle_vote_event(_event(VoteKind.ADD, message_id, 1, 5), now=NOW) == VoteOutcome.POLL_CLOSED
    assert ratings_repo.get_aggregate(completed_id)["total_ratings"] == 0


def test_answer_out_of_range_is_invalid():
    message_id, _ = _rating_poll()
    assert vote_events.handle_vote_event(_event(VoteKind.ADD, message_id, 1, 6), now=NOW) == VoteOutcome.INVALID_ANSWER


def test_mature_book_rating_disallowed_until_enabled(mature_ids):
    mature_ids.add("A")
    message_id, completed_id = _rating_poll("A")

    outcome = vote_events.handle_vote_event(_event(VoteKind.ADD, message_id, 1, 5), now=NOW)
    assert outcome == VoteOutcome.DISALLOWED
    assert ratings_repo.get_rating(completed_id, 1) is None

    servers_repo.upsert_config(SERVER, mature_content_enabled=True)
    assert vote_events.handle_vote_event(_event(VoteKind.ADD, message_id, 1, 5), now=NOW) == VoteOutcome.APPLIED


def test_rating_vote_dropped_when_book_cannot_be_verified(monkeypatch):
    message_id, completed_id = _rating_poll("A")
    vote_events.handle_vote_event(_event(VoteKind.ADD, message_id, 2, 4), now=NOW)

    def unavailable(volume_id):
        raise metadata_service.MetadataUnavailableError("http_503")

    monkeypatch.setattr(metadata_service, "get_volume", unavailable)

    outcome = vote_events.handle_vote_event(_event(VoteKind.ADD, message_id, 1, 5), now=NOW)

    assert outcome == VoteOutcome.METADATA_UNAVAILABLE
    assert ratings_repo.get_rating(completed_id, 1) is None
    assert ratings_repo.get_aggregate(completed_id)["total_ratings"] == 1
    # Withdrawing a vote needs no lookup.
    assert vote_events.handle_vote_event(_event(VoteKind.REMOVE, message_id, 2, 4), now=NOW) == VoteOutcome.REMOVED
    assert ratings_repo.get_aggregate(completed_id)["total_ratings"] == 0


def test_selection_votes_only_touch_tallies():
    message_id, poll_id = _selection_poll()

    assert vote_events.handle_vote_event(_event(VoteKind.ADD, message_id, 1, 2), now=NOW) == VoteOutcome.APPLIED
    assert vote_events.handle_vote_event(_event(VoteKind.ADD, message_id, 2, 2), now=NOW) == VoteOutcome.APPLIED
    assert vote_events.handle_vote_event(_event(VoteKind.ADD, message_id, 3, 1), now=NOW) == VoteOutcome.APPLIED
    assert vote_events.handle_vote_event(_event(VoteKind.REMOVE, message_id, 3, 1), now=NOW) == VoteOutcome.REMOVED
    assert vote_events.handle_vote_event(_event(VoteKind.ADD, message_id, 4, 4), now=NOW) == VoteOutcome.INVALID_ANSWER

    assert polls_repo.selection_tallies(poll_id) == {1: 2}
    assert lifecycle_repo.get_current_book(SERVER) is None
    assert [r["volume_id"] for r in queue_repo.list_queue(SERVER)] == ["A", "B", "C"]


def test_selection_vote_after_expiry_is_closed():
    message_id, poll_id = _selection_poll()
    late = NOW + timedelta(days=2)
    assert vote_events.handle_vote_event(_event(VoteKind.ADD, message_id, 1, 1), now=late) == VoteOutcome.POLL_CLOSED
    assert polls_repo.selection_tallies(poll_id) == {}


def test_unexpected_error_reported_as_failed(monkeypatch):
    message_id, _ = _rating_poll()

    def broken(*_a, **_k):
        raise RuntimeError("db gone")

    monkeypatch.setattr(vote_events.ratings_repo, "upsert_rating", broken)

    assert vote_events.handle_vote_event(_event(VoteKind.ADD, message_id, 1, 3), now=NOW) == VoteOutcome.FAILED


def test_event_from_payload_validates_fields():
    event = VoteEvent.from_payload(
        {"type": "MESSAGE_POLL_VOTE_ADD", "message_id": "77", "user_id": 8, "answer_id": "2", "username": "zed"}
    )
    assert event == VoteEvent(VoteKind.ADD, 77, 8, 2, "zed")
    with pytest.raises(ValueError):
        VoteEvent.from_payload({"type": "reaction", "message_id": 1, "user_id": 1, "answer_id": 1})
    with pytest.raises(ValueError):
        VoteEvent.from_payload({"type": "add", "message_id": 1, "user_id": None, "answer_id": 1})


def test_consumer_applies_events_in_arrival_order(monkeypatch):
    seen = []

    def recording_handler(event, **_kwargs):
        seen.append(event.answer_id)
        if event.answer_id == 2:
            raise RuntimeError("bad event")
        return VoteOutcome.APPLIED

    monkeypatch.setattr(vote_events, "handle_vote_event", recording_handler)
    consumer = VoteEventConsumer()
    consumer.start()
    try:
        for answer in (1, 2, 3, 4):
            consumer.submit(_event(VoteKind.ADD, 1, 1, answer))
        consumer.wait_idle()
    finally:
        consumer.stop()

    assert seen == [1, 2, 3, 4]
    assert consumer.processed == 4
    assert consumer.running is False
