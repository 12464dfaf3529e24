"""Vote event handling (poll vote added / removed).

Events resolve their poll by message id (rating poll first, then selection
poll). Rating votes write the member's rating and recompute the aggregate;
selection votes only touch the tally rows. ``VoteEventConsumer`` applies
events one at a time in arrival order and never dies on a bad event.
"""
from __future__ import annotations

import enum
import queue
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from bookclub.db.engine import app_session
from bookclub.db.models import CompletedBook
from bookclub.db.repositories import polls_repo, ratings_repo
from bookclub.services import access_policy, metadata_service
from bookclub.utils.identity import normalize_snowflake
from bookclub.utils.logging import get_logger
from bookclub.utils.timeutils import utcnow

LOG = get_logger("vote_events")


class VoteKind(str, enum.Enum):
    ADD = "add"
    REMOVE = "remove"


class VoteOutcome(str, enum.Enum):
    APPLIED = "applied"
    REMOVED = "removed"
    POLL_NOT_FOUND = "poll_not_found"
    POLL_CLOSED = "poll_closed"
    DISALLOWED = "disallowed"
    INVALID_ANSWER = "invalid_answer"
    METADATA_UNAVAILABLE = "metadata_unavailable"
    FAILED = "failed"


@dataclass(frozen=True)
class VoteEvent:
    kind: VoteKind
    message_id: int
    user_id: int
    answer_id: int
    username: Optional[str] = None

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "VoteEvent":
        """Build an event from a webhook body; raises ValueError on bad input."""
        if not isinstance(data, dict):
            raise ValueError("payload_not_object")
        raw_kind = str(data.get("type") or data.get("kind") or "").strip().lower()
        kind_map = {
            "add": VoteKind.ADD,
            "vote_add": VoteKind.ADD,
            "message_poll_vote_add": VoteKind.ADD,
            "remove": VoteKind.REMOVE,
            "vote_remove": VoteKind.REMOVE,
            "message_poll_vote_remove": VoteKind.REMOVE,
        }
        kind = kind_map.get(raw_kind)
        if kind is None:
            raise ValueError("unknown_event_type")
        message_id = normalize_snowflake(data.get("message_id"))
        user_id = normalize_snowflake(data.get("user_id"))
        answer_id = normalize_snowflake(data.get("answer_id"))
        if message_id is None or user_id is None or answer_id is None:
            raise ValueError("missing_identifiers")
        username = data.get("username")
        return cls(kind, message_id, user_id, answer_id, username if isinstance(username, str) else None)


def _is_closed(processed: bool, expires_at: datetime, now: datetime) -> bool:
    return bool(processed) or expires_at <= now


def _resolve(event: VoteEvent, now: datetime) -> Dict[str, Any]:
    """Unlocked lookup of the target poll; the write phase re-checks under lock."""
    with app_session() as s:
        rating = polls_repo.find_rating_poll_by_message(s, event.message_id)
        if rating is not None:
            book = s.get(CompletedBook, rating.completed_id)
            return {
                "target": "rating",
                "poll_id": rating.poll_id,
                "server_id": rating.server_id,
                "completed_id": rating.completed_id,
                "volume_id": book.volume_id if book else None,
                "closed": _is_closed(rating.processed, rating.expires_at, now),
            }
        selection = polls_repo.find_selection_poll_by_message(s, event.message_id)
        if selection is not None:
            return {
                "target": "selection",
                "poll_id": selection.poll_id,
                "server_id": selection.server_id,
                "options": selection.options(),
                "closed": _is_closed(selection.processed, selection.expires_at, now),
            }
    return {"target": None}


def _apply_rating_vote(event: VoteEvent, target: Dict[str, Any], now: datetime) -> VoteOutcome:
    rating = event.answer_id
    if not (ratings_repo.MIN_RATING <= rating <= ratings_repo.MAX_RATING):
        return VoteOutcome.INVALID_ANSWER
    if event.kind == VoteKind.ADD:
        if not target.get("volume_id"):
            return VoteOutcome.POLL_NOT_FOUND
        # An unverifiable book is never rated.
        try:
            access_policy.require_allowed(event.user_id, target["server_id"], target["volume_id"])
        except access_policy.MatureContentBlockedError:
            return VoteOutcome.DISALLOWED
        except metadata_service.MetadataError as exc:
            LOG.warning(
                "Rating vote dropped on metadata failure message_id=%s volume_id=%s error=%s",
                event.message_id,
                target.get("volume_id"),
                exc.__class__.__name__,
            )
            return VoteOutcome.METADATA_UNAVAILABLE
    with app_session() as s:
        poll = polls_repo.lock_rating_poll(s, target["poll_id"])
        if poll is None:
            return VoteOutcome.POLL_NOT_FOUND
        if _is_closed(poll.processed, poll.expires_at, now):
            return VoteOutcome.POLL_CLOSED
        if event.kind == VoteKind.ADD:
            ratings_repo.upsert_rating(poll.completed_id, event.user_id, rating, username=event.username, session=s)
            return VoteOutcome.APPLIED
        current = ratings_repo.get_rating(poll.completed_id, event.user_id, session=s)
        # Only the answer the member is withdrawing clears the rating.
        if current == rating:
            ratings_repo.delete_rating(poll.completed_id, event.user_id, session=s)
        return VoteOutcome.REMOVED


def _apply_selection_vote(event: VoteEvent, target: Dict[str, Any], now: datetime) -> VoteOutcome:
    option_index = event.answer_id - 1
    if not (0 <= option_index < len(target.get("options") or [])):
        return VoteOutcome.INVALID_ANSWER
    with app_session() as s:
        poll = polls_repo.lock_selection_poll(s, target["poll_id"])
        if poll is None:
            return VoteOutcome.POLL_NOT_FOUND
        if _is_closed(poll.processed, poll.expires_at, now):
            return VoteOutcome.POLL_CLOSED
        if event.kind == VoteKind.ADD:
            polls_repo.add_selection_vote(s, poll.poll_id, event.user_id, option_index)
            return VoteOutcome.APPLIED
        polls_repo.remove_selection_vote(s, poll.poll_id, event.user_id, option_index)
        return VoteOutcome.REMOVED


def handle_vote_event(event: VoteEvent, *, now: Optional[datetime] = None) -> VoteOutcome:
    """Apply one vote event. Never raises; unexpected errors come back as FAILED."""
    moment = now or utcnow()
    try:
        target = _resolve(event, moment)
        kind = target.get("target")
        if kind is None:
            outcome = VoteOutcome.POLL_NOT_FOUND
        elif target.get("closed"):
            outcome = VoteOutcome.POLL_CLOSED
        elif kind == "rating":
            outcome = _apply_rating_vote(event, target, moment)
        else:
            outcome = _apply_selection_vote(event, target, moment)
    except Exception:
        LOG.error(
            "Vote event failed kind=%s message_id=%s user_id=%s",
            event.kind.value,
            event.message_id,
            event.user_id,
            exc_info=True,
        )
        return VoteOutcome.FAILED
    LOG.info(
        "Vote event kind=%s message_id=%s user_id=%s answer=%s outcome=%s",
        event.kind.value,
        event.message_id,
        event.user_id,
        event.answer_id,
        outcome.value,
    )
    return outcome


class VoteEventConsumer:
    """Single background thread draining a FIFO of vote events."""

    def __init__(self, name: str = "vote-events"):
        self._queue: "queue.Queue[VoteEvent]" = queue.Queue()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._name = name
        self.processed = 0

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thread.start()
        LOG.info("Vote event consumer started")

    def submit(self, event: VoteEvent) -> None:
        self._queue.put(event)

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                event = self._queue.get(timeout=0.5)
            except queue.Empty:
                continue
            try:
                handle_vote_event(event)
            except Exception:  # pragma: no cover - handle_vote_event already guards
                LOG.error("Vote consumer error", exc_info=True)
            finally:
                self.processed += 1
                self._queue.task_done()

    def wait_idle(self) -> None:
        """Block until every submitted event has been handled."""
        self._queue.join()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()


__all__ = [
    "VoteKind",
    "VoteOutcome",
    "VoteEvent",
    "handle_vote_event",
    "VoteEventConsumer",
]
