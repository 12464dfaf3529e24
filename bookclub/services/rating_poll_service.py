"""Rating poll lifecycle.

A rating poll is reserved in the same transaction that finishes the current
book; the gateway message id is attached after posting. Votes write ratings
directly (see ``vote_events``), so closing only flips ``processed`` and posts
a summary.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from bookclub import config as app_config
from bookclub.db.engine import app_session
from bookclub.db.models import CompletedBook
from bookclub.db.repositories import lifecycle_repo, polls_repo, ratings_repo, servers_repo
from bookclub.db.repositories.lifecycle_repo import TransitionResult
from bookclub.services import announcement_service, payloads
from bookclub.services.announcement_service import AnnouncementError
from bookclub.utils.logging import get_logger
from bookclub.utils.timeutils import utcnow

LOG = get_logger("rating_poll_service")


@dataclass
class CompletionResult:
    transition: TransitionResult
    poll_id: Optional[int] = None
    message_id: Optional[int] = None
    channel_id: Optional[int] = None
    expires_at: Optional[datetime] = None

    @property
    def ok(self) -> bool:
        return self.transition.ok

    def as_dict(self) -> Dict[str, Any]:
        data = self.transition.as_dict()
        if self.ok:
            data.update(
                {
                    "rating_poll_id": self.poll_id,
                    "rating_poll_message_id": self.message_id,
                    "rating_poll_channel_id": self.channel_id,
                    "rating_poll_expires_at": self.expires_at.isoformat() if self.expires_at else None,
                }
            )
        return data


def finish_and_open_rating_poll(
    server_id: int,
    *,
    due_by: Optional[datetime] = None,
    channel_id: Optional[int] = None,
    hours: Optional[int] = None,
    now: Optional[datetime] = None,
) -> CompletionResult:
    """Current -> Completed plus the rating poll for the completed book.

    Used by both the deadline watcher (with ``due_by``) and the finish
    command. Posting happens after commit; a failed post leaves the poll
    without a message and it simply expires.
    """
    moment = now or utcnow()
    window = hours or app_config.rating_poll_hours()
    config = servers_repo.get_config(server_id)
    with app_session() as s:
        result = lifecycle_repo.finish_current_book(server_id, due_by=due_by, now=moment, session=s)
        if not result.ok:
            return CompletionResult(result)
        target_channel = (
            channel_id
            or result.payload.get("announcement_channel_id")
            or config.get("announcement_channel_id")
        )
        expires_at = moment + timedelta(hours=window)
        poll = polls_repo.reserve_rating_poll(
            s,
            server_id=server_id,
            completed_id=result.payload["completed_id"],
            expires_at=expires_at,
            channel_id=target_channel,
        )
        poll_id = poll.poll_id

    completion = CompletionResult(result, poll_id=poll_id, channel_id=target_channel, expires_at=expires_at)
    if not target_channel:
        LOG.warning("No announcement channel for rating poll server_id=%s poll_id=%s", server_id, poll_id)
        return completion
    payload = payloads.rating_poll(result.payload["volume_id"], hours=window)
    try:
        message_id = announcement_service.post_message(target_channel, payload, pin=bool(config.get("pin_polls")))
    except AnnouncementError as exc:
        LOG.warning("Rating poll post failed server_id=%s poll_id=%s error=%s", server_id, poll_id, exc)
        return completion
    polls_repo.attach_rating_message(poll_id, message_id, target_channel)
    completion.message_id = message_id
    LOG.info(
        "Opened rating poll server_id=%s completed_id=%s poll_id=%s message_id=%s",
        server_id,
        result.payload["completed_id"],
        poll_id,
        message_id,
    )
    return completion


def close_rating_poll(poll_id: int, *, now: Optional[datetime] = None, force: bool = False) -> bool:
    """Mark the poll processed and post the rating summary. False if nothing to close."""
    moment = now or utcnow()
    with app_session() as s:
        poll = polls_repo.lock_rating_poll(s, poll_id)
        if poll is None or poll.processed:
            return False
        if not force and poll.expires_at > moment:
            return False
        poll.processed = True
        channel_id = poll.channel_id
        completed_id = poll.completed_id
        book = s.get(CompletedBook, completed_id)
        volume_id = book.volume_id if book else None
        aggregate = ratings_repo.get_aggregate(completed_id, session=s)

    LOG.info(
        "Closed rating poll poll_id=%s completed_id=%s total=%s avg=%s",
        poll_id,
        completed_id,
        (aggregate or {}).get("total_ratings"),
        (aggregate or {}).get("average_rating"),
    )
    if volume_id:
        announcement_service.try_post(channel_id, payloads.rating_summary(volume_id, aggregate))
    return True


def close_expired_rating_polls(now: Optional[datetime] = None) -> Dict[str, int]:
    moment = now or utcnow()
    summary = {"expired": 0, "closed": 0, "failed": 0}
    poll_ids = polls_repo.expired_rating_poll_ids(moment)
    summary["expired"] = len(poll_ids)
    for poll_id in poll_ids:
        try:
            if close_rating_poll(poll_id, now=moment):
                summary["closed"] += 1
        except Exception:
            summary["failed"] += 1
            LOG.error("Rating poll close failed poll_id=%s", poll_id, exc_info=True)
    return summary


__all__ = [
    "CompletionResult",
    "finish_and_open_rating_poll",
    "close_rating_poll",
    "close_expired_rating_polls",
]
