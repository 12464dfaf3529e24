"""Persistence for selection polls, their vote tallies and rating polls."""
from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional, Sequence

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bookclub.db.engine import session_scope
from bookclub.db.models import RatingPoll, SelectionPoll, SelectionPollVote
from bookclub.utils.logging import get_logger
from bookclub.utils.timeutils import utcnow

LOG = get_logger("polls_repo")


class PollAlreadyOpenError(Exception):
    """Raised when a server already has an unprocessed selection poll."""


class RatingPollExistsError(Exception):
    pass


# Selection polls


def get_open_selection_poll(server_id: int, *, session: Optional[Session] = None) -> Optional[SelectionPoll]:
    with session_scope(session) as s:
        return (
            s.query(SelectionPoll)
            .filter(SelectionPoll.server_id == server_id, SelectionPoll.processed.is_(False))
            .one_or_none()
        )


def close_stale_selection_polls(session: Session, server_id: int, now: Optional[datetime] = None) -> int:
    """Mark expired-but-unprocessed polls of a server processed without a selection."""
    moment = now or utcnow()
    closed = (
        session.query(SelectionPoll)
        .filter(
            SelectionPoll.server_id == server_id,
            SelectionPoll.processed.is_(False),
            SelectionPoll.expires_at <= moment,
        )
        .update({SelectionPoll.processed: True, SelectionPoll.selected_volume_id: None}, synchronize_session=False)
    )
    if closed:
        LOG.info("Closed stale selection polls server_id=%s count=%s", server_id, closed)
    return int(closed or 0)


def cancel_open_selection_poll(session: Session, server_id: int) -> Optional[int]:
    poll = (
        session.query(SelectionPoll)
        .filter(SelectionPoll.server_id == server_id, SelectionPoll.processed.is_(False))
        .with_for_update()
        .one_or_none()
    )
    if poll is None:
        return None
    poll.processed = True
    poll.selected_volume_id = None
    session.flush()
    LOG.info("Cancelled selection poll poll_id=%s server_id=%s", poll.poll_id, server_id)
    return poll.poll_id


def reserve_selection_poll(
    session: Session,
    *,
    server_id: int,
    options: Sequence[str],
    expires_at: datetime,
    deadline: Optional[datetime] = None,
    channel_id: Optional[int] = None,
) -> SelectionPoll:
    """Insert the open poll row before anything is posted.

    The partial unique index on unprocessed polls turns a concurrent
    reservation into ``PollAlreadyOpenError``.
    """
    poll = SelectionPoll(
        server_id=server_id,
        book_options=list(options),
        expires_at=expires_at,
        deadline=deadline,
        channel_id=channel_id,
        processed=False,
        created_at=utcnow(),
    )
    try:
        with session.begin_nested():
            session.add(poll)
    except IntegrityError as exc:
        raise PollAlreadyOpenError("selection_poll_already_open") from exc
    return poll


def attach_selection_message(poll_id: int, message_id: int, channel_id: Optional[int] = None) -> bool:
    with session_scope() as s:
        poll = s.get(SelectionPoll, poll_id)
        if poll is None:
            return False
        poll.message_id = message_id
        if channel_id is not None:
            poll.channel_id = channel_id
        return True


def lock_selection_poll(session: Session, poll_id: int) -> Optional[SelectionPoll]:
    return (
        session.query(SelectionPoll)
        .filter(SelectionPoll.poll_id == poll_id)
        .with_for_update()
        .one_or_none()
    )


def find_selection_poll_by_message(session: Session, message_id: int, *, lock: bool = False) -> Optional[SelectionPoll]:
    query = session.query(SelectionPoll).filter(SelectionPoll.message_id == message_id)
    if lock:
        query = query.with_for_update()
    return query.one_or_none()


def mark_selection_processed(poll: SelectionPoll, selected_volume_id: Optional[str] = None) -> None:
    poll.processed = True
    poll.selected_volume_id = selected_volume_id


def expired_selection_poll_ids(now: Optional[datetime] = None) -> List[int]:
    moment = now or utcnow()
    with session_scope() as s:
        rows = (
            s.query(SelectionPoll.poll_id)
            .filter(SelectionPoll.processed.is_(False), SelectionPoll.expires_at <= moment)
            .order_by(SelectionPoll.expires_at.asc())
            .all()
        )
        return [pid for (pid,) in rows]


def add_selection_vote(session: Session, poll_id: int, user_id: int, option_index: int) -> bool:
    if session.get(SelectionPollVote, (poll_id, user_id, option_index)) is not None:
        return False
    session.add(SelectionPollVote(poll_id=poll_id, user_id=user_id, option_index=option_index, voted_at=utcnow()))
    session.flush()
    return True


def remove_selection_vote(session: Session, poll_id: int, user_id: int, option_index: int) -> bool:
    row = session.get(SelectionPollVote, (poll_id, user_id, option_index))
    if row is None:
        return False
    session.delete(row)
    session.flush()
    return True


def selection_tallies(poll_id: int, *, session: Optional[Session] = None) -> Dict[int, int]:
    """Vote count per option index (options without votes are absent)."""
    with session_scope(session) as s:
        rows = (
            s.query(SelectionPollVote.option_index, func.count(SelectionPollVote.user_id))
            .filter(SelectionPollVote.poll_id == poll_id)
            .group_by(SelectionPollVote.option_index)
            .all()
        )
        return {int(idx): int(count) for idx, count in rows}


# Rating polls


def reserve_rating_poll(
    session: Session,
    *,
    server_id: int,
    completed_id: int,
    expires_at: datetime,
    channel_id: Optional[int] = None,
) -> RatingPoll:
    poll = RatingPoll(
        server_id=server_id,
        completed_id=completed_id,
        expires_at=expires_at,
        channel_id=channel_id,
        processed=False,
        created_at=utcnow(),
    )
    try:
        with session.begin_nested():
            session.add(poll)
    except IntegrityError as exc:
        raise RatingPollExistsError("rating_poll_exists") from exc
    return poll


def attach_rating_message(poll_id: int, message_id: int, channel_id: Optional[int] = None) -> bool:
    with session_scope() as s:
        poll = s.get(RatingPoll, poll_id)
        if poll is None:
            return False
        poll.message_id = message_id
        if channel_id is not None:
            poll.channel_id = channel_id
        return True


def lock_rating_poll(session: Session, poll_id: int) -> Optional[RatingPoll]:
    return (
        session.query(RatingPoll)
        .filter(RatingPoll.poll_id == poll_id)
        .with_for_update()
        .one_or_none()
    )


def find_rating_poll_by_message(session: Session, message_id: int, *, lock: bool = False) -> Optional[RatingPoll]:
    query = session.query(RatingPoll).filter(RatingPoll.message_id == message_id)
    if lock:
        query = query.with_for_update()
    return query.one_or_none()


def expired_rating_poll_ids(now: Optional[datetime] = None) -> List[int]:
    moment = now or utcnow()
    with session_scope() as s:
        rows = (
            s.query(RatingPoll.poll_id)
            .filter(RatingPoll.processed.is_(False), RatingPoll.expires_at <= moment)
            .order_by(RatingPoll.expires_at.asc())
            .all()
        )
        return [pid for (pid,) in rows]


def get_rating_poll_for_completed(completed_id: int, *, session: Optional[Session] = None) -> Optional[RatingPoll]:
    with session_scope(session) as s:
        return s.query(RatingPoll).filter(RatingPoll.completed_id == completed_id).one_or_none()


__all__ = [
    "PollAlreadyOpenError",
    "RatingPollExistsError",
    "get_open_selection_poll",
    "close_stale_selection_polls",
    "cancel_open_selection_poll",
    "reserve_selection_poll",
    "attach_selection_message",
    "lock_selection_poll",
    "find_selection_poll_by_message",
    "mark_selection_processed",
    "expired_selection_poll_ids",
    "add_selection_vote",
    "remove_selection_vote",
    "selection_tallies",
    "reserve_rating_poll",
    "attach_rating_message",
    "lock_rating_poll",
    "find_rating_poll_by_message",
    "expired_rating_poll_ids",
    "get_rating_poll_for_completed",
]
