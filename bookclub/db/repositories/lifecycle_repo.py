"""Transition engine: the only writer of queue/current/completed lifecycle rows.

Each operation runs as one transaction (or joins the caller's), locks the
row that scopes the transition and returns a ``TransitionResult`` instead of
raising for expected outcomes.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bookclub.db.engine import session_scope
from bookclub.db.models import (
    CompletedBook,
    CurrentBook,
    Member,
    QueueEntry,
    ReadingProgress,
    Server,
    ServerConfig,
)
from bookclub.db.repositories import queue_repo
from bookclub.utils.logging import get_logger
from bookclub.utils.timeutils import utcnow

LOG = get_logger("lifecycle_repo")


class TransitionFailure(str, enum.Enum):
    NOT_IN_QUEUE = "not_in_queue"
    ALREADY_HAS_CURRENT = "already_has_current"
    NO_CURRENT_BOOK = "no_current_book"
    NOT_DUE = "not_due"


@dataclass
class TransitionResult:
    failure: Optional[TransitionFailure] = None
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def success(cls, **payload: Any) -> "TransitionResult":
        return cls(None, dict(payload))

    @classmethod
    def fail(cls, failure: TransitionFailure) -> "TransitionResult":
        return cls(failure, {})

    def as_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"ok": self.ok}
        if self.failure is not None:
            out["error"] = self.failure.value
        for key, value in self.payload.items():
            out[key] = value.isoformat() if isinstance(value, datetime) else value
        return out


def _lock_current(session: Session, server_id: int) -> Optional[CurrentBook]:
    return (
        session.query(CurrentBook)
        .filter(CurrentBook.server_id == server_id)
        .with_for_update()
        .one_or_none()
    )


def select_from_queue(
    server_id: int,
    volume_id: str,
    *,
    announcement_channel_id: Optional[int] = None,
    deadline: Optional[datetime] = None,
    discussion_thread_id: Optional[int] = None,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> TransitionResult:
    """Queued -> Current for ``volume_id``.

    Locks the server row. The queue entry is removed and the queue renumbered
    in the same transaction as the Current Book insert. ``now`` stamps
    ``started_at``.
    """
    with session_scope(session) as s:
        server = (
            s.query(Server)
            .filter(Server.server_id == server_id)
            .with_for_update()
            .one_or_none()
        )
        if server is None:
            return TransitionResult.fail(TransitionFailure.NOT_IN_QUEUE)
        entry = (
            s.query(QueueEntry)
            .filter(QueueEntry.server_id == server_id, QueueEntry.volume_id == volume_id)
            .one_or_none()
        )
        if entry is None:
            return TransitionResult.fail(TransitionFailure.NOT_IN_QUEUE)
        if s.get(CurrentBook, server_id) is not None:
            return TransitionResult.fail(TransitionFailure.ALREADY_HAS_CURRENT)

        suggester_id = entry.suggested_by_user_id
        try:
            with s.begin_nested():
                s.add(
                    CurrentBook(
                        server_id=server_id,
                        volume_id=volume_id,
                        suggested_by_user_id=suggester_id,
                        started_at=now or utcnow(),
                        deadline=deadline,
                        announcement_channel_id=announcement_channel_id,
                        discussion_thread_id=discussion_thread_id,
                    )
                )
        except IntegrityError:
            LOG.info("Concurrent current book insert server_id=%s volume_id=%s", server_id, volume_id)
            return TransitionResult.fail(TransitionFailure.ALREADY_HAS_CURRENT)

        s.delete(entry)
        s.flush()
        queue_repo.renumber_queue(s, server_id)
        member = s.get(Member, suggester_id) if suggester_id is not None else None
        LOG.info("Selected current book server_id=%s volume_id=%s", server_id, volume_id)
        return TransitionResult.success(
            server_id=server_id,
            volume_id=volume_id,
            suggested_by_user_id=suggester_id,
            suggested_by_username=member.username if member else None,
            deadline=deadline,
        )


def finish_current_book(
    server_id: int,
    *,
    due_by: Optional[datetime] = None,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> TransitionResult:
    """Current -> Completed, stamped ``completed_at = now``.

    ``due_by`` makes the call fail ``NOT_DUE`` unless the locked book has a
    deadline at or before it, so a watcher never finishes a book that
    replaced the one it observed.
    """
    with session_scope(session) as s:
        current = _lock_current(s, server_id)
        if current is None:
            return TransitionResult.fail(TransitionFailure.NO_CURRENT_BOOK)
        if due_by is not None and (current.deadline is None or current.deadline > due_by):
            return TransitionResult.fail(TransitionFailure.NOT_DUE)

        completed = CompletedBook(
            server_id=server_id,
            volume_id=current.volume_id,
            suggested_by_user_id=current.suggested_by_user_id,
            started_at=current.started_at,
            completed_at=now or utcnow(),
            average_rating=None,
            total_ratings=0,
        )
        s.add(completed)
        cleared = (
            s.query(ReadingProgress)
            .filter(ReadingProgress.server_id == server_id)
            .delete(synchronize_session=False)
        )
        s.delete(current)
        s.flush()
        LOG.info(
            "Finished current book server_id=%s volume_id=%s completed_id=%s progress_cleared=%s",
            server_id,
            completed.volume_id,
            completed.completed_id,
            cleared,
        )
        return TransitionResult.success(
            completed_id=completed.completed_id,
            server_id=server_id,
            volume_id=completed.volume_id,
            started_at=completed.started_at,
            completed_at=completed.completed_at,
            suggested_by_user_id=completed.suggested_by_user_id,
            announcement_channel_id=current.announcement_channel_id,
        )


def remove_current_book(server_id: int, *, session: Optional[Session] = None) -> TransitionResult:
    """Drop the current book without recording it as completed."""
    with session_scope(session) as s:
        current = _lock_current(s, server_id)
        if current is None:
            return TransitionResult.fail(TransitionFailure.NO_CURRENT_BOOK)
        volume_id = current.volume_id
        s.query(ReadingProgress).filter(ReadingProgress.server_id == server_id).delete(synchronize_session=False)
        s.delete(current)
        s.flush()
        LOG.info("Removed current book server_id=%s volume_id=%s", server_id, volume_id)
        return TransitionResult.success(server_id=server_id, volume_id=volume_id)


def get_current_book(server_id: int, *, session: Optional[Session] = None) -> Optional[Dict[str, Any]]:
    with session_scope(session) as s:
        row = s.get(CurrentBook, server_id)
        return row.as_dict() if row else None


def set_discussion_thread(server_id: int, thread_id: Optional[int], *, session: Optional[Session] = None) -> bool:
    with session_scope(session) as s:
        row = _lock_current(s, server_id)
        if row is None:
            return False
        row.discussion_thread_id = thread_id
        return True


def due_current_books(now: Optional[datetime] = None, *, session: Optional[Session] = None) -> List[Dict[str, Any]]:
    """Current books past their deadline on servers with auto-completion on.

    A missing config row counts as enabled.
    """
    moment = now or utcnow()
    with session_scope(session) as s:
        rows = (
            s.query(CurrentBook)
            .outerjoin(ServerConfig, ServerConfig.server_id == CurrentBook.server_id)
            .filter(
                and_(
                    CurrentBook.deadline.isnot(None),
                    CurrentBook.deadline <= moment,
                    or_(ServerConfig.server_id.is_(None), ServerConfig.auto_complete_on_deadline.is_(True)),
                )
            )
            .order_by(CurrentBook.deadline.asc())
            .all()
        )
        return [row.as_dict() | {"deadline_at": row.deadline} for row in rows]


def list_completed(server_id: int, *, limit: Optional[int] = None, session: Optional[Session] = None) -> List[Dict[str, Any]]:
    with session_scope(session) as s:
        query = (
            s.query(CompletedBook)
            .filter(CompletedBook.server_id == server_id)
            .order_by(CompletedBook.completed_at.desc(), CompletedBook.completed_id.desc())
        )
        if limit is not None:
            query = query.limit(limit)
        return [row.as_dict() for row in query.all()]


__all__ = [
    "TransitionFailure",
    "TransitionResult",
    "select_from_queue",
    "finish_current_book",
    "remove_current_book",
    "get_current_book",
    "set_discussion_thread",
    "due_current_books",
    "list_completed",
]
