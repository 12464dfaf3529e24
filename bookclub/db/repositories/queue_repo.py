"""Repository helpers for the per-server reading queue.

Positions are dense (1..N). Every removal renumbers the remaining entries of
the server in (position, added_at) order inside the same transaction.
"""
from __future__ import annotations

import random
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bookclub.db.engine import session_scope
from bookclub.db.models import CurrentBook, Member, QueueEntry, Server, ServerConfig
from bookclub.db.repositories import servers_repo
from bookclub.utils.logging import get_logger

LOG = get_logger("queue_repo")


class QueueEntryExistsError(Exception):
    """Raised when the volume is already queued (or being read) on the server."""


class QueueDisabledError(Exception):
    """Raised when member suggestions are turned off for the server."""


def _lock_server(session: Session, server_id: int) -> Optional[Server]:
    return (
        session.query(Server)
        .filter(Server.server_id == server_id)
        .with_for_update()
        .one_or_none()
    )


def _ordered(session: Session, server_id: int):
    return (
        session.query(QueueEntry)
        .filter(QueueEntry.server_id == server_id)
        .order_by(QueueEntry.position.asc(), QueueEntry.added_at.asc(), QueueEntry.queue_id.asc())
    )


def _entry_dict(entry: QueueEntry, username: Optional[str]) -> Dict:
    data = entry.as_dict()
    data["suggested_by_username"] = username
    return data


def renumber_queue(session: Session, server_id: int) -> int:
    """Rewrite positions of ``server_id`` as 1..N; returns the entry count."""
    entries = _ordered(session, server_id).all()
    for idx, entry in enumerate(entries, start=1):
        if entry.position != idx:
            entry.position = idx
    session.flush()
    return len(entries)


def add_to_queue(
    server_id: int,
    volume_id: str,
    suggested_by_user_id: int,
    *,
    username: Optional[str] = None,
    at_front: bool = False,
    enforce_enabled: bool = True,
    session: Optional[Session] = None,
) -> Dict:
    """Queue a volume for a server.

    Appends at ``max(position) + 1``; ``at_front`` inserts at position 1 and
    shifts the rest (admin insert). ``enforce_enabled`` applies the server's
    ``queue_enabled`` setting, which only gates member suggestions.
    """
    with session_scope(session) as s:
        servers_repo.ensure_server(server_id, session=s)
        servers_repo.ensure_member(suggested_by_user_id, username, session=s)
        _lock_server(s, server_id)
        if enforce_enabled:
            config = s.get(ServerConfig, server_id)
            if config is not None and not config.queue_enabled:
                raise QueueDisabledError("queue_disabled")
        current = s.get(CurrentBook, server_id)
        if current is not None and current.volume_id == volume_id:
            raise QueueEntryExistsError("volume_is_current")
        existing = (
            s.query(QueueEntry.queue_id)
            .filter(QueueEntry.server_id == server_id, QueueEntry.volume_id == volume_id)
            .first()
        )
        if existing:
            raise QueueEntryExistsError("volume_already_queued")
        if at_front:
            s.query(QueueEntry).filter(QueueEntry.server_id == server_id).update(
                {QueueEntry.position: QueueEntry.position + 1}, synchronize_session=False
            )
            position = 1
        else:
            max_pos = s.query(func.max(QueueEntry.position)).filter(QueueEntry.server_id == server_id).scalar()
            position = int(max_pos or 0) + 1
        entry = QueueEntry(
            server_id=server_id,
            volume_id=volume_id,
            suggested_by_user_id=suggested_by_user_id,
            position=position,
        )
        s.add(entry)
        try:
            s.flush()
        except IntegrityError as exc:
            raise QueueEntryExistsError("volume_already_queued") from exc
        LOG.info(
            "Queued volume server_id=%s volume_id=%s position=%s front=%s",
            server_id,
            volume_id,
            position,
            at_front,
        )
        return _entry_dict(entry, username)


def remove_from_queue(server_id: int, volume_id: str, *, session: Optional[Session] = None) -> bool:
    with session_scope(session) as s:
        _lock_server(s, server_id)
        entry = (
            s.query(QueueEntry)
            .filter(QueueEntry.server_id == server_id, QueueEntry.volume_id == volume_id)
            .one_or_none()
        )
        if entry is None:
            return False
        s.delete(entry)
        s.flush()
        remaining = renumber_queue(s, server_id)
        LOG.info("Removed queue entry server_id=%s volume_id=%s remaining=%s", server_id, volume_id, remaining)
        return True


def list_queue(server_id: int, *, limit: Optional[int] = None, session: Optional[Session] = None) -> List[Dict]:
    with session_scope(session) as s:
        query = (
            s.query(QueueEntry, Member.username)
            .outerjoin(Member, Member.user_id == QueueEntry.suggested_by_user_id)
            .filter(QueueEntry.server_id == server_id)
            .order_by(QueueEntry.position.asc(), QueueEntry.added_at.asc(), QueueEntry.queue_id.asc())
        )
        if limit is not None:
            query = query.limit(limit)
        return [_entry_dict(entry, username) for entry, username in query.all()]


def poll_candidates(server_id: int, size: int, *, session: Optional[Session] = None) -> List[str]:
    """Volume ids of the first ``size`` entries by position."""
    return [row["volume_id"] for row in list_queue(server_id, limit=max(0, size), session=session)]


def next_entry(server_id: int, *, session: Optional[Session] = None) -> Optional[Dict]:
    rows = list_queue(server_id, limit=1, session=session)
    return rows[0] if rows else None


def random_entry(
    server_id: int,
    *,
    rng: Optional[random.Random] = None,
    session: Optional[Session] = None,
) -> Optional[Dict]:
    """Uniformly random queue entry, or None when the queue is empty."""
    rows = list_queue(server_id, session=session)
    if not rows:
        return None
    return (rng or random).choice(rows)


def queue_length(server_id: int, *, session: Optional[Session] = None) -> int:
    with session_scope(session) as s:
        return int(s.query(func.count(QueueEntry.queue_id)).filter(QueueEntry.server_id == server_id).scalar() or 0)


__all__ = [
    "QueueEntryExistsError",
    "QueueDisabledError",
    "renumber_queue",
    "add_to_queue",
    "remove_from_queue",
    "list_queue",
    "poll_candidates",
    "next_entry",
    "random_entry",
    "queue_length",
]
