"""Repository helpers for servers, members and per-server configuration."""
from __future__ import annotations

from typing import Any, Dict, Iterable, Optional

from sqlalchemy.orm import Session

from bookclub.db.engine import session_scope
from bookclub.db.models import (
    BookRating,
    Member,
    QueueEntry,
    SelectionPollVote,
    Server,
    ServerConfig,
)
from bookclub.utils.identity import normalize_snowflake
from bookclub.utils.logging import get_logger

LOG = get_logger("servers_repo")

CONFIG_DEFAULTS: Dict[str, Any] = {
    "announcement_channel_id": None,
    "discussion_channel_id": None,
    "queue_enabled": True,
    "pin_polls": True,
    "auto_complete_on_deadline": True,
    "mature_content_enabled": False,
}


def ensure_server(server_id: int, server_name: Optional[str] = None, *, session: Optional[Session] = None) -> None:
    """Insert the server row if missing; refresh the name when one is given."""
    with session_scope(session) as s:
        row = s.get(Server, server_id)
        if row is None:
            s.add(Server(server_id=server_id, server_name=server_name or ""))
            s.flush()
            LOG.debug("Registered server server_id=%s", server_id)
        elif server_name and row.server_name != server_name:
            row.server_name = server_name


def ensure_member(user_id: int, username: Optional[str] = None, *, session: Optional[Session] = None) -> None:
    with session_scope(session) as s:
        row = s.get(Member, user_id)
        if row is None:
            s.add(Member(user_id=user_id, username=username or ""))
            s.flush()
        elif username and row.username != username:
            row.username = username


def get_config(server_id: int, *, session: Optional[Session] = None) -> Dict[str, Any]:
    """Return the server configuration, falling back to defaults for a missing row."""
    with session_scope(session) as s:
        row = s.get(ServerConfig, server_id)
        if row is None:
            data = dict(CONFIG_DEFAULTS)
            data["server_id"] = server_id
            return data
        return row.as_dict()


def _coerce(key: str, value: Any) -> Any:
    if key.endswith("_channel_id"):
        if value in (None, ""):
            return None
        channel = normalize_snowflake(value)
        if channel is None:
            raise ValueError(f"invalid_{key}")
        return channel
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def upsert_config(server_id: int, **fields: Any) -> Dict[str, Any]:
    unknown = set(fields) - set(CONFIG_DEFAULTS)
    if unknown:
        raise ValueError(f"unknown_config_fields:{','.join(sorted(unknown))}")
    fields = {key: _coerce(key, value) for key, value in fields.items()}
    with session_scope() as s:
        ensure_server(server_id, session=s)
        row = s.get(ServerConfig, server_id)
        if row is None:
            values = dict(CONFIG_DEFAULTS)
            values.update(fields)
            row = ServerConfig(server_id=server_id, **values)
            s.add(row)
        else:
            for key, value in fields.items():
                setattr(row, key, value)
        s.flush()
        return row.as_dict()


def delete_server_data(server_id: int) -> bool:
    """Delete a server and everything it owns (foreign keys cascade)."""
    with session_scope() as s:
        row = s.get(Server, server_id)
        if row is None:
            return False
        s.delete(row)
        LOG.info("Deleted server data server_id=%s", server_id)
        return True


def _renumber_servers(session: Session, server_ids: Iterable[int]) -> None:
    from bookclub.db.repositories import queue_repo

    for sid in sorted(set(server_ids)):
        queue_repo.renumber_queue(session, sid)


def delete_member_data(user_id: int) -> bool:
    """Delete a member's personal rows.

    Suggester references on current/completed books are nulled; queue
    positions and rating aggregates touched by the deletion are rebuilt.
    """
    from bookclub.db.repositories import ratings_repo

    with session_scope() as s:
        row = s.get(Member, user_id)
        if row is None:
            return False
        queued_servers = [
            sid for (sid,) in s.query(QueueEntry.server_id).filter(QueueEntry.suggested_by_user_id == user_id).all()
        ]
        rated_books = [
            cid for (cid,) in s.query(BookRating.completed_id).filter(BookRating.user_id == user_id).all()
        ]
        s.query(SelectionPollVote).filter(SelectionPollVote.user_id == user_id).delete(synchronize_session=False)
        s.delete(row)
        s.flush()
        # Cascaded deletes bypass the identity map.
        s.expire_all()
        _renumber_servers(s, queued_servers)
        for completed_id in rated_books:
            ratings_repo.recompute_aggregate(s, completed_id)
        LOG.info(
            "Deleted member data user_id=%s queues=%s ratings=%s",
            user_id,
            len(set(queued_servers)),
            len(rated_books),
        )
        return True


__all__ = [
    "CONFIG_DEFAULTS",
    "ensure_server",
    "ensure_member",
    "get_config",
    "upsert_config",
    "delete_server_data",
    "delete_member_data",
]
