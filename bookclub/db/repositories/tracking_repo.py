"""Personal tracking rows: reading list, favorites and progress notes.

Only the write-time limits and the coupling with the current book are
handled here; presentation lives with the callers.
"""
from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from bookclub.db.engine import session_scope
from bookclub.db.models import CurrentBook, FavoriteBook, ReadingListEntry, ReadingProgress
from bookclub.db.repositories import servers_repo
from bookclub.utils.logging import get_logger
from bookclub.utils.timeutils import utcnow

LOG = get_logger("tracking_repo")

MAX_READING_LIST = 5
MAX_FAVORITES = 5


class LimitExceededError(Exception):
    def __init__(self, kind: str, limit: int, attempted: int):
        super().__init__(f"{kind}_limit_exceeded")
        self.kind = kind
        self.limit = limit
        self.attempted = attempted


class NoCurrentBookError(Exception):
    pass


def _dedupe(volume_ids: Iterable[str]) -> List[str]:
    seen: List[str] = []
    for vid in volume_ids:
        cleaned = (vid or "").strip()
        if cleaned and cleaned not in seen:
            seen.append(cleaned)
    return seen


def add_to_reading_list(user_id: int, server_id: int, volume_ids: Iterable[str]) -> List[str]:
    """Add a batch of volumes; the whole batch is rejected if it would exceed the limit.

    Returns the volume ids actually inserted (already-listed ids are skipped).
    """
    wanted = _dedupe(volume_ids)
    with session_scope() as s:
        servers_repo.ensure_server(server_id, session=s)
        servers_repo.ensure_member(user_id, session=s)
        existing = {
            vid
            for (vid,) in s.query(ReadingListEntry.volume_id)
            .filter(ReadingListEntry.user_id == user_id, ReadingListEntry.server_id == server_id)
            .all()
        }
        new_ids = [vid for vid in wanted if vid not in existing]
        total = len(existing) + len(new_ids)
        if total > MAX_READING_LIST:
            raise LimitExceededError("reading_list", MAX_READING_LIST, total)
        for vid in new_ids:
            s.add(ReadingListEntry(user_id=user_id, server_id=server_id, volume_id=vid, added_at=utcnow()))
        return new_ids


def remove_from_reading_list(user_id: int, server_id: int, volume_id: str) -> bool:
    with session_scope() as s:
        deleted = (
            s.query(ReadingListEntry)
            .filter(
                ReadingListEntry.user_id == user_id,
                ReadingListEntry.server_id == server_id,
                ReadingListEntry.volume_id == volume_id,
            )
            .delete(synchronize_session=False)
        )
        return bool(deleted)


def list_reading_list(user_id: int, server_id: int) -> List[str]:
    with session_scope() as s:
        rows = (
            s.query(ReadingListEntry.volume_id)
            .filter(ReadingListEntry.user_id == user_id, ReadingListEntry.server_id == server_id)
            .order_by(ReadingListEntry.added_at.asc())
            .all()
        )
        return [vid for (vid,) in rows]


def add_favorites(user_id: int, server_id: int, volume_ids: Iterable[str]) -> List[str]:
    wanted = _dedupe(volume_ids)
    with session_scope() as s:
        servers_repo.ensure_server(server_id, session=s)
        servers_repo.ensure_member(user_id, session=s)
        existing = {
            vid
            for (vid,) in s.query(FavoriteBook.volume_id)
            .filter(FavoriteBook.user_id == user_id, FavoriteBook.server_id == server_id)
            .all()
        }
        new_ids = [vid for vid in wanted if vid not in existing]
        total = len(existing) + len(new_ids)
        if total > MAX_FAVORITES:
            raise LimitExceededError("favorites", MAX_FAVORITES, total)
        for vid in new_ids:
            s.add(FavoriteBook(user_id=user_id, server_id=server_id, volume_id=vid, added_at=utcnow()))
        return new_ids


def remove_favorite(user_id: int, server_id: int, volume_id: str) -> bool:
    with session_scope() as s:
        deleted = (
            s.query(FavoriteBook)
            .filter(
                FavoriteBook.user_id == user_id,
                FavoriteBook.server_id == server_id,
                FavoriteBook.volume_id == volume_id,
            )
            .delete(synchronize_session=False)
        )
        return bool(deleted)


def set_number_one(user_id: int, server_id: int, volume_id: str) -> None:
    """Flag one favorite as number one, adding it to favorites if needed.

    The previous flag is cleared first so the partial unique index holds.
    """
    with session_scope() as s:
        servers_repo.ensure_server(server_id, session=s)
        servers_repo.ensure_member(user_id, session=s)
        favorites = (
            s.query(FavoriteBook)
            .filter(FavoriteBook.user_id == user_id, FavoriteBook.server_id == server_id)
            .all()
        )
        target = next((f for f in favorites if f.volume_id == volume_id), None)
        if target is None and len(favorites) >= MAX_FAVORITES:
            raise LimitExceededError("favorites", MAX_FAVORITES, len(favorites) + 1)
        for fav in favorites:
            if fav.is_number_one and fav is not target:
                fav.is_number_one = False
        s.flush()
        if target is None:
            target = FavoriteBook(user_id=user_id, server_id=server_id, volume_id=volume_id, added_at=utcnow())
            s.add(target)
        target.is_number_one = True


def list_favorites(user_id: int, server_id: int) -> List[Dict]:
    with session_scope() as s:
        rows = (
            s.query(FavoriteBook)
            .filter(FavoriteBook.user_id == user_id, FavoriteBook.server_id == server_id)
            .order_by(FavoriteBook.is_number_one.desc(), FavoriteBook.added_at.asc())
            .all()
        )
        return [{"volume_id": r.volume_id, "is_number_one": bool(r.is_number_one)} for r in rows]


def upsert_progress(user_id: int, server_id: int, progress_text: Optional[str], *, username: Optional[str] = None) -> Dict:
    """Record progress against the server's current book."""
    with session_scope() as s:
        current = s.get(CurrentBook, server_id)
        if current is None:
            raise NoCurrentBookError("no_current_book")
        servers_repo.ensure_member(user_id, username, session=s)
        row = s.get(ReadingProgress, (user_id, server_id))
        if row is None:
            row = ReadingProgress(user_id=user_id, server_id=server_id)
            s.add(row)
        row.volume_id = current.volume_id
        row.progress_text = progress_text
        row.updated_at = utcnow()
        return {"user_id": user_id, "server_id": server_id, "volume_id": current.volume_id, "progress": progress_text}


def list_progress(server_id: int, *, session: Optional[Session] = None) -> List[Dict]:
    with session_scope(session) as s:
        rows = (
            s.query(ReadingProgress)
            .filter(ReadingProgress.server_id == server_id)
            .order_by(ReadingProgress.updated_at.desc())
            .all()
        )
        return [
            {"user_id": r.user_id, "volume_id": r.volume_id, "progress": r.progress_text}
            for r in rows
        ]


__all__ = [
    "MAX_READING_LIST",
    "MAX_FAVORITES",
    "LimitExceededError",
    "NoCurrentBookError",
    "add_to_reading_list",
    "remove_from_reading_list",
    "list_reading_list",
    "add_favorites",
    "remove_favorite",
    "set_number_one",
    "list_favorites",
    "upsert_progress",
    "list_progress",
]
