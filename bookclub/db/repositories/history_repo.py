"""Completed-book history maintained by admins, plus server statistics.

Books finished through the lifecycle land here via ``lifecycle_repo``; this
module records books the club read before it was tracked, removes entries
and summarises the history. Aggregates are always refreshed through
``ratings_repo.recompute_aggregate``.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from bookclub.db.engine import session_scope
from bookclub.db.models import BookRating, CompletedBook, Member, RatingPoll, Server
from bookclub.db.repositories import lifecycle_repo, ratings_repo, servers_repo
from bookclub.utils.logging import get_logger
from bookclub.utils.timeutils import utcnow

LOG = get_logger("history_repo")

ASSUMED_READING_DAYS = 30
_TWO_PLACES = Decimal("0.01")


class DuplicateCompletionError(Exception):
    def __init__(self, server_id: int, volume_id: str, completed_at: datetime):
        super().__init__("duplicate_completion")
        self.server_id = server_id
        self.volume_id = volume_id
        self.completed_at = completed_at


def _same_day_exists(session: Session, server_id: int, volume_id: str, day: datetime) -> bool:
    start = day.replace(hour=0, minute=0, second=0, microsecond=0)
    end = start + timedelta(days=1)
    return (
        session.query(CompletedBook.completed_id)
        .filter(
            CompletedBook.server_id == server_id,
            CompletedBook.volume_id == volume_id,
            CompletedBook.completed_at >= start,
            CompletedBook.completed_at < end,
        )
        .first()
        is not None
    )


def add_completed_book(
    server_id: int,
    volume_id: str,
    *,
    completed_at: Optional[datetime] = None,
    rating: Optional[int] = None,
    rated_by_user_id: Optional[int] = None,
    rated_by_username: Optional[str] = None,
    suggested_by_user_id: Optional[int] = None,
    suggested_by_username: Optional[str] = None,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """Record a book the club already finished.

    An explicit ``completed_at`` is rejected when the same volume already
    has a completion on that day. ``started_at`` is backdated by
    ``ASSUMED_READING_DAYS``. An optional ``rating`` is stored as
    ``rated_by_user_id``'s rating in the same transaction.
    """
    if rating is not None:
        ratings_repo.validate_rating(rating)
        if rated_by_user_id is None:
            raise ValueError("rating_requires_user")
    finished = completed_at or now or utcnow()
    with session_scope(session) as s:
        servers_repo.ensure_server(server_id, session=s)
        if completed_at is not None and _same_day_exists(s, server_id, volume_id, completed_at):
            raise DuplicateCompletionError(server_id, volume_id, completed_at)
        if suggested_by_user_id is not None:
            servers_repo.ensure_member(suggested_by_user_id, suggested_by_username, session=s)
        book = CompletedBook(
            server_id=server_id,
            volume_id=volume_id,
            suggested_by_user_id=suggested_by_user_id,
            started_at=finished - timedelta(days=ASSUMED_READING_DAYS),
            completed_at=finished,
            average_rating=None,
            total_ratings=0,
        )
        s.add(book)
        s.flush()
        if rating is not None:
            ratings_repo.upsert_rating(
                book.completed_id, rated_by_user_id, rating, username=rated_by_username, session=s
            )
        else:
            ratings_repo.recompute_aggregate(s, book.completed_id)
        LOG.info(
            "History entry added server_id=%s volume_id=%s completed_id=%s rated=%s",
            server_id,
            volume_id,
            book.completed_id,
            rating is not None,
        )
        return book.as_dict()


def remove_completed_book(
    server_id: int, completed_id: int, *, session: Optional[Session] = None
) -> Optional[Dict[str, Any]]:
    """Delete one history entry with its ratings and rating poll.

    Returns the entry as it was before removal, or None when the id does not
    belong to ``server_id``.
    """
    with session_scope(session) as s:
        book = (
            s.query(CompletedBook)
            .filter(CompletedBook.completed_id == completed_id, CompletedBook.server_id == server_id)
            .with_for_update()
            .one_or_none()
        )
        if book is None:
            return None
        removed = book.as_dict()
        ratings = (
            s.query(BookRating)
            .filter(BookRating.completed_id == completed_id)
            .delete(synchronize_session=False)
        )
        ratings_repo.recompute_aggregate(s, completed_id)
        s.query(RatingPoll).filter(RatingPoll.completed_id == completed_id).delete(synchronize_session=False)
        s.delete(book)
        s.flush()
        LOG.info(
            "History entry removed server_id=%s completed_id=%s volume_id=%s ratings_removed=%s",
            server_id,
            completed_id,
            removed["volume_id"],
            ratings,
        )
        return removed


def _fmt(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(Decimal(str(value)).quantize(_TWO_PLACES, rounding=ROUND_HALF_UP))


def _book_extreme(session: Session, server_id: int, *, best: bool) -> Optional[Dict[str, Any]]:
    avg_order = CompletedBook.average_rating.desc() if best else CompletedBook.average_rating.asc()
    row = (
        session.query(CompletedBook)
        .filter(CompletedBook.server_id == server_id, CompletedBook.total_ratings > 0)
        .order_by(avg_order, CompletedBook.total_ratings.desc(), CompletedBook.completed_at.desc())
        .first()
    )
    return row.as_dict() if row else None


def _rater_extreme(session: Session, server_id: int, *, highest: bool) -> Optional[Dict[str, Any]]:
    avg = func.avg(BookRating.rating)
    count = func.count(BookRating.rating)
    row = (
        session.query(BookRating.user_id, Member.username, avg.label("avg"), count.label("count"))
        .join(CompletedBook, CompletedBook.completed_id == BookRating.completed_id)
        .join(Member, Member.user_id == BookRating.user_id)
        .filter(CompletedBook.server_id == server_id)
        .group_by(BookRating.user_id, Member.username)
        .order_by(avg.desc() if highest else avg.asc(), count.desc(), Member.username.asc())
        .first()
    )
    if row is None:
        return None
    return {
        "user_id": row.user_id,
        "username": row.username,
        "average_rating": _fmt(row.avg),
        "total_ratings": int(row.count),
    }


def server_stats(server_id: int, *, session: Optional[Session] = None) -> Dict[str, Any]:
    with session_scope(session) as s:
        server = s.get(Server, server_id)
        total_books, first_completed = (
            s.query(func.count(CompletedBook.completed_id), func.min(CompletedBook.completed_at))
            .filter(CompletedBook.server_id == server_id)
            .one()
        )
        overall_avg, overall_count = (
            s.query(func.avg(BookRating.rating), func.count(BookRating.rating))
            .join(CompletedBook, CompletedBook.completed_id == BookRating.completed_id)
            .filter(CompletedBook.server_id == server_id)
            .one()
        )
        return {
            "server_id": server_id,
            "server_created_at": server.created_at.isoformat() if server and server.created_at else None,
            "total_books": int(total_books or 0),
            "first_completed_at": first_completed.isoformat() if first_completed else None,
            "average_rating": _fmt(overall_avg),
            "total_ratings": int(overall_count or 0),
            "top_book": _book_extreme(s, server_id, best=True),
            "worst_book": _book_extreme(s, server_id, best=False),
            "highest_rater": _rater_extreme(s, server_id, highest=True),
            "lowest_rater": _rater_extreme(s, server_id, highest=False),
        }


def list_history(
    server_id: int, *, sort: str = "date", limit: Optional[int] = None, session: Optional[Session] = None
) -> List[Dict[str, Any]]:
    """Completed books, newest first (``date``) or by club rating (``rating``)."""
    if sort == "rating":
        return ratings_repo.server_rankings(server_id, limit=limit, session=session)
    if sort == "date":
        return lifecycle_repo.list_completed(server_id, limit=limit, session=session)
    raise ValueError("unknown_sort")


__all__ = [
    "ASSUMED_READING_DAYS",
    "DuplicateCompletionError",
    "add_completed_book",
    "remove_completed_book",
    "server_stats",
    "list_history",
]
