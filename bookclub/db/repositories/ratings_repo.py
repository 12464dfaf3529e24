"""Repository helpers for member ratings of completed books.

``CompletedBook.average_rating`` / ``total_ratings`` are derived columns:
every rating write or delete recomputes them in the same transaction.
"""
from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from bookclub.db.engine import session_scope
from bookclub.db.models import BookRating, CompletedBook
from bookclub.db.repositories import servers_repo
from bookclub.utils.logging import get_logger
from bookclub.utils.timeutils import utcnow

LOG = get_logger("ratings_repo")

MIN_RATING = 1
MAX_RATING = 5
_TWO_PLACES = Decimal("0.01")


class RatingRangeError(ValueError):
    """Raised for ratings outside 1..5."""


class CompletedBookMissingError(LookupError):
    pass


def validate_rating(rating: Any) -> int:
    if not isinstance(rating, int) or isinstance(rating, bool) or not (MIN_RATING <= rating <= MAX_RATING):
        raise RatingRangeError("rating_out_of_range")
    return rating


def _average(values: List[int]) -> Optional[Decimal]:
    if not values:
        return None
    total = Decimal(sum(values))
    return (total / Decimal(len(values))).quantize(_TWO_PLACES, rounding=ROUND_HALF_UP)


def recompute_aggregate(session: Session, completed_id: int) -> Tuple[Optional[Decimal], int]:
    """Recompute and store mean/count for one completed book."""
    session.flush()
    values = [
        int(r)
        for (r,) in session.query(BookRating.rating).filter(BookRating.completed_id == completed_id).all()
    ]
    avg = _average(values)
    book = session.get(CompletedBook, completed_id)
    if book is None:
        return avg, len(values)
    book.average_rating = avg
    book.total_ratings = len(values)
    session.flush()
    return avg, len(values)


def _aggregate_dict(completed_id: int, avg: Optional[Decimal], count: int) -> Dict[str, Any]:
    return {
        "completed_id": completed_id,
        "average_rating": str(avg) if avg is not None else None,
        "total_ratings": count,
    }


def upsert_rating(
    completed_id: int,
    user_id: int,
    rating: int,
    *,
    username: Optional[str] = None,
    session: Optional[Session] = None,
) -> Dict[str, Any]:
    """Write or overwrite a member's rating; returns the refreshed aggregate."""
    validate_rating(rating)
    with session_scope(session) as s:
        if s.get(CompletedBook, completed_id) is None:
            raise CompletedBookMissingError("completed_book_not_found")
        servers_repo.ensure_member(user_id, username, session=s)
        row = s.get(BookRating, (user_id, completed_id))
        if row is None:
            s.add(BookRating(user_id=user_id, completed_id=completed_id, rating=rating, rated_at=utcnow()))
        else:
            row.rating = rating
            row.rated_at = utcnow()
        avg, count = recompute_aggregate(s, completed_id)
        LOG.debug("Rating stored completed_id=%s user_id=%s rating=%s avg=%s", completed_id, user_id, rating, avg)
        return _aggregate_dict(completed_id, avg, count)


def delete_rating(completed_id: int, user_id: int, *, session: Optional[Session] = None) -> bool:
    with session_scope(session) as s:
        row = s.get(BookRating, (user_id, completed_id))
        if row is None:
            return False
        s.delete(row)
        recompute_aggregate(s, completed_id)
        return True


def get_rating(completed_id: int, user_id: int, *, session: Optional[Session] = None) -> Optional[int]:
    with session_scope(session) as s:
        row = s.get(BookRating, (user_id, completed_id))
        return int(row.rating) if row else None


def get_aggregate(completed_id: int, *, session: Optional[Session] = None) -> Optional[Dict[str, Any]]:
    with session_scope(session) as s:
        book = s.get(CompletedBook, completed_id)
        if book is None:
            return None
        avg = Decimal(book.average_rating).quantize(_TWO_PLACES) if book.average_rating is not None else None
        return _aggregate_dict(completed_id, avg, int(book.total_ratings or 0))


def server_rankings(server_id: int, *, limit: Optional[int] = None, session: Optional[Session] = None) -> List[Dict[str, Any]]:
    """Completed books ranked by average rating.

    Dense rank, unrated books last; equal averages share a rank and are
    listed most recent completion first.
    """
    with session_scope(session) as s:
        books = s.query(CompletedBook).filter(CompletedBook.server_id == server_id).all()
    rated = [b for b in books if b.average_rating is not None]
    unrated = [b for b in books if b.average_rating is None]
    rated.sort(key=lambda b: (-Decimal(b.average_rating), -b.completed_at.timestamp(), -b.completed_id))
    unrated.sort(key=lambda b: (-b.completed_at.timestamp(), -b.completed_id))

    out: List[Dict[str, Any]] = []
    rank = 0
    previous: Any = object()
    for book in rated + unrated:
        key = Decimal(book.average_rating).quantize(_TWO_PLACES) if book.average_rating is not None else None
        if key != previous:
            rank += 1
            previous = key
        data = book.as_dict()
        data["rank"] = rank
        out.append(data)
    return out[:limit] if limit is not None else out


_MEMBER_SORTS = ("rating", "date")


def member_ratings(
    server_id: int,
    user_id: int,
    *,
    sort: str = "rating",
    volume_id: Optional[str] = None,
    session: Optional[Session] = None,
) -> List[Dict[str, Any]]:
    """One member's ratings on a server.

    ``sort="rating"`` lists highest first (oldest rating first on ties),
    ``sort="date"`` lists most recent first. With ``volume_id`` only the
    latest completion of that volume is considered.
    """
    if sort not in _MEMBER_SORTS:
        raise ValueError("unknown_sort")
    with session_scope(session) as s:
        query = (
            s.query(BookRating, CompletedBook)
            .join(CompletedBook, CompletedBook.completed_id == BookRating.completed_id)
            .filter(CompletedBook.server_id == server_id, BookRating.user_id == user_id)
        )
        if volume_id is not None:
            latest = (
                s.query(CompletedBook.completed_id)
                .filter(CompletedBook.server_id == server_id, CompletedBook.volume_id == volume_id)
                .order_by(CompletedBook.completed_at.desc(), CompletedBook.completed_id.desc())
                .first()
            )
            if latest is None:
                return []
            query = query.filter(BookRating.completed_id == latest[0])
        if sort == "rating":
            query = query.order_by(BookRating.rating.desc(), BookRating.rated_at.asc())
        else:
            query = query.order_by(BookRating.rated_at.desc(), BookRating.completed_id.desc())
        return [
            {
                "completed_id": book.completed_id,
                "volume_id": book.volume_id,
                "rating": int(rating.rating),
                "rated_at": rating.rated_at.isoformat() if rating.rated_at else None,
                "completed_at": book.completed_at.isoformat() if book.completed_at else None,
            }
            for rating, book in query.all()
        ]


__all__ = [
    "MIN_RATING",
    "MAX_RATING",
    "RatingRangeError",
    "CompletedBookMissingError",
    "validate_rating",
    "recompute_aggregate",
    "upsert_rating",
    "delete_rating",
    "get_rating",
    "get_aggregate",
    "server_rankings",
    "member_ratings",
]
