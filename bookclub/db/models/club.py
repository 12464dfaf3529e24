"""ORM models for the book club store (servers, queue, lifecycle, polls)."""
from __future__ import annotations

import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import declarative_base

from bookclub.utils.timeutils import utcnow

Base = declarative_base()

_NOT_PROCESSED = text("NOT processed")


def _iso(value: datetime.datetime | None) -> str | None:
    return value.isoformat() if value else None


class Server(Base):
    """One isolated book club community (keyed by the platform guild id)."""

    __tablename__ = "servers"

    server_id = Column(BigInteger, primary_key=True, autoincrement=False)
    server_name = Column(String(255), nullable=False, default="")
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self) -> str:  # pragma: no cover
        return f"<Server id={self.server_id} name={self.server_name!r}>"


class Member(Base):
    """Platform user; referenced as suggester and rater."""

    __tablename__ = "members"

    user_id = Column(BigInteger, primary_key=True, autoincrement=False)
    username = Column(String(255), nullable=False, default="")
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class ServerConfig(Base):
    """Per-server bot settings. Missing row means defaults."""

    __tablename__ = "server_config"

    server_id = Column(BigInteger, ForeignKey("servers.server_id", ondelete="CASCADE"), primary_key=True)
    announcement_channel_id = Column(BigInteger, nullable=True)
    discussion_channel_id = Column(BigInteger, nullable=True)
    queue_enabled = Column(Boolean, nullable=False, default=True)
    pin_polls = Column(Boolean, nullable=False, default=True)
    auto_complete_on_deadline = Column(Boolean, nullable=False, default=True)
    mature_content_enabled = Column(Boolean, nullable=False, default=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def as_dict(self) -> dict:
        return {
            "server_id": self.server_id,
            "announcement_channel_id": self.announcement_channel_id,
            "discussion_channel_id": self.discussion_channel_id,
            "queue_enabled": bool(self.queue_enabled),
            "pin_polls": bool(self.pin_polls),
            "auto_complete_on_deadline": bool(self.auto_complete_on_deadline),
            "mature_content_enabled": bool(self.mature_content_enabled),
        }


class QueueEntry(Base):
    """A suggested book waiting in a server queue.

    ``position`` is kept dense (1..N) by the queue repository after every delete.
    """

    __tablename__ = "queue_entries"

    queue_id = Column(Integer, primary_key=True, autoincrement=True)
    server_id = Column(BigInteger, ForeignKey("servers.server_id", ondelete="CASCADE"), nullable=False, index=True)
    volume_id = Column(String(64), nullable=False)
    suggested_by_user_id = Column(BigInteger, ForeignKey("members.user_id", ondelete="CASCADE"), nullable=False)
    added_at = Column(DateTime, default=utcnow, nullable=False)
    position = Column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("server_id", "volume_id", name="uq_queue_server_volume"),
        Index("ix_queue_server_position", "server_id", "position"),
    )

    def as_dict(self) -> dict:
        return {
            "queue_id": self.queue_id,
            "server_id": self.server_id,
            "volume_id": self.volume_id,
            "suggested_by_user_id": self.suggested_by_user_id,
            "added_at": _iso(self.added_at),
            "position": self.position,
        }


class CurrentBook(Base):
    """The single book a server is reading (primary key = server)."""

    __tablename__ = "current_books"

    server_id = Column(BigInteger, ForeignKey("servers.server_id", ondelete="CASCADE"), primary_key=True)
    volume_id = Column(String(64), nullable=False)
    suggested_by_user_id = Column(BigInteger, ForeignKey("members.user_id", ondelete="SET NULL"), nullable=True)
    started_at = Column(DateTime, default=utcnow, nullable=False)
    deadline = Column(DateTime, nullable=True)
    announcement_channel_id = Column(BigInteger, nullable=True)
    discussion_thread_id = Column(BigInteger, nullable=True)

    def as_dict(self) -> dict:
        return {
            "server_id": self.server_id,
            "volume_id": self.volume_id,
            "suggested_by_user_id": self.suggested_by_user_id,
            "started_at": _iso(self.started_at),
            "deadline": _iso(self.deadline),
            "announcement_channel_id": self.announcement_channel_id,
            "discussion_thread_id": self.discussion_thread_id,
        }


class CompletedBook(Base):
    """Immutable history row. ``average_rating``/``total_ratings`` are derived."""

    __tablename__ = "completed_books"

    completed_id = Column(Integer, primary_key=True, autoincrement=True)
    server_id = Column(BigInteger, ForeignKey("servers.server_id", ondelete="CASCADE"), nullable=False, index=True)
    volume_id = Column(String(64), nullable=False)
    suggested_by_user_id = Column(BigInteger, ForeignKey("members.user_id", ondelete="SET NULL"), nullable=True)
    started_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime, default=utcnow, nullable=False)
    average_rating = Column(Numeric(3, 2), nullable=True)
    total_ratings = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("server_id", "volume_id", "completed_at", name="uq_completed_server_volume_ts"),
    )

    def as_dict(self) -> dict:
        return {
            "completed_id": self.completed_id,
            "server_id": self.server_id,
            "volume_id": self.volume_id,
            "suggested_by_user_id": self.suggested_by_user_id,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "average_rating": str(self.average_rating) if self.average_rating is not None else None,
            "total_ratings": self.total_ratings or 0,
        }


class BookRating(Base):
    """One 1..5 rating per (member, completed book)."""

    __tablename__ = "book_ratings"

    user_id = Column(BigInteger, ForeignKey("members.user_id", ondelete="CASCADE"), primary_key=True)
    completed_id = Column(
        Integer,
        ForeignKey("completed_books.completed_id", ondelete="CASCADE"),
        primary_key=True,
        index=True,
    )
    rating = Column(Integer, nullable=False)
    rated_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("rating >= 1 AND rating <= 5", name="ck_book_rating_range"),
    )


class RatingPoll(Base):
    """Timing envelope for rating a completed book (1:1 with CompletedBook).

    The row is reserved before the poll message is posted; ``message_id`` is
    attached once the gateway confirms the post.
    """

    __tablename__ = "rating_polls"

    poll_id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(BigInteger, nullable=True, unique=True)
    channel_id = Column(BigInteger, nullable=True)
    server_id = Column(BigInteger, ForeignKey("servers.server_id", ondelete="CASCADE"), nullable=False)
    completed_id = Column(
        Integer,
        ForeignKey("completed_books.completed_id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    expires_at = Column(DateTime, nullable=False)
    processed = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index(
            "ix_rating_polls_pending_expiry",
            "expires_at",
            sqlite_where=_NOT_PROCESSED,
            postgresql_where=_NOT_PROCESSED,
        ),
    )


class SelectionPoll(Base):
    """Timed vote choosing the next current book.

    At most one unprocessed poll per server (partial unique index).
    """

    __tablename__ = "selection_polls"

    poll_id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(BigInteger, nullable=True, unique=True)
    channel_id = Column(BigInteger, nullable=True)
    server_id = Column(BigInteger, ForeignKey("servers.server_id", ondelete="CASCADE"), nullable=False)
    book_options = Column(JSON, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    processed = Column(Boolean, nullable=False, default=False)
    selected_volume_id = Column(String(64), nullable=True)
    deadline = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index(
            "uidx_one_active_selection_poll",
            "server_id",
            unique=True,
            sqlite_where=_NOT_PROCESSED,
            postgresql_where=_NOT_PROCESSED,
        ),
        Index(
            "ix_selection_polls_pending_expiry",
            "expires_at",
            sqlite_where=_NOT_PROCESSED,
            postgresql_where=_NOT_PROCESSED,
        ),
    )

    def options(self) -> list[str]:
        return [str(v) for v in (self.book_options or [])]


class SelectionPollVote(Base):
    """Persisted tally row: one per (poll, member, chosen option)."""

    __tablename__ = "selection_poll_votes"

    poll_id = Column(Integer, ForeignKey("selection_polls.poll_id", ondelete="CASCADE"), primary_key=True)
    user_id = Column(BigInteger, primary_key=True, autoincrement=False)
    option_index = Column(Integer, primary_key=True, autoincrement=False)
    voted_at = Column(DateTime, default=utcnow, nullable=False)


class ReadingProgress(Base):
    """Per-member progress note for the server's current book."""

    __tablename__ = "reading_progress"

    user_id = Column(BigInteger, ForeignKey("members.user_id", ondelete="CASCADE"), primary_key=True)
    server_id = Column(BigInteger, ForeignKey("servers.server_id", ondelete="CASCADE"), primary_key=True, index=True)
    volume_id = Column(String(64), nullable=False)
    progress_text = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class ReadingListEntry(Base):
    __tablename__ = "reading_list_entries"

    user_id = Column(BigInteger, ForeignKey("members.user_id", ondelete="CASCADE"), primary_key=True)
    server_id = Column(BigInteger, ForeignKey("servers.server_id", ondelete="CASCADE"), primary_key=True)
    volume_id = Column(String(64), primary_key=True)
    added_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_reading_list_user_server", "user_id", "server_id"),
    )


class FavoriteBook(Base):
    __tablename__ = "favorite_books"

    user_id = Column(BigInteger, ForeignKey("members.user_id", ondelete="CASCADE"), primary_key=True)
    server_id = Column(BigInteger, ForeignKey("servers.server_id", ondelete="CASCADE"), primary_key=True)
    volume_id = Column(String(64), primary_key=True)
    added_at = Column(DateTime, default=utcnow, nullable=False)
    is_number_one = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("ix_favorite_books_user_server", "user_id", "server_id"),
        Index(
            "uidx_one_number_one_favorite",
            "user_id",
            "server_id",
            unique=True,
            sqlite_where=text("is_number_one"),
            postgresql_where=text("is_number_one"),
        ),
    )


__all__ = [
    "Base",
    "Server",
    "Member",
    "ServerConfig",
    "QueueEntry",
    "CurrentBook",
    "CompletedBook",
    "BookRating",
    "RatingPoll",
    "SelectionPoll",
    "SelectionPollVote",
    "ReadingProgress",
    "ReadingListEntry",
    "FavoriteBook",
]
