"""ORM models aggregate exports."""
from .club import (  # noqa: F401
    Base,
    BookRating,
    CompletedBook,
    CurrentBook,
    FavoriteBook,
    Member,
    QueueEntry,
    RatingPoll,
    ReadingListEntry,
    ReadingProgress,
    SelectionPoll,
    SelectionPollVote,
    Server,
    ServerConfig,
)

__all__ = [
    "Base",
    "BookRating",
    "CompletedBook",
    "CurrentBook",
    "FavoriteBook",
    "Member",
    "QueueEntry",
    "RatingPoll",
    "ReadingListEntry",
    "ReadingProgress",
    "SelectionPoll",
    "SelectionPollVote",
    "Server",
    "ServerConfig",
]
