"""Message payload builders for the gateway (plain dicts, rendered downstream)."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from bookclub.services import metadata_service
from bookclub.utils.timeutils import format_deadline

RATING_ANSWERS = ["1 ⭐", "2 ⭐", "3 ⭐", "4 ⭐", "5 ⭐"]


def _book_block(volume_id: str) -> Dict[str, Any]:
    info = metadata_service.safe_volume(volume_id)
    return {
        "volume_id": volume_id,
        "title": info.title,
        "authors": info.authors,
        "thumbnail": info.thumbnail,
    }


def new_book_selected(volume_id: str, *, suggested_by: Optional[str], deadline: Optional[datetime]) -> Dict[str, Any]:
    book = _book_block(volume_id)
    lines = [f"New club book: {book['title']}"]
    if suggested_by:
        lines.append(f"Suggested by {suggested_by}")
    if deadline is not None:
        lines.append(f"Deadline: {format_deadline(deadline)}")
    return {"kind": "new_book", "content": "\n".join(lines), "book": book}


def selection_poll(options: Sequence[str], *, hours: int, deadline: Optional[datetime]) -> Dict[str, Any]:
    answers = [metadata_service.display_title(vid) for vid in options]
    question = "Vote for the next club book"
    if deadline is not None:
        question += f" (read by {format_deadline(deadline)})"
    return {
        "kind": "selection_poll",
        "poll": {"question": question, "answers": answers, "duration_hours": hours, "multiselect": False},
        "options": list(options),
    }


def rating_poll(volume_id: str, *, hours: int) -> Dict[str, Any]:
    title = metadata_service.display_title(volume_id)
    return {
        "kind": "rating_poll",
        "content": f"The deadline for {title} has been reached. Rate the book!",
        "poll": {
            "question": f"How would you rate {title}?",
            "answers": list(RATING_ANSWERS),
            "duration_hours": hours,
            "multiselect": False,
        },
        "volume_id": volume_id,
    }


def rating_summary(volume_id: str, aggregate: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    title = metadata_service.display_title(volume_id)
    total = int((aggregate or {}).get("total_ratings") or 0)
    avg = (aggregate or {}).get("average_rating")
    if total == 0 or avg is None:
        content = f"Rating poll for {title} closed without any ratings."
    else:
        noun = "rating" if total == 1 else "ratings"
        content = f"Rating poll for {title} closed: {avg}/5 from {total} {noun}."
    return {"kind": "rating_summary", "content": content, "volume_id": volume_id, "aggregate": aggregate}


def poll_no_votes() -> Dict[str, Any]:
    return {"kind": "poll_no_votes", "content": "The book selection poll ended without any votes. No book was selected."}


def poll_tie(tied: List[str], winner: str) -> Dict[str, Any]:
    titles = [metadata_service.display_title(vid) for vid in tied]
    return {
        "kind": "poll_tie",
        "content": f"The poll ended in a tie between {', '.join(titles)}. The first listed option wins.",
        "winner": winner,
    }


def selection_failed(volume_id: str, reason: str) -> Dict[str, Any]:
    title = metadata_service.display_title(volume_id)
    if reason == "already_has_current":
        content = f"{title} won the poll, but the server is already reading a book. Finish it first."
    elif reason == "not_in_queue":
        content = f"{title} won the poll, but it was removed from the queue in the meantime."
    elif reason == "volume_not_found":
        content = f"{title} won the poll, but the book could not be found in the catalogue."
    elif reason == "mature_blocked":
        content = f"{title} won the poll, but mature content is not enabled on this server."
    else:
        content = f"{title} won the poll, but could not be selected ({reason})."
    return {"kind": "selection_failed", "content": content, "volume_id": volume_id, "reason": reason}


__all__ = [
    "RATING_ANSWERS",
    "new_book_selected",
    "selection_poll",
    "rating_poll",
    "rating_summary",
    "poll_no_votes",
    "poll_tie",
    "selection_failed",
]
