"""Selection poll lifecycle: open -> closed(selected) / closed(no selection).

Opening reserves the poll row first and attaches the posted message id
afterwards. Closing marks the poll processed and promotes the winner through
``lifecycle_repo.select_from_queue`` in the same transaction; a failed
promotion still leaves the poll processed and is only reported. When the
winner's metadata cannot be fetched the poll stays open and the next
watcher tick retries.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from bookclub import config as app_config
from bookclub.db.engine import app_session
from bookclub.db.models import CurrentBook, SelectionPoll, Server
from bookclub.db.repositories import lifecycle_repo, polls_repo, queue_repo, servers_repo
from bookclub.services import access_policy, announcement_service, metadata_service, payloads
from bookclub.services.announcement_service import AnnouncementError
from bookclub.utils.logging import get_logger
from bookclub.utils.timeutils import deadline_after_days, utcnow

LOG = get_logger("selection_poll_service")

MIN_OPTIONS = 2
MAX_OPTIONS = 10
MIN_HOURS = 1


class OpenPollFailure(str, enum.Enum):
    ALREADY_HAS_CURRENT = "already_has_current"
    POLL_ALREADY_OPEN = "poll_already_open"
    INSUFFICIENT_CANDIDATES = "insufficient_candidates"
    NO_CHANNEL = "no_channel"
    POST_FAILED = "post_failed"


class CloseStatus(str, enum.Enum):
    SELECTED = "selected"
    NO_VOTES = "no_votes"
    SELECTION_FAILED = "selection_failed"
    MATURE_BLOCKED = "mature_blocked"
    DEFERRED = "deferred"
    ALREADY_PROCESSED = "already_processed"
    NOT_EXPIRED = "not_expired"
    NOT_FOUND = "not_found"


@dataclass
class OpenPollResult:
    failure: Optional[OpenPollFailure] = None
    poll_id: Optional[int] = None
    message_id: Optional[int] = None
    channel_id: Optional[int] = None
    options: List[str] = field(default_factory=list)
    expires_at: Optional[datetime] = None
    cancelled_poll_id: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "error": self.failure.value if self.failure else None,
            "poll_id": self.poll_id,
            "message_id": self.message_id,
            "channel_id": self.channel_id,
            "options": list(self.options),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "cancelled_poll_id": self.cancelled_poll_id,
        }


@dataclass
class CloseOutcome:
    poll_id: int
    status: CloseStatus
    winner: Optional[str] = None
    tied: List[str] = field(default_factory=list)
    failure: Optional[str] = None


def clamp_size(size: Optional[int]) -> int:
    value = app_config.selection_poll_default_size() if size is None else int(size)
    return max(MIN_OPTIONS, min(MAX_OPTIONS, value))


def clamp_hours(hours: Optional[int]) -> int:
    value = app_config.selection_poll_default_hours() if hours is None else int(hours)
    return max(MIN_HOURS, min(app_config.MAX_SELECTION_POLL_HOURS, value))


def pick_winner(options: Sequence[str], tallies: Dict[int, int]) -> Optional[int]:
    """Index of the winning option; ties go to the first listed. None when nobody voted."""
    best_idx: Optional[int] = None
    best_count = 0
    for idx in range(len(options)):
        count = int(tallies.get(idx, 0))
        if count > best_count:
            best_idx, best_count = idx, count
    return best_idx


def tied_options(options: Sequence[str], tallies: Dict[int, int]) -> List[str]:
    top = max((int(tallies.get(i, 0)) for i in range(len(options))), default=0)
    if top == 0:
        return []
    tied = [options[i] for i in range(len(options)) if int(tallies.get(i, 0)) == top]
    return tied if len(tied) > 1 else []


def open_selection_poll(
    server_id: int,
    *,
    channel_id: Optional[int] = None,
    size: Optional[int] = None,
    hours: Optional[int] = None,
    deadline: Optional[datetime] = None,
    cancel_existing: bool = False,
    now: Optional[datetime] = None,
) -> OpenPollResult:
    moment = now or utcnow()
    n_options = clamp_size(size)
    n_hours = clamp_hours(hours)
    config = servers_repo.get_config(server_id)
    target_channel = channel_id or config.get("announcement_channel_id")

    with app_session() as s:
        servers_repo.ensure_server(server_id, session=s)
        s.query(Server).filter(Server.server_id == server_id).with_for_update().one()
        polls_repo.close_stale_selection_polls(s, server_id, moment)
        cancelled = polls_repo.cancel_open_selection_poll(s, server_id) if cancel_existing else None
        if s.get(CurrentBook, server_id) is not None:
            return OpenPollResult(failure=OpenPollFailure.ALREADY_HAS_CURRENT, cancelled_poll_id=cancelled)
        if polls_repo.get_open_selection_poll(server_id, session=s) is not None:
            return OpenPollResult(failure=OpenPollFailure.POLL_ALREADY_OPEN)
        options = queue_repo.poll_candidates(server_id, n_options, session=s)
        if len(options) < MIN_OPTIONS:
            return OpenPollResult(failure=OpenPollFailure.INSUFFICIENT_CANDIDATES, options=options, cancelled_poll_id=cancelled)
        if not target_channel:
            return OpenPollResult(failure=OpenPollFailure.NO_CHANNEL, options=options, cancelled_poll_id=cancelled)
        expires_at = moment + timedelta(hours=n_hours)
        try:
            poll = polls_repo.reserve_selection_poll(
                s,
                server_id=server_id,
                options=options,
                expires_at=expires_at,
                deadline=deadline,
                channel_id=target_channel,
            )
        except polls_repo.PollAlreadyOpenError:
            return OpenPollResult(failure=OpenPollFailure.POLL_ALREADY_OPEN)
        poll_id = poll.poll_id

    payload = payloads.selection_poll(options, hours=n_hours, deadline=deadline)
    try:
        message_id = announcement_service.post_message(target_channel, payload, pin=bool(config.get("pin_polls")))
    except AnnouncementError as exc:
        LOG.warning("Selection poll post failed server_id=%s poll_id=%s error=%s", server_id, poll_id, exc)
        with app_session() as s:
            row = polls_repo.lock_selection_poll(s, poll_id)
            if row is not None and not row.processed:
                polls_repo.mark_selection_processed(row, None)
        return OpenPollResult(failure=OpenPollFailure.POST_FAILED, poll_id=poll_id, options=options)

    polls_repo.attach_selection_message(poll_id, message_id, target_channel)
    LOG.info(
        "Opened selection poll server_id=%s poll_id=%s message_id=%s options=%s hours=%s",
        server_id,
        poll_id,
        message_id,
        len(options),
        n_hours,
    )
    return OpenPollResult(
        poll_id=poll_id,
        message_id=message_id,
        channel_id=target_channel,
        options=options,
        expires_at=expires_at,
        cancelled_poll_id=cancelled,
    )


def _winner_deadline(poll_deadline: Optional[datetime], now: datetime) -> Optional[datetime]:
    if poll_deadline is not None:
        return poll_deadline
    return deadline_after_days(app_config.default_reading_days(), now=now)


def close_selection_poll(poll_id: int, *, now: Optional[datetime] = None, force: bool = False) -> CloseOutcome:
    """Close one poll and promote its winner.

    Tallies are frozen once the poll expires (vote events for expired polls
    are discarded), so the winner and its maturity are resolved before the
    poll row is locked.
    """
    moment = now or utcnow()
    with app_session() as s:
        poll = s.get(SelectionPoll, poll_id)
        if poll is None:
            return CloseOutcome(poll_id, CloseStatus.NOT_FOUND)
        if poll.processed:
            return CloseOutcome(poll_id, CloseStatus.ALREADY_PROCESSED)
        if not force and poll.expires_at > moment:
            return CloseOutcome(poll_id, CloseStatus.NOT_EXPIRED)
        server_id = poll.server_id
        channel_id = poll.channel_id
        options = poll.options()
        tallies = polls_repo.selection_tallies(poll_id, session=s)

    winner_idx = pick_winner(options, tallies)
    winner = options[winner_idx] if winner_idx is not None else None
    tied = tied_options(options, tallies)
    blocked = False
    rejected: Optional[str] = None
    if winner is not None:
        try:
            access_policy.require_allowed(None, server_id, winner)
        except access_policy.MatureContentBlockedError:
            blocked = True
        except metadata_service.MetadataNotFoundError:
            rejected = "volume_not_found"
        except metadata_service.MetadataUnavailableError as exc:
            LOG.warning(
                "Selection poll close deferred poll_id=%s server_id=%s volume_id=%s error=%s",
                poll_id,
                server_id,
                winner,
                exc,
            )
            return CloseOutcome(poll_id, CloseStatus.DEFERRED, winner=winner, tied=tied, failure="metadata_unavailable")

    config = servers_repo.get_config(server_id)
    selected: Optional[Dict[str, Any]] = None
    with app_session() as s:
        row = polls_repo.lock_selection_poll(s, poll_id)
        if row is None:
            return CloseOutcome(poll_id, CloseStatus.NOT_FOUND)
        if row.processed:
            return CloseOutcome(poll_id, CloseStatus.ALREADY_PROCESSED)
        if winner is None:
            polls_repo.mark_selection_processed(row, None)
            outcome = CloseOutcome(poll_id, CloseStatus.NO_VOTES)
        elif blocked:
            polls_repo.mark_selection_processed(row, None)
            outcome = CloseOutcome(poll_id, CloseStatus.MATURE_BLOCKED, winner=winner, failure="mature_blocked")
        elif rejected is not None:
            polls_repo.mark_selection_processed(row, None)
            outcome = CloseOutcome(poll_id, CloseStatus.SELECTION_FAILED, winner=winner, tied=tied, failure=rejected)
        else:
            result = lifecycle_repo.select_from_queue(
                server_id,
                winner,
                announcement_channel_id=config.get("announcement_channel_id") or channel_id,
                deadline=_winner_deadline(row.deadline, moment),
                now=moment,
                session=s,
            )
            if result.ok:
                polls_repo.mark_selection_processed(row, winner)
                outcome = CloseOutcome(poll_id, CloseStatus.SELECTED, winner=winner, tied=tied)
                selected = result.payload
            else:
                polls_repo.mark_selection_processed(row, None)
                outcome = CloseOutcome(
                    poll_id,
                    CloseStatus.SELECTION_FAILED,
                    winner=winner,
                    tied=tied,
                    failure=result.failure.value if result.failure else "unknown",
                )

    _announce_close(outcome, channel_id, selected)
    LOG.info(
        "Closed selection poll poll_id=%s server_id=%s status=%s winner=%s failure=%s",
        poll_id,
        server_id,
        outcome.status.value,
        outcome.winner,
        outcome.failure,
    )
    if outcome.status == CloseStatus.SELECTION_FAILED:
        LOG.warning(
            "Selection poll winner not promoted poll_id=%s server_id=%s volume_id=%s reason=%s",
            poll_id,
            server_id,
            winner,
            outcome.failure,
        )
    return outcome


def _announce_close(outcome: CloseOutcome, channel_id: Optional[int], selected: Optional[Dict[str, Any]]) -> None:
    if outcome.status == CloseStatus.NO_VOTES:
        announcement_service.try_post(channel_id, payloads.poll_no_votes())
        return
    if outcome.winner is None:
        return
    if outcome.tied:
        announcement_service.try_post(channel_id, payloads.poll_tie(outcome.tied, outcome.winner))
    if outcome.status == CloseStatus.SELECTED:
        selected = selected or {}
        announcement_service.try_post(
            channel_id,
            payloads.new_book_selected(
                outcome.winner,
                suggested_by=selected.get("suggested_by_username"),
                deadline=selected.get("deadline"),
            ),
        )
    elif outcome.failure:
        announcement_service.try_post(channel_id, payloads.selection_failed(outcome.winner, outcome.failure))


def close_expired_selection_polls(now: Optional[datetime] = None) -> Dict[str, int]:
    """Close every expired open poll; one poll's failure never stops the rest.

    Polls deferred on a metadata outage stay open and are counted separately.
    """
    moment = now or utcnow()
    summary = {"expired": 0, "closed": 0, "deferred": 0, "failed": 0}
    poll_ids = polls_repo.expired_selection_poll_ids(moment)
    summary["expired"] = len(poll_ids)
    for poll_id in poll_ids:
        try:
            outcome = close_selection_poll(poll_id, now=moment)
        except Exception:
            summary["failed"] += 1
            LOG.error("Selection poll close failed poll_id=%s", poll_id, exc_info=True)
            continue
        if outcome.status == CloseStatus.DEFERRED:
            summary["deferred"] += 1
        elif outcome.status not in (CloseStatus.ALREADY_PROCESSED, CloseStatus.NOT_FOUND, CloseStatus.NOT_EXPIRED):
            summary["closed"] += 1
    return summary


__all__ = [
    "MIN_OPTIONS",
    "MAX_OPTIONS",
    "OpenPollFailure",
    "CloseStatus",
    "OpenPollResult",
    "CloseOutcome",
    "clamp_size",
    "clamp_hours",
    "pick_winner",
    "tied_options",
    "open_selection_poll",
    "close_selection_poll",
    "close_expired_selection_polls",
]
