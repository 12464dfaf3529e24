"""Service exports."""

from . import (
    metadata_service,
    announcement_service,
    access_policy,
    payloads,
    selection_poll_service,
    rating_poll_service,
    vote_events,
    webhook_service,
    scheduler,
    deadline_watcher,
    selection_poll_watcher,
)
from .metadata_service import MetadataNotFoundError, MetadataUnavailableError, VolumeInfo
from .announcement_service import AnnouncementError
from .vote_events import VoteEvent, VoteEventConsumer, VoteOutcome, handle_vote_event

__all__ = [
    "metadata_service",
    "announcement_service",
    "access_policy",
    "payloads",
    "selection_poll_service",
    "rating_poll_service",
    "vote_events",
    "webhook_service",
    "scheduler",
    "deadline_watcher",
    "selection_poll_watcher",
    "MetadataNotFoundError",
    "MetadataUnavailableError",
    "VolumeInfo",
    "AnnouncementError",
    "VoteEvent",
    "VoteEventConsumer",
    "VoteOutcome",
    "handle_vote_event",
]
