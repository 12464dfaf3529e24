"""Maturity gate for showing or acting on a book.

``require_allowed`` is the gate for anything that changes state (promoting a
poll winner, accepting a rating, adding history). It looks the volume up
directly, so metadata failures surface to the caller instead of defaulting
to "not mature".
"""
from __future__ import annotations

from typing import Optional

from bookclub.db.repositories import servers_repo
from bookclub.services import metadata_service
from bookclub.services.metadata_service import VolumeInfo
from bookclub.utils.logging import get_logger

LOG = get_logger("access_policy")


class MatureContentBlockedError(Exception):
    def __init__(self, volume_id: str, server_id: int):
        super().__init__("mature_blocked")
        self.volume_id = volume_id
        self.server_id = server_id


def server_allows_mature(server_id: int) -> bool:
    return bool(servers_repo.get_config(server_id).get("mature_content_enabled"))


def allows(user_id: Optional[int], server_id: int, mature: bool) -> bool:
    """Non-mature books are always allowed; mature ones need the server opt-in.

    ``user_id`` is accepted for per-member policies; none exist today.
    """
    if not mature:
        return True
    return server_allows_mature(server_id)


def require_allowed(user_id: Optional[int], server_id: int, volume_id: str) -> VolumeInfo:
    """Resolve ``volume_id`` and check it against the server policy.

    Raises MetadataNotFoundError / MetadataUnavailableError from the lookup,
    and MatureContentBlockedError when the policy refuses the book.
    """
    info = metadata_service.get_volume(volume_id)
    if not allows(user_id, server_id, info.mature):
        LOG.info("Mature content blocked server_id=%s volume_id=%s user_id=%s", server_id, volume_id, user_id)
        raise MatureContentBlockedError(volume_id, server_id)
    return info


__all__ = ["MatureContentBlockedError", "allows", "require_allowed", "server_allows_mature"]
