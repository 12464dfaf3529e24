"""Database layer root.

Engine/session management lives in ``engine``; repositories under
``bookclub.db.repositories`` own every read-modify-write on the store.
"""

from .engine import (
    init_engine_once,
    get_engine,
    get_session_factory,
    get_scoped_session,
    app_session,
    session_scope,
)

__all__ = [
    "init_engine_once",
    "get_engine",
    "get_session_factory",
    "get_scoped_session",
    "app_session",
    "session_scope",
]
