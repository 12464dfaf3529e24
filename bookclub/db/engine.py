"""Database engine & session management.

SQLite is the default backend (path from ``config.get_db_path()``); any
SQLAlchemy URL can be supplied through ``config.database_url()``.

Lifecycle operations rely on row locks (``SELECT ... FOR UPDATE``). SQLite
ignores ``FOR UPDATE``, so on SQLite every transaction is opened with
``BEGIN IMMEDIATE`` which serializes writers at the database level and gives
the same one-winner semantics.
"""
from __future__ import annotations

import os, threading
try:  # POSIX file locking for multi-process schema creation
    import fcntl  # type: ignore
except ImportError:  # pragma: no cover - non-POSIX fallback
    fcntl = None  # type: ignore
from contextlib import contextmanager
from typing import Optional, Iterator, Callable

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, scoped_session, Session as SASession
from sqlalchemy.pool import StaticPool

from bookclub.utils.logging import get_logger
from bookclub.db.models import Base
from bookclub import config as app_config

_engine: Optional[Engine] = None
_SessionFactory: Optional[Callable[[], SASession]] = None
_scoped: Optional[scoped_session] = None
_LOCK = threading.Lock()

LOG = get_logger("db")

_SQLITE_BUSY_TIMEOUT_SECONDS = 30


def _install_sqlite_locking(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _record):  # pragma: no cover - exercised via sqlite tests
        # Let SQLAlchemy drive BEGIN so we can make it IMMEDIATE.
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):  # pragma: no cover - exercised via sqlite tests
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def _build_engine() -> tuple[Engine, Optional[str]]:
    url = app_config.database_url()
    if url:
        LOG.info("Initializing bookclub database engine from BOOKCLUB_DATABASE_URL")
        return create_engine(url, future=True, pool_pre_ping=True), None

    db_path = app_config.get_db_path()
    LOG.info("Initializing bookclub database engine at %s", db_path)
    if db_path == ":memory:":
        engine = create_engine(
            "sqlite://",
            future=True,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        _install_sqlite_locking(engine)
        return engine, None

    parent_dir = os.path.dirname(os.path.abspath(db_path)) or "."
    os.makedirs(parent_dir, exist_ok=True)
    if not os.access(parent_dir, os.W_OK):
        raise RuntimeError(f"bookclub DB directory not writable: {parent_dir}")
    engine = create_engine(
        f"sqlite:///{db_path}",
        future=True,
        connect_args={"check_same_thread": False, "timeout": _SQLITE_BUSY_TIMEOUT_SECONDS},
    )
    _install_sqlite_locking(engine)
    return engine, parent_dir


def init_engine_once() -> None:
    global _engine, _SessionFactory, _scoped
    if _engine is not None:
        return
    with _LOCK:
        if _engine is not None:
            return
        engine, lock_dir = _build_engine()
        _engine = engine
        _SessionFactory = sessionmaker(bind=_engine, expire_on_commit=False, class_=SASession)
        _scoped = scoped_session(_SessionFactory)
        # Cross-process lock so several workers starting together do not race
        # between the existence check and the DDL emit.
        if lock_dir is not None and fcntl is not None:
            lock_path = os.path.join(lock_dir, ".bookclub_schema.lock")
            with open(lock_path, "w") as lf:
                try:
                    fcntl.flock(lf, fcntl.LOCK_EX)
                    _safe_create_schema()
                finally:
                    fcntl.flock(lf, fcntl.LOCK_UN)
        else:
            _safe_create_schema()
        LOG.debug("bookclub schema ready")


def _safe_create_schema() -> None:
    """Run metadata.create_all, tolerating the 'already exists' startup race."""
    from sqlalchemy.exc import OperationalError  # local import, lightweight
    try:
        if _engine is None:
            return
        Base.metadata.create_all(_engine)
    except OperationalError as e:  # pragma: no cover - concurrency edge
        msg = str(e).lower()
        if "already exists" in msg:
            LOG.warning("Schema create encountered existing tables (benign race)")
        else:
            raise


def get_engine() -> Engine:
    if _engine is None:
        init_engine_once()
    return _engine  # type: ignore[return-value]


def get_session_factory() -> Callable[[], SASession]:
    if _SessionFactory is None:
        init_engine_once()
    return _SessionFactory  # type: ignore[return-value]


def get_scoped_session() -> scoped_session:
    if _scoped is None:
        init_engine_once()
    if _scoped is None:
        raise RuntimeError("Scoped session could not be initialized.")
    return _scoped  # type: ignore[return-value]


@contextmanager
def app_session() -> Iterator[SASession]:
    """One unit of work: commit on success, roll back on any exception."""
    scoped = get_scoped_session()
    sess = scoped()
    try:
        yield sess
        sess.commit()
    except Exception:
        sess.rollback()
        raise
    finally:
        sess.close()


@contextmanager
def session_scope(session: Optional[SASession] = None) -> Iterator[SASession]:
    """Join the caller's transaction when given one, else open a new unit of work."""
    if session is not None:
        yield session
        return
    with app_session() as sess:
        yield sess


def reset_for_tests(drop: bool = False) -> None:
    global _engine, _SessionFactory, _scoped
    with _LOCK:
        if _scoped is not None:
            _scoped.remove()
        if _engine is not None and drop:
            try:
                Base.metadata.drop_all(_engine)
            except Exception:
                LOG.warning("Failed dropping tables during reset", exc_info=True)
        if _engine is not None:
            _engine.dispose()
        _engine = None
        _SessionFactory = None
        _scoped = None


__all__ = [
    "init_engine_once",
    "get_engine",
    "get_session_factory",
    "get_scoped_session",
    "app_session",
    "session_scope",
    "reset_for_tests",
]
