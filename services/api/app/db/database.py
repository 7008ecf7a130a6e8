from __future__ import annotations

import os
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

DEFAULT_DATABASE_URL = "sqlite+pysqlite:///.local/courant.db"

_engine: Engine | None = None
_engine_url: str | None = None
_sessions: sessionmaker[Session] | None = None


def database_url() -> str:
    # Local-only default. Deployments set DATABASE_URL.
    return os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)


def get_engine() -> Engine:
    """Return the engine for the current DATABASE_URL.

    The engine is rebuilt when DATABASE_URL changes, so tests can point each case at
    its own sqlite file.
    """

    global _engine, _engine_url, _sessions

    url = database_url()
    if _engine is not None and _engine_url == url:
        return _engine

    if _engine is not None:
        _engine.dispose()

    # Orders are written from scheduler threads as well as request threads.
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    echo = os.getenv("COURANT_DB_ECHO", "").strip().lower() in {"1", "true", "yes"}
    _engine = create_engine(url, echo=echo, pool_pre_ping=True, connect_args=connect_args)
    _engine_url = url
    _sessions = sessionmaker(bind=_engine, expire_on_commit=False)
    return _engine


@contextmanager
def session_scope() -> Iterator[Session]:
    """One unit of work: commit on success, roll back on error, always close."""

    get_engine()
    assert _sessions is not None
    session = _sessions()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
