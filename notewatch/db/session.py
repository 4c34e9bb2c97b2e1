"""Engine creation and session helpers.

SQLite is the default for local deployments; PostgreSQL is used when a
``postgresql`` URL is configured.  Tests build in-memory engines through
:func:`create_memory_engine`.
"""

from __future__ import annotations

import os
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

import structlog
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from notewatch.config import Settings, get_settings
from notewatch.db.models import Base

logger = structlog.get_logger(__name__)


def _parse_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def create_engine_from_settings(settings: Optional[Settings] = None) -> Engine:
    """Return an engine for the configured database URL."""

    settings = settings or get_settings()
    engine_kwargs: Dict[str, Any] = {"future": True}
    connect_args: Dict[str, Any] = {}

    if settings.is_sqlite:
        connect_args["check_same_thread"] = False
    else:
        timeout = _parse_int(os.environ.get("DB_CONNECT_TIMEOUT"))
        if timeout is not None:
            connect_args["connect_timeout"] = timeout
        engine_kwargs["pool_pre_ping"] = True
        pool_size = _parse_int(os.environ.get("DB_POOL_SIZE"))
        if pool_size is not None:
            engine_kwargs["pool_size"] = pool_size
    engine_kwargs["connect_args"] = connect_args

    engine = create_engine(settings.database_url, **engine_kwargs)

    if settings.is_sqlite:

        @event.listens_for(engine, "connect")
        def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):  # type: ignore[no-untyped-def]
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def create_memory_engine() -> Engine:
    """Return a shared in-memory SQLite engine with the schema created."""

    engine = create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_schema(engine)
    return engine


def init_schema(engine: Engine) -> None:
    """Create all tables that do not exist yet."""

    Base.metadata.create_all(engine)
    logger.debug("schema_initialised", url=engine.url.render_as_string(hide_password=True))


@contextmanager
def session_scope(engine: Engine) -> Iterator[Session]:
    """Context manager yielding a session bound to ``engine``."""

    session = Session(bind=engine, expire_on_commit=False)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


__all__ = ["create_engine_from_settings", "create_memory_engine", "init_schema", "session_scope"]
