# =============================================================================
# Database Engine & Session Management
# =============================================================================
#
# DESIGN DECISION: Async SQLAlchemy engine everywhere.
# The ingestion pool, the agent queues and the HTTP handlers all run on one
# event loop, so every persistence read/write is an `await` point and
# nothing blocks the loop.
#
# ENGINE PER STORE:
# `create_engine_for(url)` builds a fresh engine. The application creates
# one at startup (see main.py); tests create one per temporary database.
# There is no module-level engine, so importing docflow never opens a
# connection.
#
# SQLITE SPECIFICS:
# - NullPool: each session opens its own aiosqlite connection. Pooled
#   aiosqlite connections are bound to the loop that created them.
# - WAL journal + busy timeout: collections are locked independently, so
#   two collections may write at the same moment; WAL lets readers proceed
#   and the busy timeout makes the second writer wait instead of failing.
# - foreign_keys=ON so ON DELETE CASCADE is honoured.
# =============================================================================

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

logger = logging.getLogger(__name__)

SQLITE_BUSY_TIMEOUT_SECONDS = 30


def _set_sqlite_pragmas(dbapi_connection, _connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_engine_for(url: str, echo: bool = False) -> AsyncEngine:
    """
    Create an async engine for `url`.

    For file-backed SQLite URLs the parent directory is created first,
    so a fresh checkout can start without any setup.
    """
    parsed = make_url(url)

    if parsed.get_backend_name() != "sqlite":
        return create_async_engine(url, echo=echo, pool_size=5, max_overflow=10)

    if parsed.database and parsed.database != ":memory:":
        Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)

    engine = create_async_engine(
        url,
        echo=echo,
        poolclass=NullPool,
        connect_args={"timeout": SQLITE_BUSY_TIMEOUT_SECONDS},
    )
    event.listen(engine.sync_engine, "connect", _set_sqlite_pragmas)
    logger.debug("Created SQLite engine for %s", parsed.database)
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Session factory bound to `engine`.

    expire_on_commit=False: records returned by the store are read after
    their session has closed, which would otherwise trigger a lazy reload.
    """
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
