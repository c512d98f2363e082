"""Async engine, session factory and the request-scoped session dependency."""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from tenancy.core.config import get_settings
from tenancy.core.structured_logging import log_json

settings = get_settings()
logger = logging.getLogger(__name__)

_MAX_LOGGED_STATEMENT = 2000


def async_database_url(url: str) -> str:
    """Map a plain driver URL onto its async driver."""
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


def enable_sqlite_savepoints(async_engine: AsyncEngine, begin: str = "BEGIN") -> None:
    """Hand transaction control to SQLAlchemy on pysqlite connections.

    The driver otherwise issues its own BEGIN/COMMIT, which breaks
    ``begin_nested()`` savepoints. ``begin="BEGIN IMMEDIATE"`` takes the write
    lock up front, so concurrent writers wait for each other instead of failing
    a lock upgrade.
    """

    @event.listens_for(async_engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(async_engine.sync_engine, "begin")
    def _on_begin(conn) -> None:
        conn.exec_driver_sql(begin)


def log_slow_queries(async_engine: AsyncEngine, threshold_ms: float) -> None:
    """Emit a ``slow_query`` warning for statements slower than ``threshold_ms``."""

    @event.listens_for(async_engine.sync_engine, "before_cursor_execute")
    def _start(conn, cursor, statement, parameters, context, executemany) -> None:
        conn.info.setdefault("query_started", []).append(time.perf_counter())

    @event.listens_for(async_engine.sync_engine, "after_cursor_execute")
    def _finish(conn, cursor, statement, parameters, context, executemany) -> None:
        started = conn.info.get("query_started")
        if not started:
            return
        duration_ms = (time.perf_counter() - started.pop()) * 1000
        if duration_ms >= threshold_ms:
            log_json(
                logger,
                logging.WARNING,
                "slow_query",
                duration_ms=round(duration_ms, 2),
                statement=str(statement)[:_MAX_LOGGED_STATEMENT],
            )


engine = create_async_engine(
    async_database_url(settings.database_url),
    echo=False,
    # Connections must not outlive the event loop of a test or Celery task
    poolclass=NullPool if "test" in settings.database_url else None,
)

if engine.dialect.name == "sqlite":
    enable_sqlite_savepoints(engine)
if settings.slow_query_ms > 0:
    log_slow_queries(engine, settings.slow_query_ms)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


async def get_db() -> AsyncIterator[AsyncSession]:
    """Yield a session that commits when the request succeeds.

    Services flush but never commit; the route decides the transaction
    boundary through this dependency (or an explicit commit before
    dispatching side effects).
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
