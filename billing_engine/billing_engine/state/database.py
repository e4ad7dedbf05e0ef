"""Engine and session helpers for the add-on billing state store.

The URL scheme picks the backend: ``postgresql+asyncpg://`` in production,
``sqlite+aiosqlite://`` for the CLI and the test suite.  Every session opened
through :func:`get_session` is a single unit of work, which matters for the
auto-replenish job: the attempt claim, the status update and the credit each
run in their own session so one can commit while a later one fails.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

logger = logging.getLogger(__name__)

# Statements issued by the job are single-row; anything slower is a lock wait.
_PG_SERVER_SETTINGS = {
    "statement_timeout": "15000",
    "lock_timeout": "5000",
}

_factories: dict[int, async_sessionmaker[AsyncSession]] = {}


def _sqlite_path(database_url: str) -> str:
    _, sep, path = database_url.partition("///")
    return path if sep and path else ":memory:"


def get_engine(
    database_url: str,
    pool_size: int = 5,
    max_overflow: int = 5,
) -> AsyncEngine:
    """Build an async engine for *database_url*.

    Parameters
    ----------
    database_url:
        ``postgresql+asyncpg://`` or ``sqlite+aiosqlite://`` URL.
    pool_size, max_overflow:
        PostgreSQL pool bounds.  SQLite engines hold one connection.
    """
    if database_url.startswith("sqlite"):
        from billing_engine.state.sqlite_adapter import get_local_engine

        return get_local_engine(_sqlite_path(database_url))

    engine = create_async_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=1800,
        pool_timeout=10,
        connect_args={"server_settings": dict(_PG_SERVER_SETTINGS)},
    )
    logger.info("State store engine ready (pool_size=%d, max_overflow=%d)", pool_size, max_overflow)
    return engine


def get_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Return the session factory for *engine*, creating it on first use."""
    factory = _factories.get(id(engine))
    if factory is None or factory.kw.get("bind") is not engine:
        factory = async_sessionmaker(engine, expire_on_commit=False)
        _factories[id(engine)] = factory
    return factory


@asynccontextmanager
async def get_session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """Open a session that commits on exit and rolls back on error."""
    async with get_session_factory(engine)() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
