"""Local SQLite backend for the CLI and tests.

Uses the same ORM tables as PostgreSQL.  Two things differ:

* JSON metadata columns are stored as TEXT.
* Tables are created by :func:`create_local_tables` instead of Alembic.

The partial unique index that serialises replenish attempts is created with
its ``WHERE status = 'processing'`` clause, so the concurrency guard behaves
the same on both backends.
"""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

logger = logging.getLogger(__name__)

_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA foreign_keys=ON",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA busy_timeout=5000",
)


def get_local_engine(db_path: Path | str = ".addon-billing/state.db") -> AsyncEngine:
    """Return an aiosqlite engine for *db_path*.

    ``":memory:"`` gives an ephemeral database; any other path has its
    parent directory created.
    """
    if str(db_path) == ":memory:":
        url = "sqlite+aiosqlite:///:memory:"
    else:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite+aiosqlite:///{path}"

    engine = create_async_engine(url, connect_args={"check_same_thread": False})

    @event.listens_for(engine.sync_engine, "connect")
    def _apply_pragmas(dbapi_conn: object, _: object) -> None:
        cursor = dbapi_conn.cursor()  # type: ignore[attr-defined]
        for pragma in _PRAGMAS:
            cursor.execute(pragma)
        cursor.close()

    logger.debug("SQLite state store at %s", url)
    return engine


async def create_local_tables(engine: AsyncEngine) -> None:
    """Create any missing state tables.  Safe to call repeatedly."""
    from billing_engine.state.tables import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("SQLite state tables ready")
