"""Shared fixtures for billing_engine unit tests.

The state store runs on a file-backed SQLite database (via aiosqlite) so
that several sessions can observe each other's commits, which the attempt
claim tests rely on.
"""

from __future__ import annotations

from pathlib import Path

import pytest_asyncio
from billing_engine.state.database import get_session_factory
from billing_engine.state.sqlite_adapter import create_local_tables, get_local_engine


@pytest_asyncio.fixture
async def engine(tmp_path: Path):
    """Provide an async SQLite engine with all tables created."""
    eng = get_local_engine(tmp_path / "state.db")
    await create_local_tables(eng)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return get_session_factory(engine)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as sess:
        yield sess
