"""Tests for the SQLite adapter and engine dispatch."""

from __future__ import annotations

from pathlib import Path

import pytest
from billing_engine.state.database import get_engine, get_session, get_session_factory
from billing_engine.state.sqlite_adapter import create_local_tables, get_local_engine
from sqlalchemy import inspect, text

_INSERT_CUSTOMER = text(
    "INSERT INTO billing_customers (workspace_id, stripe_customer_id, created_at, updated_at) "
    "VALUES ('ws-1', 'cus_1', '2026-01-01', '2026-01-01')"
)

# ---------------------------------------------------------------------------
# Engine creation
# ---------------------------------------------------------------------------


class TestGetLocalEngine:
    def test_creates_in_memory_engine(self) -> None:
        engine = get_local_engine(":memory:")
        assert "sqlite" in str(engine.url)

    def test_creates_parent_directories(self, tmp_path: Path) -> None:
        db_path = tmp_path / "nested" / "deep" / "state.db"
        get_local_engine(db_path)
        assert db_path.parent.exists()

    def test_get_engine_dispatches_sqlite(self, tmp_path: Path) -> None:
        engine = get_engine(f"sqlite+aiosqlite:///{tmp_path / 'x.db'}")
        assert "x.db" in str(engine.url)

    def test_session_factory_cached_per_engine(self, tmp_path: Path) -> None:
        engine = get_local_engine(tmp_path / "a.db")
        assert get_session_factory(engine) is get_session_factory(engine)


# ---------------------------------------------------------------------------
# Table creation
# ---------------------------------------------------------------------------


class TestCreateLocalTables:
    @pytest.mark.asyncio
    async def test_creates_all_tables(self, tmp_path: Path) -> None:
        engine = get_local_engine(tmp_path / "state.db")
        await create_local_tables(engine)

        async with engine.connect() as conn:
            names = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())

        assert {
            "workspace_sms_credits",
            "workspace_call_minutes",
            "sms_usage_log",
            "call_usage_log",
            "billing_customers",
            "auto_replenish_attempts",
            "billing_events",
            "billing_alerts",
        } <= set(names)
        await engine.dispose()

    @pytest.mark.asyncio
    async def test_idempotent(self, tmp_path: Path) -> None:
        engine = get_local_engine(tmp_path / "state.db")
        await create_local_tables(engine)
        await create_local_tables(engine)
        await engine.dispose()

    @pytest.mark.asyncio
    async def test_get_session_commits(self, tmp_path: Path) -> None:
        engine = get_local_engine(tmp_path / "state.db")
        await create_local_tables(engine)

        async with get_session(engine) as session:
            await session.execute(_INSERT_CUSTOMER)

        async with get_session(engine) as session:
            count = (await session.execute(text("SELECT COUNT(*) FROM billing_customers"))).scalar_one()
        assert count == 1
        await engine.dispose()

    @pytest.mark.asyncio
    async def test_get_session_rolls_back_on_error(self, tmp_path: Path) -> None:
        engine = get_local_engine(tmp_path / "state.db")
        await create_local_tables(engine)

        with pytest.raises(RuntimeError):
            async with get_session(engine) as session:
                await session.execute(_INSERT_CUSTOMER)
                raise RuntimeError("boom")

        async with get_session(engine) as session:
            count = (await session.execute(text("SELECT COUNT(*) FROM billing_customers"))).scalar_one()
        assert count == 0
        await engine.dispose()
