"""Tests for liveness and readiness probes."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from billing_api import __version__
from billing_api.dependencies import get_session_factory


def _broken_session_factory() -> MagicMock:
    session = AsyncMock()
    session.execute.side_effect = OperationalError("SELECT 1", {}, Exception("connection refused"))
    return MagicMock(return_value=session)


class TestHealth:
    @pytest.mark.asyncio
    async def test_health_ok(self, client) -> None:
        resp = await client.get("/api/v1/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "healthy", "version": __version__, "db": "ok"}

    @pytest.mark.asyncio
    async def test_health_reports_degraded_database(self, app, client) -> None:
        app.dependency_overrides[get_session_factory] = _broken_session_factory

        resp = await client.get("/api/v1/health")

        assert resp.status_code == 200
        assert resp.json()["db"] == "degraded"


class TestReadiness:
    @pytest.mark.asyncio
    async def test_ready(self, client) -> None:
        resp = await client.get("/ready")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ready"

    @pytest.mark.asyncio
    async def test_not_ready_without_database(self, app, client) -> None:
        app.dependency_overrides[get_session_factory] = _broken_session_factory

        resp = await client.get("/ready")

        assert resp.status_code == 503
        assert resp.json()["checks"] == {"db": "unavailable"}
