"""Shared fixtures for add-on billing API tests.

Provides a file-backed SQLite state store, a scriptable fake payment
gateway, test settings, and an ``httpx.AsyncClient`` bound to the FastAPI
app with its dependencies overridden.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from billing_engine.bundles import Bundle, BundleCatalog, BundleName, CreditType
from billing_engine.models import ChargeResult, ChargeStatus
from billing_engine.state.repository import BillingCustomerRepository, CreditBalanceRepository
from billing_engine.state.sqlite_adapter import create_local_tables, get_local_engine
from httpx import ASGITransport, AsyncClient
from pydantic import SecretStr
from sqlalchemy.ext.asyncio import async_sessionmaker

from billing_api.config import APISettings
from billing_api.dependencies import (
    get_auto_replenish_job,
    get_session_factory,
    get_settings,
)
from billing_api.main import create_app
from billing_api.services.auto_replenish_service import AutoReplenishJob

CRON_SECRET = "test-cron-secret"
SERVICE_TOKEN = "test-service-token"

# SMS starter priced at 100 credits / 500 cents; everything else as in production.
TEST_CATALOG = BundleCatalog(
    [
        Bundle(BundleName.STARTER, CreditType.SMS, quantity=100, price_cents=500),
        Bundle(BundleName.GROWTH, CreditType.SMS, quantity=2000, price_cents=3500),
        Bundle(BundleName.PRO, CreditType.SMS, quantity=10000, price_cents=15000),
        Bundle(BundleName.STARTER, CreditType.MINUTES, quantity=100, price_cents=500),
        Bundle(BundleName.GROWTH, CreditType.MINUTES, quantity=500, price_cents=2000),
        Bundle(BundleName.PRO, CreditType.MINUTES, quantity=2000, price_cents=6500),
    ]
)


class FakePaymentGateway:
    """In-memory stand-in for :class:`StripePaymentService`.

    ``results`` is consumed in order, one per charge; when empty every
    charge succeeds.  ``raise_on_charge`` makes the next charge raise;
    ``on_charge`` is awaited mid-charge, after the attempt has been claimed.
    """

    def __init__(self) -> None:
        self.workspaces_with_card: set[str] = set()
        self.results: list[ChargeResult] = []
        self.raise_on_charge: Exception | None = None
        self.charges: list[dict[str, Any]] = []
        self.on_charge: Any = None

    async def has_payment_method(self, workspace_id: str) -> bool:
        return workspace_id in self.workspaces_with_card

    async def create_direct_charge(
        self,
        workspace_id: str,
        amount_cents: int,
        *,
        description: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> ChargeResult:
        self.charges.append(
            {
                "workspace_id": workspace_id,
                "amount_cents": amount_cents,
                "description": description,
                "metadata": metadata,
                "idempotency_key": idempotency_key,
            }
        )
        if self.on_charge is not None:
            await self.on_charge(workspace_id, metadata)
        if self.raise_on_charge is not None:
            raise self.raise_on_charge
        if self.results:
            return self.results.pop(0)
        return ChargeResult(status=ChargeStatus.SUCCEEDED, payment_intent_id=f"pi_{len(self.charges)}")


# ---------------------------------------------------------------------------
# State store
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine(tmp_path: Path):
    eng = get_local_engine(tmp_path / "state.db")
    await create_local_tables(eng)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session_factory(engine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as sess:
        yield sess


@pytest.fixture
def gateway() -> FakePaymentGateway:
    return FakePaymentGateway()


@pytest.fixture
def job(session_factory, gateway) -> AutoReplenishJob:
    return AutoReplenishJob(session_factory, gateway, catalog=TEST_CATALOG)


async def _seed_sms(
    session_factory,
    workspace_id: str,
    *,
    balance: int,
    threshold: int = 10,
    bundle: str | None = "starter",
    enabled: bool = True,
) -> None:
    """Create an SMS balance row with auto-replenish settings."""
    async with session_factory() as session:
        repo = CreditBalanceRepository(session)
        if balance:
            await repo.add_sms_credits(workspace_id, balance)
        await repo.update_sms_settings(workspace_id, enabled=enabled, threshold=threshold)
        row = await repo.get_sms(workspace_id)
        row.auto_replenish_bundle = bundle
        await session.commit()


async def _seed_minutes(
    session_factory,
    workspace_id: str,
    *,
    balance_seconds: int,
    threshold: int = 10,
    bundle: str | None = "starter",
    enabled: bool = True,
) -> None:
    async with session_factory() as session:
        repo = CreditBalanceRepository(session)
        if balance_seconds:
            await repo.add_call_seconds(workspace_id, balance_seconds)
        await repo.update_minutes_settings(workspace_id, enabled=enabled, threshold=threshold)
        row = await repo.get_minutes(workspace_id)
        row.auto_replenish_bundle = bundle
        await session.commit()


async def _seed_customer(session_factory, workspace_id: str, payment_method: str | None = "pm_card") -> None:
    async with session_factory() as session:
        await BillingCustomerRepository(session).upsert(workspace_id, f"cus_{workspace_id}", payment_method)
        await session.commit()


@pytest.fixture
def seed_sms():
    return _seed_sms


@pytest.fixture
def seed_minutes():
    return _seed_minutes


@pytest.fixture
def seed_customer():
    return _seed_customer


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------


@pytest.fixture
def api_settings(tmp_path: Path) -> APISettings:
    return APISettings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'state.db'}",
        cron_secret=SecretStr(CRON_SECRET),
        service_token=SecretStr(SERVICE_TOKEN),
        stripe_secret_key=SecretStr("sk_test_123"),
        stripe_webhook_secret=SecretStr("whsec_test"),
    )


@pytest.fixture
def app(api_settings, session_factory, job):
    application = create_app()
    application.dependency_overrides[get_settings] = lambda: api_settings
    application.dependency_overrides[get_session_factory] = lambda: session_factory
    application.dependency_overrides[get_auto_replenish_job] = lambda: job
    yield application
    application.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def cron_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {CRON_SECRET}"}


@pytest.fixture
def service_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {SERVICE_TOKEN}"}
