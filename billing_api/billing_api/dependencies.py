"""FastAPI dependency injection for settings, database sessions and billing services."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from datetime import timedelta
from typing import Annotated

from billing_engine.state.database import get_engine
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from billing_api.config import APISettings, load_api_settings
from billing_api.services.auto_replenish_service import AutoReplenishJob
from billing_api.services.payment_service import PaymentGateway, StripePaymentService

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(settings.database_url)
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory.

    The auto-replenish job opens one short session per step, so it takes the
    factory rather than a request-scoped session.
    """
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


SessionFactoryDep = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]


async def get_db_session(session_factory: SessionFactoryDep) -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` that commits on clean exit and rolls back on exception."""
    session = session_factory()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Billing services
# ---------------------------------------------------------------------------


def get_payment_gateway(settings: SettingsDep, session_factory: SessionFactoryDep) -> PaymentGateway:
    return StripePaymentService(session_factory, settings)


PaymentGatewayDep = Annotated[PaymentGateway, Depends(get_payment_gateway)]


def get_auto_replenish_job(
    settings: SettingsDep,
    session_factory: SessionFactoryDep,
    payments: PaymentGatewayDep,
) -> AutoReplenishJob:
    """Build the auto-replenish job on the global session factory."""
    return AutoReplenishJob(
        session_factory,
        payments,
        cooldown=timedelta(minutes=settings.auto_replenish_cooldown_minutes),
        currency=settings.billing_currency,
    )


AutoReplenishJobDep = Annotated[AutoReplenishJob, Depends(get_auto_replenish_job)]
