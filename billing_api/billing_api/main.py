"""FastAPI application entry-point for the add-on billing API."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from billing_api import __version__
from billing_api.config import APISettings, PlatformEnv, load_api_settings
from billing_api.dependencies import dispose_engine, get_session_factory, init_engine
from billing_api.middleware.logging import RequestLoggingMiddleware
from billing_api.middleware.trace_context import TraceContextMiddleware, TraceLoggingFilter
from billing_api.routers import addons, cron, health, webhooks
from billing_api.services.auto_replenish_service import AutoReplenishJob
from billing_api.services.payment_service import StripePaymentService
from billing_api.services.replenish_scheduler import AutoReplenishScheduler

logger = logging.getLogger(__name__)


def _configure_structured_logging() -> None:
    from billing_api.middleware.json_formatter import JSONFormatter

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    handler.addFilter(TraceLoggingFilter())
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.INFO)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Refuse to start outside dev without a cron secret.
    - Initialise the async database engine.
    - Create tables in dev or local SQLite mode (production uses Alembic).
    - Start the in-process auto-replenish scheduler when enabled.

    On shutdown:
    - Stop the scheduler and dispose the engine pool.
    """
    settings: APISettings = load_api_settings()

    if settings.structured_logging:
        _configure_structured_logging()
        logger.info("Structured JSON logging enabled")

    if settings.platform_env in (PlatformEnv.STAGING, PlatformEnv.PRODUCTION) and not (
        settings.cron_secret.get_secret_value()
    ):
        raise RuntimeError(
            f"API_CRON_SECRET is required in {settings.platform_env.value} mode. Refusing to start."
        )

    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info(
        "Database engine initialised (%s, %s)",
        settings.database_url[:40] + "...",
        "local" if is_local else "postgres",
    )

    if settings.platform_env == PlatformEnv.DEV or is_local:
        from billing_engine.state.tables import Base

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables ensured (%s)", "local SQLite" if is_local else "dev auto-migration")

    scheduler: AutoReplenishScheduler | None = None
    if settings.auto_replenish_scheduler_enabled:
        session_factory = get_session_factory()
        job = AutoReplenishJob(
            session_factory,
            StripePaymentService(session_factory, settings),
            cooldown=timedelta(minutes=settings.auto_replenish_cooldown_minutes),
            currency=settings.billing_currency,
        )
        scheduler = AutoReplenishScheduler(job, interval_seconds=settings.auto_replenish_interval_seconds)
        await scheduler.start()

    yield

    if scheduler is not None:
        await scheduler.stop()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = load_api_settings()

    app = FastAPI(
        title="Add-on Billing API",
        description="SMS credit and call-minute balances with card auto-replenishment.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (outermost first) ----------------------------------------

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Correlation-ID", "Accept"],
    )
    app.add_middleware(TraceContextMiddleware)
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    app.include_router(cron.router, prefix="/api")
    app.include_router(health.router, prefix="/api/v1")
    app.include_router(addons.router, prefix="/api/v1")
    app.include_router(webhooks.router, prefix="/api/v1")
    app.include_router(health.readiness_router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": "Invalid request"})

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(status_code=500, content={"detail": "Internal database error"})

    return app


# Module-level application instance used by ``uvicorn billing_api.main:app``.
app = create_app()
