"""Add-on billing CLI -- operator interface to balances and auto-replenish.

Runs the auto-replenish job outside the HTTP service, inspects attempts
that need reconciliation, and manages workspace settings directly against
the state database.  Human-readable output goes to *stderr* via Rich;
``--json`` writes machine-readable results to *stdout*.
"""

from __future__ import annotations

import asyncio
import json
import sys
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from billing_api.config import APISettings

import typer
from billing_engine.bundles import BundleName, CreditType, default_catalog
from rich.console import Console

from billing_cli.display import (
    display_attempts,
    display_balance,
    display_bundles,
    display_candidates,
    display_replenish_summary,
)

# ---------------------------------------------------------------------------
# App & global state
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="addon-billing",
    help="SMS credit and call-minute add-on billing.",
    no_args_is_help=True,
)
console = Console(stderr=True)

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///.addon-billing/state.db"

# Mutable global options populated by the Typer callback.
_json_output: bool = False
_database_url: str = DEFAULT_DATABASE_URL


@app.callback()
def _global_options(
    json_mode: bool = typer.Option(
        False,
        "--json/--no-json",
        help="Emit structured JSON to stdout instead of human-readable output.",
    ),
    database_url: str = typer.Option(
        DEFAULT_DATABASE_URL,
        "--database-url",
        help="State database URL (PostgreSQL or SQLite).",
        envvar="API_DATABASE_URL",
    ),
) -> None:
    """Global options applied to every command."""
    global _json_output, _database_url  # noqa: PLW0603
    _json_output = json_mode
    _database_url = database_url


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _settings() -> APISettings:
    """API settings from the environment, pointed at the CLI's database."""
    from billing_api.config import load_api_settings

    return load_api_settings().model_copy(update={"database_url": _database_url})


def _write_json(data: Any) -> None:
    sys.stdout.write(json.dumps(data, indent=2, default=str) + "\n")


def _attempt_rows(attempts: Any) -> list[dict[str, Any]]:
    from billing_api.schemas import ReplenishAttemptResponse

    return [ReplenishAttemptResponse.model_validate(a).model_dump(mode="json") for a in attempts]


# ---------------------------------------------------------------------------
# bundles / init-db
# ---------------------------------------------------------------------------


@app.command()
def bundles(
    credit_type: CreditType | None = typer.Option(None, "--type", help="Only list bundles of this type."),
) -> None:
    """List the bundle price list."""
    items = default_catalog.list(credit_type)
    if _json_output:
        _write_json(
            [
                {
                    "type": b.credit_type.value,
                    "bundle": b.name.value,
                    "quantity": b.quantity,
                    "price_cents": b.price_cents,
                }
                for b in items
            ]
        )
    else:
        display_bundles(console, items)


@app.command("init-db")
def init_db() -> None:
    """Create the state tables (SQLite or a development PostgreSQL).

    Production PostgreSQL schemas are managed by the Alembic migrations.
    """
    from billing_engine.state.database import get_engine
    from billing_engine.state.sqlite_adapter import create_local_tables
    from billing_engine.state.tables import Base

    async def _init() -> None:
        engine = get_engine(_database_url)
        try:
            if _database_url.startswith("sqlite"):
                await create_local_tables(engine)
            else:
                async with engine.begin() as conn:
                    await conn.run_sync(Base.metadata.create_all)
        finally:
            await engine.dispose()

    try:
        asyncio.run(_init())
    except Exception as exc:
        console.print(f"[red]Failed to initialise database: {exc}[/red]")
        raise typer.Exit(code=3) from exc

    console.print(f"[green]Database ready:[/green] {_database_url}")


# ---------------------------------------------------------------------------
# replenish
# ---------------------------------------------------------------------------


@app.command()
def replenish(
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="List the balances below their threshold without charging.",
    ),
) -> None:
    """Run the auto-replenish job once against the state database."""
    from billing_engine.models import ReplenishSummary
    from billing_engine.state.database import get_engine, get_session_factory

    from billing_api.services.auto_replenish_service import AutoReplenishJob
    from billing_api.services.payment_service import StripePaymentService

    settings = _settings()
    if not dry_run and not settings.stripe_secret_key.get_secret_value():
        console.print("[red]API_STRIPE_SECRET_KEY is not set; use --dry-run to preview candidates.[/red]")
        raise typer.Exit(code=3)

    async def _run() -> Any:
        engine = get_engine(settings.database_url)
        try:
            factory = get_session_factory(engine)
            job = AutoReplenishJob(
                factory,
                StripePaymentService(factory, settings),
                cooldown=timedelta(minutes=settings.auto_replenish_cooldown_minutes),
                currency=settings.billing_currency,
            )
            if dry_run:
                return await job.find_candidates()

            summary = ReplenishSummary()
            try:
                await job.run(summary)
            except Exception as exc:
                summary.success = False
                summary.error = str(exc) or type(exc).__name__
            return summary
        finally:
            await engine.dispose()

    try:
        result = asyncio.run(_run())
    except Exception as exc:
        console.print(f"[red]Auto-replenish failed: {exc}[/red]")
        raise typer.Exit(code=3) from exc

    if dry_run:
        if _json_output:
            _write_json([c.model_dump(mode="json") for c in result])
        else:
            display_candidates(console, result)
        return

    if _json_output:
        _write_json(result.to_response())
    else:
        display_replenish_summary(console, result)
    if not result.success:
        raise typer.Exit(code=3)


# ---------------------------------------------------------------------------
# attempts
# ---------------------------------------------------------------------------


@app.command()
def attempts(
    workspace: str | None = typer.Option(None, "--workspace", "-w", help="Workspace to list attempts for."),
    credit_type: CreditType | None = typer.Option(None, "--type", help="Filter by credit type."),
    stale: bool = typer.Option(
        False,
        "--stale",
        help="List attempts stuck in processing (unknown charge outcome) instead.",
    ),
    older_than: int | None = typer.Option(
        None,
        "--older-than",
        min=1,
        help="Minutes a processing attempt must be old to count as stale.",
    ),
    limit: int = typer.Option(50, "--limit", min=1, max=500),
) -> None:
    """Show replenish attempts for a workspace, or stale ones across all workspaces."""
    from billing_engine.state.database import get_engine, get_session
    from billing_engine.state.repository import ReplenishAttemptRepository

    if not stale and workspace is None:
        console.print("[red]Pass --workspace or --stale.[/red]")
        raise typer.Exit(code=3)

    settings = _settings()
    minutes = older_than or settings.auto_replenish_stale_minutes

    async def _load() -> list[Any]:
        engine = get_engine(settings.database_url)
        try:
            async with get_session(engine) as session:
                repo = ReplenishAttemptRepository(session)
                if stale:
                    cutoff = datetime.now(UTC) - timedelta(minutes=minutes)
                    return list(await repo.list_stale_processing(cutoff))
                assert workspace is not None
                return list(
                    await repo.list_for_workspace(
                        workspace,
                        credit_type=credit_type.value if credit_type is not None else None,
                        limit=limit,
                    )
                )
        finally:
            await engine.dispose()

    try:
        rows = asyncio.run(_load())
    except Exception as exc:
        console.print(f"[red]Failed to load attempts: {exc}[/red]")
        raise typer.Exit(code=3) from exc

    if _json_output:
        _write_json(_attempt_rows(rows))
    else:
        title = f"Stale attempts (> {minutes} min)" if stale else f"Attempts for {workspace}"
        display_attempts(console, rows, title=title)


# ---------------------------------------------------------------------------
# balance / auto-replenish settings
# ---------------------------------------------------------------------------


@app.command()
def balance(workspace: str = typer.Argument(..., help="Workspace ID.")) -> None:
    """Show a workspace's balances and auto-replenish settings."""
    from billing_engine.state.database import get_engine, get_session

    from billing_api.services.credit_service import CreditService

    settings = _settings()

    async def _load() -> dict[str, Any]:
        engine = get_engine(settings.database_url)
        try:
            async with get_session(engine) as session:
                return await CreditService(session).get_summary(workspace)
        finally:
            await engine.dispose()

    try:
        summary = asyncio.run(_load())
    except Exception as exc:
        console.print(f"[red]Failed to load balance: {exc}[/red]")
        raise typer.Exit(code=3) from exc

    if _json_output:
        _write_json(summary)
    else:
        display_balance(console, summary)


@app.command("auto-replenish")
def auto_replenish(
    workspace: str = typer.Argument(..., help="Workspace ID."),
    credit_type: CreditType = typer.Argument(..., help="sms_credits or call_minutes."),
    enable: bool = typer.Option(..., "--enable/--disable", help="Turn auto-replenish on or off."),
    threshold: int | None = typer.Option(
        None,
        "--threshold",
        min=0,
        help="Replenish when the balance drops below this (credits, or whole minutes).",
    ),
    bundle: BundleName | None = typer.Option(None, "--bundle", help="Bundle to buy on each replenish."),
) -> None:
    """Update a workspace's auto-replenish settings."""
    from billing_engine.state.database import get_engine, get_session

    from billing_api.services.credit_service import CreditService

    settings = _settings()

    async def _update() -> dict[str, Any]:
        engine = get_engine(settings.database_url)
        try:
            async with get_session(engine) as session:
                return await CreditService(session).update_auto_replenish(
                    workspace, credit_type, enabled=enable, threshold=threshold, bundle=bundle
                )
        finally:
            await engine.dispose()

    try:
        result = asyncio.run(_update())
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=3) from exc
    except Exception as exc:
        console.print(f"[red]Failed to update settings: {exc}[/red]")
        raise typer.Exit(code=3) from exc

    if _json_output:
        _write_json(result)
    else:
        state = "[green]enabled[/green]" if result["enabled"] else "[dim]disabled[/dim]"
        console.print(
            f"{credit_type.value} auto-replenish for {workspace}: {state} "
            f"(threshold {result['threshold']}, bundle {result['bundle'] or '-'})"
        )
