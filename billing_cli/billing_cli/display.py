"""Rich output formatting for the add-on billing CLI.

All functions write to a :class:`rich.console.Console` instance (typically
bound to *stderr*) so that JSON written to *stdout* is never polluted with
human-readable decoration.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from billing_engine.bundles import Bundle, format_price
from billing_engine.models import ReplenishCandidate, ReplenishSummary
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# ---------------------------------------------------------------------------
# Status colour mapping
# ---------------------------------------------------------------------------

_STATUS_COLOURS: dict[str, str] = {
    "successful": "green",
    "succeeded": "green",
    "failed": "red",
    "requires_action": "yellow",
    "processing": "cyan",
    "skipped": "dim",
}


def _coloured_status(status: str) -> str:
    """Return a Rich markup string with the status colour-coded."""
    colour = _STATUS_COLOURS.get(status, "white")
    return f"[{colour}]{status}[/{colour}]"


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


def display_bundles(console: Console, bundles: Sequence[Bundle]) -> None:
    table = Table(title="Add-on bundles", show_lines=False, expand=False)
    table.add_column("Type", style="bold")
    table.add_column("Bundle")
    table.add_column("Quantity", justify="right")
    table.add_column("Price", justify="right")
    table.add_column("Unit price", justify="right")

    for b in bundles:
        table.add_row(
            b.credit_type.value,
            b.name.value,
            f"{b.quantity:,} {b.unit_label}",
            format_price(b.price_cents),
            f"{b.unit_price_cents:.2f}¢",
        )

    console.print(table)


# ---------------------------------------------------------------------------
# Job output
# ---------------------------------------------------------------------------


def display_replenish_summary(console: Console, summary: ReplenishSummary) -> None:
    """Render the counters panel and a per-candidate table.

    Parameters
    ----------
    console:
        Rich console to write to.
    summary:
        Result of one auto-replenish run.
    """
    border = "green" if summary.success else "red"
    header_lines = [
        f"[bold]Processed:[/bold]  {summary.processed}",
        f"[bold]Successful:[/bold] [green]{summary.successful}[/green]",
        f"[bold]Failed:[/bold]     [red]{summary.failed}[/red]",
        f"[bold]Skipped:[/bold]    {summary.skipped}",
    ]
    if summary.error:
        header_lines.append(f"[bold]Error:[/bold]      [red]{summary.error}[/red]")
    console.print(Panel("\n".join(header_lines), title="Auto-replenish run", border_style=border))

    if not summary.details:
        console.print("[dim]No workspaces below their threshold.[/dim]")
        return

    table = Table(show_lines=False, expand=False)
    table.add_column("Workspace", style="bold")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Note")
    for d in summary.details:
        table.add_row(d.workspace_id, d.credit_type.value, _coloured_status(d.status.value), d.error or "-")
    console.print(table)


def display_candidates(console: Console, candidates: Sequence[ReplenishCandidate]) -> None:
    """Render the balances a run would try to replenish."""
    if not candidates:
        console.print("[dim]No workspaces below their threshold.[/dim]")
        return

    table = Table(title=f"Replenish candidates ({len(candidates)})", expand=False)
    table.add_column("Workspace", style="bold")
    table.add_column("Type")
    table.add_column("Balance", justify="right")
    table.add_column("Threshold", justify="right")
    table.add_column("Bundle")
    for c in candidates:
        table.add_row(
            c.workspace_id,
            c.credit_type.value,
            str(c.balance),
            str(c.threshold),
            c.bundle.value if c.bundle is not None else "[yellow]none[/yellow]",
        )
    console.print(table)


# ---------------------------------------------------------------------------
# Attempts and balances
# ---------------------------------------------------------------------------


def display_attempts(console: Console, attempts: Sequence[Any], title: str = "Replenish attempts") -> None:
    """Render persisted replenish attempts, newest first."""
    if not attempts:
        console.print("[dim]No attempts found.[/dim]")
        return

    table = Table(title=f"{title} ({len(attempts)})", expand=False)
    table.add_column("ID", style="dim")
    table.add_column("Workspace", style="bold")
    table.add_column("Type")
    table.add_column("Bundle")
    table.add_column("Amount", justify="right")
    table.add_column("Status")
    table.add_column("Created")
    table.add_column("Error")
    for a in attempts:
        table.add_row(
            a.id[:12],
            a.workspace_id,
            a.credit_type,
            a.bundle,
            format_price(a.amount_cents),
            _coloured_status(a.status),
            a.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            a.error_message or "-",
        )
    console.print(table)


def display_balance(console: Console, summary: dict[str, Any]) -> None:
    """Render one workspace's balances and auto-replenish settings."""
    table = Table(title=f"Workspace {summary['workspace_id']}", expand=False)
    table.add_column("Type", style="bold")
    table.add_column("Balance", justify="right")
    table.add_column("Auto-replenish")
    table.add_column("Threshold", justify="right")
    table.add_column("Bundle")

    for label, key, unit in (("SMS credits", "sms", "credits"), ("Call minutes", "minutes", "min")):
        section = summary[key]
        auto = section["auto_replenish"]
        balance = f"{section['balance']:,} {unit}"
        if section["is_low"]:
            balance = f"[yellow]{balance}[/yellow]"
        table.add_row(
            label,
            balance,
            "[green]on[/green]" if auto["enabled"] else "[dim]off[/dim]",
            str(auto["threshold"]),
            auto["bundle"] or "-",
        )
    console.print(table)
