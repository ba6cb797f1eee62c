"""CLI command implementations — all commands work against RouterDatabase."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from datetime import datetime
from typing import TYPE_CHECKING

import click
from rich import box
from rich.console import Console
from rich.table import Table

if TYPE_CHECKING:
    from inbox_router.cli.main import RouterContext

from inbox_router.agent.ingest import run_ingest
from inbox_router.mcp.gmail_client import MCPError
from inbox_router.processing.classifier import ClassificationIndex
from inbox_router.processing.ledger import DedupLedger
from inbox_router.processing.types import RunSummary
from inbox_router.storage.db import MissingHeaderError

logger = logging.getLogger(__name__)
console = Console(width=200)

def _format_ms(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000).astimezone().strftime("%Y-%m-%d %H:%M:%S %z")

# ── run ──────────────────────────────────────────────────────────────────────────

@click.command()
@click.option("--verbose", "-v", is_flag=True, help="Log every routing decision.")
@click.pass_obj
def run(router: RouterContext, verbose: bool) -> None:
    """Run one ingestion sweep: new forwarded mail → destination tables."""
    if verbose:
        logging.getLogger("inbox_router").setLevel(logging.INFO)
    try:
        summary = asyncio.run(run_ingest(router.config, db=router.db))
    except (MCPError, MissingHeaderError, sqlite3.Error, ValueError) as exc:
        console.print(f"[red]Run aborted, ledger not committed: {exc}[/red]")
        raise SystemExit(1) from exc
    _print_summary(summary)


def _print_summary(summary: RunSummary) -> None:
    console.print(
        f"[green]Done.[/green] {summary.threads} thread(s) scanned, "
        f"[bold]{summary.saved}[/bold] row(s) saved "
        f"[dim]({summary.elapsed_seconds:.2f}s)[/dim]"
    )
    if summary.saved_by_destination:
        table = Table(box=box.ROUNDED, show_header=True, header_style="bold cyan")
        table.add_column("Destination")
        table.add_column("Rows", justify="right")
        for destination, count in sorted(summary.saved_by_destination.items()):
            table.add_row(destination, str(count))
        console.print(table)
    if summary.skipped:
        skipped = ", ".join(
            f"{reason.value}={count}" for reason, count in sorted(
                summary.skipped.items(), key=lambda item: item[0].value
            )
        )
        console.print(f"  [dim]Skipped:[/dim] {skipped}")

# ── status ───────────────────────────────────────────────────────────────────────

@click.command()
@click.pass_obj
def status(router: RouterContext) -> None:
    """Show the stored watermark and message-id history."""
    ledger = DedupLedger.peek(router.db)
    if ledger is None:
        console.print("[yellow]No runs recorded yet. Run `inbox-router run` to start.[/yellow]")
        return

    table = Table(box=box.ROUNDED, show_header=False)
    table.add_column("Key", style="bold")
    table.add_column("Value")
    table.add_row("Watermark", f"{_format_ms(ledger.watermark_ms)}  [dim]{ledger.watermark_ms}[/dim]")
    table.add_row(
        "Search floor", f"{_format_ms(ledger.search_floor_ms)}  [dim]{ledger.search_floor_ms}[/dim]"
    )
    table.add_row("History", f"{len(ledger.history)} message id(s)")
    console.print(table)

# ── routes ───────────────────────────────────────────────────────────────────────

@click.command()
@click.pass_obj
def routes(router: RouterContext) -> None:
    """List routing rows and the destination each domain resolves to."""
    records = router.db.list_routes()
    if not records:
        console.print(
            "[yellow]No routes configured. "
            "Add one with `inbox-router route-add DESTINATION DOMAIN`.[/yellow]"
        )
        return

    index = ClassificationIndex.build(router.db.route_rows())
    table = Table(box=box.ROUNDED, show_header=True, header_style="bold cyan")
    table.add_column("#", style="dim", width=4)
    table.add_column("Destination")
    table.add_column("Domain")
    table.add_column("Effective")
    for record in records:
        resolved = index.classify(record.domain) if record.domain.strip() else None
        if resolved == record.destination.strip():
            effective = "[green]active[/green]"
        elif resolved is None:
            effective = "[dim]ignored[/dim]"
        else:
            effective = f"[yellow]overridden → {resolved}[/yellow]"
        table.add_row(str(record.id), record.destination, record.domain, effective)
    console.print(table)

@click.command("route-add")
@click.argument("destination")
@click.argument("domain")
@click.pass_obj
def route_add(router: RouterContext, destination: str, domain: str) -> None:
    """Route mail forwarded from DOMAIN to the DESTINATION table."""
    destination = destination.strip()
    domain = domain.strip().lower()
    if not destination or not domain:
        raise click.BadParameter("destination and domain must not be blank")
    if domain in ClassificationIndex.build(router.db.route_rows()).domain_map:
        console.print(
            f"[yellow]{domain} is already routed; the row added last takes effect.[/yellow]"
        )
    router.db.add_route(destination, domain)
    console.print(f"[green]Routed[/green] {domain} → {destination}")

@click.command("route-remove")
@click.argument("destination")
@click.argument("domain")
@click.pass_obj
def route_remove(router: RouterContext, destination: str, domain: str) -> None:
    """Stop routing DOMAIN to DESTINATION.  Its mail is skipped from the next run on."""
    removed = router.db.remove_route(destination.strip(), domain)
    if not removed:
        console.print(f"[yellow]No route {domain} → {destination} found.[/yellow]")
        return
    console.print(f"[green]Removed[/green] {removed} row(s) for {domain} → {destination}")

# ── destinations ─────────────────────────────────────────────────────────────────

@click.command()
@click.pass_obj
def destinations(router: RouterContext) -> None:
    """List destination tables and their row counts."""
    summaries = router.db.list_destinations()
    if not summaries:
        console.print("[yellow]No destinations yet — they are created on first write.[/yellow]")
        return

    table = Table(box=box.ROUNDED, show_header=True, header_style="bold cyan")
    table.add_column("Destination")
    table.add_column("Rows", justify="right")
    table.add_column("Columns", justify="right")
    for s in summaries:
        table.add_row(s.name, str(s.row_count), str(len(s.headers)))
    console.print(table)

@click.command()
@click.argument("destination")
@click.option("--limit", default=20, show_default=True, help="Rows to display.")
@click.pass_obj
def show(router: RouterContext, destination: str, limit: int) -> None:
    """Print the newest rows of a destination table."""
    table_data = router.db.get_table(destination, limit=limit)
    if table_data is None:
        console.print(f"[red]Unknown destination {destination!r}.[/red]")
        raise SystemExit(1)
    if not table_data.rows:
        console.print(f"[yellow]{destination} has no rows yet.[/yellow]")
        return

    table = Table(box=box.ROUNDED, show_header=True, header_style="bold cyan", title=destination)
    for header in table_data.headers:
        table.add_column(header, max_width=40, overflow="fold")
    for cells in table_data.rows:
        padded = [*cells, *[""] * (len(table_data.headers) - len(cells))]
        table.add_row(*padded[: len(table_data.headers)])
    console.print(table)
