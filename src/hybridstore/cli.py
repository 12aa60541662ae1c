"""Operational command-line interface for HybridStore."""

from __future__ import annotations

import asyncio
import json
import sys
from datetime import timedelta
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, TypeVar

import click
import structlog
from rich.console import Console
from rich.table import Table

from hybridstore import __version__
from hybridstore.config import Config, load_config
from hybridstore.exceptions import HybridStoreError
from hybridstore.facade import HybridStorage
from hybridstore.observability import configure_logging, export_prometheus
from hybridstore.protocols import Collection, MigrationReport

console = Console()
logger = structlog.get_logger(__name__)

T = TypeVar("T")

COLLECTION_CHOICE = click.Choice([c.value for c in Collection])


def _load(ctx: click.Context) -> Config:
    config = load_config(ctx.obj["config_path"])
    if ctx.obj["log_level"]:
        config.monitoring.log_level = ctx.obj["log_level"]
    configure_logging(config.monitoring)
    return config


def _run(ctx: click.Context, action: Callable[[HybridStorage], Awaitable[T]]) -> T:
    """Open the storage tier, run ``action`` against it and close it again."""

    async def runner() -> T:
        async with HybridStorage.from_config(_load(ctx)) as storage:
            return await action(storage)

    try:
        return asyncio.run(runner())
    except HybridStoreError as e:
        console.print(f"[red]❌ {type(e).__name__}: {e}[/red]")
        sys.exit(1)


def _print_reports(reports: List[MigrationReport]) -> None:
    if not reports:
        console.print("[yellow]Nothing to migrate.[/yellow]")
        return

    table = Table(title="Migration Batches")
    table.add_column("Batch", style="cyan")
    table.add_column("Collection")
    table.add_column("Status", style="magenta")
    table.add_column("Selected", justify="right")
    table.add_column("Archived", justify="right")
    table.add_column("Removed", justify="right")
    table.add_column("Failed", justify="right")
    for report in reports:
        status = f"[green]{report.status.value}[/green]" if report.succeeded else f"[red]{report.status.value}[/red]"
        table.add_row(
            report.batch_id[:12],
            report.collection.value,
            status,
            str(report.selected),
            str(report.archived),
            str(report.removed),
            str(len(report.failed_ids)),
        )
    console.print(table)
    if not all(r.succeeded for r in reports):
        sys.exit(1)


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "-c", type=click.Path(exists=True), help="Configuration file path")
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    help="Override the configured logging level",
)
@click.pass_context
def cli(ctx: click.Context, config: Optional[str], log_level: Optional[str]) -> None:
    """HybridStore - primary/archive storage tier operations."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = Path(config) if config else None
    ctx.obj["log_level"] = log_level


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON instead of a table")
@click.pass_context
def stats(ctx: click.Context, as_json: bool) -> None:
    """Show tier counts and capacity state per collection."""
    result = _run(ctx, lambda storage: storage.stats())

    if as_json:
        click.echo(json.dumps(result, indent=2))
        return

    table = Table(title="Storage Tiers")
    table.add_column("Collection", style="cyan")
    table.add_column("Primary", justify="right")
    table.add_column("Archive", justify="right")
    table.add_column("Threshold", justify="right")
    table.add_column("Fill", justify="right", style="magenta")
    table.add_column("Migrating")
    for name, row in result["collections"].items():
        archive = "[red]unavailable[/red]" if row["archive"] is None else str(row["archive"])
        table.add_row(
            name,
            str(row["primary"]),
            archive,
            f"{row['threshold']}/{row['max_capacity']}",
            f"{row['fill_ratio']:.0%}",
            "yes" if row["migrating"] else "no",
        )
    console.print(table)
    breaker = result["archive_breaker"]
    console.print(f"Archive circuit: [bold]{breaker['state']}[/bold], journaled batches: {result['journaled_batches']}")


@cli.command()
@click.pass_context
def metrics(ctx: click.Context) -> None:
    """Print current metrics in the Prometheus text format."""
    # Collecting stats refreshes the live-record gauges
    _run(ctx, lambda storage: storage.stats())
    click.echo(export_prometheus())


@cli.command("archive-now")
@click.argument("collection", type=COLLECTION_CHOICE)
@click.option("--limit", type=click.IntRange(min=1), default=None, help="Migrate at most this many records")
@click.pass_context
def archive_now(ctx: click.Context, collection: str, limit: Optional[int]) -> None:
    """Migrate the oldest eligible records of COLLECTION to the archive now."""
    console.print(f"[blue]📦 Archiving {collection}...[/blue]")
    _print_reports(_run(ctx, lambda storage: storage.archive_now(Collection(collection), limit=limit)))


@cli.command("archive-older-than")
@click.argument("collection", type=COLLECTION_CHOICE)
@click.option("--hours", type=click.FloatRange(min=0), default=24.0, show_default=True, help="Minimum record age")
@click.pass_context
def archive_older_than(ctx: click.Context, collection: str, hours: float) -> None:
    """Migrate every eligible record of COLLECTION older than --hours."""
    console.print(f"[blue]📦 Archiving {collection} records older than {hours:g}h...[/blue]")
    age = timedelta(hours=hours)
    _print_reports(_run(ctx, lambda storage: storage.archive_older_than(Collection(collection), age)))


@cli.command()
@click.pass_context
def resume(ctx: click.Context) -> None:
    """Complete migration batches interrupted by a crash."""

    async def action(storage: HybridStorage) -> List[MigrationReport]:
        # Opening the storage resumes journaled batches; retry any still left
        return storage.resumed + await storage.resume_migrations()

    reports = _run(ctx, action)
    if not reports:
        console.print("[green]✅ No interrupted migrations.[/green]")
        return
    _print_reports(reports)


@cli.command()
@click.argument("path", type=click.Path(dir_okay=False, writable=True))
@click.pass_context
def backup(ctx: click.Context, path: str) -> None:
    """Write a JSON snapshot of both tiers to PATH."""
    counts = _run(ctx, lambda storage: storage.backup(Path(path)))
    total = sum(counts.values())
    console.print(f"[green]✅ Backup written to {path} ({total} records)[/green]")


@cli.command()
@click.argument("collection", type=COLLECTION_CHOICE)
@click.pass_context
def compact(ctx: click.Context, collection: str) -> None:
    """Rewrite the archive segments of COLLECTION into one."""
    removed = _run(ctx, lambda storage: storage.compact(Collection(collection)))
    console.print(f"[green]✅ Compacted {collection}: {removed} segments merged[/green]")


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
