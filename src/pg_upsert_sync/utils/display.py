"""
Rich Terminal Display Components.

Provides console output for:
- Per-cycle summary tables
- Sync record history
- Status messages
"""

from __future__ import annotations

from typing import Sequence

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from pg_upsert_sync.core.state import SyncRecord, format_rfc3339
from pg_upsert_sync.core.synchronizer import CycleStats


console = Console(stderr=True)


def print_cycle_summary(stats: CycleStats) -> None:
    """Print a per-table summary after a cycle."""
    title = "Sync Summary (dry run)" if stats.dry_run else "Sync Summary"
    table = Table(title=title, border_style="green")

    table.add_column("Table", style="cyan")
    table.add_column("Mode")
    table.add_column("Min ID", justify="right")
    table.add_column("Rows", justify="right")
    table.add_column("Duration", justify="right")

    for t in stats.tables:
        table.add_row(
            t.name,
            t.mode,
            f"{t.min_id:,}",
            f"{t.rows:,}",
            f"{t.duration_seconds:.3f}s",
        )

    table.add_section()
    table.add_row(
        "Total",
        "",
        "",
        f"{stats.rows_updated:,}",
        f"{stats.duration_seconds:.3f}s",
    )

    console.print(table)


def print_run_summary(history: Sequence[CycleStats]) -> None:
    """Print totals for a whole replication run."""
    table = Table(title="Run Summary", border_style="green")

    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")

    table.add_row("Cycles", f"{len(history):,}")
    table.add_row("Rows Updated", f"{sum(s.rows_updated for s in history):,}")
    table.add_row("Duration", f"{sum(s.duration_seconds for s in history):.1f}s")

    console.print(table)


def print_sync_records(records: Sequence[SyncRecord]) -> None:
    """Print recent sync records, newest first."""
    table = Table(title="Sync Records", border_style="blue")

    table.add_column("ID", justify="right", style="dim")
    table.add_column("Started")
    table.add_column("Finished")
    table.add_column("Duration", justify="right")

    for record in records:
        if record.finished_at is None:
            finished = "[yellow]unfinished[/yellow]"
            duration = "-"
        else:
            finished = format_rfc3339(record.finished_at)
            duration = f"{record.duration.total_seconds():.1f}s"
        table.add_row(
            "-" if record.id is None else str(record.id),
            format_rfc3339(record.started_at),
            finished,
            duration,
        )

    console.print(table)


def print_error(message: str) -> None:
    """Print an error message."""
    console.print(f"[red bold]Error:[/red bold] {escape(message)}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green bold]✓[/green bold] {message}")


def print_warning(message: str) -> None:
    """Print a warning message."""
    console.print(f"[yellow bold]⚠[/yellow bold] {message}")


def print_info(message: str) -> None:
    """Print an info message."""
    console.print(f"[blue]ℹ[/blue] {message}")
