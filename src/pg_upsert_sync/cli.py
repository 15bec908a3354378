"""
pg-upsert-sync CLI - Command Line Interface.

Commands:
    replicate  Run replication cycles from leader to follower
    dump       Write a table's rows as INSERT statements
    status     Show the last watermark and recent sync records
"""

from __future__ import annotations

import sys
import threading
from pathlib import Path
from typing import Optional

import psycopg2
import psycopg2.errors
import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from pg_upsert_sync import __version__
from pg_upsert_sync.config import Settings, load_settings
from pg_upsert_sync.connectors.postgres import PostgresConnector
from pg_upsert_sync.core.dump import DumpOptions, StreamSink, iter_statements
from pg_upsert_sync.core.runner import GracefulKiller, ReplicationRunner
from pg_upsert_sync.core.state import (
    build_progress_store,
    format_rfc3339,
    parse_rfc3339,
)
from pg_upsert_sync.core.statements import wrap_transaction
from pg_upsert_sync.core.synchronizer import Synchronizer
from pg_upsert_sync.errors import PgSyncError, WatermarkNotFound
from pg_upsert_sync.utils.display import (
    print_cycle_summary,
    print_error,
    print_info,
    print_run_summary,
    print_success,
    print_sync_records,
    print_warning,
)
from pg_upsert_sync.utils.logger import setup_logging


# Create the Typer app
app = typer.Typer(
    name="pg-upsert-sync",
    help="Incremental PostgreSQL leader to follower replication with generated upserts.",
    add_completion=True,
    rich_markup_mode="rich",
)

console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold cyan]pg-upsert-sync[/bold cyan] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """pg-upsert-sync - Replicate changed rows between PostgreSQL databases."""
    pass


# =============================================================================
# REPLICATE Command
# =============================================================================
@app.command()
def replicate(
    config_file: Path = typer.Option(
        ...,
        "--config",
        "-c",
        help="Path to config file (JSON or TOML).",
        exists=True,
        dir_okay=False,
    ),
    start_at: Optional[str] = typer.Option(
        None,
        "--start-at",
        help="RFC3339 time to start from instead of the last watermark.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        help="Log every generated statement.",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        "-n",
        help="Run one cycle and roll back the follower transaction.",
    ),
    quiet: bool = typer.Option(
        False,
        "--quiet",
        "-q",
        help="Minimal output.",
    ),
) -> None:
    """
    Replicate changed rows from the leader into the follower.

    Example:
        pg-upsert-sync replicate --config config.json
    """
    settings = _load(config_file)
    if dry_run:
        settings.sync.dry_run = True

    errors = settings.validate_required()
    if errors:
        for err in errors:
            print_error(err)
        raise typer.Exit(1)

    start = None
    if start_at:
        try:
            start = parse_rfc3339(start_at)
        except ValueError as e:
            print_error(f"Invalid --start-at value {start_at!r}: {e}")
            raise typer.Exit(1)

    setup_logging(
        level="WARNING" if quiet else settings.logging.level,
        log_file=settings.logging.file,
        format_style=settings.logging.format,
        max_file_size_mb=settings.logging.max_file_size_mb,
        backup_count=settings.logging.backup_count,
    )

    if settings.sync.dry_run:
        print_warning("DRY RUN - follower changes will be rolled back")

    leader = PostgresConnector(settings.leader_dsn.get_secret_value(), name="leader")
    follower = PostgresConnector(settings.follower_dsn.get_secret_value(), name="follower")

    stop_event = threading.Event()
    GracefulKiller(stop_event)

    try:
        runner = ReplicationRunner(
            Synchronizer(leader, follower, settings.sync, verbose=verbose),
            build_progress_store(settings.progress, follower),
            settings.tables,
            settings.run,
            start_at=start,
            stop_event=stop_event,
            max_cycles=1 if settings.sync.dry_run else None,
            on_cycle=None if quiet else print_cycle_summary,
        )
        history = runner.run()
    except (PgSyncError, psycopg2.Error) as e:
        print_error(str(e))
        raise typer.Exit(1)
    finally:
        leader.close()
        follower.close()

    if not quiet:
        console.print()
        print_run_summary(history)
    print_success("Replication stopped")


# =============================================================================
# DUMP Command
# =============================================================================
@app.command("dump")
def dump_table(
    dsn: str = typer.Option(
        ...,
        "--dsn",
        envvar="PG_UPSERT_SYNC_DSN",
        help="Connection string of the database to read.",
    ),
    table: str = typer.Option(
        ...,
        "--table",
        "-t",
        help="Table or view to dump.",
    ),
    insert: Optional[str] = typer.Option(
        None,
        "--insert",
        help="Comma separated columns to include (default: all).",
    ),
    conflict_column: str = typer.Option(
        "",
        "--conflict-column",
        help="Add ON CONFLICT (column) DO UPDATE SET for the other columns.",
    ),
    noconflict: bool = typer.Option(
        False,
        "--noconflict",
        help="Add ON CONFLICT DO NOTHING.",
    ),
    query: str = typer.Option(
        "",
        "--query",
        help="SELECT statement, or a WHERE clause for the default one.",
    ),
    insert_table: str = typer.Option(
        "",
        "--insert-table",
        help="Table name to use in the INSERT statements.",
    ),
    skip_column_names: bool = typer.Option(
        False,
        "--skip-column-names",
        help="Omit the column list from INSERT statements.",
    ),
    tx: bool = typer.Option(
        False,
        "--tx",
        help="Wrap the statements in BEGIN/COMMIT.",
    ),
    output: Optional[Path] = typer.Option(
        None,
        "--output",
        "-o",
        help="Write to this file instead of stdout.",
        dir_okay=False,
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        help="Log the row query and row count.",
    ),
) -> None:
    """
    Write a table's rows as INSERT statements.

    Example:
        pg-upsert-sync dump --dsn postgres://localhost/app --table users --conflict-column id
    """
    options = DumpOptions(
        query=query,
        insert_columns=[c.strip() for c in insert.split(",") if c.strip()] if insert else [],
        conflict_column=conflict_column,
        no_conflict=noconflict,
        insert_table=insert_table,
        skip_column_names=skip_column_names,
        verbose=verbose,
    )
    try:
        options.validate()
    except PgSyncError as e:
        print_error(str(e))
        raise typer.Exit(1)

    setup_logging(level="INFO" if verbose else "WARNING")

    stream = output.open("w", encoding="utf-8") if output else sys.stdout
    sink = StreamSink(stream)
    try:
        with PostgresConnector(dsn, name="source") as connector:
            statements = iter_statements(connector, table, options)
            if tx:
                statements = wrap_transaction(statements)
            for statement in statements:
                sink.accept(statement)
    except (PgSyncError, psycopg2.Error) as e:
        print_error(str(e))
        raise typer.Exit(1)
    finally:
        if output:
            stream.close()

    if output:
        print_success(f"Wrote {table} to {output}")


# =============================================================================
# STATUS Command
# =============================================================================
@app.command()
def status(
    config_file: Path = typer.Option(
        ...,
        "--config",
        "-c",
        help="Path to config file (JSON or TOML).",
        exists=True,
        dir_okay=False,
    ),
    limit: int = typer.Option(
        10,
        "--limit",
        "-l",
        min=1,
        help="Number of sync records to show.",
    ),
) -> None:
    """Show the last watermark and recent sync records."""
    settings = _load(config_file)

    if settings.progress.backend == "database" and not settings.follower_dsn.get_secret_value():
        print_error("follower_dsn is required")
        raise typer.Exit(1)
    if settings.progress.backend == "file" and settings.progress.timestamp_file_path is None:
        print_error("progress.timestamp_file_path is required for the file backend")
        raise typer.Exit(1)

    follower = PostgresConnector(settings.follower_dsn.get_secret_value(), name="follower")
    try:
        store = build_progress_store(settings.progress, follower)
        try:
            watermark = format_rfc3339(store.last_watermark())
        except WatermarkNotFound:
            watermark = "[dim]none[/dim]"
        records = store.history(limit)
    except psycopg2.errors.UndefinedTable:
        print_info("No sync records table yet. Run replicate first.")
        raise typer.Exit(0)
    except (PgSyncError, psycopg2.Error) as e:
        print_error(str(e))
        raise typer.Exit(1)
    finally:
        follower.close()

    table = Table(title="Sync Status", border_style="blue")
    table.add_column("Property", style="cyan")
    table.add_column("Value")

    table.add_row("Progress Backend", settings.progress.backend)
    if settings.progress.backend == "file":
        table.add_row("Timestamp File", str(settings.progress.timestamp_file_path))
    else:
        table.add_row("Records Table", settings.progress.records_table)
    table.add_row("Watermark", watermark)
    table.add_row("Tables", ", ".join(_format_table(t.name, t.replication_mode.value) for t in settings.tables) or "-")

    console.print(table)

    if records:
        console.print()
        print_sync_records(records)


def _format_table(name: str, mode: str) -> str:
    """Format a table name with its replication mode."""
    colors = {
        "upsert": "green",
        "insert": "yellow",
        "insert-serial": "cyan",
    }
    return f"{name} [{colors.get(mode, 'white')}]({mode})[/]"


# =============================================================================
# Helper Functions
# =============================================================================
def _load(config_file: Path) -> Settings:
    """Load settings, reporting config errors before anything connects."""
    try:
        return load_settings(config_file)
    except ValidationError as e:
        print_error(f"Invalid config file {config_file}:\n{e}")
        raise typer.Exit(1)
    except (ValueError, FileNotFoundError) as e:
        print_error(str(e))
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
