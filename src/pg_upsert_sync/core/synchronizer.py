"""
Synchronizer - One replication cycle across all configured tables.

Coordinates:
- A read-only serializable (or repeatable read) transaction on the leader
- A repeatable read transaction on the follower
- Per-table row selection for the upsert, insert and insert-serial modes
- Partition-by-age lower bounds for large append-heavy tables
- Commit ordering: leader first, then follower
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Sequence

import psycopg2

from pg_upsert_sync.config import ReplicationMode, SyncSettings, TableSyncConfig
from pg_upsert_sync.connectors.postgres import (
    IsolationLevel,
    PostgresConnector,
    Querier,
    Transaction,
)
from pg_upsert_sync.core.columns import format_timestamp, quote_identifier, quote_literal
from pg_upsert_sync.core.dump import DumpOptions, ExecuteSink, dump
from pg_upsert_sync.errors import ConfigurationError, ReplicationError


logger = logging.getLogger(__name__)


@dataclass
class TableStats:
    """Result of syncing one table."""

    name: str
    mode: str
    min_id: int = 0
    rows: int = 0
    duration_seconds: float = 0.0


@dataclass
class CycleStats:
    """Statistics for one replication cycle."""

    last_sync: datetime
    tables: list[TableStats] = field(default_factory=list)
    start_time: float = 0.0
    end_time: float = 0.0
    dry_run: bool = False

    @property
    def rows_updated(self) -> int:
        """Rows applied across all tables; zero means the follower caught up."""
        return sum(t.rows for t in self.tables)

    @property
    def duration_seconds(self) -> float:
        if self.end_time and self.start_time:
            return self.end_time - self.start_time
        if self.start_time:
            return time.time() - self.start_time
        return 0.0


def timestamp_literal(value: datetime) -> str:
    """Render a watermark as a timestamptz literal in UTC."""
    return "TIMESTAMPTZ " + quote_literal(format_timestamp(value.astimezone(timezone.utc)))


ModeHandler = Callable[[Transaction, Transaction, datetime, TableSyncConfig], tuple[int, DumpOptions]]


class Synchronizer:
    """
    Replicates changed rows from leader to follower.

    Example:
        synchronizer = Synchronizer(leader, follower, settings.sync)
        stats = synchronizer.sync_all(last_sync, settings.tables)
        print(stats.rows_updated)
    """

    def __init__(
        self,
        leader: PostgresConnector,
        follower: PostgresConnector,
        settings: SyncSettings | None = None,
        verbose: bool = False,
    ) -> None:
        self.leader = leader
        self.follower = follower
        self.settings = settings or SyncSettings()
        self.verbose = verbose
        self._modes: dict[str, ModeHandler] = {
            ReplicationMode.UPSERT: self._upsert_options,
            ReplicationMode.INSERT: self._insert_options,
            ReplicationMode.INSERT_SERIAL: self._insert_serial_options,
        }

    @property
    def margin(self) -> timedelta:
        return timedelta(seconds=self.settings.clock_synchronization_margin_seconds)

    def sync_all(
        self,
        last_sync: datetime,
        tables: Sequence[TableSyncConfig],
    ) -> CycleStats:
        """
        Run one cycle over every table, in order.

        Args:
            last_sync: Watermark of the previous completed cycle
            tables: Tables to replicate

        Returns:
            CycleStats for the cycle

        Raises:
            ReplicationError: a table failed or a commit failed; nothing
                from this cycle is kept on the follower
        """
        stats = CycleStats(
            last_sync=last_sync,
            start_time=time.time(),
            dry_run=self.settings.dry_run,
        )

        leader_tx = self.leader.begin(
            IsolationLevel(self.settings.leader_isolation), readonly=True
        )
        try:
            follower_tx = self.follower.begin(IsolationLevel.REPEATABLE_READ)
        except BaseException:
            _rollback_quietly(leader_tx)
            raise

        try:
            for table in tables:
                stats.tables.append(
                    self.sync_table(leader_tx, follower_tx, last_sync, table)
                )
        except BaseException:
            _rollback_quietly(leader_tx)
            _rollback_quietly(follower_tx)
            raise

        self._commit(leader_tx, follower_tx)
        stats.end_time = time.time()
        return stats

    def sync_table(
        self,
        leader_tx: Transaction,
        follower_tx: Transaction,
        last_sync: datetime,
        table: TableSyncConfig,
    ) -> TableStats:
        """Replicate one table inside the cycle's transactions."""
        handler = self._modes.get(table.replication_mode)
        if handler is None:
            raise ConfigurationError(
                f"Unknown replication mode {table.replication_mode} requested for table {table.name}"
            )

        logger.info("Syncing table %s ...", table.name, extra={"table": table.name})
        t0 = time.perf_counter()
        try:
            min_id, options = handler(leader_tx, follower_tx, last_sync, table)
            sink = ExecuteSink(follower_tx, verbose=self.verbose)
            rows = dump(sink, leader_tx, table.name, options)
        except psycopg2.Error as e:
            raise ReplicationError(
                f"Failed to dump table {table.name}: {e}", table=table.name
            ) from e

        elapsed = time.perf_counter() - t0
        logger.info(
            "%s done in %.3fs, updated %d rows.",
            table.name,
            elapsed,
            rows,
            extra={"table": table.name},
        )
        return TableStats(
            name=table.name,
            mode=ReplicationMode(table.replication_mode).value,
            min_id=min_id,
            rows=rows,
            duration_seconds=elapsed,
        )

    def changed_rows_predicate(
        self, table: TableSyncConfig, min_id: int, last_sync: datetime
    ) -> str:
        """WHERE clause selecting rows updated since the watermark, minus the margin."""
        since = last_sync - self.margin
        return (
            f"WHERE {quote_identifier(table.id_column)} >= {min_id} "
            f"AND {quote_identifier(table.updated_at_column)} >= {timestamp_literal(since)}"
        )

    def partition_by_age(
        self, querier: Querier, last_sync: datetime, table: TableSyncConfig
    ) -> int:
        """
        Lowest id that may still change.

        Rows created more than max_record_age_seconds before the watermark
        are treated as immutable. Returns one past the newest such id, or
        0 when there is none or the table has no age limit.
        """
        if table.max_record_age_seconds == 0:
            return 0

        cutoff = last_sync - timedelta(seconds=table.max_record_age_seconds)
        id_col = quote_identifier(table.id_column)
        row = querier.query_one(
            f"SELECT {id_col} FROM {table.name} "
            f"WHERE {quote_identifier(table.created_at_column)} < {timestamp_literal(cutoff)} "
            f"ORDER BY 1 DESC LIMIT 1"
        )
        if row is None:
            return 0
        return row[0] + 1

    def next_serial_id(self, querier: Querier, table: TableSyncConfig) -> int:
        """One past the highest id already on the follower, or 0 when empty."""
        row = querier.query_one(
            f"SELECT {quote_identifier(table.id_column)} FROM {table.name} ORDER BY 1 DESC LIMIT 1"
        )
        if row is None:
            return 0
        return row[0] + 1

    def _upsert_options(
        self,
        leader_tx: Transaction,
        follower_tx: Transaction,
        last_sync: datetime,
        table: TableSyncConfig,
    ) -> tuple[int, DumpOptions]:
        min_id = self.partition_by_age(leader_tx, last_sync, table)
        return min_id, DumpOptions(
            conflict_column=table.id_column,
            query=self.changed_rows_predicate(table, min_id, last_sync),
            verbose=self.verbose,
        )

    def _insert_options(
        self,
        leader_tx: Transaction,
        follower_tx: Transaction,
        last_sync: datetime,
        table: TableSyncConfig,
    ) -> tuple[int, DumpOptions]:
        min_id = self.partition_by_age(leader_tx, last_sync, table)
        return min_id, DumpOptions(
            no_conflict=True,
            query=self.changed_rows_predicate(table, min_id, last_sync),
            verbose=self.verbose,
        )

    def _insert_serial_options(
        self,
        leader_tx: Transaction,
        follower_tx: Transaction,
        last_sync: datetime,
        table: TableSyncConfig,
    ) -> tuple[int, DumpOptions]:
        try:
            min_id = self.next_serial_id(follower_tx, table)
        except psycopg2.Error as e:
            raise ReplicationError(
                f"Failed to get last ID from follower on table {table.name}: {e}",
                table=table.name,
            ) from e
        return min_id, DumpOptions(
            query=f"WHERE {quote_identifier(table.id_column)} >= {min_id}",
            verbose=self.verbose,
        )

    def _commit(self, leader_tx: Transaction, follower_tx: Transaction) -> None:
        # The leader commit is what fixes the serialized snapshot the dump read
        try:
            leader_tx.commit()
        except psycopg2.Error as e:
            _rollback_quietly(follower_tx)
            raise ReplicationError(f"Failed to commit leader transaction: {e}") from e

        if self.settings.dry_run:
            follower_tx.rollback()
            logger.info("Dry run: rolled back follower transaction")
            return

        try:
            follower_tx.commit()
        except psycopg2.Error as e:
            raise ReplicationError(f"Failed to commit follower transaction: {e}") from e


def _rollback_quietly(tx: Transaction) -> None:
    """Roll back while another error is propagating; log a failed rollback."""
    try:
        tx.rollback()
    except psycopg2.Error as e:
        logger.warning("Rollback on %s failed: %s", tx.connector.name, e)
