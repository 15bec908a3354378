"""
Replication Runner - The replicate/sleep loop.

Each cycle records its start time, replicates everything changed since the
previous cycle's start, and persists that start time as the next watermark
once the cycle completed.
"""

from __future__ import annotations

import logging
import signal
import threading
from datetime import datetime
from typing import Callable, Sequence

from pg_upsert_sync.config import RunSettings, TableSyncConfig
from pg_upsert_sync.core.state import ProgressStore, format_rfc3339, resolve_watermark, utcnow
from pg_upsert_sync.core.synchronizer import CycleStats, Synchronizer


logger = logging.getLogger(__name__)


class GracefulKiller:
    """Turns SIGINT/SIGTERM into a stop request instead of an interrupt."""

    def __init__(self, stop_event: threading.Event) -> None:
        self.stop_event = stop_event
        signal.signal(signal.SIGINT, self.exit_gracefully)
        signal.signal(signal.SIGTERM, self.exit_gracefully)

    def exit_gracefully(self, signum, frame) -> None:
        logger.info("Received signal %d, stopping after the current cycle", signum)
        self.stop_event.set()


class ReplicationRunner:
    """
    Runs replication cycles until caught up, stopped or out of cycles.

    Example:
        runner = ReplicationRunner(synchronizer, store, settings.tables, settings.run)
        for stats in runner.run():
            print(stats.rows_updated)
    """

    def __init__(
        self,
        synchronizer: Synchronizer,
        store: ProgressStore,
        tables: Sequence[TableSyncConfig],
        run_settings: RunSettings | None = None,
        start_at: datetime | None = None,
        stop_event: threading.Event | None = None,
        max_cycles: int | None = None,
        on_cycle: Callable[[CycleStats], None] | None = None,
    ) -> None:
        self.synchronizer = synchronizer
        self.store = store
        self.tables = list(tables)
        self.run_settings = run_settings or RunSettings()
        self.start_at = start_at
        self.stop_event = stop_event or threading.Event()
        self.max_cycles = max_cycles
        self.on_cycle = on_cycle
        self.watermark: datetime | None = None

    def stop(self) -> None:
        self.stop_event.set()

    def run_cycle(self, last_sync: datetime) -> CycleStats:
        """
        Run one cycle and persist its start time.

        The record is only finished when the synchronizer committed, so a
        failed cycle leaves the previous watermark in place.
        """
        dry_run = self.synchronizer.settings.dry_run
        record = None if dry_run else self.store.start_cycle(utcnow())
        logger.info(
            "Starting sync of rows updated since %s", format_rfc3339(last_sync)
        )
        stats = self.synchronizer.sync_all(last_sync, self.tables)
        if record is None:
            logger.info("Dry run: watermark not advanced")
        else:
            self.store.finish_cycle(record)
            self.watermark = record.started_at
        logger.info(
            "Sync done in %.3fs, updated %d rows",
            stats.duration_seconds,
            stats.rows_updated,
        )
        return stats

    def run(self) -> list[CycleStats]:
        """
        Loop until stopped.

        Exits after the first idle cycle when exit_on_completion is set,
        after max_cycles cycles, or once the stop event is set.

        Returns:
            Stats of every completed cycle
        """
        self.store.prepare()
        self.watermark = resolve_watermark(self.store, self.start_at)

        history: list[CycleStats] = []
        while not self.stop_event.is_set():
            stats = self.run_cycle(self.watermark)
            history.append(stats)
            if self.on_cycle:
                self.on_cycle(stats)

            if stats.rows_updated == 0 and self.run_settings.exit_on_completion:
                logger.info("Follower caught up, exiting")
                break
            if self.max_cycles is not None and len(history) >= self.max_cycles:
                break

            interval = self.run_settings.iteration_sleep_interval
            if interval > 0:
                logger.debug("Sleeping for %.3fs", interval)
            self.stop_event.wait(interval)

        return history
