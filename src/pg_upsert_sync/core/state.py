"""
Sync Progress Store - Watermark persistence between cycles.

Provides two interchangeable backends for the same contract:
- FileProgressStore: one RFC3339 timestamp in a file
- DatabaseProgressStore: a bookkeeping table of sync records in the follower

Either one supplies the starting watermark when the process restarts.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Protocol

from pg_upsert_sync.config import ProgressSettings
from pg_upsert_sync.connectors.postgres import Querier
from pg_upsert_sync.errors import (
    ProgressStoreError,
    SyncRecordError,
    WatermarkNotFound,
)


logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

DEFAULT_RECORDS_TABLE = "unprivileged_replication_sync_records"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_rfc3339(text: str) -> datetime:
    """Parse an RFC3339 timestamp; a missing offset is taken as UTC."""
    value = datetime.fromisoformat(text.strip())
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_rfc3339(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _to_db(value: datetime | None) -> datetime | None:
    # the bookkeeping table uses timestamp without time zone, stored as UTC
    if value is None:
        return None
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _from_db(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class SyncRecord:
    """
    Lifecycle of one replication cycle.

    Created with finished_at unset when a cycle starts, finished and saved
    when it ends. create() may only run once, save() only after create(),
    and finish() only once.
    """

    started_at: datetime
    finished_at: datetime | None = None
    id: int | None = None

    @property
    def finished(self) -> bool:
        return self.finished_at is not None

    @property
    def duration(self) -> timedelta:
        if self.finished_at is None:
            return timedelta(0)
        return self.finished_at - self.started_at

    def finish(self, at: datetime | None = None) -> None:
        if self.finished_at is not None:
            raise SyncRecordError("finish called on already finished sync record")
        self.finished_at = at or utcnow()

    def create(self, querier: Querier, table: str = DEFAULT_RECORDS_TABLE) -> None:
        """Insert the record and remember its id."""
        if self.id is not None:
            raise SyncRecordError("create called on already-created sync record")
        row = querier.query_one(
            f"INSERT INTO {table} (started_at, finished_at) VALUES (%s, %s) RETURNING id",
            (_to_db(self.started_at), _to_db(self.finished_at)),
        )
        if row is None:
            raise SyncRecordError("INSERT of sync record returned no id")
        self.id = row[0]

    def save(self, querier: Querier, table: str = DEFAULT_RECORDS_TABLE) -> None:
        """Write started_at/finished_at back to the record's row."""
        if self.id is None:
            raise SyncRecordError("save called on uncreated sync record")
        affected = querier.execute(
            f"UPDATE {table} SET started_at = %s, finished_at = %s WHERE id = %s",
            (_to_db(self.started_at), _to_db(self.finished_at), self.id),
        )
        if affected == 0:
            raise SyncRecordError(f"Couldn't find sync record with id {self.id}")


class ProgressStore(Protocol):
    """Persists the watermark of the last completed cycle."""

    def prepare(self) -> None:
        ...

    def last_watermark(self) -> datetime:
        """Start time of the last completed cycle. Raises WatermarkNotFound."""
        ...

    def start_cycle(self, started_at: datetime) -> SyncRecord:
        ...

    def finish_cycle(self, record: SyncRecord) -> None:
        ...

    def history(self, limit: int = 10) -> list[SyncRecord]:
        ...


class FileProgressStore:
    """
    Watermark kept as a single RFC3339 line in a file.

    The file is replaced atomically after every completed cycle, so a crash
    leaves either the old or the new timestamp, never a torn write.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def prepare(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def last_watermark(self) -> datetime:
        if not self.path.exists():
            raise WatermarkNotFound(f"Timestamp file not found: {self.path}")
        text = self.path.read_text().strip()
        if not text:
            raise WatermarkNotFound(f"Timestamp file is empty: {self.path}")
        try:
            return parse_rfc3339(text)
        except ValueError as e:
            raise ProgressStoreError(
                f"Couldn't parse timestamp file {self.path}: {e}"
            ) from e

    def start_cycle(self, started_at: datetime) -> SyncRecord:
        return SyncRecord(started_at=started_at)

    def finish_cycle(self, record: SyncRecord) -> None:
        record.finish()
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(format_rfc3339(record.started_at) + "\n")
        os.replace(tmp, self.path)

    def history(self, limit: int = 10) -> list[SyncRecord]:
        try:
            return [SyncRecord(started_at=self.last_watermark())][:limit]
        except WatermarkNotFound:
            return []


class DatabaseProgressStore:
    """
    Sync records kept in a bookkeeping table in the follower database.

    The watermark is started_at of the newest record with finished_at set.

    Example:
        store = DatabaseProgressStore(follower)
        store.prepare()
        record = store.start_cycle(utcnow())
        ...
        store.finish_cycle(record)
    """

    def __init__(self, querier: Querier, table: str = DEFAULT_RECORDS_TABLE) -> None:
        self.querier = querier
        self.table = table

    def prepare(self) -> None:
        """Create the bookkeeping table if it does not exist yet."""
        self.querier.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {self.table} (
                id bigserial PRIMARY KEY,
                started_at timestamp without time zone NOT NULL,
                finished_at timestamp without time zone
            )
            """
        )

    def last_finished(self) -> SyncRecord:
        row = self.querier.query_one(
            f"""
            SELECT id, started_at, finished_at
            FROM {self.table}
            WHERE finished_at IS NOT NULL
            ORDER BY started_at DESC
            LIMIT 1
            """
        )
        if row is None:
            raise WatermarkNotFound("No completed sync record found")
        return SyncRecord(id=row[0], started_at=_from_db(row[1]), finished_at=_from_db(row[2]))

    def last_watermark(self) -> datetime:
        record = self.last_finished()
        logger.debug("Last completed sync record is %d", record.id)
        return record.started_at

    def start_cycle(self, started_at: datetime) -> SyncRecord:
        record = SyncRecord(started_at=started_at)
        record.create(self.querier, self.table)
        return record

    def finish_cycle(self, record: SyncRecord) -> None:
        record.finish()
        record.save(self.querier, self.table)

    def history(self, limit: int = 10) -> list[SyncRecord]:
        rows = self.querier.query(
            f"""
            SELECT id, started_at, finished_at
            FROM {self.table}
            ORDER BY started_at DESC
            LIMIT %s
            """,
            (limit,),
        )
        return [
            SyncRecord(id=r[0], started_at=_from_db(r[1]), finished_at=_from_db(r[2]))
            for r in rows
        ]


def build_progress_store(settings: ProgressSettings, follower: Querier) -> ProgressStore:
    """Pick the progress backend named in the settings."""
    if settings.backend == "file":
        if settings.timestamp_file_path is None:
            raise ProgressStoreError("The file backend needs a timestamp_file_path")
        return FileProgressStore(settings.timestamp_file_path)
    return DatabaseProgressStore(follower, settings.records_table)


def resolve_watermark(store: ProgressStore, start_at: datetime | None = None) -> datetime:
    """
    Decide where the first cycle starts.

    An explicit start time wins, then the store's last watermark, then the
    Unix epoch (a full initial sync).
    """
    if start_at is not None:
        logger.info("Manual start time provided, starting at %s", format_rfc3339(start_at))
        return start_at
    try:
        watermark = store.last_watermark()
    except WatermarkNotFound:
        logger.info("Found no completed sync, starting at %s", format_rfc3339(EPOCH))
        return EPOCH
    logger.info("Found last completed sync, starting at %s", format_rfc3339(watermark))
    return watermark
