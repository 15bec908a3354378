"""Core replication components for pg-upsert-sync."""

from pg_upsert_sync.core.dump import DumpOptions, iter_statements
from pg_upsert_sync.core.runner import ReplicationRunner
from pg_upsert_sync.core.state import DatabaseProgressStore, FileProgressStore
from pg_upsert_sync.core.synchronizer import CycleStats, Synchronizer

__all__ = [
    "DumpOptions",
    "iter_statements",
    "ReplicationRunner",
    "DatabaseProgressStore",
    "FileProgressStore",
    "CycleStats",
    "Synchronizer",
]
