"""pg-upsert-sync - Incremental PostgreSQL leader to follower replication."""

__version__ = "1.0.0"
__author__ = "pg-upsert-sync Contributors"

from pg_upsert_sync.config import Settings, TableSyncConfig

__all__ = ["Settings", "TableSyncConfig", "__version__"]
