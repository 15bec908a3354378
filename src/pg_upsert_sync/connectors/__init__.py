"""Database connectors for pg-upsert-sync."""

from pg_upsert_sync.connectors.postgres import PostgresConnector, Transaction

__all__ = ["PostgresConnector", "Transaction"]
