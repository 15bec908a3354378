"""
Exception hierarchy for pg-upsert-sync.

Every error raised by the package derives from PgSyncError so the CLI can
report it in one place. Driver errors (psycopg2.Error) are wrapped by the
synchronizer with the table they belong to.
"""

from __future__ import annotations


class PgSyncError(Exception):
    """Base exception for pg-upsert-sync errors."""


class ConfigurationError(PgSyncError):
    """Raised for invalid configuration detected before or during a run."""


class UnsupportedColumnKind(PgSyncError):
    """Raised when a column's type/nullable/array combination has no codec."""

    def __init__(
        self,
        column: str,
        declared_type: str,
        nullable: bool = False,
        is_array: bool = False,
    ) -> None:
        qualifiers = []
        if nullable:
            qualifiers.append("nullable")
        if is_array:
            qualifiers.append("array")
        kind = " ".join(qualifiers + [declared_type])
        super().__init__(f"Don't know how to bind column {column} of type {kind}")
        self.column = column
        self.declared_type = declared_type
        self.nullable = nullable
        self.is_array = is_array


class UnknownColumn(PgSyncError):
    """Raised when a requested insert/conflict column is not in the schema."""

    def __init__(self, column: str, table: str) -> None:
        super().__init__(f"Unknown column {column} in table {table}")
        self.column = column
        self.table = table


class UnknownTable(PgSyncError):
    """Raised when the catalog reports no columns for a table."""

    def __init__(self, table: str) -> None:
        super().__init__(f"Table not found or has no columns: {table}")
        self.table = table


class MutuallyExclusiveOptions(PgSyncError):
    """Raised when conflict_column and no_conflict are both requested."""


class ColumnBindingError(PgSyncError):
    """Raised when a column is bound twice or rendered while unbound."""


class ColumnScanError(PgSyncError):
    """Raised when a fetched value does not fit its column's codec."""


class ReplicationError(PgSyncError):
    """Raised when a replication cycle fails; the cycle is rolled back."""

    def __init__(self, message: str, table: str | None = None) -> None:
        super().__init__(message)
        self.table = table


class ProgressStoreError(PgSyncError):
    """Raised when sync progress cannot be read or written."""


class WatermarkNotFound(ProgressStoreError):
    """Raised when no completed sync cycle has been recorded yet."""


class SyncRecordError(ProgressStoreError):
    """Raised when a sync record is used out of its lifecycle order."""
