"""
PostgreSQL Database Connector.

Thin psycopg2 wrapper shared by the leader and follower sides:
- Lazy connection in autocommit mode for bookkeeping statements
- Explicit transactions with a chosen isolation level
- Server-side cursors inside transactions so large tables stream
- json/jsonb left as text so values render back verbatim
"""

from __future__ import annotations

import itertools
import logging
from enum import Enum
from typing import Any, Iterator, Protocol, Sequence

import psycopg2
import psycopg2.extensions
import psycopg2.extras


logger = logging.getLogger(__name__)

_cursor_ids = itertools.count(1)


class IsolationLevel(str, Enum):
    """Transaction isolation levels understood by psycopg2.set_session()."""

    SERIALIZABLE = "serializable"
    REPEATABLE_READ = "repeatable read"


class Querier(Protocol):
    """Anything statements can be run against: a connector or a transaction."""

    def execute(self, sql: str, params: Sequence[Any] | None = None) -> int:
        ...

    def query(
        self, sql: str, params: Sequence[Any] | None = None
    ) -> Iterator[tuple[Any, ...]]:
        ...

    def query_one(
        self, sql: str, params: Sequence[Any] | None = None
    ) -> tuple[Any, ...] | None:
        ...


def _keep_json_as_text(conn: psycopg2.extensions.connection) -> None:
    """Stop psycopg2 from decoding json/jsonb (and their arrays) into objects."""
    psycopg2.extras.register_default_json(conn, loads=lambda s: s)
    psycopg2.extras.register_default_jsonb(conn, loads=lambda s: s)


class PostgresConnector:
    """
    Connector for a PostgreSQL database.

    Outside a transaction every statement autocommits. `begin()` switches
    the connection into an explicit transaction until it is committed or
    rolled back.

    Example:
        with PostgresConnector(dsn, name="leader") as leader:
            with leader.begin(IsolationLevel.SERIALIZABLE, readonly=True) as tx:
                for row in tx.query("SELECT id FROM users"):
                    ...
    """

    QUERY_BATCH_SIZE = 2000

    def __init__(self, dsn: str, name: str = "postgres") -> None:
        """
        Initialize connector.

        Args:
            dsn: libpq connection string or URL
            name: Label used in log messages (leader/follower)
        """
        self.dsn = dsn
        self.name = name
        self._connection: psycopg2.extensions.connection | None = None
        self._transaction: Transaction | None = None

    @property
    def connection(self) -> psycopg2.extensions.connection:
        """The underlying connection, opened on first use."""
        if self._connection is None or self._connection.closed:
            self._connection = self._create_connection()
        return self._connection

    def _create_connection(self) -> psycopg2.extensions.connection:
        logger.debug("Connecting to %s database", self.name)
        conn = psycopg2.connect(self.dsn)
        conn.autocommit = True
        _keep_json_as_text(conn)
        return conn

    @property
    def in_transaction(self) -> bool:
        return self._transaction is not None

    def close(self) -> None:
        """Close the database connection."""
        if self._connection is not None:
            self._connection.close()
            self._connection = None
        self._transaction = None

    def __enter__(self) -> "PostgresConnector":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def _check_autocommit(self) -> None:
        if self._transaction is not None:
            raise RuntimeError(
                f"{self.name} connection is inside a transaction; use the Transaction object"
            )

    def execute(self, sql: str, params: Sequence[Any] | None = None) -> int:
        """Execute a statement and return the affected row count."""
        self._check_autocommit()
        return _execute(self.connection, sql, params)

    def query(
        self, sql: str, params: Sequence[Any] | None = None
    ) -> Iterator[tuple[Any, ...]]:
        """Run a query and yield its rows in batches."""
        self._check_autocommit()
        with self.connection.cursor() as cursor:
            cursor.execute(sql, params)
            while True:
                rows = cursor.fetchmany(self.QUERY_BATCH_SIZE)
                if not rows:
                    break
                yield from rows

    def query_one(
        self, sql: str, params: Sequence[Any] | None = None
    ) -> tuple[Any, ...] | None:
        """Run a query and return its first row, or None."""
        self._check_autocommit()
        return _query_one(self.connection, sql, params)

    def begin(
        self,
        isolation: IsolationLevel = IsolationLevel.REPEATABLE_READ,
        readonly: bool = False,
    ) -> "Transaction":
        """
        Start an explicit transaction.

        Args:
            isolation: Isolation level for the transaction
            readonly: Open the transaction READ ONLY

        Returns:
            Transaction that must be committed or rolled back
        """
        self._check_autocommit()
        conn = self.connection
        conn.set_session(
            isolation_level=isolation.value.upper(),
            readonly=readonly,
            autocommit=False,
        )
        self._transaction = Transaction(self, isolation, readonly)
        logger.debug(
            "Began %s%s transaction on %s",
            isolation.value,
            " read only" if readonly else "",
            self.name,
        )
        return self._transaction

    def _end_transaction(self) -> None:
        self._transaction = None
        if self._connection is not None and not self._connection.closed:
            self._connection.set_session(
                isolation_level="DEFAULT", readonly="DEFAULT", autocommit=True
            )


class Transaction:
    """An open transaction on a PostgresConnector."""

    def __init__(
        self,
        connector: PostgresConnector,
        isolation: IsolationLevel,
        readonly: bool,
    ) -> None:
        self.connector = connector
        self.isolation = isolation
        self.readonly = readonly
        self.closed = False

    def _check_open(self) -> psycopg2.extensions.connection:
        if self.closed:
            raise RuntimeError(f"Transaction on {self.connector.name} is already closed")
        return self.connector.connection

    def execute(self, sql: str, params: Sequence[Any] | None = None) -> int:
        """Execute a statement inside the transaction."""
        return _execute(self._check_open(), sql, params)

    def query(
        self, sql: str, params: Sequence[Any] | None = None
    ) -> Iterator[tuple[Any, ...]]:
        """Stream rows through a server-side cursor."""
        conn = self._check_open()
        with conn.cursor(name=f"pg_upsert_sync_{next(_cursor_ids)}") as cursor:
            cursor.itersize = self.connector.QUERY_BATCH_SIZE
            cursor.execute(sql, params)
            yield from cursor

    def query_one(
        self, sql: str, params: Sequence[Any] | None = None
    ) -> tuple[Any, ...] | None:
        return _query_one(self._check_open(), sql, params)

    def commit(self) -> None:
        conn = self._check_open()
        try:
            conn.commit()
        finally:
            self.closed = True
            self.connector._end_transaction()
        logger.debug("Committed transaction on %s", self.connector.name)

    def rollback(self) -> None:
        """Roll back; a no-op once the transaction is closed."""
        if self.closed:
            return
        try:
            self.connector.connection.rollback()
        finally:
            self.closed = True
            self.connector._end_transaction()
        logger.debug("Rolled back transaction on %s", self.connector.name)

    def __enter__(self) -> "Transaction":
        return self

    def __exit__(self, exc_type: Any, *args: Any) -> None:
        if exc_type is not None:
            self.rollback()
        elif not self.closed:
            self.commit()


def _execute(
    conn: psycopg2.extensions.connection, sql: str, params: Sequence[Any] | None
) -> int:
    with conn.cursor() as cursor:
        cursor.execute(sql, params)
        return cursor.rowcount


def _query_one(
    conn: psycopg2.extensions.connection, sql: str, params: Sequence[Any] | None
) -> tuple[Any, ...] | None:
    with conn.cursor() as cursor:
        cursor.execute(sql, params)
        return cursor.fetchone()
