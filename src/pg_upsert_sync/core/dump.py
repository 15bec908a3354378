"""
Dump Engine - Stream a table as INSERT statements.

Pipeline: introspect -> validate -> query -> scan-and-render, one statement
per row, handed to a sink. The same engine writes SQL files (StreamSink)
and applies rows to a follower (ExecuteSink).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterator, Protocol, Sequence, TextIO

from pg_upsert_sync.connectors.postgres import Querier
from pg_upsert_sync.core.columns import Column
from pg_upsert_sync.core.schema import discover_columns
from pg_upsert_sync.core.statements import (
    check_conflict_options,
    render_insert,
    render_select,
)
from pg_upsert_sync.errors import ColumnScanError, UnknownColumn


logger = logging.getLogger(__name__)


@dataclass
class DumpOptions:
    """Options controlling how INSERT statements are built."""

    # Full SELECT statement, or just a WHERE clause appended to the default one
    query: str = ""
    # Columns to include (empty = all)
    insert_columns: list[str] = field(default_factory=list)
    # ON CONFLICT (col) DO UPDATE SET every other column
    conflict_column: str = ""
    # ON CONFLICT DO NOTHING
    no_conflict: bool = False
    # Write statements for a different table than the one read
    insert_table: str = ""
    skip_column_names: bool = False
    # Log the row query and row count
    verbose: bool = False

    def validate(self) -> None:
        check_conflict_options(self.conflict_column, self.no_conflict)


class StatementSink(Protocol):
    """Consumes rendered statements one at a time."""

    def accept(self, statement: str) -> None:
        ...


class StreamSink:
    """Writes statements to a text stream."""

    def __init__(self, stream: TextIO) -> None:
        self.stream = stream

    def accept(self, statement: str) -> None:
        self.stream.write(statement)


class ExecuteSink:
    """
    Executes statements against a connection or transaction.

    Example:
        sink = ExecuteSink(follower_tx, verbose=True)
        dump(sink, leader_tx, "users", DumpOptions(conflict_column="id"))
        print(sink.executed)
    """

    def __init__(self, querier: Querier, verbose: bool = False) -> None:
        self.querier = querier
        self.verbose = verbose
        self.executed = 0

    def accept(self, statement: str) -> None:
        if self.verbose:
            logger.info(statement.rstrip())
        self.querier.execute(statement)
        self.executed += 1


class CollectSink:
    """Keeps statements in memory."""

    def __init__(self) -> None:
        self.statements: list[str] = []

    def accept(self, statement: str) -> None:
        self.statements.append(statement)


def mark_columns(columns: Sequence[Column], table: str, options: DumpOptions) -> None:
    """
    Flag output and DO UPDATE SET columns.

    Raises:
        UnknownColumn: the conflict column is not among the columns
    """
    for column in columns:
        column.insert = True
        column.update = False

    if not options.conflict_column:
        return

    if not any(c.name == options.conflict_column for c in columns):
        raise UnknownColumn(options.conflict_column, table)
    for column in columns:
        if column.name != options.conflict_column:
            column.update = True


def build_row_query(table: str, columns: Sequence[Column], query: str = "") -> str:
    """
    Resolve the statement used to fetch rows.

    An empty query selects every output column; a query starting with
    WHERE is appended to that default; anything else is used as given.
    """
    query = query.strip()
    if not query:
        return render_select(table, columns)
    if query[:5].upper() == "WHERE":
        return f"{render_select(table, columns)} {query}"
    return query


def iter_statements(
    querier: Querier,
    table: str,
    options: DumpOptions | None = None,
) -> Iterator[str]:
    """
    Yield one INSERT statement per row of `table`.

    The generator is single-use: iterating it again requires a new call.

    Raises:
        MutuallyExclusiveOptions: before any query runs
        UnknownColumn: before the row query runs
        ColumnScanError: a row does not fit the discovered columns
    """
    options = options or DumpOptions()
    options.validate()

    columns = discover_columns(querier, table, options.insert_columns)
    mark_columns(columns, table, options)

    st = build_row_query(table, columns, options.query)
    if options.verbose:
        logger.info(st)

    dest = options.insert_table or table
    count = 0
    for row in querier.query(st):
        if len(row) != len(columns):
            raise ColumnScanError(
                f"Query for {table} returned {len(row)} values, expected {len(columns)}"
            )
        for column, value in zip(columns, row):
            column.scan(value)
        yield render_insert(
            dest,
            columns,
            conflict_column=options.conflict_column,
            no_conflict=options.no_conflict,
            skip_column_names=options.skip_column_names,
        )
        count += 1

    if options.verbose:
        logger.info("Fetched %d rows", count)


def dump(
    sink: StatementSink,
    querier: Querier,
    table: str,
    options: DumpOptions | None = None,
) -> int:
    """
    Dump a table's rows into a sink.

    Args:
        sink: Receives each rendered statement
        querier: Connection or transaction the rows are read from
        table: Source table or view
        options: Dump options

    Returns:
        Number of rows dumped
    """
    count = 0
    for statement in iter_statements(querier, table, options):
        sink.accept(statement)
        count += 1
    return count
