"""
Statement Builder - SELECT / INSERT / upsert statement rendering.

Turns a table name and a list of bound columns into the SQL text the dump
engine emits. Values come from each column's scan slot, so rendering an
INSERT always describes the row most recently scanned.
"""

from __future__ import annotations

from typing import Iterable, Iterator, Sequence

from pg_upsert_sync.core.columns import Column, quote_identifier
from pg_upsert_sync.errors import MutuallyExclusiveOptions


def check_conflict_options(conflict_column: str, no_conflict: bool) -> None:
    """Reject an ON CONFLICT column combined with ON CONFLICT DO NOTHING."""
    if conflict_column and no_conflict:
        raise MutuallyExclusiveOptions(
            "Cannot combine a conflict column with no-conflict"
        )


def render_select(table: str, columns: Sequence[Column]) -> str:
    """
    Build the default row query for a table.

    Only columns marked for output are selected, in discovery order.
    Arrays of user-defined types are selected as text[].
    """
    col_str = ", ".join(c.select_expression for c in columns if c.insert)
    return f"SELECT {col_str} FROM {table}"


def render_insert(
    table: str,
    columns: Sequence[Column],
    conflict_column: str = "",
    no_conflict: bool = False,
    skip_column_names: bool = False,
) -> str:
    """
    Build an INSERT statement for the row currently held by `columns`.

    Args:
        table: Destination table
        columns: Bound columns; those with `insert` set are written
        conflict_column: Append ON CONFLICT (col) DO UPDATE SET for the
            columns flagged `update`
        no_conflict: Append ON CONFLICT DO NOTHING
        skip_column_names: Omit the column list after the table name

    Returns:
        One statement terminated by ";\\n"
    """
    check_conflict_options(conflict_column, no_conflict)

    output = [c for c in columns if c.insert]
    values = ", ".join(c.literal() for c in output)

    if skip_column_names:
        sql = f"INSERT INTO {table} VALUES ({values})"
    else:
        col_str = ", ".join(c.quoted_name for c in output)
        sql = f"INSERT INTO {table} ({col_str}) VALUES ({values})"

    if conflict_column:
        target = quote_identifier(conflict_column)
        set_list = ", ".join(
            f"{c.quoted_name}=EXCLUDED.{c.quoted_name}" for c in output if c.update
        )
        if set_list:
            sql += f" ON CONFLICT ({target}) DO UPDATE SET {set_list}"
        else:
            # Nothing left to update when the conflict column is the only output
            sql += f" ON CONFLICT ({target}) DO NOTHING"
    elif no_conflict:
        sql += " ON CONFLICT DO NOTHING"

    return sql + ";\n"


def wrap_transaction(statements: Iterable[str]) -> Iterator[str]:
    """Surround a statement stream with BEGIN/COMMIT."""
    yield "BEGIN;\n"
    yield from statements
    yield "COMMIT;\n"
