"""
Schema Introspector - Column discovery from information_schema.

Works for tables and views alike: both expose their columns through
information_schema.columns, and array element types through
information_schema.element_types.
"""

from __future__ import annotations

import logging
from typing import Sequence

from pg_upsert_sync.connectors.postgres import Querier
from pg_upsert_sync.core.columns import Column, quote_identifier
from pg_upsert_sync.errors import UnknownColumn, UnknownTable


logger = logging.getLogger(__name__)

COLUMNS_QUERY = """
    SELECT c.column_name, c.data_type, e.data_type AS element_data_type, c.is_nullable,
        e.udt_schema AS element_udt_schema, e.udt_name AS element_udt_name
    FROM information_schema.columns c
    LEFT OUTER JOIN information_schema.element_types e
        ON (c.table_catalog, c.table_schema, c.table_name, 'TABLE', c.dtd_identifier)
            = (e.object_catalog, e.object_schema, e.object_name, e.object_type, e.collection_type_identifier)
    WHERE c.table_name = %s AND c.is_generated = 'NEVER'
"""

# enums, domains and other user-defined types are read and written as text
USER_DEFINED_FALLBACK = "character varying"


def split_table_name(table: str) -> tuple[str | None, str]:
    """Split "schema.table" into its parts, unquoting each."""
    parts = table.split(".", 1)
    if len(parts) == 2:
        return _unquote(parts[0]), _unquote(parts[1])
    return None, _unquote(parts[0])


def _unquote(name: str) -> str:
    name = name.strip()
    if len(name) >= 2 and name[0] == '"' and name[-1] == '"':
        return name[1:-1].replace('""', '"')
    return name


def _resolve_type(data_type: str, element_type: str | None) -> tuple[str, bool]:
    """Return (declared_type, is_array) for a catalog row."""
    if data_type == "ARRAY":
        if element_type is None or element_type == "USER-DEFINED":
            return USER_DEFINED_FALLBACK, True
        return element_type, True
    if data_type == "USER-DEFINED":
        return USER_DEFINED_FALLBACK, False
    return data_type, False


def _element_type_name(udt_schema: str | None, udt_name: str | None) -> str:
    """SQL name of an array element type, schema-qualified outside pg_catalog."""
    if not udt_name:
        return ""
    if udt_schema in (None, "pg_catalog"):
        return udt_name
    return f"{quote_identifier(udt_schema)}.{quote_identifier(udt_name)}"


def fetch_columns(querier: Querier, table: str) -> list[Column]:
    """Read a table's non-generated columns in ordinal order, unbound."""
    schema, name = split_table_name(table)
    sql = COLUMNS_QUERY
    params: list[str] = [name]
    if schema is not None:
        sql += " AND c.table_schema = %s"
        params.append(schema)
    sql += " ORDER BY c.ordinal_position"

    columns: list[Column] = []
    for row in querier.query(sql, params):
        column_name, data_type, element_type, is_nullable, udt_schema, udt_name = row
        declared_type, is_array = _resolve_type(data_type, element_type)
        columns.append(
            Column(
                name=column_name,
                declared_type=declared_type,
                nullable=is_nullable == "YES",
                is_array=is_array,
                element_type=_element_type_name(udt_schema, udt_name) if is_array else "",
                user_defined=is_array and element_type in (None, "USER-DEFINED"),
            )
        )
    return columns


def discover_columns(
    querier: Querier,
    table: str,
    wanted_names: Sequence[str] = (),
) -> list[Column]:
    """
    Discover and bind the columns of a table or view.

    Args:
        querier: Connection or transaction to read the catalog through
        table: Table name, optionally schema-qualified
        wanted_names: Restrict the result to these columns (empty = all)

    Returns:
        Bound columns in schema order

    Raises:
        UnknownTable: the catalog has no columns for the table
        UnknownColumn: a wanted name is not a column of the table
        UnsupportedColumnKind: a returned column has no codec
    """
    columns = fetch_columns(querier, table)
    if not columns:
        raise UnknownTable(table)

    if wanted_names:
        known = {c.name for c in columns}
        for name in wanted_names:
            if name not in known:
                raise UnknownColumn(name, table)
        wanted = set(wanted_names)
        columns = [c for c in columns if c.name in wanted]

    for column in columns:
        column.bind()

    logger.debug(
        "Columns for %s: %s", table, ", ".join(c.name for c in columns)
    )
    return columns
