"""
Column Codec - Type-tagged column binding and SQL literal rendering.

Every column discovered in the catalog is resolved, once, to a Codec: a
closed variant over the supported semantic kinds crossed with the
nullable and array flags. The codec knows how to accept a value fetched
by the driver (the column's scan slot) and how to render that value back
as a PostgreSQL literal. Unknown combinations fail when the column is
bound, never when a row is rendered.
"""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Callable

from pg_upsert_sync.errors import (
    ColumnBindingError,
    ColumnScanError,
    UnsupportedColumnKind,
)


class ColumnKind(str, Enum):
    """Semantic kind of a column, independent of nullability and arrays."""

    INTEGER = "integer"
    FLOAT = "float"
    TEXT = "text"
    TEMPORAL = "temporal"
    BOOLEAN = "boolean"
    IDENTIFIER = "identifier"


# information_schema data_type -> kind
TYPE_KINDS: dict[str, ColumnKind] = {
    "smallint": ColumnKind.INTEGER,
    "integer": ColumnKind.INTEGER,
    "bigint": ColumnKind.INTEGER,
    "smallserial": ColumnKind.INTEGER,
    "serial": ColumnKind.INTEGER,
    "bigserial": ColumnKind.INTEGER,
    "real": ColumnKind.FLOAT,
    "double precision": ColumnKind.FLOAT,
    "decimal": ColumnKind.TEXT,
    "numeric": ColumnKind.TEXT,
    "money": ColumnKind.TEXT,
    "character varying": ColumnKind.TEXT,
    "varchar": ColumnKind.TEXT,
    "character": ColumnKind.TEXT,
    "char": ColumnKind.TEXT,
    "text": ColumnKind.TEXT,
    "json": ColumnKind.TEXT,
    "jsonb": ColumnKind.TEXT,
    "tsvector": ColumnKind.TEXT,
    "timestamp without time zone": ColumnKind.TEMPORAL,
    "timestamp with time zone": ColumnKind.TEMPORAL,
    "date": ColumnKind.TEMPORAL,
    "time without time zone": ColumnKind.TEMPORAL,
    "time with time zone": ColumnKind.TEMPORAL,
    "boolean": ColumnKind.BOOLEAN,
    "uuid": ColumnKind.IDENTIFIER,
}

NULL = "NULL"
EMPTY_ARRAY = "'{}'"

# array element types an ARRAY['...'] expression can be assigned to without a cast
UNCAST_ELEMENT_TYPES = frozenset({"text", "varchar", "bpchar"})


def quote_identifier(name: str) -> str:
    """Double-quote an identifier so mixed-case names survive."""
    return '"' + name.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    """
    Quote a string as a PostgreSQL literal.

    Single quotes are doubled. Strings containing a backslash are written
    in escape-string form (E'...') with doubled backslashes, which reads
    the same whatever standard_conforming_strings is set to.

    Example:
        >>> quote_literal("foo'bar")
        "'foo''bar'"
    """
    escaped = value.replace("'", "''")
    if "\\" in escaped:
        return "E'" + escaped.replace("\\", "\\\\") + "'"
    return "'" + escaped + "'"


# -----------------------------------------------------------------------------
# Scalar scanners: validate a driver value, raise TypeError on mismatch
# -----------------------------------------------------------------------------
def _scan_integer(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"expected int, got {type(value).__name__}")
    return value


def _scan_float(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (float, int, Decimal)):
        raise TypeError(f"expected float, got {type(value).__name__}")
    return float(value)


def _scan_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, Decimal):
        # numeric arrives as Decimal; str() keeps the scale ("1.10")
        return str(value)
    raise TypeError(f"expected str, got {type(value).__name__}")


def _scan_temporal(value: Any) -> date | time:
    if not isinstance(value, (date, time)):
        raise TypeError(f"expected date, time or datetime, got {type(value).__name__}")
    return value


def _scan_boolean(value: Any) -> bool:
    if not isinstance(value, bool):
        raise TypeError(f"expected bool, got {type(value).__name__}")
    return value


def _scan_identifier(value: Any) -> str:
    if isinstance(value, (str, uuid.UUID)):
        return str(value)
    raise TypeError(f"expected uuid, got {type(value).__name__}")


# -----------------------------------------------------------------------------
# Scalar renderers
# -----------------------------------------------------------------------------
def _render_integer(value: int) -> str:
    return str(value)


def _render_float(value: float) -> str:
    if math.isnan(value):
        return "'NaN'"
    if math.isinf(value):
        return "'Infinity'" if value > 0 else "'-Infinity'"
    # repr() gives the shortest digits that round-trip; Decimal drops the exponent
    return format(Decimal(repr(value)), "f")


def _render_text(value: str) -> str:
    return quote_literal(value)


def format_offset(offset: timedelta | None) -> str:
    """Format a UTC offset as +HH, adding :MM and :SS only when non-zero."""
    if offset is None:
        return ""
    sign = "+" if offset >= timedelta(0) else "-"
    total = abs(int(offset.total_seconds()))
    hours, remainder = divmod(total, 3600)
    minutes, seconds = divmod(remainder, 60)
    if seconds:
        return f"{sign}{hours:02d}:{minutes:02d}:{seconds:02d}"
    if minutes:
        return f"{sign}{hours:02d}:{minutes:02d}"
    return f"{sign}{hours:02d}"


def _format_date(value: date) -> str:
    return f"{value.year:04d}-{value.month:02d}-{value.day:02d}"


def _format_clock(value: datetime | time) -> str:
    return (
        f"{value.hour:02d}:{value.minute:02d}:{value.second:02d}"
        f".{value.microsecond:06d}"
    )


def format_timestamp(value: datetime) -> str:
    """Format a datetime as YYYY-MM-DD HH:MM:SS.ffffff[+HH]."""
    return f"{_format_date(value)} {_format_clock(value)}{format_offset(value.utcoffset())}"


def _render_temporal(value: date | time) -> str:
    if isinstance(value, datetime):
        return quote_literal(format_timestamp(value))
    if isinstance(value, date):
        return quote_literal(_format_date(value))
    return quote_literal(_format_clock(value) + format_offset(value.utcoffset()))


def _render_boolean(value: bool) -> str:
    return "TRUE" if value else "FALSE"


def _render_identifier(value: str) -> str:
    return quote_literal(value)


Scanner = Callable[[Any], Any]
Renderer = Callable[[Any], str]

_SCALARS: dict[ColumnKind, tuple[Scanner, Renderer]] = {
    ColumnKind.INTEGER: (_scan_integer, _render_integer),
    ColumnKind.FLOAT: (_scan_float, _render_float),
    ColumnKind.TEXT: (_scan_text, _render_text),
    ColumnKind.TEMPORAL: (_scan_temporal, _render_temporal),
    ColumnKind.BOOLEAN: (_scan_boolean, _render_boolean),
    ColumnKind.IDENTIFIER: (_scan_identifier, _render_identifier),
}


@dataclass(frozen=True)
class Codec:
    """Scan and render behaviour for one (kind, nullable, array) variant."""

    kind: ColumnKind
    nullable: bool = False
    array: bool = False

    def scan(self, value: Any) -> Any:
        """Validate a fetched value. Raises TypeError when it doesn't fit."""
        if value is None:
            if self.nullable:
                return None
            raise TypeError("NULL in non-nullable column")
        if self.array:
            return self._scan_array(value)
        return _SCALARS[self.kind][0](value)

    def render(self, value: Any) -> str:
        """Render a scanned value as a SQL literal."""
        if value is None:
            return NULL
        if self.array:
            return self._render_array(value)
        return _SCALARS[self.kind][1](value)

    def _scan_array(self, values: Any) -> list[Any]:
        if not isinstance(values, (list, tuple)):
            raise TypeError(f"expected array, got {type(values).__name__}")
        scan = _SCALARS[self.kind][0]
        scanned: list[Any] = []
        for item in values:
            if item is None:
                scanned.append(None)
            elif isinstance(item, (list, tuple)):
                scanned.append(self._scan_array(item))
            else:
                scanned.append(scan(item))
        return scanned

    def _render_array(self, values: list[Any]) -> str:
        if not values:
            return EMPTY_ARRAY
        render = _SCALARS[self.kind][1]
        literals = []
        for item in values:
            if item is None:
                literals.append(NULL)
            elif isinstance(item, list):
                literals.append(self._render_array(item))
            else:
                literals.append(render(item))
        return "ARRAY[" + ", ".join(literals) + "]"


def resolve_codec(
    declared_type: str,
    nullable: bool = False,
    is_array: bool = False,
    column: str = "?",
) -> Codec:
    """
    Pick the codec for a catalog type.

    Raises:
        UnsupportedColumnKind: for unknown types, temporal or uuid arrays,
            and nullable uuid columns.
    """
    kind = TYPE_KINDS.get(declared_type)
    if kind is None:
        raise UnsupportedColumnKind(column, declared_type, nullable, is_array)
    if is_array and kind in (ColumnKind.TEMPORAL, ColumnKind.IDENTIFIER):
        raise UnsupportedColumnKind(column, declared_type, nullable, is_array)
    if kind is ColumnKind.IDENTIFIER and nullable:
        raise UnsupportedColumnKind(column, declared_type, nullable, is_array)
    return Codec(kind=kind, nullable=nullable, array=is_array)


@dataclass
class Column:
    """
    A table column as seen by the dump engine.

    `insert` marks the column for output, `update` puts it in the
    DO UPDATE SET list. `value` is the scan slot holding the current row's
    value once the column has been bound.

    `element_type` is the SQL name of an array column's element type
    (e.g. "numeric", '"public"."mood"'). Text-kind arrays of any type other
    than text, varchar or char are cast back to it when rendered, since an
    ARRAY['...'] expression is typed text[]. `user_defined` marks arrays of
    enums and other user-defined types, which the driver cannot decode and
    which are therefore selected as text[].
    """

    name: str
    declared_type: str
    nullable: bool = False
    is_array: bool = False
    element_type: str = ""
    user_defined: bool = False
    insert: bool = False
    update: bool = False
    codec: Codec | None = field(default=None, repr=False)
    value: Any = field(default=None, repr=False)

    @property
    def bound(self) -> bool:
        return self.codec is not None

    @property
    def quoted_name(self) -> str:
        return quote_identifier(self.name)

    @property
    def select_expression(self) -> str:
        """The column as it appears in a generated SELECT list."""
        if self.is_array and self.user_defined:
            return f"{self.quoted_name}::text[]"
        return self.quoted_name

    @property
    def array_cast(self) -> str:
        """Cast appended to non-empty array literals, or "" when none is needed."""
        if not self.is_array or not self.element_type:
            return ""
        if self.codec is not None and self.codec.kind is not ColumnKind.TEXT:
            return ""
        if self.element_type in UNCAST_ELEMENT_TYPES:
            return ""
        return f"::{self.element_type}[]"

    def bind(self) -> "Column":
        """Resolve the codec. A column can only be bound once."""
        if self.codec is not None:
            raise ColumnBindingError(
                f"Column {self.name} of type {self.declared_type} is already bound"
            )
        self.codec = resolve_codec(
            self.declared_type, self.nullable, self.is_array, column=self.name
        )
        return self

    def scan(self, value: Any) -> None:
        """Store a fetched value in the column's slot."""
        codec = self._require_codec()
        try:
            self.value = codec.scan(value)
        except (TypeError, ValueError) as e:
            raise ColumnScanError(
                f"Cannot scan value for column {self.name} ({self.declared_type}): {e}"
            ) from e

    def literal(self) -> str:
        """Render the slot's current value as a SQL literal."""
        literal = self._require_codec().render(self.value)
        if self.value:
            return literal + self.array_cast
        return literal

    def _require_codec(self) -> Codec:
        if self.codec is None:
            raise ColumnBindingError(
                f"Column {self.name} of type {self.declared_type} is not bound"
            )
        return self.codec
