"""In-memory stand-ins for PostgreSQL connections used by the unit tests."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterator, Sequence

from pg_upsert_sync.connectors.postgres import IsolationLevel


# (name, data_type, element_data_type, is_nullable[, element_udt_schema, element_udt_name])
CatalogRow = tuple

USERS_COLUMNS: list[CatalogRow] = [
    ("id", "integer", None, "NO"),
    ("name", "text", None, "YES"),
    ("created_at", "timestamp with time zone", None, "NO"),
    ("updated_at", "timestamp with time zone", None, "NO"),
]

SELECT_RE = re.compile(
    r"^SELECT (?P<cols>.+?) FROM (?P<table>\S+)"
    r"(?: WHERE (?P<where>.+?))?"
    r"(?P<last> ORDER BY 1 DESC LIMIT 1)?$",
    re.S,
)
CONDITION_RE = re.compile(r'^"(?P<col>[^"]+)" (?P<op>>=|<) (?P<value>.+)$')
TIMESTAMPTZ_RE = re.compile(r"^TIMESTAMPTZ '(?P<ts>[^']+)'$")


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def parse_timestamptz(text: str) -> datetime:
    """Parse 'YYYY-MM-DD HH:MM:SS.ffffff+HH' as written by the synchronizer."""
    if re.search(r"[+-]\d\d$", text):
        text += ":00"
    return datetime.fromisoformat(text)


@dataclass
class FakeTable:
    name: str
    columns: list[CatalogRow]
    rows: list[dict[str, Any]] = field(default_factory=list)


class FakeDatabase:
    """
    Answers the catalog query and the SELECT shapes the package generates.

    Executed statements are recorded, not applied. Transaction events are
    appended to `journal`, which can be shared between two databases to
    check commit ordering.
    """

    def __init__(self, name: str = "fake", journal: list | None = None) -> None:
        self.name = name
        self.tables: dict[str, FakeTable] = {}
        self.executed: list[str] = []
        self.queries: list[tuple[str, Any]] = []
        self.journal = journal if journal is not None else []
        self.fail_execute: Exception | None = None
        self.fail_commit: Exception | None = None
        self.closed = False

    def add_table(
        self,
        name: str,
        columns: Sequence[CatalogRow] = USERS_COLUMNS,
        rows: Sequence[dict[str, Any]] = (),
    ) -> FakeTable:
        table = FakeTable(name, list(columns), [dict(r) for r in rows])
        self.tables[name] = table
        return table

    # Querier
    def execute(self, sql: str, params: Sequence[Any] | None = None) -> int:
        self.executed.append(sql)
        if self.fail_execute is not None:
            raise self.fail_execute
        return 1

    def query(self, sql: str, params: Sequence[Any] | None = None) -> Iterator[tuple]:
        self.queries.append((sql, params))
        return iter(self._answer(sql, params))

    def query_one(self, sql: str, params: Sequence[Any] | None = None) -> tuple | None:
        rows = list(self.query(sql, params))
        return rows[0] if rows else None

    @property
    def row_queries(self) -> list[str]:
        return [sql for sql, _ in self.queries if "information_schema" not in sql]

    # Connector
    def begin(
        self,
        isolation: IsolationLevel = IsolationLevel.REPEATABLE_READ,
        readonly: bool = False,
    ) -> "FakeTransaction":
        self.journal.append((self.name, "begin", isolation, readonly))
        return FakeTransaction(self)

    def close(self) -> None:
        self.closed = True

    def __enter__(self) -> "FakeDatabase":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def events(self, kind: str) -> list[tuple]:
        return [e for e in self.journal if e[0] == self.name and e[1] == kind]

    def _answer(self, sql: str, params: Sequence[Any] | None) -> list[tuple]:
        if "information_schema.columns" in sql:
            table = self.tables.get(params[0])
            if table is None:
                return []
            return [tuple(c) + (None,) * (6 - len(c)) for c in table.columns]

        match = SELECT_RE.match(sql.strip())
        if match is None:
            raise AssertionError(f"FakeDatabase cannot answer: {sql}")

        table = self.tables[match["table"]]
        names = [c.split("::")[0].strip().strip('"') for c in match["cols"].split(",")]
        rows = [r for r in table.rows if _matches(r, match["where"])]
        if match["last"]:
            rows = sorted(rows, key=lambda r: r[names[0]], reverse=True)[:1]
        return [tuple(r.get(n) for n in names) for r in rows]


def _matches(row: dict[str, Any], where: str | None) -> bool:
    if not where:
        return True
    for condition in where.split(" AND "):
        m = CONDITION_RE.match(condition.strip())
        if m is None:
            raise AssertionError(f"FakeDatabase cannot evaluate: {condition}")
        raw = m["value"].strip()
        ts = TIMESTAMPTZ_RE.match(raw)
        value: Any = parse_timestamptz(ts["ts"]) if ts else int(raw)
        actual = row[m["col"]]
        if m["op"] == ">=" and not actual >= value:
            return False
        if m["op"] == "<" and not actual < value:
            return False
    return True


class FakeTransaction:
    def __init__(self, connector: FakeDatabase) -> None:
        self.connector = connector
        self.closed = False

    def execute(self, sql: str, params: Sequence[Any] | None = None) -> int:
        return self.connector.execute(sql, params)

    def query(self, sql: str, params: Sequence[Any] | None = None) -> Iterator[tuple]:
        return self.connector.query(sql, params)

    def query_one(self, sql: str, params: Sequence[Any] | None = None) -> tuple | None:
        return self.connector.query_one(sql, params)

    def commit(self) -> None:
        if self.connector.fail_commit is not None:
            raise self.connector.fail_commit
        self.connector.journal.append((self.connector.name, "commit"))
        self.closed = True

    def rollback(self) -> None:
        if self.closed:
            return
        self.connector.journal.append((self.connector.name, "rollback"))
        self.closed = True


class FakeRecordsQuerier:
    """Emulates the sync records bookkeeping table."""

    def __init__(self) -> None:
        self.rows: dict[int, list[Any]] = {}
        self.next_id = 1
        self.created = False
        self.statements: list[str] = []

    def execute(self, sql: str, params: Sequence[Any] | None = None) -> int:
        self.statements.append(sql)
        if "CREATE TABLE IF NOT EXISTS" in sql:
            self.created = True
            return 0
        if sql.lstrip().startswith("UPDATE"):
            started_at, finished_at, record_id = params
            if record_id not in self.rows:
                return 0
            self.rows[record_id] = [started_at, finished_at]
            return 1
        raise AssertionError(f"FakeRecordsQuerier cannot execute: {sql}")

    def query(self, sql: str, params: Sequence[Any] | None = None) -> Iterator[tuple]:
        self.statements.append(sql)
        if "RETURNING id" in sql:
            record_id = self.next_id
            self.next_id += 1
            self.rows[record_id] = list(params)
            return iter([(record_id,)])

        ordered = sorted(self.rows.items(), key=lambda kv: kv[1][0], reverse=True)
        if "finished_at IS NOT NULL" in sql:
            ordered = [kv for kv in ordered if kv[1][1] is not None][:1]
        elif "LIMIT %s" in sql:
            ordered = ordered[: params[0]]
        return iter([(rid, s, f) for rid, (s, f) in ordered])

    def query_one(self, sql: str, params: Sequence[Any] | None = None) -> tuple | None:
        rows = list(self.query(sql, params))
        return rows[0] if rows else None
