"""Tests for the dump engine."""

import io
import logging

import pytest

from fakes import FakeDatabase, utc
from pg_upsert_sync.core.columns import Column
from pg_upsert_sync.core.dump import (
    CollectSink,
    DumpOptions,
    ExecuteSink,
    StreamSink,
    build_row_query,
    dump,
    iter_statements,
    mark_columns,
)
from pg_upsert_sync.errors import (
    ColumnScanError,
    MutuallyExclusiveOptions,
    UnknownColumn,
)


ALICE = (
    "INSERT INTO users (\"id\", \"name\", \"created_at\", \"updated_at\") VALUES "
    "(1, 'alice', '2024-01-01 10:00:00.000000+00', '2024-01-01 10:00:00.000000+00')"
)


class TestBuildRowQuery:
    """Test row query resolution."""

    @pytest.fixture
    def columns(self) -> list[Column]:
        return [Column("id", "integer", insert=True), Column("name", "text", insert=True)]

    def test_default(self, columns: list[Column]) -> None:
        """Test the default SELECT."""
        assert build_row_query("users", columns) == 'SELECT "id", "name" FROM users'

    def test_where_clause_appended(self, columns: list[Column]) -> None:
        """Test that a WHERE clause is appended to the default."""
        assert build_row_query("users", columns, 'WHERE "id" >= 5') == (
            'SELECT "id", "name" FROM users WHERE "id" >= 5'
        )

    def test_where_case_insensitive(self, columns: list[Column]) -> None:
        """Test that the WHERE prefix is matched case-insensitively."""
        assert build_row_query("users", columns, "  where id > 1").endswith("FROM users where id > 1")

    def test_full_query_verbatim(self, columns: list[Column]) -> None:
        """Test that any other query is used as given."""
        query = "SELECT id, name FROM users_view ORDER BY id"
        assert build_row_query("users", columns, query) == query


class TestMarkColumns:
    """Test output and update flags."""

    def test_all_output_no_updates(self) -> None:
        """Test flags without a conflict column."""
        columns = [Column("id", "integer"), Column("name", "text")]
        mark_columns(columns, "users", DumpOptions())
        assert all(c.insert for c in columns)
        assert not any(c.update for c in columns)

    def test_conflict_column_excluded_from_updates(self) -> None:
        """Test that the conflict column is not updated."""
        columns = [Column("id", "integer"), Column("name", "text")]
        mark_columns(columns, "users", DumpOptions(conflict_column="id"))
        assert [c.update for c in columns] == [False, True]

    def test_unknown_conflict_column(self) -> None:
        """Test a conflict column the table lacks."""
        with pytest.raises(UnknownColumn):
            mark_columns([Column("id", "integer")], "users", DumpOptions(conflict_column="uid"))


class TestIterStatements:
    """Test streaming statements from a table."""

    def test_one_statement_per_row(self, leader: FakeDatabase) -> None:
        """Test one INSERT per row."""
        statements = list(iter_statements(leader, "users"))
        assert len(statements) == 2
        assert statements[0] == ALICE + ";\n"

    def test_empty_table(self) -> None:
        """Test an empty table."""
        db = FakeDatabase()
        db.add_table("users")
        assert list(iter_statements(db, "users")) == []

    def test_unknown_conflict_column_before_row_query(self, leader: FakeDatabase) -> None:
        """Test that a bad conflict column fails before rows are read."""
        with pytest.raises(UnknownColumn):
            list(iter_statements(leader, "users", DumpOptions(conflict_column="uid")))
        assert leader.row_queries == []

    def test_exclusive_options_before_any_query(self, leader: FakeDatabase) -> None:
        """Test that conflicting options fail before any query."""
        options = DumpOptions(conflict_column="id", no_conflict=True)
        with pytest.raises(MutuallyExclusiveOptions):
            list(iter_statements(leader, "users", options))
        assert leader.queries == []

    def test_upsert(self, leader: FakeDatabase) -> None:
        """Test upsert statements."""
        statements = list(iter_statements(leader, "users", DumpOptions(conflict_column="id")))
        assert statements[0] == (
            ALICE + ' ON CONFLICT ("id") DO UPDATE SET "name"=EXCLUDED."name", '
            '"created_at"=EXCLUDED."created_at", "updated_at"=EXCLUDED."updated_at";\n'
        )

    def test_where_filter(self, leader: FakeDatabase) -> None:
        """Test a WHERE filter on the row query."""
        statements = list(iter_statements(leader, "users", DumpOptions(query='WHERE "id" >= 2')))
        assert len(statements) == 1
        assert "'bob'" in statements[0]
        assert leader.row_queries == [
            'SELECT "id", "name", "created_at", "updated_at" FROM users WHERE "id" >= 2'
        ]

    def test_insert_columns_subset(self, leader: FakeDatabase) -> None:
        """Test dumping a subset of columns."""
        options = DumpOptions(insert_columns=["id", "name"])
        statements = list(iter_statements(leader, "users", options))
        assert statements[1] == "INSERT INTO users (\"id\", \"name\") VALUES (2, 'bob');\n"

    def test_insert_table(self, leader: FakeDatabase) -> None:
        """Test writing to a different table name."""
        options = DumpOptions(insert_table="users_copy", insert_columns=["id"])
        statements = list(iter_statements(leader, "users", options))
        assert statements[0] == 'INSERT INTO users_copy ("id") VALUES (1);\n'

    def test_type_mismatch(self, leader: FakeDatabase) -> None:
        """Test a value of the wrong type mid-dump."""
        leader.tables["users"].rows[1]["name"] = 5
        statements = iter_statements(leader, "users")
        next(statements)
        with pytest.raises(ColumnScanError):
            next(statements)

    def test_row_width_mismatch(self, leader: FakeDatabase) -> None:
        """Test a custom query returning too few values."""
        options = DumpOptions(query='SELECT "id" FROM users')
        with pytest.raises(ColumnScanError):
            list(iter_statements(leader, "users", options))

    def test_null_in_non_nullable_column(self, leader: FakeDatabase) -> None:
        """Test NULL in a NOT NULL column."""
        leader.tables["users"].rows[0]["created_at"] = None
        with pytest.raises(ColumnScanError):
            list(iter_statements(leader, "users"))

    def test_typed_arrays(self) -> None:
        """Test that numeric and enum arrays are selected and cast correctly."""
        db = FakeDatabase()
        db.add_table(
            "readings",
            columns=[
                ("id", "integer", None, "NO"),
                ("values", "ARRAY", "numeric", "NO", "pg_catalog", "numeric"),
                ("moods", "ARRAY", "USER-DEFINED", "YES", "public", "mood"),
            ],
            # enum arrays arrive as lists once selected as text[]
            rows=[{"id": 1, "values": ["1.50", "2"], "moods": ["happy", "sad"]}],
        )

        statements = list(iter_statements(db, "readings"))

        assert db.row_queries == ['SELECT "id", "values", "moods"::text[] FROM readings']
        assert statements == [
            'INSERT INTO readings ("id", "values", "moods") VALUES '
            "(1, ARRAY['1.50', '2']::numeric[], ARRAY['happy', 'sad']::\"public\".\"mood\"[]);\n"
        ]

    def test_verbose_logs_query_and_count(
        self, leader: FakeDatabase, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Test verbose logging of the query and row count."""
        caplog.set_level(logging.INFO, logger="pg_upsert_sync")
        list(iter_statements(leader, "users", DumpOptions(verbose=True)))
        assert 'SELECT "id", "name", "created_at", "updated_at" FROM users' in caplog.text
        assert "Fetched 2 rows" in caplog.text


class TestSinks:
    """Test statement sinks and the dump() driver."""

    def test_stream_sink(self, leader: FakeDatabase) -> None:
        """Test writing statements to a stream."""
        out = io.StringIO()
        assert dump(StreamSink(out), leader, "users") == 2
        assert out.getvalue().startswith(ALICE + ";\n")
        assert out.getvalue().count(";\n") == 2

    def test_collect_sink(self, leader: FakeDatabase) -> None:
        """Test collecting statements in memory."""
        sink = CollectSink()
        dump(sink, leader, "users", DumpOptions(no_conflict=True))
        assert all(s.endswith(" ON CONFLICT DO NOTHING;\n") for s in sink.statements)

    def test_execute_sink(self, leader: FakeDatabase) -> None:
        """Test executing statements against another database."""
        target = FakeDatabase("target")
        sink = ExecuteSink(target)
        dump(sink, leader, "users")
        assert sink.executed == 2
        assert target.executed[0] == ALICE + ";\n"

    def test_execute_sink_verbose(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test verbose logging of executed statements."""
        caplog.set_level(logging.INFO, logger="pg_upsert_sync")
        target = FakeDatabase("target")
        ExecuteSink(target, verbose=True).accept("INSERT INTO t VALUES (1);\n")
        assert "INSERT INTO t VALUES (1);" in caplog.text

    def test_dump_empty_table(self) -> None:
        """Test dumping an empty table."""
        db = FakeDatabase()
        db.add_table("users")
        out = io.StringIO()
        assert dump(StreamSink(out), db, "users") == 0
        assert out.getvalue() == ""

    def test_rows_after_midnight(self) -> None:
        """Test NULLs and timestamps in a dumped row."""
        db = FakeDatabase()
        db.add_table("users", rows=[{
            "id": 3,
            "name": None,
            "created_at": utc(2024, 6, 1),
            "updated_at": utc(2024, 6, 1, 0, 0, 1),
        }])
        sink = CollectSink()
        dump(sink, db, "users")
        assert "(3, NULL, '2024-06-01 00:00:00.000000+00', '2024-06-01 00:00:01.000000+00')" in sink.statements[0]
