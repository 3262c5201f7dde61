# Authorization Sync - Database Handle Tests
"""
Unit tests for the database handles and SQL helpers.

Tests: chunked, affected_rows, values_table, SqliteDatabase
"""
import asyncio
from datetime import date, datetime

import pytest

from authz_sync.clients.database import (
    SqliteDatabase,
    affected_rows,
    chunked,
    values_table,
)


class TestChunked:
    """Tests for chunked helper."""

    def test_even_split(self):
        assert list(chunked(range(6), 3)) == [[0, 1, 2], [3, 4, 5]]

    def test_remainder_in_last_batch(self):
        assert list(chunked(range(5), 2)) == [[0, 1], [2, 3], [4]]

    def test_empty(self):
        assert list(chunked([], 10)) == []


class TestAffectedRows:
    """Tests for asyncpg command status parsing."""

    def test_delete(self):
        assert affected_rows("DELETE 3") == 3

    def test_insert_uses_last_field(self):
        assert affected_rows("INSERT 0 5") == 5

    def test_ddl_has_no_count(self):
        assert affected_rows("CREATE TABLE") == 0

    def test_empty(self):
        assert affected_rows("") == 0


class TestValuesTable:
    """Tests for inline VALUES key tables."""

    def test_placeholders_and_args(self):
        sql, args = values_table([("a", "b"), ("c", "d")])
        assert sql == "(VALUES ($1, $2), ($3, $4))"
        assert args == ["a", "b", "c", "d"]

    def test_offset_shifts_placeholders(self):
        sql, args = values_table([("x",)], offset=2)
        assert sql == "(VALUES ($3))"
        assert args == ["x"]

    def test_empty_keys_rejected(self):
        with pytest.raises(ValueError):
            values_table([])


class TestSqliteDatabase:
    """Tests for the SQLite handle."""

    def test_placeholder_translation(self):
        assert SqliteDatabase._sql("SELECT $1, $2, $10") == "SELECT ?1, ?2, ?10"

    def test_dates_bound_as_iso_text(self):
        params = SqliteDatabase._params([date(2026, 1, 2), datetime(2026, 1, 2, 3, 4, 5), 7])
        assert params == ("2026-01-02", "2026-01-02 03:04:05", 7)

    def test_not_connected(self):
        db = SqliteDatabase(name="idle")
        with pytest.raises(RuntimeError):
            db.conn

    def test_execute_fetch_and_rowcount(self):
        async def scenario():
            db = SqliteDatabase()
            await db.connect()
            try:
                await db.execute("CREATE TABLE t (k TEXT, v INTEGER)")
                inserted = await db.executemany(
                    "INSERT INTO t (k, v) VALUES ($1, $2)", [("a", 1), ("b", 2), ("c", 3)]
                )
                deleted = await db.execute("DELETE FROM t WHERE v >= $1", 2)
                rows = await db.fetch("SELECT k, v FROM t")
                streamed = [row async for row in db.iterate("SELECT k FROM t")]
            finally:
                await db.close()
            return inserted, deleted, rows, streamed

        inserted, deleted, rows, streamed = asyncio.run(scenario())
        assert inserted == 3
        assert deleted == 2
        assert rows == [{"k": "a", "v": 1}]
        assert streamed == [{"k": "a"}]

    def test_transaction_rolls_back_on_error(self):
        async def scenario():
            db = SqliteDatabase()
            await db.connect()
            try:
                await db.execute("CREATE TABLE t (k TEXT)")
                await db.execute("INSERT INTO t (k) VALUES ('kept')")
                with pytest.raises(ZeroDivisionError):
                    async with db.transaction() as session:
                        await session.execute("DELETE FROM t")
                        1 / 0
                return await db.fetch("SELECT k FROM t")
            finally:
                await db.close()

        assert asyncio.run(scenario()) == [{"k": "kept"}]

    def test_transaction_commits(self):
        async def scenario():
            db = SqliteDatabase()
            await db.connect()
            try:
                await db.execute("CREATE TABLE t (k TEXT)")
                async with db.transaction() as session:
                    await session.execute("INSERT INTO t (k) VALUES ($1)", "new")
                return await db.fetch("SELECT k FROM t")
            finally:
                await db.close()

        assert asyncio.run(scenario()) == [{"k": "new"}]

    def test_nested_transaction_rejected(self):
        async def scenario():
            db = SqliteDatabase()
            await db.connect()
            try:
                async with db.transaction():
                    async with db.transaction():
                        pass
            finally:
                await db.close()

        with pytest.raises(RuntimeError, match="nested"):
            asyncio.run(scenario())

    def test_values_table_joins_in_sqlite(self):
        async def scenario():
            db = SqliteDatabase()
            await db.connect()
            try:
                await db.execute("CREATE TABLE t (a TEXT, b TEXT)")
                await db.executemany(
                    "INSERT INTO t (a, b) VALUES ($1, $2)", [("1", "x"), ("2", "y"), ("3", "z")]
                )
                table, args = values_table([("1", "x"), ("3", "nope")], offset=1)
                return await db.fetch(
                    f"""SELECT t.a FROM t JOIN {table} AS k
                        ON k.column1 = t.a AND k.column2 = t.b
                        WHERE t.a <> $1""",
                    "0", *args,
                )
            finally:
                await db.close()

        assert asyncio.run(scenario()) == [{"a": "1"}]
