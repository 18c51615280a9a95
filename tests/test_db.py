"""Tests for async database connection abstraction."""

from pathlib import Path

import pytest

from src.db import Database, connect

pytestmark = pytest.mark.usefixtures("_no_turso")


class TestConnect:
    async def test_returns_database(self, tmp_path: Path):
        db = await connect(local_path_override=tmp_path / "test.db")
        assert isinstance(db, Database)
        await db.close()

    async def test_creates_parent_dirs(self, tmp_path: Path):
        db_path = tmp_path / "nested" / "dir" / "test.db"
        db = await connect(local_path_override=db_path)
        assert db_path.parent.exists()
        await db.close()

    async def test_creates_schema(self, tmp_path: Path):
        db = await connect(local_path_override=tmp_path / "test.db")
        rows = await db.fetchall("SELECT name FROM sqlite_master WHERE type = 'table'")
        tables = {r[0] for r in rows}
        assert {"users", "conversations", "messages", "memories", "message_references"} <= tables
        await db.close()

    async def test_schema_init_is_idempotent(self, tmp_path: Path):
        path = tmp_path / "test.db"
        db = await connect(local_path_override=path)
        await db.close()
        db = await connect(local_path_override=path)
        await db.init_schema()
        await db.close()


class TestDatabase:
    async def test_write_and_fetchall(self, tmp_path: Path):
        db = await connect(local_path_override=tmp_path / "test.db")
        await db.write("CREATE TABLE t (id INTEGER PRIMARY KEY, name TEXT)")
        await db.write("INSERT INTO t (name) VALUES (?)", ("alice",))

        rows = await db.fetchall("SELECT name FROM t")
        assert rows == [("alice",)]
        await db.close()

    async def test_fetchone(self, tmp_path: Path):
        db = await connect(local_path_override=tmp_path / "test.db")
        await db.write("CREATE TABLE t (id INTEGER PRIMARY KEY, val TEXT)")
        await db.write("INSERT INTO t (val) VALUES (?)", ("hello",))

        row = await db.fetchone("SELECT val FROM t WHERE id = 1")
        assert row == ("hello",)
        await db.close()

    async def test_fetchone_returns_none_when_empty(self, tmp_path: Path):
        db = await connect(local_path_override=tmp_path / "test.db")
        await db.write("CREATE TABLE t (id INTEGER PRIMARY KEY)")

        row = await db.fetchone("SELECT * FROM t WHERE id = 999")
        assert row is None
        await db.close()

    async def test_write_returns_rowcount(self, tmp_path: Path):
        db = await connect(local_path_override=tmp_path / "test.db")
        await db.write("CREATE TABLE t (id INTEGER PRIMARY KEY, name TEXT)")
        await db.write("INSERT INTO t (name) VALUES (?)", ("a",))
        await db.write("INSERT INTO t (name) VALUES (?)", ("b",))

        assert await db.write("DELETE FROM t") == 2
        await db.close()

    async def test_data_survives_reconnect(self, tmp_path: Path):
        path = tmp_path / "test.db"
        db = await connect(local_path_override=path)
        await db.write(
            "INSERT INTO conversations VALUES (?, ?, ?, ?, ?)",
            ("conv_1", "Hello", "user_1", "2026-01-01", "2026-01-01"),
        )
        await db.close()

        db = await connect(local_path_override=path)
        row = await db.fetchone("SELECT title FROM conversations WHERE id = ?", ("conv_1",))
        assert row == ("Hello",)
        await db.close()
