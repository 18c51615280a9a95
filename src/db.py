"""Async access to the primary relational store over libsql.

Wraps the synchronous ``libsql`` driver with ``asyncio.to_thread()``.
Connection target is determined by settings:

- **Production**: ``TURSO_DATABASE_URL`` + ``TURSO_AUTH_TOKEN`` → remote Turso
- **Dev/test**: no Turso env vars → local SQLite file via ``database_path``

The schema mirrors the chat data model: users, conversations, messages,
memories and message references.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

import libsql

if TYPE_CHECKING:
    from pathlib import Path

from src.config import settings

SCHEMA: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id              TEXT PRIMARY KEY,
        email           TEXT NOT NULL UNIQUE,
        credential_hash TEXT NOT NULL,
        display_name    TEXT NOT NULL DEFAULT '',
        phone           TEXT,
        bio             TEXT,
        avatar_ref      TEXT,
        created_at      TEXT NOT NULL,
        updated_at      TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS conversations (
        id            TEXT PRIMARY KEY,
        title         TEXT NOT NULL,
        owner_user_id TEXT NOT NULL,
        created_at    TEXT NOT NULL,
        updated_at    TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id              TEXT PRIMARY KEY,
        conversation_id TEXT NOT NULL,
        role            TEXT NOT NULL,
        content         TEXT NOT NULL,
        created_at      TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS memories (
        id               TEXT PRIMARY KEY,
        owner_user_id    TEXT NOT NULL,
        content          TEXT NOT NULL,
        category         TEXT NOT NULL DEFAULT 'general',
        importance_score INTEGER NOT NULL DEFAULT 5,
        created_at       TEXT NOT NULL,
        updated_at       TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS message_references (
        message_id    TEXT NOT NULL,
        display_order INTEGER NOT NULL,
        url           TEXT NOT NULL,
        title         TEXT NOT NULL,
        snippet       TEXT,
        source_label  TEXT NOT NULL,
        published_at  TEXT,
        PRIMARY KEY (message_id, display_order)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_conversations_owner ON conversations (owner_user_id)",
    "CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages (conversation_id)",
    "CREATE INDEX IF NOT EXISTS idx_memories_owner ON memories (owner_user_id)",
)


class AsyncCursor:
    """Thin async wrapper around a synchronous libsql cursor."""

    def __init__(self, cursor: Any) -> None:
        self._cursor = cursor

    async def fetchone(self) -> tuple | None:
        return await asyncio.to_thread(self._cursor.fetchone)

    async def fetchall(self) -> list[tuple]:
        return await asyncio.to_thread(self._cursor.fetchall)

    @property
    def rowcount(self) -> int:
        return self._cursor.rowcount


class Database:
    """A single long-lived libsql connection shared by the primary store.

    Statements are serialised with an ``asyncio.Lock``; the driver is not
    safe to drive from two worker threads at once.
    """

    def __init__(self, conn: Any) -> None:
        self._conn = conn
        self._lock = asyncio.Lock()

    async def execute(self, sql: str, params: tuple = ()) -> AsyncCursor:
        cursor = await asyncio.to_thread(self._conn.execute, sql, params)
        return AsyncCursor(cursor)

    async def commit(self) -> None:
        await asyncio.to_thread(self._conn.commit)

    async def write(self, sql: str, params: tuple = ()) -> int:
        """Execute a statement, commit, and return the affected row count."""
        async with self._lock:
            cursor = await self.execute(sql, params)
            await self.commit()
            return cursor.rowcount

    async def fetchone(self, sql: str, params: tuple = ()) -> tuple | None:
        async with self._lock:
            cursor = await self.execute(sql, params)
            return await cursor.fetchone()

    async def fetchall(self, sql: str, params: tuple = ()) -> list[tuple]:
        async with self._lock:
            cursor = await self.execute(sql, params)
            return await cursor.fetchall()

    async def init_schema(self) -> None:
        async with self._lock:
            for statement in SCHEMA:
                await self.execute(statement)
            await self.commit()

    async def close(self) -> None:
        await asyncio.to_thread(self._conn.close)


def _open_local(path: str) -> Any:
    """Open a local libsql connection with WAL mode and busy timeout."""
    conn = libsql.connect(path)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    return conn


async def connect(local_path_override: Path | None = None) -> Database:
    """Open the primary store and make sure the schema exists.

    If *local_path_override* is given (test isolation), it takes priority.
    Otherwise, ``TURSO_DATABASE_URL`` triggers a remote connection, and
    ``database_path`` falls back to a local file.
    """
    if local_path_override:
        local_path_override.parent.mkdir(parents=True, exist_ok=True)
        conn = await asyncio.to_thread(_open_local, str(local_path_override))
    elif settings.turso_database_url:
        conn = await asyncio.to_thread(
            libsql.connect,
            database=settings.turso_database_url,
            auth_token=settings.turso_auth_token,
        )
    else:
        settings.database_path.parent.mkdir(parents=True, exist_ok=True)
        conn = await asyncio.to_thread(_open_local, str(settings.database_path))

    db = Database(conn)
    await db.init_schema()
    return db
