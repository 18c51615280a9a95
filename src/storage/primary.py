"""PrimaryStore: SQL CRUD for chat records via libsql.

Every method may raise whatever the driver raises; the gateway treats any
exception from here as the primary being unreachable.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from src.storage.models import Conversation, Memory, Message, Reference, User

if TYPE_CHECKING:
    from src.db import Database

logger = logging.getLogger(__name__)

_USER_COLUMNS = (
    "id, email, credential_hash, display_name, phone, bio, avatar_ref, created_at, updated_at"
)
_CONVERSATION_COLUMNS = "id, title, owner_user_id, created_at, updated_at"
_MESSAGE_COLUMNS = "id, conversation_id, role, content, created_at"
_MEMORY_COLUMNS = (
    "id, owner_user_id, content, category, importance_score, created_at, updated_at"
)
_REFERENCE_COLUMNS = (
    "message_id, display_order, url, title, snippet, source_label, published_at"
)


class PrimaryStore:
    """Durable tier of the persistence gateway."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def close(self) -> None:
        await self._db.close()

    # -- Users -----------------------------------------------------------------

    async def insert_user(self, user: User) -> None:
        await self._db.write(
            f"INSERT INTO users ({_USER_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            user.to_row(),
        )

    async def get_user(self, user_id: str) -> User | None:
        row = await self._db.fetchone(
            f"SELECT {_USER_COLUMNS} FROM users WHERE id = ?", (user_id,)
        )
        return User.from_row(row) if row else None

    async def get_user_by_email(self, email: str) -> User | None:
        row = await self._db.fetchone(
            f"SELECT {_USER_COLUMNS} FROM users WHERE email = ?", (email,)
        )
        return User.from_row(row) if row else None

    async def save_user(self, user: User) -> None:
        await self._db.write(
            f"INSERT OR REPLACE INTO users ({_USER_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            user.to_row(),
        )

    # -- Conversations ---------------------------------------------------------

    async def insert_conversation(self, conversation: Conversation) -> None:
        await self._db.write(
            f"INSERT INTO conversations ({_CONVERSATION_COLUMNS}) VALUES (?, ?, ?, ?, ?)",
            conversation.to_row(),
        )

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        row = await self._db.fetchone(
            f"SELECT {_CONVERSATION_COLUMNS} FROM conversations WHERE id = ?",
            (conversation_id,),
        )
        return Conversation.from_row(row) if row else None

    async def list_conversations(self, user_id: str, limit: int) -> list[Conversation]:
        rows = await self._db.fetchall(
            f"""
            SELECT {_CONVERSATION_COLUMNS} FROM conversations
            WHERE owner_user_id = ?
            ORDER BY updated_at DESC
            LIMIT ?
            """,
            (user_id, limit),
        )
        return [Conversation.from_row(row) for row in rows]

    async def save_conversation(self, conversation: Conversation) -> None:
        await self._db.write(
            f"INSERT OR REPLACE INTO conversations ({_CONVERSATION_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?)",
            conversation.to_row(),
        )

    # -- Messages --------------------------------------------------------------

    async def insert_message(self, message: Message) -> None:
        await self._db.write(
            f"INSERT INTO messages ({_MESSAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?)",
            message.to_row(),
        )

    async def list_messages(self, conversation_id: str) -> list[Message]:
        rows = await self._db.fetchall(
            f"""
            SELECT {_MESSAGE_COLUMNS} FROM messages
            WHERE conversation_id = ?
            ORDER BY created_at ASC, rowid ASC
            """,
            (conversation_id,),
        )
        return [Message.from_row(row) for row in rows]

    # -- Memories --------------------------------------------------------------

    async def insert_memory(self, memory: Memory) -> None:
        await self._db.write(
            f"INSERT INTO memories ({_MEMORY_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
            memory.to_row(),
        )

    async def list_memories(self, user_id: str) -> list[Memory]:
        rows = await self._db.fetchall(
            f"SELECT {_MEMORY_COLUMNS} FROM memories WHERE owner_user_id = ?",
            (user_id,),
        )
        return [Memory.from_row(row) for row in rows]

    async def delete_memories(self, user_id: str) -> int:
        return await self._db.write(
            "DELETE FROM memories WHERE owner_user_id = ?", (user_id,)
        )

    # -- References ------------------------------------------------------------

    async def insert_references(self, references: list[Reference]) -> None:
        for ref in references:
            await self._db.write(
                f"INSERT INTO message_references ({_REFERENCE_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                ref.to_row(),
            )

    async def list_references(self, message_id: str) -> list[Reference]:
        rows = await self._db.fetchall(
            f"""
            SELECT {_REFERENCE_COLUMNS} FROM message_references
            WHERE message_id = ?
            ORDER BY display_order ASC
            """,
            (message_id,),
        )
        return [Reference.from_row(row) for row in rows]
