"""Dual-tier persistence: a durable primary store plus an in-memory fallback.

Writes go to the primary first and are always mirrored into the fallback.
The first primary error of any kind flips a process-wide "unreachable" flag;
from then on every operation is served by the fallback alone and the primary
is not retried (unless ``reprobe_seconds`` is set, see below). Reads check
the fallback first and back-fill it from the primary on a miss. While the
primary is healthy the mirrored conversations and messages are capped at
``mirror_limit`` each, oldest dropped first.

Primary failures are never raised to callers. The only errors that escape
are domain errors such as ``DuplicateRecord``; "not found" is ``None``.

Re-probing: with ``reprobe_seconds > 0`` the primary is tried again once that
long has passed since it was marked unreachable. Records written to the
fallback in the meantime are not copied back.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any, TypeVar

from src import db
from src.errors import DuplicateRecord
from src.storage.fallback import FallbackStore
from src.storage.models import Conversation, Memory, Message, Reference, User, utc_now
from src.storage.primary import PrimaryStore

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable
    from pathlib import Path

logger = logging.getLogger(__name__)

T = TypeVar("T")

_USER_PATCH_FIELDS = {"display_name", "phone", "bio", "avatar_ref"}


class PersistenceGateway:
    """Single entry point for users, conversations, messages, memories and references."""

    def __init__(
        self,
        primary: PrimaryStore | None,
        fallback: FallbackStore | None = None,
        reprobe_seconds: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
        mirror_limit: int = 5000,
    ) -> None:
        self._primary = primary
        self.fallback = fallback or FallbackStore()
        self._reprobe_seconds = reprobe_seconds
        self._mirror_limit = mirror_limit
        self._clock = clock
        self._unreachable_since: float | None = None

    @classmethod
    async def open(
        cls,
        enabled: bool = True,
        reprobe_seconds: float = 0.0,
        local_path_override: Path | None = None,
        mirror_limit: int = 5000,
    ) -> PersistenceGateway:
        """Connect to the primary store, degrading to fallback-only on failure."""
        if not enabled:
            logger.warning("Primary store disabled; using in-memory storage only")
            return cls(primary=None, reprobe_seconds=reprobe_seconds)

        try:
            database = await db.connect(local_path_override=local_path_override)
        except Exception as exc:
            logger.warning("Primary store connection failed, using in-memory storage: %s", exc)
            return cls(primary=None, reprobe_seconds=reprobe_seconds)

        logger.info("Primary store connected")
        return cls(
            primary=PrimaryStore(database),
            reprobe_seconds=reprobe_seconds,
            mirror_limit=mirror_limit,
        )

    async def close(self) -> None:
        if self._primary is None:
            return
        try:
            await self._primary.close()
        except Exception as exc:
            logger.warning("Primary store close failed: %s", exc)

    # -- Primary health --------------------------------------------------------

    @property
    def primary_available(self) -> bool:
        if self._primary is None:
            return False
        if self._unreachable_since is None:
            return True
        if self._reprobe_seconds > 0 and (
            self._clock() - self._unreachable_since >= self._reprobe_seconds
        ):
            logger.info("Re-probing primary store")
            self._unreachable_since = None
            return True
        return False

    def mark_unreachable(self, operation: str, exc: BaseException) -> None:
        if self._unreachable_since is None:
            logger.warning(
                "Primary store failed during %s, switching to in-memory storage: %s",
                operation,
                exc,
            )
        self._unreachable_since = self._clock()

    async def _attempt(
        self, operation: str, call: Callable[[PrimaryStore], Awaitable[T]]
    ) -> tuple[bool, T | None]:
        """Run *call* against the primary. Returns (succeeded, result)."""
        if not self.primary_available:
            return False, None
        try:
            return True, await call(self._primary)
        except Exception as exc:
            self.mark_unreachable(operation, exc)
            return False, None

    # -- Users -----------------------------------------------------------------

    async def create_user(
        self,
        email: str,
        credential_hash: str,
        display_name: str = "",
        phone: str | None = None,
        bio: str | None = None,
        avatar_ref: str | None = None,
    ) -> User:
        if await self.find_user_by_email(email) is not None:
            raise DuplicateRecord(f"user with email {email} already exists")

        user = User(
            email=email,
            credential_hash=credential_hash,
            display_name=display_name,
            phone=phone,
            bio=bio,
            avatar_ref=avatar_ref,
        )
        await self._attempt("create_user", lambda p: p.insert_user(user))
        self.fallback.put_user(user)
        return user

    async def find_user_by_id(self, user_id: str) -> User | None:
        cached = self.fallback.users.get(user_id)
        if cached is not None:
            return cached
        _, user = await self._attempt("find_user_by_id", lambda p: p.get_user(user_id))
        if user is not None:
            self.fallback.put_user(user)
        return user

    async def find_user_by_email(self, email: str) -> User | None:
        cached = self.fallback.user_by_email(email)
        if cached is not None:
            return cached
        _, user = await self._attempt(
            "find_user_by_email", lambda p: p.get_user_by_email(email)
        )
        if user is not None:
            self.fallback.put_user(user)
        return user

    async def update_user(self, user_id: str, patch: dict[str, Any]) -> User | None:
        """Apply a profile patch. Unknown keys are ignored."""
        user = await self.find_user_by_id(user_id)
        if user is None:
            return None
        changes = {k: v for k, v in patch.items() if k in _USER_PATCH_FIELDS}
        updated = user.model_copy(update={**changes, "updated_at": utc_now()})
        await self._attempt("update_user", lambda p: p.save_user(updated))
        self.fallback.put_user(updated)
        return updated

    async def update_user_password(self, user_id: str, credential_hash: str) -> bool:
        user = await self.find_user_by_id(user_id)
        if user is None:
            return False
        updated = user.model_copy(
            update={"credential_hash": credential_hash, "updated_at": utc_now()}
        )
        await self._attempt("update_user_password", lambda p: p.save_user(updated))
        self.fallback.put_user(updated)
        return True

    # -- Conversations ---------------------------------------------------------

    async def create_conversation(self, owner_user_id: str, title: str) -> Conversation:
        conversation = Conversation(title=title, owner_user_id=owner_user_id)
        await self._attempt(
            "create_conversation", lambda p: p.insert_conversation(conversation)
        )
        self.fallback.put_conversation(conversation)
        self._trim_mirror()
        return conversation

    async def find_conversation(self, conversation_id: str) -> Conversation | None:
        cached = self.fallback.conversations.get(conversation_id)
        if cached is not None:
            return cached
        _, conversation = await self._attempt(
            "find_conversation", lambda p: p.get_conversation(conversation_id)
        )
        if conversation is not None:
            self.fallback.put_conversation(conversation)
            self._trim_mirror()
        return conversation

    async def list_conversations(self, user_id: str, limit: int = 50) -> list[Conversation]:
        ok, rows = await self._attempt(
            "list_conversations", lambda p: p.list_conversations(user_id, limit)
        )
        if ok:
            self._backfill(self.fallback.put_conversation, rows)
        conversations = self.fallback.conversations_for(user_id)[:limit]
        self._trim_mirror()
        return conversations

    async def update_conversation_title(
        self, conversation_id: str, title: str
    ) -> Conversation | None:
        conversation = await self.find_conversation(conversation_id)
        if conversation is None:
            return None
        updated = conversation.model_copy(update={"title": title, "updated_at": utc_now()})
        await self._attempt(
            "update_conversation_title", lambda p: p.save_conversation(updated)
        )
        self.fallback.put_conversation(updated)
        return updated

    # -- Messages --------------------------------------------------------------

    async def create_message(self, conversation_id: str, role: str, content: str) -> Message:
        message = Message(conversation_id=conversation_id, role=role, content=content)
        await self._attempt("create_message", lambda p: p.insert_message(message))
        self.fallback.put_message(message)
        self._trim_mirror()
        return message

    async def list_messages(self, conversation_id: str) -> list[Message]:
        ok, rows = await self._attempt(
            "list_messages", lambda p: p.list_messages(conversation_id)
        )
        if ok:
            self._backfill(self.fallback.put_message, rows)
        messages = self.fallback.messages_for(conversation_id)
        self._trim_mirror()
        return messages

    # -- Memories --------------------------------------------------------------

    async def create_memory(
        self,
        owner_user_id: str,
        content: str,
        category: str = "general",
        importance_score: int = 5,
    ) -> Memory:
        memory = Memory(
            owner_user_id=owner_user_id,
            content=content,
            category=category,
            importance_score=max(1, min(10, importance_score)),
        )
        await self._attempt("create_memory", lambda p: p.insert_memory(memory))
        self.fallback.put_memory(memory)
        return memory

    async def list_memories(self, user_id: str) -> list[Memory]:
        """All memories for a user, highest importance first, then newest."""
        ok, rows = await self._attempt("list_memories", lambda p: p.list_memories(user_id))
        if ok:
            self._backfill(self.fallback.put_memory, rows)
        memories = self.fallback.memories_for(user_id)
        memories.sort(key=lambda m: (m.importance_score, m.created_at), reverse=True)
        return memories

    async def clear_memories(self, user_id: str) -> int:
        await self._attempt("clear_memories", lambda p: p.delete_memories(user_id))
        return self.fallback.drop_memories(user_id)

    # -- References ------------------------------------------------------------

    async def create_references(
        self, message_id: str, sources: Iterable[dict[str, Any]]
    ) -> list[Reference]:
        """Store the references for one message, numbered 0..N-1 in the given order."""
        references = [
            Reference(
                message_id=message_id,
                url=source["url"],
                title=source.get("title") or source["url"],
                snippet=source.get("snippet"),
                source_label=source.get("source_label") or source.get("source") or "web",
                published_at=source.get("published_at"),
                display_order=order,
            )
            for order, source in enumerate(sources)
        ]
        if not references:
            return []
        await self._attempt("create_references", lambda p: p.insert_references(references))
        self.fallback.put_references(message_id, references)
        return references

    async def list_references(self, message_id: str) -> list[Reference]:
        cached = self.fallback.references_for(message_id)
        if cached:
            return cached
        _, rows = await self._attempt(
            "list_references", lambda p: p.list_references(message_id)
        )
        if rows:
            self.fallback.put_references(message_id, rows)
        return self.fallback.references_for(message_id)

    # -- Stats -----------------------------------------------------------------

    def stats(self) -> dict[str, Any]:
        return {**self.fallback.stats(), "primaryAvailable": self.primary_available}

    # -- Helpers ---------------------------------------------------------------

    def _trim_mirror(self) -> None:
        if self._primary is None or self._unreachable_since is not None:
            return
        dropped = self.fallback.trim(self._mirror_limit)
        if dropped:
            logger.debug("Trimmed %d records from the in-memory mirror", dropped)

    @staticmethod
    def _backfill(put: Callable[[Any], None], rows: list[Any] | None) -> None:
        for row in rows or []:
            put(row)
