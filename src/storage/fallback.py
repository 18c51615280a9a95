"""In-memory tier of the persistence gateway.

Doubles as a bounded read cache while the primary is healthy (the gateway
trims the oldest mirrored conversations and messages) and becomes the only
source of truth once the primary is marked unreachable. Constructed once per
process and injected; lives on the event loop thread so needs no locking.
"""

from __future__ import annotations

from src.storage.models import Conversation, Memory, Message, Reference, User


class FallbackStore:
    """Process-local maps keyed by record ID."""

    def __init__(self) -> None:
        self.users: dict[str, User] = {}
        self.conversations: dict[str, Conversation] = {}
        self.messages: dict[str, Message] = {}
        self.memories: dict[str, Memory] = {}
        self.references: dict[str, list[Reference]] = {}

    # -- Users -----------------------------------------------------------------

    def put_user(self, user: User) -> None:
        self.users[user.id] = user

    def user_by_email(self, email: str) -> User | None:
        for user in self.users.values():
            if user.email == email:
                return user
        return None

    # -- Conversations ---------------------------------------------------------

    def put_conversation(self, conversation: Conversation) -> None:
        self.conversations[conversation.id] = conversation

    def conversations_for(self, user_id: str) -> list[Conversation]:
        """Conversations owned by *user_id*, most recently updated first."""
        owned = [c for c in self.conversations.values() if c.owner_user_id == user_id]
        return sorted(owned, key=lambda c: c.updated_at, reverse=True)

    # -- Messages --------------------------------------------------------------

    def put_message(self, message: Message) -> None:
        self.messages[message.id] = message

    def messages_for(self, conversation_id: str) -> list[Message]:
        """Messages in a conversation, oldest first (insertion order breaks ties)."""
        found = [m for m in self.messages.values() if m.conversation_id == conversation_id]
        return sorted(found, key=lambda m: m.created_at)

    # -- Memories --------------------------------------------------------------

    def put_memory(self, memory: Memory) -> None:
        self.memories[memory.id] = memory

    def memories_for(self, user_id: str) -> list[Memory]:
        return [m for m in self.memories.values() if m.owner_user_id == user_id]

    def drop_memories(self, user_id: str) -> int:
        doomed = [mid for mid, m in self.memories.items() if m.owner_user_id == user_id]
        for mid in doomed:
            del self.memories[mid]
        return len(doomed)

    # -- References ------------------------------------------------------------

    def put_references(self, message_id: str, references: list[Reference]) -> None:
        self.references[message_id] = sorted(references, key=lambda r: r.display_order)

    def references_for(self, message_id: str) -> list[Reference]:
        return list(self.references.get(message_id, []))

    # -- Stats -----------------------------------------------------------------

    def stats(self) -> dict[str, int]:
        return {
            "users": len(self.users),
            "conversations": len(self.conversations),
            "messages": len(self.messages),
            "memories": len(self.memories),
            "references": sum(len(refs) for refs in self.references.values()),
        }

    def trim(self, limit: int) -> int:
        """Drop the oldest mirrored conversations and messages beyond *limit* each.

        Only safe while the primary holds every record. A dropped message takes
        its references with it. Returns the number of records dropped.
        """
        dropped = 0
        while len(self.messages) > limit:
            message_id = next(iter(self.messages))
            del self.messages[message_id]
            self.references.pop(message_id, None)
            dropped += 1
        while len(self.conversations) > limit:
            del self.conversations[next(iter(self.conversations))]
            dropped += 1
        return dropped

    def clear(self) -> None:
        self.users.clear()
        self.conversations.clear()
        self.messages.clear()
        self.memories.clear()
        self.references.clear()
