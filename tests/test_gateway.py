"""Tests for the persistence gateway (primary + in-memory fallback)."""

from unittest.mock import AsyncMock

import pytest
from pydantic import ValidationError

from src.errors import DuplicateRecord
from src.storage.gateway import PersistenceGateway
from src.storage.models import Conversation, Message, new_id
from src.storage.primary import PrimaryStore

# -- Helpers -----------------------------------------------------------------


def _broken_primary() -> AsyncMock:
    """A primary store whose every call fails like a dropped connection."""
    primary = AsyncMock(spec=PrimaryStore)
    for name in (
        "insert_user",
        "get_user",
        "get_user_by_email",
        "insert_conversation",
        "get_conversation",
        "list_conversations",
        "insert_message",
        "list_messages",
        "insert_memory",
        "list_memories",
        "delete_memories",
        "insert_references",
        "list_references",
    ):
        getattr(primary, name).side_effect = ConnectionError("primary down")
    return primary


# -- IDs ---------------------------------------------------------------------


def test_new_id_format() -> None:
    record_id = new_id("msg")
    prefix, stamp, rand = record_id.split("_")
    assert prefix == "msg"
    assert stamp.isalnum()
    assert len(rand) == 9


def test_new_ids_are_unique() -> None:
    assert len({new_id("conv") for _ in range(200)}) == 200


# -- Fallback-only gateway ---------------------------------------------------


async def test_open_disabled_uses_fallback_only() -> None:
    gateway = await PersistenceGateway.open(enabled=False)
    assert gateway.primary_available is False
    conversation = await gateway.create_conversation("user_1", "Hello")
    assert await gateway.find_conversation(conversation.id) == conversation


async def test_open_falls_back_when_connect_fails(monkeypatch) -> None:
    monkeypatch.setattr(
        "src.storage.gateway.db.connect", AsyncMock(side_effect=OSError("unreachable"))
    )
    gateway = await PersistenceGateway.open()
    assert gateway.primary_available is False
    assert gateway.stats()["primaryAvailable"] is False


async def test_messages_ordered_by_creation(memory_gateway) -> None:
    first = await memory_gateway.create_message("conv_1", "user", "hi")
    second = await memory_gateway.create_message("conv_1", "assistant", "hello")
    await memory_gateway.create_message("conv_2", "user", "elsewhere")

    messages = await memory_gateway.list_messages("conv_1")
    assert [m.id for m in messages] == [first.id, second.id]


async def test_message_is_immutable(memory_gateway) -> None:
    message = await memory_gateway.create_message("conv_1", "user", "hi")
    with pytest.raises(ValidationError):
        message.content = "changed"


async def test_conversation_title_update(memory_gateway) -> None:
    conversation = await memory_gateway.create_conversation("user_1", "Draft")
    updated = await memory_gateway.update_conversation_title(conversation.id, "Final title")
    assert updated.title == "Final title"
    assert (await memory_gateway.find_conversation(conversation.id)).title == "Final title"


async def test_update_title_of_missing_conversation(memory_gateway) -> None:
    assert await memory_gateway.update_conversation_title("conv_missing", "x") is None


async def test_list_conversations_scoped_to_owner(memory_gateway) -> None:
    await memory_gateway.create_conversation("user_1", "Mine")
    await memory_gateway.create_conversation("user_2", "Theirs")
    conversations = await memory_gateway.list_conversations("user_1")
    assert [c.title for c in conversations] == ["Mine"]


async def test_memories_sorted_by_importance(memory_gateway) -> None:
    await memory_gateway.create_memory("user_1", "low", importance_score=2)
    await memory_gateway.create_memory("user_1", "high", importance_score=9)
    await memory_gateway.create_memory("user_1", "clamped", importance_score=42)

    memories = await memory_gateway.list_memories("user_1")
    assert [m.content for m in memories] == ["clamped", "high", "low"]
    assert memories[0].importance_score == 10


async def test_clear_memories(memory_gateway) -> None:
    await memory_gateway.create_memory("user_1", "a")
    await memory_gateway.create_memory("user_2", "b")
    assert await memory_gateway.clear_memories("user_1") == 1
    assert await memory_gateway.list_memories("user_1") == []
    assert len(await memory_gateway.list_memories("user_2")) == 1


async def test_references_numbered_in_order(memory_gateway) -> None:
    sources = [
        {"url": "https://a.example", "title": "A", "source": "tavily"},
        {"url": "https://b.example", "title": "B", "source_label": "brave"},
    ]
    created = await memory_gateway.create_references("msg_1", sources)
    assert [r.display_order for r in created] == [0, 1]

    listed = await memory_gateway.list_references("msg_1")
    assert [r.url for r in listed] == ["https://a.example", "https://b.example"]
    assert listed[0].source_label == "tavily"
    assert listed[1].source_label == "brave"


async def test_no_references_written_for_empty_sources(memory_gateway) -> None:
    assert await memory_gateway.create_references("msg_1", []) == []
    assert memory_gateway.stats()["references"] == 0


# -- Users -------------------------------------------------------------------


async def test_create_and_find_user(memory_gateway) -> None:
    user = await memory_gateway.create_user("a@example.com", "hash", display_name="Ann")
    assert await memory_gateway.find_user_by_id(user.id) == user
    assert await memory_gateway.find_user_by_email("a@example.com") == user


async def test_duplicate_email_rejected(memory_gateway) -> None:
    await memory_gateway.create_user("a@example.com", "hash")
    with pytest.raises(DuplicateRecord):
        await memory_gateway.create_user("a@example.com", "other")


async def test_update_user_applies_known_fields_only(memory_gateway) -> None:
    user = await memory_gateway.create_user("a@example.com", "hash")
    updated = await memory_gateway.update_user(
        user.id, {"display_name": "Ann", "bio": "Hi", "email": "evil@example.com"}
    )
    assert updated.display_name == "Ann"
    assert updated.bio == "Hi"
    assert updated.email == "a@example.com"


async def test_update_missing_user(memory_gateway) -> None:
    assert await memory_gateway.update_user("user_missing", {"bio": "x"}) is None
    assert await memory_gateway.update_user_password("user_missing", "h") is False


async def test_update_user_password(memory_gateway) -> None:
    user = await memory_gateway.create_user("a@example.com", "old")
    assert await memory_gateway.update_user_password(user.id, "new") is True
    assert (await memory_gateway.find_user_by_id(user.id)).credential_hash == "new"


# -- Primary failure ---------------------------------------------------------


async def test_primary_failure_is_never_surfaced() -> None:
    primary = _broken_primary()
    gateway = PersistenceGateway(primary=primary)

    message = await gateway.create_message("conv_1", "user", "hello")

    assert gateway.primary_available is False
    assert await gateway.list_messages("conv_1") == [message]


async def test_primary_not_retried_once_unreachable() -> None:
    primary = _broken_primary()
    gateway = PersistenceGateway(primary=primary)

    await gateway.create_message("conv_1", "user", "one")
    await gateway.create_message("conv_1", "user", "two")
    await gateway.list_messages("conv_1")

    assert primary.insert_message.await_count == 1
    primary.list_messages.assert_not_awaited()


async def test_reprobe_after_interval(clock) -> None:
    primary = _broken_primary()
    gateway = PersistenceGateway(primary=primary, reprobe_seconds=30, clock=clock)

    await gateway.create_message("conv_1", "user", "one")
    assert gateway.primary_available is False

    clock.advance(31)
    primary.insert_message.side_effect = None
    await gateway.create_message("conv_1", "user", "two")

    assert primary.insert_message.await_count == 2
    assert gateway.primary_available is True


async def test_sticky_without_reprobe(clock) -> None:
    gateway = PersistenceGateway(primary=_broken_primary(), clock=clock)
    await gateway.create_message("conv_1", "user", "one")
    clock.advance(10_000)
    assert gateway.primary_available is False


async def test_read_miss_backfills_from_primary() -> None:
    primary = AsyncMock(spec=PrimaryStore)
    stored = Conversation(title="From disk", owner_user_id="user_1")
    primary.get_conversation.return_value = stored
    gateway = PersistenceGateway(primary=primary)

    assert await gateway.find_conversation(stored.id) == stored
    assert await gateway.find_conversation(stored.id) == stored
    primary.get_conversation.assert_awaited_once()


async def test_writes_mirror_into_fallback() -> None:
    primary = AsyncMock(spec=PrimaryStore)
    gateway = PersistenceGateway(primary=primary)

    message = await gateway.create_message("conv_1", "user", "hi")

    primary.insert_message.assert_awaited_once_with(message)
    assert gateway.fallback.messages[message.id] == message


async def test_mirror_is_capped_while_primary_healthy() -> None:
    primary = AsyncMock(spec=PrimaryStore)
    gateway = PersistenceGateway(primary=primary, mirror_limit=2)

    first = await gateway.create_message("conv_1", "user", "one")
    await gateway.create_references(first.id, [{"url": "https://a.example", "title": "A"}])
    await gateway.create_message("conv_1", "assistant", "two")
    third = await gateway.create_message("conv_1", "user", "three")

    assert len(gateway.fallback.messages) == 2
    assert first.id not in gateway.fallback.messages
    assert gateway.fallback.references_for(first.id) == []
    assert third.id in gateway.fallback.messages


async def test_mirror_is_not_capped_once_primary_unreachable() -> None:
    gateway = PersistenceGateway(primary=_broken_primary(), mirror_limit=2)

    for text in ("one", "two", "three"):
        await gateway.create_message("conv_1", "user", text)

    assert [m.content for m in await gateway.list_messages("conv_1")] == ["one", "two", "three"]


# -- Real libsql primary -----------------------------------------------------


async def test_sqlite_round_trip_across_fallback_reset(sqlite_gateway) -> None:
    conversation = await sqlite_gateway.create_conversation("user_1", "Persisted")
    user_msg = await sqlite_gateway.create_message(conversation.id, "user", "question")
    reply = await sqlite_gateway.create_message(conversation.id, "assistant", "answer")
    await sqlite_gateway.create_references(
        reply.id, [{"url": "https://a.example", "title": "A", "source": "tavily"}]
    )

    sqlite_gateway.fallback.clear()

    assert (await sqlite_gateway.find_conversation(conversation.id)).title == "Persisted"
    messages = await sqlite_gateway.list_messages(conversation.id)
    assert [m.id for m in messages] == [user_msg.id, reply.id]
    assert isinstance(messages[0], Message)
    references = await sqlite_gateway.list_references(reply.id)
    assert [r.url for r in references] == ["https://a.example"]
    assert sqlite_gateway.primary_available is True


async def test_sqlite_memories_and_users(sqlite_gateway) -> None:
    user = await sqlite_gateway.create_user("b@example.com", "hash")
    await sqlite_gateway.create_memory(user.id, "Likes tea", category="preference")
    sqlite_gateway.fallback.clear()

    assert (await sqlite_gateway.find_user_by_email("b@example.com")).id == user.id
    memories = await sqlite_gateway.list_memories(user.id)
    assert [m.content for m in memories] == ["Likes tea"]

    assert await sqlite_gateway.clear_memories(user.id) == 1
    sqlite_gateway.fallback.clear()
    assert await sqlite_gateway.list_memories(user.id) == []
