"""Tests for prompt assembly."""

from datetime import UTC, datetime

from src.llm.prompt import (
    BASE_INSTRUCTIONS,
    MAX_FILE_CHARS,
    build_messages,
    format_memories,
    render_attachments,
    sanitize,
)
from src.storage.models import Memory

NOW = datetime(2026, 10, 19, 9, 30, tzinfo=UTC)
HISTORY = [
    {"role": "user", "content": "Hi"},
    {"role": "assistant", "content": "Hello!"},
    {"role": "user", "content": "What's new in Python?"},
]


def _memory(content: str, importance: int = 7) -> Memory:
    return Memory(owner_user_id="user_1", content=content, category="fact", importance_score=importance)


def test_no_grounding_no_memories() -> None:
    messages = build_messages(HISTORY, memories=[], web_context=None, now=NOW)

    system = [m for m in messages if m["role"] == "system"]
    assert len(system) == 1
    assert messages[0]["role"] == "system"
    assert messages[1:] == HISTORY


def test_base_instruction_is_timestamped() -> None:
    messages = build_messages(HISTORY, now=NOW)
    assert "October 19, 2026" in messages[0]["content"]
    assert BASE_INSTRUCTIONS["en"] in messages[0]["content"]


def test_locale_selects_instruction() -> None:
    messages = build_messages(HISTORY, locale="ja", now=NOW)
    assert BASE_INSTRUCTIONS["ja"] in messages[0]["content"]


def test_unknown_locale_falls_back_to_english() -> None:
    messages = build_messages(HISTORY, locale="xx", now=NOW)
    assert BASE_INSTRUCTIONS["en"] in messages[0]["content"]


def test_system_prompt_override() -> None:
    messages = build_messages(HISTORY, system_prompt="You are a pirate.", now=NOW)
    assert "You are a pirate." in messages[0]["content"]
    assert BASE_INSTRUCTIONS["en"] not in messages[0]["content"]


def test_memory_block_follows_base_instruction() -> None:
    messages = build_messages(HISTORY, memories=[_memory("Prefers Rust")], now=NOW)
    assert messages[1]["role"] == "system"
    assert "Prefers Rust" in messages[1]["content"]
    assert messages[2:] == HISTORY


def test_web_context_is_last() -> None:
    messages = build_messages(
        HISTORY,
        memories=[_memory("Prefers Rust")],
        web_context="Web search results (latest information):\n\n[1] ...",
        now=NOW,
    )
    assert messages[-1]["role"] == "system"
    assert messages[-1]["content"].startswith("Web search results")
    assert messages[-2] == HISTORY[-1]
    assert len(messages) == len(HISTORY) + 3


def test_history_is_copied_verbatim() -> None:
    history = [{"role": "user", "content": "  spaced  \n"}]
    messages = build_messages(history, now=NOW)
    assert messages[-1] == {"role": "user", "content": "  spaced  \n"}


def test_format_memories() -> None:
    text = format_memories([_memory("Prefers Rust", 9), _memory("Has a cat", 6)])
    assert "1. [fact] Prefers Rust (importance: 9/10)" in text
    assert "2. [fact] Has a cat" in text
    assert format_memories([]) == ""


# -- Attachments -------------------------------------------------------------


def test_attachments_appended_to_last_user_message() -> None:
    attachments = {"files": [{"name": "notes.txt", "content": "file body"}], "images": ["data:..."]}
    messages = build_messages(HISTORY, attachments=attachments, now=NOW)
    last = messages[-1]["content"]
    assert last.startswith("What's new in Python?")
    assert "[File: notes.txt]\nfile body" in last
    assert "1 image(s) attached" in last


def test_attachment_files_are_clipped() -> None:
    text = render_attachments({"files": [{"name": "big", "content": "x" * (MAX_FILE_CHARS + 10)}]})
    assert text.count("x") == MAX_FILE_CHARS


def test_no_attachments_renders_nothing() -> None:
    assert render_attachments(None) == ""
    assert render_attachments({"files": [], "images": []}) == ""


def test_sanitize_strips_control_characters() -> None:
    assert sanitize("a\x00b\x07c\nd\te\x7f") == "abc\nd\te"
