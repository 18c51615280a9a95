"""Tests for post-turn memory extraction."""

import json
from unittest.mock import AsyncMock, patch

from src.memory.extraction import (
    ExtractionResult,
    build_extraction_prompt,
    extract_and_save,
    parse_extraction_result,
)

# -- build_extraction_prompt -------------------------------------------------


def test_prompt_includes_exchange() -> None:
    prompt = build_extraction_prompt(
        user_message="I love coffee",
        assistant_response="Good to know!",
        recent_history=[],
    )
    assert "I love coffee" in prompt
    assert "Good to know!" in prompt
    assert "<user>" in prompt
    assert "<assistant>" in prompt


def test_prompt_includes_recent_history() -> None:
    history = [
        {"role": "user", "content": "Earlier message"},
        {"role": "assistant", "content": "Earlier reply"},
    ]
    prompt = build_extraction_prompt("new msg", "new reply", history)
    assert "Earlier message" in prompt
    assert "<recent_history>" in prompt


def test_prompt_history_window() -> None:
    history = [{"role": "user", "content": f"msg {i}"} for i in range(10)]
    prompt = build_extraction_prompt("new", "reply", history)
    assert "msg 3" not in prompt
    assert "msg 4" in prompt


def test_prompt_empty_history() -> None:
    prompt = build_extraction_prompt("hello", "hi", [])
    assert "<recent_history>" not in prompt


# -- parse_extraction_result -------------------------------------------------


def test_parse_numeric_and_word_importance() -> None:
    raw = json.dumps(
        {
            "memories": [
                {"content": "Likes coffee", "category": "preference", "importance": 6},
                {"content": "Lives in NYC", "category": "fact", "importance": "high"},
                {"content": "Way off scale", "importance": 50},
            ]
        }
    )
    result = parse_extraction_result(raw)
    assert [m.importance for m in result.memories] == [6, 8, 10]
    assert result.memories[2].category == "general"


def test_parse_invalid_json_returns_empty() -> None:
    result = parse_extraction_result("not valid json at all")
    assert isinstance(result, ExtractionResult)
    assert len(result.memories) == 0


def test_parse_json_in_markdown_fences() -> None:
    inner = json.dumps({"memories": [{"content": "test", "category": "fact", "importance": 7}]})
    result = parse_extraction_result(f"```json\n{inner}\n```")
    assert len(result.memories) == 1


def test_parse_skips_empty_content() -> None:
    raw = json.dumps(
        {
            "memories": [
                {"content": "", "category": "fact", "importance": 9},
                {"content": "Real memory", "category": "fact", "importance": 9},
            ]
        }
    )
    result = parse_extraction_result(raw)
    assert len(result.memories) == 1


# -- extract_and_save --------------------------------------------------------


async def test_extract_saves_important_memories_only(memory_gateway) -> None:
    response_json = json.dumps(
        {
            "memories": [
                {"content": "Important fact", "category": "fact", "importance": 9},
                {"content": "Useful detail", "category": "preference", "importance": "medium"},
                {"content": "Trivial thing", "category": "general", "importance": 2},
            ]
        }
    )

    with (
        patch("src.llm.client.complete_text", new_callable=AsyncMock, return_value=response_json),
        patch("src.llm.client.enabled", return_value=True),
        patch("src.memory.extraction.settings") as mock_settings,
    ):
        mock_settings.memory_extraction_enabled = True
        saved = await extract_and_save(memory_gateway, "user_1", "conv_1", "hello", "hi", [])

    assert saved == 2
    memories = await memory_gateway.list_memories("user_1")
    assert [m.content for m in memories] == ["Important fact", "Useful detail"]
    assert memories[0].importance_score == 9


async def test_extract_skips_known_memories(memory_gateway) -> None:
    await memory_gateway.create_memory("user_1", "Lives in Berlin", importance_score=7)
    response_json = json.dumps(
        {"memories": [{"content": "lives in berlin", "category": "fact", "importance": 7}]}
    )

    with (
        patch("src.llm.client.complete_text", new_callable=AsyncMock, return_value=response_json),
        patch("src.llm.client.enabled", return_value=True),
        patch("src.memory.extraction.settings") as mock_settings,
    ):
        mock_settings.memory_extraction_enabled = True
        saved = await extract_and_save(memory_gateway, "user_1", "conv_1", "hi", "hello", [])

    assert saved == 0


async def test_extract_disabled_is_noop(memory_gateway) -> None:
    with (
        patch("src.llm.client.complete_text", new_callable=AsyncMock) as mock_complete,
        patch("src.memory.extraction.settings") as mock_settings,
    ):
        mock_settings.memory_extraction_enabled = False
        assert await extract_and_save(memory_gateway, "user_1", "conv_1", "a", "b", []) == 0

    mock_complete.assert_not_awaited()


async def test_extract_without_anthropic_key_is_noop(memory_gateway, monkeypatch) -> None:
    monkeypatch.setattr("src.config.settings.anthropic_api_key", "")
    with patch("src.llm.client.complete_text", new_callable=AsyncMock) as mock_complete:
        assert await extract_and_save(memory_gateway, "user_1", "conv_1", "a", "b", []) == 0
    mock_complete.assert_not_awaited()
