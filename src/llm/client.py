"""Auxiliary Claude calls: conversation titles and memory extraction."""

from __future__ import annotations

import logging
from typing import Any

import anthropic

from src.config import settings

logger = logging.getLogger(__name__)

_client: anthropic.AsyncAnthropic | None = None

TITLE_SYSTEM_PROMPT = (
    "You write conversation titles. Given the user's first message, reply with "
    "a concise title of at most 20 words. Return only the title text, with no "
    "explanation, quotes or trailing punctuation."
)


def _get_client() -> anthropic.AsyncAnthropic:
    """Lazily initialize the Anthropic client."""
    global _client  # noqa: PLW0603
    if _client is None:
        _client = anthropic.AsyncAnthropic(api_key=settings.anthropic_api_key)
    return _client


def enabled() -> bool:
    return bool(settings.anthropic_api_key)


async def complete_text(
    messages: list[dict[str, Any]],
    *,
    system: str | None = None,
    model: str | None = None,
    max_tokens: int = 1024,
) -> str:
    """Single-shot Claude call, no streaming and no tools.

    Used for isolated side tasks (titles, extraction) that must never
    compete with the chat provider's stream.
    """
    client = _get_client()
    kwargs: dict[str, Any] = {
        "model": model or settings.memory_extraction_model,
        "max_tokens": max_tokens,
        "messages": messages,
    }
    if system is not None:
        kwargs["system"] = system
    response = await client.messages.create(**kwargs)
    return response.content[0].text


def clean_title(raw: str, max_words: int = 20) -> str:
    """Strip quotes and trailing punctuation, cap the word count."""
    title = raw.strip().splitlines()[0] if raw.strip() else ""
    title = title.strip().strip("\"'“”「」").rstrip("。.!?！？").strip()
    words = title.split()
    if len(words) > max_words:
        title = " ".join(words[:max_words])
    return title


async def generate_title(first_message: str) -> str | None:
    """Ask Claude for a short title. Returns None when disabled or empty."""
    if not enabled() or not first_message.strip():
        return None
    raw = await complete_text(
        [{"role": "user", "content": first_message[:2000]}],
        system=TITLE_SYSTEM_PROMPT,
        max_tokens=60,
    )
    return clean_title(raw) or None
