"""Prompt assembly for a chat turn.

Message order matters: later system content is weighted more heavily by the
model, so the web grounding block always goes last.

1. time/locale-stamped base instruction
2. recalled memories (only when there are any)
3. the client's message history, verbatim
4. web grounding (only when present)
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import TYPE_CHECKING, Any
from zoneinfo import ZoneInfo

from src.config import settings

if TYPE_CHECKING:
    from src.storage.models import Memory

logger = logging.getLogger(__name__)

MAX_FILE_CHARS = 50_000

BASE_INSTRUCTIONS: dict[str, str] = {
    "en": "You are a helpful AI assistant. Respond concisely and accurately.",
    "zh": "你是一个专业的AI助理。用简体中文回答，简洁准确。",
    "ja": "あなたは役立つAIアシスタントです。簡潔かつ正確に回答してください。",
    "ko": "당신은 유용한 AI 어시스턴트입니다. 간결하고 정확하게 답변하세요.",
}

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b-\x1f\x7f-\x9f]")


def sanitize(text: str) -> str:
    """Strip control characters, keeping newlines and tabs."""
    return _CONTROL_CHARS.sub("", text)


def base_instruction(locale: str, now: datetime, override: str | None = None) -> str:
    """Timestamped base system instruction in the requested locale."""
    stamp = f"Current date and time: {now.strftime('%A, %B %d, %Y %H:%M %Z').strip()}"
    text = override or BASE_INSTRUCTIONS.get(locale, BASE_INSTRUCTIONS["en"])
    return f"{stamp}.\n\n{text}"


def format_memories(memories: list[Memory]) -> str:
    """Format recalled memories for injection as a system message."""
    if not memories:
        return ""
    lines = ["Relevant things you remember about this user:"]
    for i, memory in enumerate(memories, start=1):
        lines.append(
            f"{i}. [{memory.category}] {memory.content} "
            f"(importance: {memory.importance_score}/10)"
        )
    lines.append("")
    lines.append("Use these to personalise your answer where they are relevant.")
    return "\n".join(lines)


def render_attachments(attachments: dict[str, Any] | None) -> str:
    """Text to append to the last user message for uploaded files and images."""
    if not attachments:
        return ""
    parts = []
    for f in attachments.get("files") or []:
        name = f.get("name") or "file"
        content = (f.get("content") or "")[:MAX_FILE_CHARS]
        parts.append(f"[File: {name}]\n{content}")
    images = attachments.get("images") or []
    if images:
        parts.append(
            f"[{len(images)} image(s) attached; image analysis is unavailable here]"
        )
    return "\n\n".join(parts)


def build_messages(
    history: list[dict[str, str]],
    *,
    memories: list[Memory] | None = None,
    web_context: str | None = None,
    locale: str | None = None,
    system_prompt: str | None = None,
    attachments: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> list[dict[str, str]]:
    """Assemble the provider message list for one turn."""
    now = now or datetime.now(ZoneInfo(settings.timezone))
    locale = locale or settings.default_locale

    messages: list[dict[str, str]] = [
        {"role": "system", "content": base_instruction(locale, now, system_prompt)}
    ]

    memory_text = format_memories(memories or [])
    if memory_text:
        messages.append({"role": "system", "content": memory_text})

    messages.extend({"role": m["role"], "content": m["content"]} for m in history)

    extra = render_attachments(attachments)
    if extra and len(messages) > 1 and messages[-1]["role"] == "user":
        last = messages[-1]
        messages[-1] = {"role": "user", "content": f"{last['content']}\n\n{extra}"}

    if web_context:
        messages.append({"role": "system", "content": web_context})

    return messages
