"""Post-turn memory extraction.

After a turn is persisted, a background task sends the exchange to Claude,
which decides what (if anything) is worth remembering about the user. The
facts it returns are scored 1–10 and stored through the persistence gateway.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from src.config import settings
from src.llm import client as llm_client

if TYPE_CHECKING:
    from src.storage.gateway import PersistenceGateway

logger = logging.getLogger(__name__)

MIN_SAVED_IMPORTANCE = 5
HISTORY_WINDOW = 6

_IMPORTANCE_WORDS = {"high": 8, "medium": 5, "low": 2}

EXTRACTION_RULES = """\
You maintain long-term memory for a chat assistant. Read the exchange and
extract durable facts about the user: preferences, biographical facts,
ongoing projects, decisions and commitments. Ignore small talk and anything
only relevant to this single reply.

Return JSON only, in this shape:
{"memories": [{"content": "...", "category": "fact|preference|project|decision|general",
"importance": 1-10}]}

Return {"memories": []} when nothing is worth keeping."""


@dataclass
class ExtractedMemory:
    content: str
    category: str
    importance: int


@dataclass
class ExtractionResult:
    memories: list[ExtractedMemory] = field(default_factory=list)


def _importance(value: Any) -> int:
    """Coerce a 1–10 score or a high/medium/low label into an int in range."""
    if isinstance(value, str):
        if value.strip().lower() in _IMPORTANCE_WORDS:
            return _IMPORTANCE_WORDS[value.strip().lower()]
        try:
            value = float(value)
        except ValueError:
            return 1
    if isinstance(value, int | float):
        return max(1, min(10, round(value)))
    return 1


def build_extraction_prompt(
    user_message: str,
    assistant_response: str,
    recent_history: list[dict[str, str]],
) -> str:
    """Build the user-message content sent to the extraction model."""
    history_text = ""
    if recent_history:
        lines = []
        for msg in recent_history[-HISTORY_WINDOW:]:
            role = msg.get("role", "unknown")
            content = msg.get("content", "")
            if isinstance(content, str):
                lines.append(f"<{role}>{content}</{role}>")
        history_text = f"<recent_history>\n{''.join(lines)}\n</recent_history>\n\n"

    return (
        f"{history_text}"
        f"<exchange>\n"
        f"<user>{user_message}</user>\n"
        f"<assistant>{assistant_response}</assistant>\n"
        f"</exchange>\n\n"
        f"Analyze this exchange. Return JSON only."
    )


def parse_extraction_result(text: str) -> ExtractionResult:
    """Parse the extraction model's JSON output, tolerating markdown fences."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        start = text.find("{")
        end = text.rfind("}") + 1
        if start < 0 or end <= start:
            logger.warning("Failed to parse extraction JSON")
            return ExtractionResult()
        try:
            data = json.loads(text[start:end])
        except json.JSONDecodeError:
            logger.warning("Failed to parse extraction JSON")
            return ExtractionResult()

    if not isinstance(data, dict):
        return ExtractionResult()

    memories = [
        ExtractedMemory(
            content=m["content"].strip(),
            category=m.get("category") or "general",
            importance=_importance(m.get("importance")),
        )
        for m in data.get("memories") or []
        if isinstance(m, dict) and isinstance(m.get("content"), str) and m["content"].strip()
    ]
    return ExtractionResult(memories=memories)


async def extract_and_save(
    gateway: PersistenceGateway,
    user_id: str,
    conversation_id: str,
    user_message: str,
    assistant_response: str,
    recent_history: list[dict[str, str]],
) -> int:
    """Extract memories from one exchange and store the important ones.

    Returns the number of memories saved. Meant to run as a background
    task; errors propagate to the task runner, which logs and drops them.
    """
    if not settings.memory_extraction_enabled or not llm_client.enabled():
        return 0

    prompt = build_extraction_prompt(user_message, assistant_response, recent_history)
    raw = await llm_client.complete_text(
        [{"role": "user", "content": prompt}],
        system=EXTRACTION_RULES,
    )
    result = parse_extraction_result(raw)

    known = {m.content.lower() for m in await gateway.list_memories(user_id)}
    saved = 0
    for mem in result.memories:
        if mem.importance < MIN_SAVED_IMPORTANCE or mem.content.lower() in known:
            continue
        await gateway.create_memory(
            owner_user_id=user_id,
            content=mem.content,
            category=mem.category,
            importance_score=mem.importance,
        )
        known.add(mem.content.lower())
        saved += 1

    if saved:
        logger.info("Extracted %d memories from conversation %s", saved, conversation_id)
    return saved
