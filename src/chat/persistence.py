"""Record a finished turn: messages, references, then background extraction."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from src.memory import extraction

if TYPE_CHECKING:
    from src.chat.background import BackgroundTasks
    from src.storage.gateway import PersistenceGateway
    from src.storage.models import Message

logger = logging.getLogger(__name__)

FALLBACK_REPLY = "Sorry, I wasn't able to generate a reply this time."


@dataclass
class CompletedTurn:
    """Everything needed to persist one user/assistant exchange."""

    conversation_id: str | None
    user_id: str | None
    user_message: str
    assistant_text: str
    history: list[dict[str, str]] = field(default_factory=list)
    sources: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class RecordedTurn:
    user_message: Message
    assistant_message: Message
    reference_count: int


class TurnRecorder:
    """Writes a completed turn through the gateway. Never raises."""

    def __init__(self, gateway: PersistenceGateway, background: BackgroundTasks) -> None:
        self._gateway = gateway
        self._background = background

    async def record(self, turn: CompletedTurn) -> RecordedTurn | None:
        if not turn.conversation_id or not turn.user_id:
            logger.info("Skipping message save: no conversation or user")
            return None

        try:
            user_msg = await self._gateway.create_message(
                turn.conversation_id, "user", turn.user_message
            )
            assistant_msg = await self._gateway.create_message(
                turn.conversation_id, "assistant", turn.assistant_text or FALLBACK_REPLY
            )
            references = []
            if turn.sources:
                references = await self._gateway.create_references(
                    assistant_msg.id, turn.sources
                )
        except Exception:
            logger.exception("Failed to save turn for conversation %s", turn.conversation_id)
            return None

        logger.info("Saved turn for conversation %s", turn.conversation_id)

        self._background.spawn(
            extraction.extract_and_save(
                self._gateway,
                turn.user_id,
                turn.conversation_id,
                turn.user_message,
                assistant_msg.content,
                turn.history,
            ),
            name=f"extract-memories:{turn.conversation_id}",
        )
        return RecordedTurn(
            user_message=user_msg,
            assistant_message=assistant_msg,
            reference_count=len(references),
        )

    async def record_user_only(self, turn: CompletedTurn) -> Message | None:
        """Keep the user's message when generation failed outright."""
        if not turn.conversation_id or not turn.user_id:
            return None
        try:
            return await self._gateway.create_message(
                turn.conversation_id, "user", turn.user_message
            )
        except Exception:
            logger.exception("Failed to save user message for %s", turn.conversation_id)
            return None
