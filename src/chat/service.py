"""Orchestrates one chat turn from request validation to persistence."""

from __future__ import annotations

import logging
from contextlib import aclosing
from typing import TYPE_CHECKING, Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from src.chat.persistence import CompletedTurn
from src.chat.streaming import StreamingPipeline, citation_line
from src.config import Settings, settings
from src.errors import ConfigurationError, GenerationFailure, RequestValidationError
from src.llm import client as llm_client
from src.llm.prompt import build_messages, sanitize

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from src.chat.background import BackgroundTasks
    from src.chat.context import AssembledContext, ContextAssembler
    from src.chat.persistence import TurnRecorder
    from src.llm.provider import ChatProvider
    from src.storage.gateway import PersistenceGateway

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New conversation"
INITIAL_TITLE_CHARS = 30


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class AttachedFile(BaseModel):
    name: str = "file"
    content: str = ""


class Attachments(BaseModel):
    images: list[str] = Field(default_factory=list)
    files: list[AttachedFile] = Field(default_factory=list)


class TurnRequest(BaseModel):
    """Inbound chat turn. Accepts the camelCase keys web clients send."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    messages: list[ChatMessage] = Field(min_length=1)
    model: str | None = None
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    stream: bool = False
    conversation_id: str | None = Field(
        default=None, validation_alias=AliasChoices("conversationId", "conversation_id")
    )
    grounding_enabled: bool = Field(
        default=False, validation_alias=AliasChoices("groundingEnabled", "web", "grounding_enabled")
    )
    lang: str | None = None
    system_prompt: str | None = Field(
        default=None, validation_alias=AliasChoices("systemPrompt", "system_prompt")
    )
    attachments: Attachments | None = None

    @property
    def query(self) -> str:
        """The message this turn answers: the last one in the history."""
        return self.messages[-1].content

    def history(self) -> list[dict[str, str]]:
        return [{"role": m.role, "content": m.content} for m in self.messages]


def parse_turn(payload: Any) -> TurnRequest:
    """Validate a decoded JSON body. Raises ``RequestValidationError``."""
    if not isinstance(payload, dict):
        raise RequestValidationError("request body must be a JSON object")
    try:
        request = TurnRequest.model_validate(payload)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        where = ".".join(str(p) for p in first.get("loc", ()))
        raise RequestValidationError(f"{where}: {first.get('msg')}" if where else first["msg"]) from exc

    for message in request.messages:
        message.content = sanitize(message.content)
    if request.messages[-1].role != "user":
        raise RequestValidationError("the last message must come from the user")
    return request


class StreamingTurn:
    """A turn whose reply is being streamed.

    Once fully consumed, persistence is handed to the background tasks so the
    transport can close without waiting on the store.
    """

    def __init__(
        self,
        conversation_id: str | None,
        pipeline: StreamingPipeline,
        service: ChatService,
        turn: CompletedTurn,
    ) -> None:
        self.conversation_id = conversation_id
        self.pipeline = pipeline
        self._service = service
        self._turn = turn

    async def chunks(self) -> AsyncIterator[str]:
        """Yield transport chunks. Closing this early cancels the turn."""
        async with aclosing(self.pipeline.run()) as stream:
            async for chunk in stream:
                yield chunk

        if self.pipeline.cancelled:
            return
        self._turn.assistant_text = self.pipeline.text
        if not self.pipeline.references_appended:
            self._turn.sources = []
        if self._turn.conversation_id and self._turn.user_id:
            self._service.background.spawn(
                self._service.recorder.record(self._turn),
                name=f"record-turn:{self._turn.conversation_id}",
            )


class ChatService:
    """Entry point for a chat turn, streamed or not."""

    def __init__(
        self,
        gateway: PersistenceGateway,
        assembler: ContextAssembler,
        provider: ChatProvider,
        recorder: TurnRecorder,
        background: BackgroundTasks,
        config: Settings = settings,
    ) -> None:
        self.gateway = gateway
        self.assembler = assembler
        self.provider = provider
        self.recorder = recorder
        self.background = background
        self._config = config

    # -- Preparation -----------------------------------------------------------

    def check_configured(self) -> None:
        if not self.provider.configured:
            raise ConfigurationError("LLM_API_KEY is not configured")

    def resolve_model(self, requested: str | None) -> str:
        if not requested:
            return self._config.default_chat_model
        allowed = self._config.get_allowed_chat_models()
        if allowed and requested not in allowed:
            raise RequestValidationError(f"model {requested!r} is not available")
        return requested

    async def ensure_conversation(self, request: TurnRequest, user_id: str | None) -> str | None:
        """Return the turn's conversation id.

        A signed-in turn gets a new conversation when it names none, or names one
        the store does not know.
        """
        if request.conversation_id:
            if not user_id:
                return request.conversation_id
            existing = await self.gateway.find_conversation(request.conversation_id)
            if existing is not None:
                if existing.owner_user_id != user_id:
                    raise RequestValidationError("conversation not found")
                return existing.id
            logger.warning(
                "Conversation %s not found, starting a new one", request.conversation_id
            )
        elif not user_id:
            return None

        first = next((m.content for m in request.messages if m.role == "user"), "")
        title = first[:INITIAL_TITLE_CHARS].strip() or DEFAULT_TITLE
        conversation = await self.gateway.create_conversation(user_id, title)
        logger.info("Created conversation %s for user %s", conversation.id, user_id)

        if self._config.title_generation_enabled and llm_client.enabled() and first.strip():
            self.background.spawn(
                self._retitle(conversation.id, first), name=f"title:{conversation.id}"
            )
        return conversation.id

    async def _retitle(self, conversation_id: str, first_message: str) -> None:
        title = await llm_client.generate_title(first_message)
        if title:
            await self.gateway.update_conversation_title(conversation_id, title)
            logger.info("Generated title for %s: %s", conversation_id, title)

    async def _prepare(
        self, request: TurnRequest, user_id: str | None
    ) -> tuple[str | None, AssembledContext, list[dict[str, str]]]:
        self.check_configured()
        conversation_id = await self.ensure_conversation(request, user_id)
        context = await self.assembler.assemble(user_id, request.query, request.grounding_enabled)
        messages = build_messages(
            request.history(),
            memories=context.memories,
            web_context=context.web_text,
            locale=request.lang,
            system_prompt=request.system_prompt,
            attachments=request.attachments.model_dump() if request.attachments else None,
        )
        return conversation_id, context, messages

    def _turn(
        self,
        request: TurnRequest,
        user_id: str | None,
        conversation_id: str | None,
        context: AssembledContext,
    ) -> CompletedTurn:
        return CompletedTurn(
            conversation_id=conversation_id,
            user_id=user_id,
            user_message=request.query,
            assistant_text="",
            history=request.history(),
            sources=context.sources,
        )

    # -- Turns -----------------------------------------------------------------

    async def stream_turn(self, request: TurnRequest, user_id: str | None) -> StreamingTurn:
        model = self.resolve_model(request.model)
        conversation_id, context, messages = await self._prepare(request, user_id)
        temperature = (
            request.temperature
            if request.temperature is not None
            else self._config.default_temperature
        )
        tokens = self.provider.stream(messages, model, temperature)
        pipeline = StreamingPipeline(tokens, sources=context.sources)
        return StreamingTurn(
            conversation_id,
            pipeline,
            self,
            self._turn(request, user_id, conversation_id, context),
        )

    async def complete_turn(self, request: TurnRequest, user_id: str | None) -> dict[str, Any]:
        """Non-streaming turn. Raises ``GenerationFailure`` on provider errors."""
        model = self.resolve_model(request.model)
        conversation_id, context, messages = await self._prepare(request, user_id)
        temperature = (
            request.temperature
            if request.temperature is not None
            else self._config.default_temperature
        )
        turn = self._turn(request, user_id, conversation_id, context)

        try:
            completion = await self.provider.complete(messages, model, temperature)
        except GenerationFailure:
            await self.recorder.record_user_only(turn)
            raise

        reply: dict[str, Any] = {"role": "assistant", "content": completion.text}
        if context.sources and completion.text:
            reply["content"] = completion.text + citation_line(len(context.sources))
            reply["references"] = [{"url": s["url"], "title": s["title"]} for s in context.sources]
        else:
            turn.sources = []

        turn.assistant_text = reply["content"]
        await self.recorder.record(turn)
        return {"reply": reply, "usage": completion.usage, "conversationId": conversation_id}
