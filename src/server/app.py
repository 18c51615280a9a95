"""aiohttp application exposing the chat pipeline over HTTP.

The user id arrives in a trusted header (``X-User-Id`` by default) set by
whatever resolves sessions in front of this service.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any

from aiohttp import web

from src.cache import TTLCache
from src.chat.background import BackgroundTasks
from src.chat.context import ContextAssembler
from src.chat.persistence import TurnRecorder
from src.chat.service import ChatService, parse_turn
from src.config import Settings, settings
from src.errors import ConfigurationError, GenerationFailure, RequestValidationError
from src.llm.provider import ChatProvider
from src.memory.recall import MemoryRecallProvider
from src.search.backends import SearchBackend, build_backends
from src.search.context import WebContextProvider
from src.storage.gateway import PersistenceGateway

logger = logging.getLogger(__name__)

MAX_LIST_LIMIT = 50


@dataclass
class Services:
    """Long-lived collaborators shared by every request."""

    gateway: PersistenceGateway
    cache: TTLCache
    web: WebContextProvider
    recall: MemoryRecallProvider
    background: BackgroundTasks
    chat: ChatService

    async def close(self) -> None:
        await self.background.drain()
        await self.web.drain()
        await self.gateway.close()


SERVICES = web.AppKey("services", Services)
USER_ID_HEADER = web.AppKey("user_id_header", str)


def build_services(
    gateway: PersistenceGateway,
    config: Settings = settings,
    *,
    backends: list[SearchBackend] | None = None,
    provider: ChatProvider | None = None,
    prewarm: bool = True,
) -> Services:
    """Wire the pipeline around an already-open gateway."""
    cache = TTLCache(max_entries=config.cache_max_entries)
    background = BackgroundTasks()
    web_context = WebContextProvider(
        build_backends(config) if backends is None else backends,
        cache,
        max_results=config.web_max_results,
        prewarm_results=config.web_prewarm_results,
        snippet_chars=config.web_snippet_chars,
        ttl=config.web_context_ttl_seconds,
        timeout=config.lookup_timeout_seconds,
        prewarm=prewarm,
    )
    recall = MemoryRecallProvider(
        gateway,
        cache,
        ttl=config.memory_recall_ttl_seconds,
        timeout=config.lookup_timeout_seconds,
    )
    assembler = ContextAssembler(
        web_context,
        recall,
        memory_limit=config.memory_recall_limit,
        timeout=config.lookup_timeout_seconds,
    )
    chat = ChatService(
        gateway,
        assembler,
        provider or ChatProvider(config),
        TurnRecorder(gateway, background),
        background,
        config,
    )
    return Services(
        gateway=gateway,
        cache=cache,
        web=web_context,
        recall=recall,
        background=background,
        chat=chat,
    )


# -- Helpers -----------------------------------------------------------------


def _error_response(exc: Exception) -> web.Response:
    if isinstance(exc, GenerationFailure):
        return web.json_response(exc.to_dict(), status=exc.status)
    if isinstance(exc, RequestValidationError):
        return web.json_response({"error": str(exc), "type": "validation"}, status=400)
    if isinstance(exc, ConfigurationError):
        logger.error("Configuration error: %s", exc)
        return web.json_response({"error": str(exc), "type": "configuration"}, status=500)
    logger.exception("Unexpected chat error")
    return web.json_response({"error": "internal error", "type": "server_error"}, status=500)


def _user_id(request: web.Request) -> str | None:
    header = request.app.get(USER_ID_HEADER, settings.user_id_header)
    return request.headers.get(header) or None


def _limit(request: web.Request, default: int) -> int:
    try:
        value = int(request.query.get("limit", default))
    except ValueError:
        return default
    return max(1, min(value, MAX_LIST_LIMIT))


async def _json_body(request: web.Request) -> dict[str, Any] | None:
    try:
        payload = await request.json()
    except Exception:
        return None
    return payload if isinstance(payload, dict) else None


def _unauthorized() -> web.Response:
    return web.json_response({"error": "unauthorized", "type": "unauthorized"}, status=401)


# -- Chat --------------------------------------------------------------------


async def _handle_chat(request: web.Request) -> web.StreamResponse:
    """POST /api/chat: one chat turn, streamed as text/plain or returned as JSON."""
    services = request.app[SERVICES]
    user_id = _user_id(request)

    payload = await _json_body(request)
    if payload is None:
        return web.json_response({"error": "invalid JSON", "type": "validation"}, status=400)

    try:
        turn_request = parse_turn(payload)
        if not turn_request.stream:
            result = await services.chat.complete_turn(turn_request, user_id)
            return web.json_response(result)
        turn = await services.chat.stream_turn(turn_request, user_id)
    except (GenerationFailure, RequestValidationError, ConfigurationError) as exc:
        return _error_response(exc)

    response = web.StreamResponse(
        headers={
            "Content-Type": "text/plain; charset=utf-8",
            "Cache-Control": "no-cache",
        }
    )
    if turn.conversation_id:
        response.headers["X-Conversation-Id"] = turn.conversation_id
    await response.prepare(request)

    try:
        async with aclosing(turn.chunks()) as chunks:
            async for chunk in chunks:
                await response.write(chunk.encode("utf-8"))
    except ConnectionResetError:
        logger.info("Client disconnected mid-stream (conversation=%s)", turn.conversation_id)
        return response
    except asyncio.CancelledError:
        logger.info("Stream cancelled (conversation=%s)", turn.conversation_id)
        raise

    await response.write_eof()
    return response


# -- Conversations -----------------------------------------------------------


async def _list_conversations(request: web.Request) -> web.Response:
    user_id = _user_id(request)
    if not user_id:
        return _unauthorized()
    services = request.app[SERVICES]
    conversations = await services.gateway.list_conversations(
        user_id, limit=_limit(request, MAX_LIST_LIMIT)
    )
    return web.json_response(
        {"conversations": [c.model_dump(mode="json") for c in conversations]}
    )


async def _create_conversation(request: web.Request) -> web.Response:
    user_id = _user_id(request)
    if not user_id:
        return _unauthorized()
    payload = await _json_body(request) or {}
    title = str(payload.get("title") or "").strip() or "New conversation"
    conversation = await request.app[SERVICES].gateway.create_conversation(user_id, title)
    return web.json_response({"conversation": conversation.model_dump(mode="json")}, status=201)


async def _list_messages(request: web.Request) -> web.Response:
    """GET /api/conversations/{id}/messages with each message's references."""
    user_id = _user_id(request)
    if not user_id:
        return _unauthorized()
    gateway = request.app[SERVICES].gateway
    conversation_id = request.match_info["conversation_id"]

    conversation = await gateway.find_conversation(conversation_id)
    if conversation is None:
        return web.json_response({"error": "conversation not found"}, status=404)
    if conversation.owner_user_id != user_id:
        return web.json_response({"error": "forbidden"}, status=403)

    messages = []
    for message in await gateway.list_messages(conversation_id):
        item = message.model_dump(mode="json")
        if message.role == "assistant":
            references = await gateway.list_references(message.id)
            item["references"] = [r.model_dump(mode="json") for r in references]
        messages.append(item)
    return web.json_response({"conversation": conversation.model_dump(mode="json"), "messages": messages})


# -- Memories ----------------------------------------------------------------


async def _list_memories(request: web.Request) -> web.Response:
    user_id = _user_id(request)
    if not user_id:
        return _unauthorized()
    services = request.app[SERVICES]
    query = request.query.get("q", "").strip()
    limit = _limit(request, MAX_LIST_LIMIT)

    if query:
        memories = await services.recall.recall(user_id, query, limit)
    else:
        memories = (await services.gateway.list_memories(user_id))[:limit]
    return web.json_response({"memories": [m.model_dump(mode="json") for m in memories]})


async def _create_memory(request: web.Request) -> web.Response:
    user_id = _user_id(request)
    if not user_id:
        return _unauthorized()
    payload = await _json_body(request) or {}
    content = str(payload.get("content") or "").strip()
    if not content:
        return web.json_response({"error": "content is required", "type": "validation"}, status=400)

    try:
        importance = int(payload.get("importance", 5))
    except (TypeError, ValueError):
        return web.json_response(
            {"error": "importance must be an integer", "type": "validation"}, status=400
        )

    services = request.app[SERVICES]
    memory = await services.gateway.create_memory(
        user_id,
        content,
        category=str(payload.get("category") or "general"),
        importance_score=importance,
    )
    services.recall.forget_user(user_id)
    return web.json_response({"memory": memory.model_dump(mode="json")}, status=201)


async def _clear_memories(request: web.Request) -> web.Response:
    user_id = _user_id(request)
    if not user_id:
        return _unauthorized()
    services = request.app[SERVICES]
    removed = await services.gateway.clear_memories(user_id)
    services.recall.forget_user(user_id)
    logger.info("Cleared %d memories for user %s", removed, user_id)
    return web.json_response({"ok": True, "removed": removed})


# -- Status ------------------------------------------------------------------


async def _db_status(request: web.Request) -> web.Response:
    return web.json_response(request.app[SERVICES].gateway.stats())


async def _health(request: web.Request) -> web.Response:
    """GET /health: basic liveness check."""
    return web.json_response({"status": "ok"})


# -- Application -------------------------------------------------------------


def create_app(services: Services | None = None, config: Settings = settings) -> web.Application:
    """Build the Application.

    With *services* given (tests), they are used as-is. Otherwise the gateway
    is opened on startup and everything is closed on cleanup.
    """
    app = web.Application()
    app[USER_ID_HEADER] = config.user_id_header

    if services is not None:
        app[SERVICES] = services
    else:
        async def _startup(app: web.Application) -> None:
            gateway = await PersistenceGateway.open(
                enabled=config.primary_store_enabled,
                reprobe_seconds=config.primary_reprobe_seconds,
                mirror_limit=config.fallback_mirror_max_records,
            )
            app[SERVICES] = build_services(gateway, config)
            logger.info("Chat services ready (model %s)", config.default_chat_model)

        async def _cleanup(app: web.Application) -> None:
            await app[SERVICES].close()
            logger.info("Chat services stopped")

        app.on_startup.append(_startup)
        app.on_cleanup.append(_cleanup)

    app.router.add_get("/health", _health)
    app.router.add_post("/api/chat", _handle_chat)
    app.router.add_get("/api/conversations", _list_conversations)
    app.router.add_post("/api/conversations", _create_conversation)
    app.router.add_get("/api/conversations/{conversation_id}/messages", _list_messages)
    app.router.add_get("/api/memories", _list_memories)
    app.router.add_post("/api/memories", _create_memory)
    app.router.add_delete("/api/memories", _clear_memories)
    app.router.add_get("/api/db-status", _db_status)
    return app
