"""Recall a user's long-term memories relevant to the current message."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from src.cache import cache_key
from src.search.queries import keywords

if TYPE_CHECKING:
    from src.cache import TTLCache
    from src.storage.gateway import PersistenceGateway
    from src.storage.models import Memory

logger = logging.getLogger(__name__)

# Memories this important are eligible even without keyword overlap.
ALWAYS_RECALL_IMPORTANCE = 8
RELEVANCE_WEIGHT = 10.0


def relevance(query: str, content: str) -> float:
    """Fraction of the query's keywords that appear in *content* (0.0–1.0)."""
    terms = set(keywords(query))
    if not terms:
        return 0.0
    found = set(keywords(content))
    return len(terms & found) / len(terms)


def rank_memories(query: str, memories: list[Memory], limit: int) -> list[Memory]:
    """Order memories by relevance plus importance, newest first on ties."""
    scored = []
    for memory in memories:
        rel = relevance(query, memory.content)
        if rel == 0.0 and memory.importance_score < ALWAYS_RECALL_IMPORTANCE:
            continue
        scored.append((rel * RELEVANCE_WEIGHT + memory.importance_score, memory.created_at, memory))
    scored.sort(key=lambda item: (item[0], item[1]), reverse=True)
    return [memory for _, _, memory in scored[:limit]]


class MemoryRecallProvider:
    """Cache-backed memory lookup. Never raises; failures yield ``[]``."""

    def __init__(
        self,
        gateway: PersistenceGateway,
        cache: TTLCache,
        *,
        ttl: float = 300.0,
        timeout: float = 10.0,
    ) -> None:
        self._gateway = gateway
        self._cache = cache
        self._ttl = ttl
        self._timeout = timeout

    async def recall(self, user_id: str, query: str, limit: int = 3) -> list[Memory]:
        key = cache_key("memories", user_id, query)
        cached = self._cache.get(key)
        if cached is not None:
            logger.debug("Memory recall cache hit for user %s", user_id)
            return cached

        try:
            memories = await asyncio.wait_for(
                self._gateway.list_memories(user_id), timeout=self._timeout
            )
        except TimeoutError:
            logger.warning("Memory recall timed out for user %s", user_id)
            return []
        except Exception:
            logger.exception("Memory recall failed for user %s", user_id)
            return []

        ranked = rank_memories(query, memories, limit)
        self._cache.set(key, ranked, self._ttl)
        return ranked

    def forget_user(self, user_id: str) -> int:
        """Drop every cached recall for *user_id* (after their memories change)."""
        return self._cache.delete_prefix(cache_key("memories", user_id) + ":")
