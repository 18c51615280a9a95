"""Context assembly: web grounding and memory recall, run side by side."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, TypeVar

if TYPE_CHECKING:
    from collections.abc import Awaitable

    from src.memory.recall import MemoryRecallProvider
    from src.search.context import WebContext, WebContextProvider
    from src.storage.models import Memory

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class AssembledContext:
    web: WebContext | None = None
    memories: list[Memory] = field(default_factory=list)

    @property
    def web_text(self) -> str | None:
        return self.web.text if self.web else None

    @property
    def sources(self) -> list[dict[str, Any]]:
        """Search results that grounded the reply, in citation order."""
        if not self.web:
            return []
        return [
            {
                "url": r.url,
                "title": r.title,
                "snippet": r.snippet,
                "source_label": r.source,
                "published_at": r.published_at,
            }
            for r in self.web.results
        ]


class ContextAssembler:
    """Runs both lookups concurrently; either may fail without affecting the other."""

    def __init__(
        self,
        web: WebContextProvider,
        recall: MemoryRecallProvider,
        *,
        memory_limit: int = 3,
        timeout: float = 10.0,
    ) -> None:
        self._web = web
        self._recall = recall
        self._memory_limit = memory_limit
        self._timeout = timeout

    async def assemble(
        self,
        user_id: str | None,
        query: str | None,
        grounding_enabled: bool,
    ) -> AssembledContext:
        query = query or ""

        web_lookup = self._guard(
            "web context", self._web.lookup(query, enabled=grounding_enabled), None
        )
        if user_id and query.strip():
            memory_lookup = self._guard(
                "memory recall", self._recall.recall(user_id, query, self._memory_limit), []
            )
        else:
            memory_lookup = _resolved([])

        web, memories = await asyncio.gather(web_lookup, memory_lookup)
        return AssembledContext(web=web, memories=memories)

    async def _guard(self, label: str, lookup: Awaitable[T], default: T) -> T:
        """Bound *lookup* in time and turn any failure into *default*."""
        try:
            return await asyncio.wait_for(lookup, timeout=self._timeout)
        except TimeoutError:
            logger.warning("%s timed out after %.1fs", label, self._timeout)
        except Exception:
            logger.exception("%s failed", label)
        return default


async def _resolved(value: T) -> T:
    return value
