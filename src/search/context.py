"""Web grounding: turn a user query into a numbered block of search results.

Backends are tried in priority order and the first one that returns at least
one usable result wins; results are never merged across backends. Every
failure is contained here so grounding degrades to "no context" instead of
failing the turn. Finished context is cached per normalised query, and a
handful of related queries are pre-warmed in the background.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date
from typing import TYPE_CHECKING

from pydantic import BaseModel

from src.cache import cache_key
from src.errors import UpstreamUnavailable
from src.search.backends import SearchResult
from src.search.queries import derive_related_queries, normalize_query

if TYPE_CHECKING:
    from collections.abc import Callable

    from src.cache import TTLCache
    from src.search.backends import SearchBackend

logger = logging.getLogger(__name__)

CONTEXT_HEADER = "Web search results (latest information):"
CONTEXT_INSTRUCTION = (
    "Answer using the information above where it is relevant, and cite the "
    "sources you rely on inline as [1][2][3]."
)


class WebContext(BaseModel):
    """Grounding text plus the results it was built from (for references)."""

    query: str
    text: str
    results: list[SearchResult]


def clean_results(query: str, results: list[SearchResult]) -> list[SearchResult]:
    """Drop blank hits, de-duplicate by URL and rank by literal query match.

    Duplicates keep whichever copy has the longer snippet. Ranking is stable:
    a title match scores 2, a snippet match 1, ties keep backend order.
    """
    unique: dict[str, SearchResult] = {}
    for result in results:
        if not result.title.strip() or not result.url.strip():
            continue
        existing = unique.get(result.url)
        if existing is None or len(result.snippet) > len(existing.snippet):
            unique[result.url] = result

    needle = query.lower().strip()

    def score(r: SearchResult) -> int:
        return (2 if needle in r.title.lower() else 0) + (1 if needle in r.snippet.lower() else 0)

    return sorted(unique.values(), key=score, reverse=True)


def format_context(results: list[SearchResult], snippet_chars: int = 200) -> str:
    """Render results as a numbered block followed by the citation instruction."""
    entries = []
    for i, r in enumerate(results, start=1):
        snippet = r.snippet.strip()
        if len(snippet) > snippet_chars:
            snippet = snippet[:snippet_chars].rstrip() + "..."
        entries.append(f"[{i}] {r.title.strip()}\nContent: {snippet}\nSource: {r.url}")
    body = "\n\n".join(entries)
    return f"{CONTEXT_HEADER}\n\n{body}\n\n{CONTEXT_INSTRUCTION}"


class WebContextProvider:
    """Cached, failure-tolerant web grounding over ranked search backends."""

    def __init__(
        self,
        backends: list[SearchBackend],
        cache: TTLCache,
        *,
        max_results: int = 5,
        prewarm_results: int = 3,
        snippet_chars: int = 200,
        ttl: float = 600.0,
        timeout: float = 10.0,
        prewarm: bool = True,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._backends = backends
        self._cache = cache
        self._max_results = max_results
        self._prewarm_results = prewarm_results
        self._snippet_chars = snippet_chars
        self._ttl = ttl
        self._timeout = timeout
        self._prewarm = prewarm
        self._today = today
        self._warming: set[asyncio.Task] = set()

    async def build_context(self, query: str | None, enabled: bool = True) -> str | None:
        """Return grounding text for *query*, or None when there is nothing to add."""
        context = await self.lookup(query, enabled=enabled)
        return context.text if context else None

    async def lookup(self, query: str | None, enabled: bool = True) -> WebContext | None:
        if not enabled or not query or not query.strip():
            return None

        key = cache_key("web", normalize_query(query))
        cached = self._cache.get(key)
        if cached is not None:
            logger.debug("Web context cache hit: %s", key)
            return cached

        if self._prewarm:
            self._schedule_prewarm(query)

        results = await self._search(query, self._max_results)
        if not results:
            logger.info("Web grounding unavailable for query (all backends empty or failed)")
            return None

        context = WebContext(
            query=query,
            text=format_context(results, self._snippet_chars),
            results=results,
        )
        self._cache.set(key, context, self._ttl)
        return context

    async def drain(self) -> None:
        """Wait for in-flight pre-warm tasks (shutdown and tests)."""
        if self._warming:
            await asyncio.gather(*self._warming, return_exceptions=True)

    # -- Helpers ---------------------------------------------------------------

    async def _search(self, query: str, max_results: int) -> list[SearchResult]:
        for backend in self._backends:
            try:
                raw = await asyncio.wait_for(
                    backend.search(query, max_results), timeout=self._timeout
                )
            except TimeoutError:
                logger.warning("Search backend %s timed out", backend.name)
                continue
            except UpstreamUnavailable as exc:
                logger.warning("Search backend failed: %s", exc)
                continue
            except Exception:
                logger.exception("Search backend %s raised unexpectedly", backend.name)
                continue

            results = clean_results(query, raw)[:max_results]
            if results:
                logger.info("Search backend %s returned %d result(s)", backend.name, len(results))
                return results
            logger.info("Search backend %s returned no results, trying next", backend.name)
        return []

    def _schedule_prewarm(self, query: str) -> None:
        for related in derive_related_queries(query, today=self._today()):
            if self._cache.has(cache_key("web", related)):
                continue
            task = asyncio.create_task(self._warm(related))
            self._warming.add(task)
            task.add_done_callback(self._warming.discard)

    async def _warm(self, query: str) -> None:
        try:
            results = await self._search(query, self._prewarm_results)
            if results:
                context = WebContext(
                    query=query,
                    text=format_context(results, self._snippet_chars),
                    results=results,
                )
                self._cache.warmup(cache_key("web", query), context, self._ttl)
                logger.debug("Pre-warmed web context for related query %r", query)
        except Exception as exc:
            logger.debug("Pre-warm failed for %r: %s", query, exc)
