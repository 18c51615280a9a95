"""Web search backends behind one ``search(query, max_results)`` interface.

Each backend normalises its provider's payload into ``SearchResult`` and
raises ``UpstreamUnavailable`` on transport errors or non-200 responses.
Callers iterate an ordered list of backends; see ``WebContextProvider``.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import BaseModel

from src.config import Settings, settings
from src.errors import UpstreamUnavailable

logger = logging.getLogger(__name__)

TAVILY_SEARCH_URL = "https://api.tavily.com/search"
GOOGLE_SEARCH_URL = "https://www.googleapis.com/customsearch/v1"
BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"
REQUEST_TIMEOUT = 10


class SearchResult(BaseModel):
    """One normalised hit from a search backend."""

    title: str
    url: str
    snippet: str = ""
    source: str
    published_at: str | None = None


class SearchBackend:
    """Base class for ranked web search providers."""

    name: str = "base"

    @property
    def configured(self) -> bool:
        return False

    async def search(self, query: str, max_results: int = 5) -> list[SearchResult]:
        raise NotImplementedError

    async def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT) as client:
                resp = await client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise UpstreamUnavailable(self.name, str(exc)) from exc

        if resp.status_code != 200:
            raise UpstreamUnavailable(
                self.name, f"HTTP {resp.status_code}: {resp.text[:200]}"
            )
        try:
            return resp.json()
        except ValueError as exc:
            raise UpstreamUnavailable(self.name, "invalid JSON") from exc


class TavilyBackend(SearchBackend):
    name = "tavily"

    def __init__(self, api_key: str) -> None:
        self._api_key = api_key

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    async def search(self, query: str, max_results: int = 5) -> list[SearchResult]:
        data = await self._request(
            "POST",
            TAVILY_SEARCH_URL,
            headers={"Authorization": f"Bearer {self._api_key}"},
            json={
                "api_key": self._api_key,
                "query": query,
                "search_depth": "basic",
                "max_results": max_results,
                "include_answer": False,
                "include_images": False,
                "include_raw_content": False,
            },
        )
        return [
            SearchResult(
                title=r.get("title") or "",
                url=r.get("url") or "",
                snippet=r.get("content") or "",
                source=self.name,
                published_at=r.get("published_date"),
            )
            for r in data.get("results") or []
        ]


class GoogleBackend(SearchBackend):
    """Google Custom Search JSON API. ``num`` is capped at 10 by Google."""

    name = "google"

    def __init__(self, api_key: str, engine_id: str) -> None:
        self._api_key = api_key
        self._engine_id = engine_id

    @property
    def configured(self) -> bool:
        return bool(self._api_key and self._engine_id)

    async def search(self, query: str, max_results: int = 5) -> list[SearchResult]:
        data = await self._request(
            "GET",
            GOOGLE_SEARCH_URL,
            params={
                "key": self._api_key,
                "cx": self._engine_id,
                "q": query,
                "num": min(max_results, 10),
            },
        )
        results = []
        for item in data.get("items") or []:
            metatags = (item.get("pagemap") or {}).get("metatags") or [{}]
            results.append(
                SearchResult(
                    title=item.get("title") or "",
                    url=item.get("link") or "",
                    snippet=item.get("snippet") or "",
                    source=self.name,
                    published_at=metatags[0].get("article:published_time"),
                )
            )
        return results


class BraveBackend(SearchBackend):
    name = "brave"

    def __init__(self, api_key: str) -> None:
        self._api_key = api_key

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    async def search(self, query: str, max_results: int = 5) -> list[SearchResult]:
        data = await self._request(
            "GET",
            BRAVE_SEARCH_URL,
            headers={
                "Accept": "application/json",
                "Accept-Encoding": "gzip",
                "X-Subscription-Token": self._api_key,
            },
            params={"q": query, "count": min(max_results, 20)},
        )
        return [
            SearchResult(
                title=r.get("title") or "",
                url=r.get("url") or "",
                snippet=r.get("description") or "",
                source=self.name,
                published_at=r.get("page_age"),
            )
            for r in (data.get("web") or {}).get("results") or []
        ]


def build_backends(config: Settings = settings) -> list[SearchBackend]:
    """Instantiate the configured backends in ``SEARCH_BACKENDS`` order.

    Unknown names and backends without credentials are skipped.
    """
    factories = {
        "tavily": lambda: TavilyBackend(config.tavily_api_key),
        "google": lambda: GoogleBackend(config.google_api_key, config.google_search_engine_id),
        "brave": lambda: BraveBackend(config.brave_search_api_key),
    }
    backends: list[SearchBackend] = []
    for name in config.get_search_backends():
        factory = factories.get(name)
        if factory is None:
            logger.warning("Unknown search backend %r, skipping", name)
            continue
        backend = factory()
        if backend.configured:
            backends.append(backend)
        else:
            logger.info("Search backend %s has no credentials, skipping", name)
    return backends
