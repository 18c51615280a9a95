"""Process-local key/value cache with per-entry expiry.

Backed by ``cachetools.TLRUCache``: every entry carries its own time-to-live,
expired entries behave as absent and are purged on writes (and in bulk by
``cleanup()``). Capacity is bounded: when full, expired entries go first,
then the least recently used one. The event loop is single-threaded, so no
locking is needed.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any, NamedTuple

from cachetools import TLRUCache

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)


class CacheEntry(NamedTuple):
    value: Any
    ttl: float


def _time_to_use(_key: str, entry: CacheEntry, now: float) -> float:
    return now + entry.ttl


def cache_key(prefix: str, *parts: str | int) -> str:
    """Build a namespaced cache key from the full text of every part."""
    return ":".join([prefix, *(str(p) for p in parts)])


class TTLCache:
    """Key/value store where every entry carries its own time-to-live."""

    def __init__(
        self,
        max_entries: int = 2000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._entries: TLRUCache = TLRUCache(
            maxsize=max_entries, ttu=_time_to_use, timer=clock
        )

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Any | None:
        """Return the cached value, or None if absent or expired."""
        entry = self._entries.get(key)
        return None if entry is None else entry.value

    def set(self, key: str, value: Any, ttl: float) -> None:
        """Store *value* under *key* for *ttl* seconds. Last write wins."""
        self._entries[key] = CacheEntry(value, ttl)

    def has(self, key: str) -> bool:
        return key in self._entries

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def delete_prefix(self, prefix: str) -> int:
        doomed = [k for k in self._entries if k.startswith(prefix)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    def clear(self) -> None:
        self._entries.clear()

    def warmup(self, key: str, value: Any, ttl: float) -> bool:
        """Set *key* only if no live entry exists. Returns True if stored."""
        if self.has(key):
            return False
        self.set(key, value, ttl)
        return True

    def cleanup(self) -> int:
        """Drop every expired entry. Returns the number removed."""
        expired = self._entries.expire()
        if expired:
            logger.debug("Purged %d expired cache entries", len(expired))
        return len(expired)
