"""Relay a provider token stream to the client in small batches.

Lifecycle: ``STARTING → STREAMING → (REFERENCE_APPEND) → CLOSED``, with
``ERRORED`` reachable from ``STREAMING`` when the provider fails mid-stream.
A provider failure is forwarded as an inline ``[ERROR]`` marker after
whatever was already sent; nothing already sent is retracted.

If the consumer stops early (client disconnect), the generator is closed:
the provider stream is closed with it and the turn is flagged ``cancelled``
so nothing gets persisted.
"""

from __future__ import annotations

import json
import logging
import re
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from src.errors import GenerationFailure, classify_provider_error

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = logging.getLogger(__name__)

BATCH_SIZE = 2
MAX_BUFFER_CHARS = 15
FORCED_FLUSH_EVERY = 10

_FLUSH_PUNCTUATION = re.compile(r"[.!?,;:\n。！？，；：]")

REF_OPEN = "<ref-data>"
REF_CLOSE = "</ref-data>"


class StreamState(StrEnum):
    STARTING = "starting"
    STREAMING = "streaming"
    REFERENCE_APPEND = "reference_append"
    ERRORED = "errored"
    CLOSED = "closed"


def should_flush(token_index: int, token: str, buffer_length: int) -> bool:
    """Decide whether the pending buffer goes out after this token.

    *token_index* is the 1-based count of tokens received so far and
    *buffer_length* the size of the unsent buffer including this token.
    """
    return (
        token_index % BATCH_SIZE == 0
        or bool(_FLUSH_PUNCTUATION.search(token))
        or buffer_length > MAX_BUFFER_CHARS
        or token_index % FORCED_FLUSH_EVERY == 0
    )


def citation_line(count: int) -> str:
    """``\\n\\nSources: [1][2]...`` for *count* references."""
    markers = "".join(f"[{i}]" for i in range(1, count + 1))
    return f"\n\nSources: {markers}"


def reference_payload(sources: list[dict[str, Any]]) -> str:
    """Out-of-band reference block the client parses and strips before rendering."""
    data = [{"url": s["url"], "title": s.get("title") or s["url"]} for s in sources]
    body = json.dumps({"type": "references", "data": data}, ensure_ascii=False)
    return f"\n\n{REF_OPEN}{body}{REF_CLOSE}"


def error_marker(message: str) -> str:
    return f"\n[ERROR] {message}"


class StreamingPipeline:
    """Consumes provider tokens and yields transport chunks via ``run()``."""

    def __init__(
        self,
        tokens: AsyncIterator[str],
        sources: list[dict[str, Any]] | None = None,
    ) -> None:
        self._tokens = tokens
        self._sources = sources or []
        self._parts: list[str] = []
        self.state = StreamState.STARTING
        self.transitions: list[StreamState] = [StreamState.STARTING]
        self.token_count = 0
        self.flush_count = 0
        self.error: GenerationFailure | None = None
        self.cancelled = False

    @property
    def text(self) -> str:
        """Everything accumulated for persistence (tokens plus citation line)."""
        return "".join(self._parts)

    @property
    def references_appended(self) -> bool:
        return StreamState.REFERENCE_APPEND in self.transitions

    def _enter(self, state: StreamState) -> None:
        self.state = state
        self.transitions.append(state)

    def _flush(self, buffer: list[str]) -> str:
        self.flush_count += 1
        chunk = "".join(buffer)
        buffer.clear()
        return chunk

    async def run(self) -> AsyncIterator[str]:
        self._enter(StreamState.STREAMING)
        buffer: list[str] = []
        buffered = 0
        try:
            try:
                async for token in self._tokens:
                    if not token:
                        continue
                    self.token_count += 1
                    self._parts.append(token)
                    buffer.append(token)
                    buffered += len(token)
                    if should_flush(self.token_count, token, buffered):
                        buffered = 0
                        yield self._flush(buffer)
            except Exception as exc:
                self.error = classify_provider_error(exc)
                self._enter(StreamState.ERRORED)
                logger.warning(
                    "Provider stream failed after %d tokens: %s", self.token_count, self.error
                )
                if buffer:
                    yield self._flush(buffer)
                yield error_marker(self.error.message)
                self._enter(StreamState.CLOSED)
                return

            if buffer:
                yield self._flush(buffer)

            if self._sources:
                self._enter(StreamState.REFERENCE_APPEND)
                line = citation_line(len(self._sources))
                self._parts.append(line)
                yield line
                yield reference_payload(self._sources)

            self._enter(StreamState.CLOSED)
            logger.info(
                "Stream finished: %d tokens, %d flushes, %d chars",
                self.token_count,
                self.flush_count,
                len(self.text),
            )
        except BaseException:
            if self.state is not StreamState.CLOSED:
                self.cancelled = True
                self._enter(StreamState.CLOSED)
                logger.info("Stream cancelled after %d tokens", self.token_count)
            raise
        finally:
            await self._close_tokens()

    async def _close_tokens(self) -> None:
        aclose = getattr(self._tokens, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception as exc:
            logger.debug("Closing provider stream raised: %s", exc)
