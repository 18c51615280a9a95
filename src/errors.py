"""Error taxonomy for a chat turn.

Only ``GenerationFailure`` and ``RequestValidationError`` ever reach the HTTP
layer from the orchestrator. ``UpstreamUnavailable`` is raised by search
backends and the primary store and is always caught at the component
boundary and turned into a degraded result.
"""

from __future__ import annotations

from typing import Any

GENERATION_KINDS = ("insufficient_balance", "unauthorized", "rate_limit", "server_error")

_KIND_STATUS = {
    "insufficient_balance": 402,
    "unauthorized": 401,
    "rate_limit": 429,
    "server_error": 500,
}


class ChatError(Exception):
    """Base class for errors raised by the chat service."""


class ConfigurationError(ChatError):
    """Required credentials or settings are missing. Fatal for the request."""


class RequestValidationError(ChatError):
    """The inbound request is malformed. Raised before any backend call."""


class DuplicateRecord(ChatError):
    """A record with the same unique key already exists."""


class UpstreamUnavailable(ChatError):
    """A search, memory or persistence backend could not be reached."""

    def __init__(self, backend: str, message: str = "") -> None:
        self.backend = backend
        super().__init__(f"{backend} unavailable: {message}" if message else f"{backend} unavailable")


class GenerationFailure(ChatError):
    """The inference provider failed before or during generation."""

    def __init__(self, kind: str, message: str) -> None:
        if kind not in _KIND_STATUS:
            kind = "server_error"
        self.kind = kind
        self.message = message
        super().__init__(message)

    @property
    def status(self) -> int:
        return _KIND_STATUS[self.kind]

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message, "type": self.kind}


def classify_provider_error(exc: BaseException) -> GenerationFailure:
    """Map an inference provider exception onto a ``GenerationFailure``.

    Uses the HTTP status code when the SDK exposes one, otherwise sniffs the
    message text the way upstream gateways usually phrase these errors.
    """
    if isinstance(exc, GenerationFailure):
        return exc

    message = str(exc) or exc.__class__.__name__
    status = getattr(exc, "status_code", None)

    if status == 402 or "Insufficient Balance" in message:
        kind = "insufficient_balance"
    elif status == 401 or "Unauthorized" in message:
        kind = "unauthorized"
    elif status == 429 or "Rate limit" in message or "rate limit" in message:
        kind = "rate_limit"
    else:
        kind = "server_error"
    return GenerationFailure(kind, message)
