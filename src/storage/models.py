"""Records persisted by the gateway.

IDs are generated client-side as ``{prefix}_{timestamp36}_{random9}`` so a
record can be written to either tier without a round trip for the key.
Timestamps are ISO 8601 strings in UTC, which sort chronologically.
"""

from __future__ import annotations

import secrets
import string
import time
from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, Field

_ALPHABET = string.digits + string.ascii_lowercase


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_ALPHABET[rem])
    return "".join(reversed(digits))


def new_id(prefix: str) -> str:
    """Generate a record ID like ``msg_m1x2y3z4_k3j9x0a1b``."""
    stamp = _base36(int(time.time() * 1000))
    rand = "".join(secrets.choice(_ALPHABET) for _ in range(9))
    return f"{prefix}_{stamp}_{rand}"


def utc_now() -> str:
    return datetime.now(UTC).isoformat()


class User(BaseModel):
    id: str = Field(default_factory=lambda: new_id("user"))
    email: str
    credential_hash: str
    display_name: str = ""
    phone: str | None = None
    bio: str | None = None
    avatar_ref: str | None = None
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)

    def to_row(self) -> tuple:
        return (
            self.id,
            self.email,
            self.credential_hash,
            self.display_name,
            self.phone,
            self.bio,
            self.avatar_ref,
            self.created_at,
            self.updated_at,
        )

    @classmethod
    def from_row(cls, row: tuple) -> User:
        return cls(
            id=row[0],
            email=row[1],
            credential_hash=row[2],
            display_name=row[3] or "",
            phone=row[4],
            bio=row[5],
            avatar_ref=row[6],
            created_at=row[7],
            updated_at=row[8],
        )


class Conversation(BaseModel):
    id: str = Field(default_factory=lambda: new_id("conv"))
    title: str
    owner_user_id: str
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)

    def to_row(self) -> tuple:
        return (self.id, self.title, self.owner_user_id, self.created_at, self.updated_at)

    @classmethod
    def from_row(cls, row: tuple) -> Conversation:
        return cls(
            id=row[0],
            title=row[1],
            owner_user_id=row[2],
            created_at=row[3],
            updated_at=row[4],
        )


class Message(BaseModel):
    """A single persisted chat message. Immutable once written."""

    id: str = Field(default_factory=lambda: new_id("msg"))
    conversation_id: str
    role: Literal["user", "assistant"]
    content: str
    created_at: str = Field(default_factory=utc_now)

    model_config = {"frozen": True}

    def to_row(self) -> tuple:
        return (self.id, self.conversation_id, self.role, self.content, self.created_at)

    @classmethod
    def from_row(cls, row: tuple) -> Message:
        return cls(
            id=row[0],
            conversation_id=row[1],
            role=row[2],
            content=row[3],
            created_at=row[4],
        )


class Memory(BaseModel):
    """A long-term fact about a user, extracted from past turns."""

    id: str = Field(default_factory=lambda: new_id("mem"))
    owner_user_id: str
    content: str
    category: str = "general"
    importance_score: int = Field(default=5, ge=1, le=10)
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)

    def to_row(self) -> tuple:
        return (
            self.id,
            self.owner_user_id,
            self.content,
            self.category,
            self.importance_score,
            self.created_at,
            self.updated_at,
        )

    @classmethod
    def from_row(cls, row: tuple) -> Memory:
        return cls(
            id=row[0],
            owner_user_id=row[1],
            content=row[2],
            category=row[3] or "general",
            importance_score=row[4],
            created_at=row[5],
            updated_at=row[6],
        )


class Reference(BaseModel):
    """A grounding source cited by an assistant message.

    ``display_order`` is zero-based; citation marker ``[n]`` in the text
    points at the reference with ``display_order == n - 1``.
    """

    message_id: str
    url: str
    title: str
    snippet: str | None = None
    source_label: str
    published_at: str | None = None
    display_order: int = Field(ge=0)

    def to_row(self) -> tuple:
        return (
            self.message_id,
            self.display_order,
            self.url,
            self.title,
            self.snippet,
            self.source_label,
            self.published_at,
        )

    @classmethod
    def from_row(cls, row: tuple) -> Reference:
        return cls(
            message_id=row[0],
            display_order=row[1],
            url=row[2],
            title=row[3],
            snippet=row[4],
            source_label=row[5],
            published_at=row[6],
        )
