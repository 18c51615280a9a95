"""Chat generation against an OpenAI-compatible completion API.

The chat path speaks the OpenAI wire format (DeepSeek and friends) because
the assembled prompt places system messages both first and last, which that
format allows anywhere in the list. Errors are surfaced as
``GenerationFailure`` so callers never see SDK exception types.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from openai import AsyncOpenAI

from src.config import Settings, settings
from src.errors import ConfigurationError, classify_provider_error

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = logging.getLogger(__name__)


@dataclass
class Completion:
    """A finished, non-streamed reply."""

    text: str
    usage: dict[str, int | None] | None


def normalize_usage(usage: Any) -> dict[str, int | None] | None:
    """Map SDK usage objects (or dicts) onto prompt/completion/total tokens."""
    if usage is None:
        return None
    if not isinstance(usage, dict):
        usage = usage.model_dump() if hasattr(usage, "model_dump") else vars(usage)
    return {
        "prompt_tokens": usage.get("prompt_tokens", usage.get("input_tokens")),
        "completion_tokens": usage.get("completion_tokens", usage.get("output_tokens")),
        "total_tokens": usage.get("total_tokens"),
    }


class ChatProvider:
    """Streams or completes chat replies for an assembled prompt."""

    def __init__(self, config: Settings = settings, client: AsyncOpenAI | None = None) -> None:
        self._config = config
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self._config.llm_api_key) or self._client is not None

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            if not self._config.llm_api_key:
                raise ConfigurationError("LLM_API_KEY is not configured")
            self._client = AsyncOpenAI(
                api_key=self._config.llm_api_key,
                base_url=self._config.llm_base_url,
            )
        return self._client

    def _request(self, messages: list[dict[str, Any]], model: str, temperature: float) -> dict:
        return {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "presence_penalty": self._config.presence_penalty,
            "frequency_penalty": self._config.frequency_penalty,
            "max_tokens": self._config.max_output_tokens,
        }

    async def stream(
        self,
        messages: list[dict[str, Any]],
        model: str,
        temperature: float,
    ) -> AsyncIterator[str]:
        """Yield text deltas as the provider produces them.

        Closing the generator early (``aclose()``) closes the underlying HTTP
        response, which is how a cancelled turn releases its resources.
        """
        client = self._get_client()
        try:
            response = await client.chat.completions.create(
                **self._request(messages, model, temperature), stream=True
            )
        except Exception as exc:
            raise classify_provider_error(exc) from exc

        try:
            async for chunk in response:
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                token = choice.delta.content if choice.delta else None
                if token:
                    yield token
                if choice.finish_reason:
                    logger.debug("Provider stream finished: %s", choice.finish_reason)
        except Exception as exc:
            raise classify_provider_error(exc) from exc
        finally:
            await response.close()

    async def complete(
        self,
        messages: list[dict[str, Any]],
        model: str,
        temperature: float,
    ) -> Completion:
        client = self._get_client()
        try:
            response = await client.chat.completions.create(
                **self._request(messages, model, temperature)
            )
        except Exception as exc:
            raise classify_provider_error(exc) from exc

        text = ""
        if response.choices and response.choices[0].message:
            text = response.choices[0].message.content or ""
        return Completion(text=text, usage=normalize_usage(response.usage))
