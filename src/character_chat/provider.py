from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Protocol, runtime_checkable


@dataclass(frozen=True)
class Completion:
    content: str
    # None when the backend does not report usage.
    tokens_used: int | None = None


@dataclass(frozen=True)
class StreamChunk:
    text: str = ""
    tokens_used: int | None = None


@runtime_checkable
class LLMProvider(Protocol):
    async def create_message(
        self,
        model: str,
        max_tokens: int,
        temperature: float,
        system_prompt: str,
        messages: list[dict],
    ) -> Completion:
        """Blocking generation over ``{"role", "content"}`` messages."""
        ...

    def stream_chat(
        self,
        model: str,
        max_tokens: int,
        temperature: float,
        system_prompt: str,
        messages: list[dict],
    ) -> AsyncIterator[StreamChunk]:
        """Yield text fragments in generation order.

        A final chunk with empty text may carry the reported usage.
        """
        ...


def create_provider(
    provider_type: str,
    api_key: str,
    *,
    base_url: str | None = None,
    timeout_seconds: float = 60.0,
) -> LLMProvider:
    """Factory: create an LLMProvider by backend type."""
    name = provider_type.strip().lower()
    if name == "openai":
        from character_chat.providers.openai_provider import OpenAIProvider
        return OpenAIProvider(api_key, base_url=base_url, timeout_seconds=timeout_seconds)
    if name == "anthropic":
        from character_chat.providers.anthropic_provider import AnthropicProvider
        return AnthropicProvider(api_key, timeout_seconds=timeout_seconds)
    if name == "http":
        from character_chat.providers.http_provider import HttpTextProvider
        if not base_url:
            raise ValueError("The 'http' provider requires a BaseUrl")
        return HttpTextProvider(base_url, api_key, timeout_seconds=timeout_seconds)
    raise ValueError(f"Unknown provider type: {provider_type!r}. Supported: 'openai', 'anthropic', 'http'")
