from __future__ import annotations

import asyncio
import inspect
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass

from loguru import logger
from tenacity import AsyncRetrying

from character_chat.errors import ChatError, ProviderError
from character_chat.provider import LLMProvider, StreamChunk
from character_chat.providers.common import default_retry_kwargs, estimate_tokens

DEFAULT_PROVIDER_ID = "gpt4"


@dataclass(frozen=True)
class ProviderBinding:
    """How a provider id maps onto a backend."""

    provider_type: str
    model: str
    base_url: str | None = None
    api_key_env: str = "OPENAI_API_KEY"


DEFAULT_BINDINGS: dict[str, ProviderBinding] = {
    "gpt4": ProviderBinding("openai", "gpt-4-turbo", api_key_env="OPENAI_API_KEY"),
    "claude3": ProviderBinding("anthropic", "claude-3-opus-20240229", api_key_env="ANTHROPIC_API_KEY"),
    "grok": ProviderBinding("openai", "grok-beta", base_url="https://api.x.ai/v1", api_key_env="XAI_API_KEY"),
    "custom": ProviderBinding("openai", "gpt-4-turbo", api_key_env="CUSTOM_MODEL_API_KEY"),
}


@dataclass(frozen=True)
class Route:
    provider: LLMProvider
    model: str


@dataclass(frozen=True)
class Generation:
    content: str
    tokens_used: int
    # True when tokens_used is ceil(chars / 4) rather than reported usage.
    estimated: bool = False


@dataclass(frozen=True)
class StreamResult:
    total_tokens_used: int
    content: str
    estimated: bool = False


def _timeout_error(provider_id: str) -> ProviderError:
    return ProviderError("The AI model took too long to respond. Please try again.", provider_id=provider_id)


class GenerationStream:
    """Async iterator over text chunks of one streamed generation.

    ``content`` and ``tokens_used`` are final once iteration is exhausted.
    The whole stream shares a single deadline. Closing the stream closes the
    provider stream underneath it.
    """

    def __init__(self, provider_id: str, chunks: AsyncIterator[StreamChunk], timeout: float):
        self.provider_id = provider_id
        self._chunks = chunks
        self._deadline = asyncio.get_running_loop().time() + timeout
        self._parts: list[str] = []
        self._reported_tokens: int | None = None
        self._done = False

    @property
    def content(self) -> str:
        return "".join(self._parts)

    @property
    def estimated(self) -> bool:
        return self._reported_tokens is None

    @property
    def tokens_used(self) -> int:
        if self._reported_tokens is not None:
            return self._reported_tokens
        return estimate_tokens(self.content)

    @property
    def done(self) -> bool:
        return self._done

    def __aiter__(self) -> GenerationStream:
        return self

    async def __anext__(self) -> str:
        if self._done:
            raise StopAsyncIteration
        while True:
            try:
                async with asyncio.timeout_at(self._deadline):
                    chunk = await anext(self._chunks)
            except StopAsyncIteration:
                self._done = True
                logger.debug(
                    f"Stream finished: provider={self.provider_id}, chars={len(self.content)}, "
                    f"tokens={self.tokens_used}, estimated={self.estimated}"
                )
                raise
            except TimeoutError:
                await self.aclose()
                logger.error(f"Stream timed out: provider={self.provider_id}")
                raise _timeout_error(self.provider_id) from None
            except ChatError:
                await self.aclose()
                raise
            except Exception as ex:
                await self.aclose()
                logger.error(f"Stream failed: provider={self.provider_id}, error={type(ex).__name__}: {ex}")
                raise ProviderError(provider_id=self.provider_id) from ex

            if chunk.tokens_used is not None:
                self._reported_tokens = chunk.tokens_used
            if chunk.text:
                self._parts.append(chunk.text)
                return chunk.text

    async def aclose(self) -> None:
        self._done = True
        close = getattr(self._chunks, "aclose", None)
        if close is not None:
            try:
                await close()
            except Exception as ex:
                logger.warning(f"Error closing provider stream {self.provider_id}: {ex}")


class ModelRouter:
    """Uniform blocking and streamed generation over configured providers."""

    def __init__(
        self,
        routes: dict[str, Route],
        *,
        default_provider_id: str = DEFAULT_PROVIDER_ID,
        max_tokens: int = 1024,
        temperature: float = 0.8,
        timeout_seconds: float = 60.0,
        max_attempts: int = 1,
    ):
        if default_provider_id not in routes:
            raise ValueError(f"Default provider {default_provider_id!r} has no configured route")
        self._routes = routes
        self._default_provider_id = default_provider_id
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._timeout_seconds = timeout_seconds
        self._max_attempts = max_attempts

    @property
    def provider_ids(self) -> list[str]:
        return sorted(self._routes)

    def resolve(self, provider_id: str | None) -> str:
        """Return the provider id that will serve ``provider_id``."""
        if provider_id and provider_id in self._routes:
            return provider_id
        if provider_id:
            logger.warning(f"Unknown provider {provider_id!r}; using {self._default_provider_id}")
        return self._default_provider_id

    async def generate(
        self,
        provider_id: str | None,
        system_prompt: str,
        messages: list[dict],
        *,
        timeout: float | None = None,
        max_tokens: int | None = None,
    ) -> Generation:
        resolved = self.resolve(provider_id)
        route = self._routes[resolved]
        deadline = timeout if timeout is not None else self._timeout_seconds
        tokens = max_tokens or self._max_tokens

        async def call():
            async with asyncio.timeout(deadline):
                return await route.provider.create_message(
                    route.model, tokens, self._temperature, system_prompt, messages
                )

        logger.debug(f"Generate: provider={resolved}, model={route.model}, messages={len(messages)}")
        try:
            if self._max_attempts > 1:
                async for attempt in AsyncRetrying(**default_retry_kwargs(self._max_attempts)):
                    with attempt:
                        completion = await call()
            else:
                completion = await call()
        except ChatError:
            raise
        except TimeoutError:
            logger.error(f"Generate timed out: provider={resolved}, timeout={deadline}s")
            raise _timeout_error(resolved) from None
        except Exception as ex:
            logger.error(f"Generate failed: provider={resolved}, error={type(ex).__name__}: {ex}")
            raise ProviderError(provider_id=resolved) from ex

        if completion.tokens_used is None:
            return Generation(completion.content, estimate_tokens(completion.content), estimated=True)
        return Generation(completion.content, completion.tokens_used)

    def stream(
        self,
        provider_id: str | None,
        system_prompt: str,
        messages: list[dict],
        *,
        timeout: float | None = None,
    ) -> GenerationStream:
        resolved = self.resolve(provider_id)
        route = self._routes[resolved]
        logger.debug(f"Stream: provider={resolved}, model={route.model}, messages={len(messages)}")
        chunks = route.provider.stream_chat(
            route.model, self._max_tokens, self._temperature, system_prompt, messages
        )
        return GenerationStream(
            resolved, chunks, timeout if timeout is not None else self._timeout_seconds
        )

    async def generate_streaming(
        self,
        provider_id: str | None,
        system_prompt: str,
        messages: list[dict],
        on_chunk: Callable[[str], object],
        *,
        timeout: float | None = None,
    ) -> StreamResult:
        stream = self.stream(provider_id, system_prompt, messages, timeout=timeout)
        try:
            async for text in stream:
                result = on_chunk(text)
                if inspect.isawaitable(result):
                    await result
        finally:
            if not stream.done:
                await stream.aclose()
        return StreamResult(stream.tokens_used, stream.content, estimated=stream.estimated)
