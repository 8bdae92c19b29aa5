from collections.abc import AsyncIterator

import httpx
import openai
from loguru import logger

from character_chat.provider import Completion, StreamChunk


def _to_openai_messages(system_prompt: str, messages: list[dict]) -> list[dict]:
    """Prepend the system prompt and pass user/assistant turns through."""
    out: list[dict] = []

    if system_prompt:
        out.append({"role": "system", "content": system_prompt})

    for msg in messages:
        role = msg.get("role", "user")
        if role not in ("user", "assistant", "system"):
            role = "user"
        content = msg.get("content", "")
        out.append({"role": role, "content": content if isinstance(content, str) else str(content)})

    return out


class OpenAIProvider:
    """OpenAI chat completions; also serves OpenAI-compatible hosts via ``base_url``."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str | None = None,
        timeout_seconds: float = 60.0,
        stream_usage: bool = True,
    ):
        self._client = openai.AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            max_retries=0,
        )
        self._stream_usage = stream_usage

    async def create_message(
        self,
        model: str,
        max_tokens: int,
        temperature: float,
        system_prompt: str,
        messages: list[dict],
    ) -> Completion:
        oai_messages = _to_openai_messages(system_prompt, messages)
        logger.debug(f"API request: model={model}, max_tokens={max_tokens}, messages={len(oai_messages)}")
        response = await self._client.chat.completions.create(
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            messages=oai_messages,
        )
        text = (response.choices[0].message.content or "") if response.choices else ""
        usage = getattr(response, "usage", None)
        tokens_used = usage.total_tokens if usage is not None else None
        logger.debug(f"API response: len={len(text)}, total_tokens={tokens_used}")
        return Completion(content=text, tokens_used=tokens_used)

    async def stream_chat(
        self,
        model: str,
        max_tokens: int,
        temperature: float,
        system_prompt: str,
        messages: list[dict],
    ) -> AsyncIterator[StreamChunk]:
        oai_messages = _to_openai_messages(system_prompt, messages)
        logger.debug(f"Stream request: model={model}, max_tokens={max_tokens}, messages={len(oai_messages)}")
        kwargs: dict = dict(
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            messages=oai_messages,
            stream=True,
        )
        if self._stream_usage:
            kwargs["stream_options"] = {"include_usage": True}

        stream = await self._client.chat.completions.create(**kwargs)
        tokens_used: int | None = None
        try:
            async for chunk in stream:
                usage = getattr(chunk, "usage", None)
                if usage is not None:
                    tokens_used = usage.total_tokens

                choice = chunk.choices[0] if chunk.choices else None
                if choice is None or choice.delta is None:
                    continue
                if choice.delta.content:
                    yield StreamChunk(text=choice.delta.content)
        finally:
            await stream.close()

        logger.debug(f"Stream response: total_tokens={tokens_used}")
        if tokens_used is not None:
            yield StreamChunk(tokens_used=tokens_used)
