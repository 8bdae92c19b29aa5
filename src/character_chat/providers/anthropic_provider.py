from collections.abc import AsyncIterator

import anthropic
from loguru import logger

from character_chat.provider import Completion, StreamChunk


def _request_kwargs(model: str, max_tokens: int, temperature: float, system_prompt: str, messages: list[dict]) -> dict:
    kwargs: dict = dict(
        model=model,
        max_tokens=max_tokens,
        temperature=temperature,
        messages=[
            {"role": "assistant" if m.get("role") == "assistant" else "user", "content": m.get("content", "")}
            for m in messages
        ],
    )
    if system_prompt:
        kwargs["system"] = system_prompt
    return kwargs


class AnthropicProvider:
    def __init__(self, api_key: str, *, timeout_seconds: float = 60.0):
        self._client = anthropic.AsyncAnthropic(api_key=api_key, timeout=timeout_seconds, max_retries=0)

    async def create_message(
        self,
        model: str,
        max_tokens: int,
        temperature: float,
        system_prompt: str,
        messages: list[dict],
    ) -> Completion:
        logger.debug(f"API request: model={model}, max_tokens={max_tokens}, messages={len(messages)}")
        response = await self._client.messages.create(
            **_request_kwargs(model, max_tokens, temperature, system_prompt, messages)
        )
        text = "".join(block.text for block in response.content if block.type == "text")
        usage = response.usage
        logger.debug(
            f"API response: stop_reason={response.stop_reason}, "
            f"input_tokens={usage.input_tokens}, output_tokens={usage.output_tokens}"
        )
        return Completion(content=text, tokens_used=usage.input_tokens + usage.output_tokens)

    async def stream_chat(
        self,
        model: str,
        max_tokens: int,
        temperature: float,
        system_prompt: str,
        messages: list[dict],
    ) -> AsyncIterator[StreamChunk]:
        logger.debug(f"Stream request: model={model}, max_tokens={max_tokens}, messages={len(messages)}")
        async with self._client.messages.stream(
            **_request_kwargs(model, max_tokens, temperature, system_prompt, messages)
        ) as stream:
            async for event in stream:
                if event.type == "content_block_delta" and event.delta.type == "text_delta":
                    yield StreamChunk(text=event.delta.text)

            response = await stream.get_final_message()

        usage = response.usage
        logger.debug(
            f"Stream response: stop_reason={response.stop_reason}, "
            f"input_tokens={usage.input_tokens}, output_tokens={usage.output_tokens}"
        )
        yield StreamChunk(tokens_used=usage.input_tokens + usage.output_tokens)
