"""Plain text-completion backend (KoboldCpp-style) over httpx.

Blocking:  POST {base_url}/api/v1/generate          -> {"results": [{"text": ...}]}
Streaming: POST {base_url}/api/extra/generate/stream -> SSE lines ``data: {"token": ...}``

These backends report no usage, so callers estimate tokens from the reply.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator

import httpx
from loguru import logger

from character_chat.errors import ProviderError
from character_chat.provider import Completion, StreamChunk


def flatten_prompt(system_prompt: str, messages: list[dict]) -> str:
    lines: list[str] = []
    if system_prompt:
        lines.append(system_prompt)
        lines.append("")
    for msg in messages:
        speaker = "Assistant" if msg.get("role") == "assistant" else "User"
        lines.append(f"{speaker}: {msg.get('content', '')}")
    lines.append("Assistant:")
    return "\n".join(lines)


class HttpTextProvider:
    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        *,
        timeout_seconds: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout_seconds
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _payload(self, max_tokens: int, temperature: float, system_prompt: str, messages: list[dict]) -> dict:
        return {
            "prompt": flatten_prompt(system_prompt, messages),
            "max_length": max_tokens,
            "temperature": temperature,
        }

    async def create_message(
        self,
        model: str,
        max_tokens: int,
        temperature: float,
        system_prompt: str,
        messages: list[dict],
    ) -> Completion:
        url = f"{self._base_url}/api/v1/generate"
        logger.debug(f"HTTP generate: url={url}, messages={len(messages)}")
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            resp = await client.post(
                url,
                json=self._payload(max_tokens, temperature, system_prompt, messages),
                headers=self._headers(),
            )
            resp.raise_for_status()

        data = resp.json()
        results = data.get("results")
        if not results or "text" not in results[0]:
            raise ProviderError("Unexpected response format from text-completion backend")
        return Completion(content=results[0]["text"].strip(), tokens_used=None)

    async def stream_chat(
        self,
        model: str,
        max_tokens: int,
        temperature: float,
        system_prompt: str,
        messages: list[dict],
    ) -> AsyncIterator[StreamChunk]:
        url = f"{self._base_url}/api/extra/generate/stream"
        logger.debug(f"HTTP stream: url={url}, messages={len(messages)}")
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            async with client.stream(
                "POST",
                url,
                json=self._payload(max_tokens, temperature, system_prompt, messages),
                headers=self._headers(),
            ) as resp:
                resp.raise_for_status()
                async for line in resp.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    body = line[len("data:"):].strip()
                    if not body:
                        continue
                    try:
                        token = json.loads(body).get("token", "")
                    except json.JSONDecodeError:
                        logger.warning(f"Skipping malformed stream line: {body[:80]}")
                        continue
                    if token:
                        yield StreamChunk(text=token)
