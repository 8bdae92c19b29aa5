from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Protocol

import httpx
import openai
from loguru import logger

from character_chat.errors import ModerationUnavailable


@dataclass(frozen=True)
class ClassifierVerdict:
    flagged: bool
    categories: tuple[str, ...] = ()


class ModerationClassifier(Protocol):
    async def classify(self, text: str) -> ClassifierVerdict:
        """Raise ModerationUnavailable when the classifier cannot answer."""
        ...


class OpenAIModerationClassifier:
    """Category-scored moderation via the OpenAI moderation endpoint."""

    def __init__(self, api_key: str, *, model: str = "omni-moderation-latest", timeout_seconds: float = 10.0):
        self._client = openai.AsyncOpenAI(
            api_key=api_key,
            timeout=httpx.Timeout(timeout_seconds, connect=5.0),
            max_retries=0,
        )
        self._model = model
        self._timeout_seconds = timeout_seconds

    async def classify(self, text: str) -> ClassifierVerdict:
        try:
            async with asyncio.timeout(self._timeout_seconds):
                response = await self._client.moderations.create(model=self._model, input=text)
        except Exception as ex:
            logger.warning(f"Moderation classifier call failed: {type(ex).__name__}: {ex}")
            raise ModerationUnavailable() from ex

        if not response.results:
            raise ModerationUnavailable()
        result = response.results[0]
        hits = result.categories.model_dump(by_alias=True)
        categories = tuple(sorted(name for name, hit in hits.items() if hit))
        return ClassifierVerdict(flagged=bool(result.flagged), categories=categories)
