from __future__ import annotations

import math

import anthropic
import httpx
import openai
from loguru import logger
from tenacity import retry_if_exception_type, stop_after_attempt, wait_exponential

TRANSIENT_ERRORS: tuple[type[Exception], ...] = (
    openai.RateLimitError,
    openai.APIConnectionError,
    openai.APITimeoutError,
    anthropic.RateLimitError,
    anthropic.APIConnectionError,
    anthropic.APITimeoutError,
    httpx.TransportError,
)


def estimate_tokens(text: str) -> int:
    """Approximate token count as ceil(chars / 4).

    Used only when a backend does not report usage; it is an estimate, not
    exact accounting.
    """
    return math.ceil(len(text) / 4)


def _on_retry(retry_state):
    attempt = retry_state.attempt_number
    wait = retry_state.next_action.sleep if retry_state.next_action else 0
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    reason = type(exc).__name__ if exc else "Unknown"
    logger.warning(f"{reason}. Retrying in {wait:.0f}s (attempt {attempt})...")


def default_retry_kwargs(max_attempts: int) -> dict:
    return {
        "retry": retry_if_exception_type(TRANSIENT_ERRORS),
        "wait": wait_exponential(multiplier=2, min=2, max=30),
        "stop": stop_after_attempt(max(1, max_attempts)),
        "before_sleep": _on_retry,
        "reraise": True,
    }
