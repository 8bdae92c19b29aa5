from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class ChunkEvent:
    content: str


@dataclass(frozen=True)
class DoneEvent:
    """Terminal success; the turn has been persisted and charged."""

    tokens_used: int
    token_cost: float
    suggested_replies: list[str] = field(default_factory=list)
    estimated: bool = False


@dataclass(frozen=True)
class ErrorEvent:
    """Terminal failure; nothing was persisted or charged."""

    kind: str
    reason: str


StreamEvent = ChunkEvent | DoneEvent | ErrorEvent
