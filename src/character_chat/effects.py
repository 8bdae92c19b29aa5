"""Commands produced by a turn and applied by the chat service in one transaction."""

from __future__ import annotations

from dataclasses import dataclass, field

from character_chat.models import Message


@dataclass(frozen=True)
class DebitTokens:
    user_id: str
    amount: float


@dataclass(frozen=True)
class CreditCreatorEarnings:
    creator_id: str
    character_id: str
    cost: float
    period: str


@dataclass(frozen=True)
class AppendMessages:
    session_id: str
    messages: tuple[Message, ...]


@dataclass(frozen=True)
class RecordTurn:
    """Token total and activity time; the rest of the header belongs to explicit updates."""

    session_id: str
    tokens_used: int
    last_activity: str


@dataclass(frozen=True)
class EmitEvent:
    session_id: str
    event_type: str
    payload: dict = field(default_factory=dict)


Effect = DebitTokens | CreditCreatorEarnings | AppendMessages | RecordTurn | EmitEvent
