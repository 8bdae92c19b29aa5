from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import StrEnum


class ChatMode(StrEnum):
    STORY = "story"
    CHAT = "chat"
    CREATOR_DEBUG = "creator_debug"


class Sender(StrEnum):
    USER = "user"
    AI = "ai"


class TrustTier(StrEnum):
    UNVERIFIED = "unverified"
    VERIFIED = "verified"


class CreatorTier(StrEnum):
    LEVEL1 = "level1"
    LEVEL2 = "level2"
    LEVEL3 = "level3"


class NoteTarget(StrEnum):
    SESSION = "session"
    CHARACTER = "character"


class NoteCategory(StrEnum):
    RULE = "rule"
    MEMORY = "memory"
    PREFERENCE = "preference"
    BOOKMARK = "bookmark"


RELATIONSHIP_LEVEL_RANGE = (0, 5)
PROGRESS_COUNTER_RANGE = (1, 5)


@dataclass(frozen=True)
class Message:
    sender: Sender
    content: str
    timestamp: str
    tokens_used: int | None = None
    suggested_replies: tuple[str, ...] = ()


@dataclass(frozen=True)
class SessionState:
    mood: str = "calm"
    relationship_level: int = 0
    scene: str = ""
    progress_counter: int = 1
    last_scene_summary: str = ""


@dataclass(frozen=True)
class SessionStateUpdate:
    """Partial update; ``None`` leaves the current value untouched."""

    mood: str | None = None
    relationship_level: int | None = None
    scene: str | None = None
    progress_counter: int | None = None
    last_scene_summary: str | None = None


@dataclass(frozen=True)
class ChatSession:
    id: str
    user_id: str
    character_id: str
    provider_id: str
    mode: ChatMode = ChatMode.CHAT
    messages: tuple[Message, ...] = ()
    total_tokens_used: int = 0
    last_activity: str = ""
    preset_id: str | None = None
    title: str | None = None
    state: SessionState = field(default_factory=SessionState)
    compacted_batches: int = 0

    def with_changes(self, **changes) -> ChatSession:
        return replace(self, **changes)


@dataclass(frozen=True)
class MessageRange:
    start: int
    end: int


@dataclass(frozen=True)
class MemorySummary:
    session_id: str
    batch_index: int
    message_range: MessageRange
    summary_text: str
    key_events: tuple[str, ...] = ()
    emotional_tone: str = ""
    important_facts: tuple[str, ...] = ()
    created_at: str = ""


@dataclass(frozen=True)
class UserNote:
    id: str
    user_id: str
    target_type: NoteTarget
    target_id: str
    content: str
    category: NoteCategory = NoteCategory.MEMORY
    is_pinned: bool = False
    include_in_context: bool = True
    created_at: str = ""


@dataclass(frozen=True)
class Character:
    id: str
    name: str
    description: str
    personality: str
    speaking_style: str
    creator_id: str
    age_display: str = ""
    species: str = ""
    role: str = ""
    appearance: str = ""
    personality_core: tuple[str, ...] = ()
    background_story: str = ""
    likes: tuple[str, ...] = ()
    dislikes: tuple[str, ...] = ()
    greeting: str = ""
    scenario: str = ""
    world_id: str | None = None
    default_provider_id: str = "gpt4"


@dataclass(frozen=True)
class World:
    id: str
    name: str
    description: str
    setting: str = ""
    rules: tuple[str, ...] = ()


@dataclass(frozen=True)
class PersonaPreset:
    id: str
    character_id: str
    title: str
    relationship_to_user: str
    mood: str = "calm"
    speaking_tone: str = ""
    scenario_intro: str = ""
    rules: tuple[str, ...] = ()


@dataclass(frozen=True)
class User:
    id: str
    tokens: float = 0.0
    trust_tier: TrustTier = TrustTier.UNVERIFIED
    creator_tier: CreatorTier = CreatorTier.LEVEL1


@dataclass(frozen=True)
class EarningsBucket:
    creator_id: str
    character_id: str
    period: str
    conversation_count: int = 0
    tokens_earned: float = 0.0
    is_settled: bool = False
