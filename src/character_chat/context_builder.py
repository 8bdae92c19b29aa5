from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass, field

from character_chat.models import (
    Character,
    ChatMode,
    MemorySummary,
    Message,
    PersonaPreset,
    Sender,
    SessionState,
    UserNote,
    World,
)
from character_chat.system_prompt import (
    SUGGESTION_INSTRUCTIONS,
    SUGGESTIONS_CLOSE,
    SUGGESTIONS_OPEN,
    build_character_section,
    build_memory_section,
    build_notes_section,
    build_output_format_section,
    build_preset_section,
    build_role_section,
    build_rules_section,
    build_state_section,
    build_world_section,
)

DEFAULT_RECENT_MESSAGES_LIMIT = 10
DEFAULT_MEMORY_SUMMARY_LIMIT = 3

_SUGGESTIONS_BLOCK = re.compile(re.escape(SUGGESTIONS_OPEN) + r"(.*?)" + re.escape(SUGGESTIONS_CLOSE), re.DOTALL)
_NUMBERING = re.compile(r"^\s*\d+[.)]\s*")


@dataclass(frozen=True)
class ContextInputs:
    character: Character
    user_message: str
    mode: ChatMode = ChatMode.CHAT
    world: World | None = None
    preset: PersonaPreset | None = None
    session_state: SessionState | None = None
    summaries: Sequence[MemorySummary] = ()
    # Already filtered to context-eligible notes, pinned first.
    notes: Sequence[UserNote] = ()
    recent_messages: Sequence[Message] = ()
    recent_messages_limit: int = DEFAULT_RECENT_MESSAGES_LIMIT
    memory_summary_limit: int = DEFAULT_MEMORY_SUMMARY_LIMIT


@dataclass(frozen=True)
class LLMContext:
    system_prompt: str
    messages: list[dict] = field(default_factory=list)
    include_suggestions: bool = False


def build_system_prompt(inputs: ContextInputs) -> str:
    sections = [build_role_section(inputs.character, inputs.world)]
    if inputs.world is not None:
        sections.append(build_world_section(inputs.world))
    sections.append(build_character_section(inputs.character))
    if inputs.preset is not None:
        sections.append(build_preset_section(inputs.preset))
    if inputs.session_state is not None:
        sections.append(build_state_section(inputs.session_state))

    summaries = select_summaries(inputs.summaries, inputs.memory_summary_limit)
    if summaries:
        sections.append(build_memory_section([s.summary_text for s in summaries]))
    if inputs.notes:
        sections.append(build_notes_section([n.content for n in inputs.notes]))

    sections.append(build_rules_section(inputs.preset.rules if inputs.preset is not None else ()))
    sections.append(build_output_format_section(inputs.mode))
    if inputs.mode == ChatMode.STORY:
        sections.append(SUGGESTION_INSTRUCTIONS)
    return "\n\n".join(sections)


def select_summaries(summaries: Sequence[MemorySummary], limit: int) -> list[MemorySummary]:
    """The ``limit`` most recent summaries, oldest first."""
    if limit <= 0:
        return []
    ordered = sorted(summaries, key=lambda s: s.batch_index)
    return ordered[-limit:]


def to_llm_messages(recent: Sequence[Message], limit: int, user_message: str) -> list[dict]:
    window = list(recent)[-limit:] if limit > 0 else []
    messages = [
        {"role": "user" if m.sender == Sender.USER else "assistant", "content": m.content}
        for m in window
    ]
    messages.append({"role": "user", "content": user_message})
    return messages


def build_context(inputs: ContextInputs) -> LLMContext:
    """Assemble the system prompt and message list for one turn.

    Pure: identical inputs always produce an identical result.
    """
    return LLMContext(
        system_prompt=build_system_prompt(inputs),
        messages=to_llm_messages(inputs.recent_messages, inputs.recent_messages_limit, inputs.user_message),
        include_suggestions=inputs.mode == ChatMode.STORY,
    )


def parse_suggestions(reply: str, include_suggestions: bool = True) -> tuple[str, list[str]]:
    """Split a reply into (reply without the suggestion block, suggestions)."""
    if not include_suggestions:
        return reply, []
    match = _SUGGESTIONS_BLOCK.search(reply)
    if match is None:
        return reply, []

    stripped = (reply[:match.start()] + reply[match.end():]).strip()
    suggestions = [_NUMBERING.sub("", line).strip() for line in match.group(1).splitlines()]
    return stripped, [s for s in suggestions if s]
