from __future__ import annotations

from collections.abc import Sequence

from character_chat.models import Character, ChatMode, PersonaPreset, SessionState, World

PLATFORM_RULES = [
    "Always respond in character and never make out-of-character (OOC) remarks.",
    "Speak dialogue naturally and put actions or descriptions inside *asterisks*.",
    "Listen to the user and react appropriately to what they say.",
]

SUGGESTIONS_OPEN = "[SUGGESTIONS]"
SUGGESTIONS_CLOSE = "[/SUGGESTIONS]"

SUGGESTION_INSTRUCTIONS = f"""\
---
After your reply, suggest exactly three replies the user could choose next.
Format:
{SUGGESTIONS_OPEN}
1. (first option)
2. (second option)
3. (third option)
{SUGGESTIONS_CLOSE}"""


def build_role_section(character: Character, world: World | None = None) -> str:
    if world is not None:
        return f'## Role\nYou are playing the character "{character.name}" from the world of "{world.name}".'
    return f'## Role\nYou are playing the character "{character.name}".'


def build_world_section(world: World) -> str:
    section = f"## World: {world.name}\n{world.description}"
    if world.setting:
        section += f"\nSetting: {world.setting}"
    if world.rules:
        section += "\nWorld rules:\n" + "\n".join(f"- {rule}" for rule in world.rules)
    return section


def build_character_section(character: Character) -> str:
    lines = ["## Character", f"- Name: {character.name}"]
    if character.age_display:
        lines.append(f"- Age: {character.age_display}")
    if character.species:
        lines.append(f"- Species: {character.species}")
    if character.role:
        lines.append(f"- Role: {character.role}")
    if character.appearance:
        lines.append(f"- Appearance: {character.appearance}")
    lines.append(f"- Personality: {character.personality}")
    if character.personality_core:
        lines.append(f"- Core traits: {', '.join(character.personality_core)}")
    lines.append(f"- Speaking style: {character.speaking_style}")
    if character.background_story:
        lines.append(f"- Background: {character.background_story}")
    if character.likes:
        lines.append(f"- Likes: {', '.join(character.likes)}")
    if character.dislikes:
        lines.append(f"- Dislikes: {', '.join(character.dislikes)}")
    if character.scenario:
        lines.append(f"- Scenario: {character.scenario}")
    return "\n".join(lines)


def build_preset_section(preset: PersonaPreset) -> str:
    lines = [
        "## Current persona",
        f"- Preset: {preset.title}",
        f"- Relationship to the user: {preset.relationship_to_user}",
        f"- Mood: {preset.mood}",
    ]
    if preset.speaking_tone:
        lines.append(f"- Speaking tone: {preset.speaking_tone}")
    if preset.scenario_intro:
        lines.append(f"- Situation: {preset.scenario_intro}")
    return "\n".join(lines)


def build_state_section(state: SessionState) -> str:
    lines = [
        "## Current state",
        f"- Scene: {state.scene or '(none)'}",
        f"- Mood: {state.mood}",
        f"- Relationship level: {state.relationship_level}/5",
        f"- Story progress: {state.progress_counter}/5",
    ]
    if state.last_scene_summary:
        lines.append(f"- Recent events: {state.last_scene_summary}")
    return "\n".join(lines)


def build_memory_section(summaries: Sequence[str]) -> str:
    return "## Earlier conversation\n" + "\n".join(f"[{i}] {text}" for i, text in enumerate(summaries, 1))


def build_notes_section(notes: Sequence[str]) -> str:
    return "## User notes\n" + "\n".join(f"- {note}" for note in notes)


def build_rules_section(preset_rules: Sequence[str] = ()) -> str:
    rules = [*PLATFORM_RULES, *preset_rules]
    return "## Rules\n" + "\n".join(f"{i}. {rule}" for i, rule in enumerate(rules, 1))


def build_output_format_section(mode: ChatMode) -> str:
    section = """\
## Output format
- Write dialogue directly, without quotation marks.
- Put actions and descriptions inside *asterisks* (e.g. *she smiles.*).
- Never make out-of-character remarks."""
    if mode == ChatMode.STORY:
        section += "\n- Story mode: describe scenes richly and write longer narrative passages."
    elif mode == ChatMode.CHAT:
        section += "\n- Chat mode: reply briefly in a conversational tone."
    elif mode == ChatMode.CREATOR_DEBUG:
        section += "\n- Debug mode: end every reply with a [DEBUG] tag listing the context you are drawing on."
    return section
