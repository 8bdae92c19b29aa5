from __future__ import annotations

from dataclasses import replace

from character_chat.models import (
    PROGRESS_COUNTER_RANGE,
    RELATIONSHIP_LEVEL_RANGE,
    SessionState,
    SessionStateUpdate,
)


def clamp(value: int, bounds: tuple[int, int]) -> int:
    low, high = bounds
    return max(low, min(high, int(value)))


def apply_update(state: SessionState, update: SessionStateUpdate) -> SessionState:
    """Return ``state`` with every provided field replaced, bounded fields clamped."""
    changes: dict = {}
    if update.mood is not None:
        changes["mood"] = update.mood
    if update.relationship_level is not None:
        changes["relationship_level"] = clamp(update.relationship_level, RELATIONSHIP_LEVEL_RANGE)
    if update.scene is not None:
        changes["scene"] = update.scene
    if update.progress_counter is not None:
        changes["progress_counter"] = clamp(update.progress_counter, PROGRESS_COUNTER_RANGE)
    if update.last_scene_summary is not None:
        changes["last_scene_summary"] = update.last_scene_summary
    return replace(state, **changes)
