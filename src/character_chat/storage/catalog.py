from __future__ import annotations

import json

from character_chat.models import Character, PersonaPreset, World
from character_chat.storage.store import ChatStore


def _dump_list(values: tuple[str, ...]) -> str:
    return json.dumps(list(values), ensure_ascii=False)


def _load_list(raw: str) -> tuple[str, ...]:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return ()
    if not isinstance(parsed, list):
        return ()
    return tuple(str(item) for item in parsed)


class CatalogRepository:
    """Read side of characters, worlds and presets.

    Those records are owned by external management flows; the ``save_*``
    methods exist for seeding and are not called by the turn pipeline.
    """

    def __init__(self, store: ChatStore):
        self._store = store

    def get_character(self, character_id: str) -> Character | None:
        row = self._store.execute("SELECT * FROM characters WHERE id = ? LIMIT 1", (character_id,)).fetchone()
        if row is None:
            return None
        return Character(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            personality=row["personality"],
            speaking_style=row["speaking_style"],
            creator_id=row["creator_id"],
            age_display=row["age_display"],
            species=row["species"],
            role=row["role"],
            appearance=row["appearance"],
            personality_core=_load_list(row["personality_core_json"]),
            background_story=row["background_story"],
            likes=_load_list(row["likes_json"]),
            dislikes=_load_list(row["dislikes_json"]),
            greeting=row["greeting"],
            scenario=row["scenario"],
            world_id=row["world_id"],
            default_provider_id=row["default_provider_id"],
        )

    def get_world(self, world_id: str) -> World | None:
        row = self._store.execute("SELECT * FROM worlds WHERE id = ? LIMIT 1", (world_id,)).fetchone()
        if row is None:
            return None
        return World(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            setting=row["setting"],
            rules=_load_list(row["rules_json"]),
        )

    def get_preset(self, preset_id: str) -> PersonaPreset | None:
        row = self._store.execute("SELECT * FROM presets WHERE id = ? LIMIT 1", (preset_id,)).fetchone()
        if row is None:
            return None
        return PersonaPreset(
            id=row["id"],
            character_id=row["character_id"],
            title=row["title"],
            relationship_to_user=row["relationship_to_user"],
            mood=row["mood"],
            speaking_tone=row["speaking_tone"],
            scenario_intro=row["scenario_intro"],
            rules=_load_list(row["rules_json"]),
        )

    def save_world(self, world: World) -> None:
        self._store.execute(
            """
            INSERT INTO worlds (id, name, description, setting, rules_json)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                description = excluded.description,
                setting = excluded.setting,
                rules_json = excluded.rules_json
            """,
            (world.id, world.name, world.description, world.setting, _dump_list(world.rules)),
        )
        self._store.commit()

    def save_character(self, character: Character) -> None:
        self._store.execute(
            """
            INSERT INTO characters (
                id, name, description, personality, speaking_style, creator_id,
                age_display, species, role, appearance, personality_core_json,
                background_story, likes_json, dislikes_json, greeting, scenario,
                world_id, default_provider_id
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                description = excluded.description,
                personality = excluded.personality,
                speaking_style = excluded.speaking_style,
                creator_id = excluded.creator_id,
                age_display = excluded.age_display,
                species = excluded.species,
                role = excluded.role,
                appearance = excluded.appearance,
                personality_core_json = excluded.personality_core_json,
                background_story = excluded.background_story,
                likes_json = excluded.likes_json,
                dislikes_json = excluded.dislikes_json,
                greeting = excluded.greeting,
                scenario = excluded.scenario,
                world_id = excluded.world_id,
                default_provider_id = excluded.default_provider_id
            """,
            (
                character.id,
                character.name,
                character.description,
                character.personality,
                character.speaking_style,
                character.creator_id,
                character.age_display,
                character.species,
                character.role,
                character.appearance,
                _dump_list(character.personality_core),
                character.background_story,
                _dump_list(character.likes),
                _dump_list(character.dislikes),
                character.greeting,
                character.scenario,
                character.world_id,
                character.default_provider_id,
            ),
        )
        self._store.commit()

    def save_preset(self, preset: PersonaPreset) -> None:
        self._store.execute(
            """
            INSERT INTO presets (
                id, character_id, title, relationship_to_user, mood,
                speaking_tone, scenario_intro, rules_json
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                character_id = excluded.character_id,
                title = excluded.title,
                relationship_to_user = excluded.relationship_to_user,
                mood = excluded.mood,
                speaking_tone = excluded.speaking_tone,
                scenario_intro = excluded.scenario_intro,
                rules_json = excluded.rules_json
            """,
            (
                preset.id,
                preset.character_id,
                preset.title,
                preset.relationship_to_user,
                preset.mood,
                preset.speaking_tone,
                preset.scenario_intro,
                _dump_list(preset.rules),
            ),
        )
        self._store.commit()
