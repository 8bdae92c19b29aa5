from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any


class ChatStore:
    def __init__(self, db_path: str):
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._transaction_depth = 0
        self._initialize_schema()

    def close(self) -> None:
        self._conn.close()

    def execute(self, query: str, params: tuple[Any, ...] = ()) -> sqlite3.Cursor:
        return self._conn.execute(query, params)

    def executemany(self, query: str, seq_of_params: list[tuple[Any, ...]]) -> sqlite3.Cursor:
        return self._conn.executemany(query, seq_of_params)

    def commit(self) -> None:
        # Inside transaction() the outermost block owns the commit.
        if self._transaction_depth == 0:
            self._conn.commit()

    def rollback(self) -> None:
        self._conn.rollback()

    @contextmanager
    def transaction(self) -> Iterator[ChatStore]:
        self._transaction_depth += 1
        try:
            yield self
        except BaseException:
            self._transaction_depth -= 1
            if self._transaction_depth == 0:
                self._conn.rollback()
            raise
        self._transaction_depth -= 1
        if self._transaction_depth == 0:
            self._conn.commit()

    def _initialize_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                tokens REAL NOT NULL DEFAULT 0 CHECK (tokens >= 0),
                trust_tier TEXT NOT NULL DEFAULT 'unverified'
                    CHECK (trust_tier IN ('unverified', 'verified')),
                creator_tier TEXT NOT NULL DEFAULT 'level1'
                    CHECK (creator_tier IN ('level1', 'level2', 'level3'))
            );

            CREATE TABLE IF NOT EXISTS worlds (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                description TEXT NOT NULL,
                setting TEXT NOT NULL DEFAULT '',
                rules_json TEXT NOT NULL DEFAULT '[]'
            );

            CREATE TABLE IF NOT EXISTS characters (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                description TEXT NOT NULL,
                personality TEXT NOT NULL,
                speaking_style TEXT NOT NULL,
                creator_id TEXT NOT NULL,
                age_display TEXT NOT NULL DEFAULT '',
                species TEXT NOT NULL DEFAULT '',
                role TEXT NOT NULL DEFAULT '',
                appearance TEXT NOT NULL DEFAULT '',
                personality_core_json TEXT NOT NULL DEFAULT '[]',
                background_story TEXT NOT NULL DEFAULT '',
                likes_json TEXT NOT NULL DEFAULT '[]',
                dislikes_json TEXT NOT NULL DEFAULT '[]',
                greeting TEXT NOT NULL DEFAULT '',
                scenario TEXT NOT NULL DEFAULT '',
                world_id TEXT NULL REFERENCES worlds(id) ON DELETE SET NULL,
                default_provider_id TEXT NOT NULL DEFAULT 'gpt4'
            );

            CREATE TABLE IF NOT EXISTS presets (
                id TEXT PRIMARY KEY,
                character_id TEXT NOT NULL REFERENCES characters(id) ON DELETE CASCADE,
                title TEXT NOT NULL,
                relationship_to_user TEXT NOT NULL,
                mood TEXT NOT NULL DEFAULT 'calm',
                speaking_tone TEXT NOT NULL DEFAULT '',
                scenario_intro TEXT NOT NULL DEFAULT '',
                rules_json TEXT NOT NULL DEFAULT '[]'
            );

            CREATE TABLE IF NOT EXISTS sessions (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                character_id TEXT NOT NULL,
                provider_id TEXT NOT NULL,
                mode TEXT NOT NULL CHECK (mode IN ('story', 'chat', 'creator_debug')),
                total_tokens_used INTEGER NOT NULL DEFAULT 0,
                last_activity TEXT NOT NULL,
                preset_id TEXT NULL,
                title TEXT NULL,
                state_json TEXT NOT NULL DEFAULT '{}',
                compacted_batches INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS messages (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
                seq INTEGER NOT NULL,
                sender TEXT NOT NULL CHECK (sender IN ('user', 'ai')),
                content TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                tokens_used INTEGER NULL,
                suggested_replies_json TEXT NOT NULL DEFAULT '[]',
                UNIQUE(session_id, seq)
            );

            CREATE TABLE IF NOT EXISTS memory_summaries (
                session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
                batch_index INTEGER NOT NULL,
                range_start INTEGER NOT NULL,
                range_end INTEGER NOT NULL,
                summary_text TEXT NOT NULL,
                key_events_json TEXT NOT NULL DEFAULT '[]',
                emotional_tone TEXT NOT NULL DEFAULT '',
                important_facts_json TEXT NOT NULL DEFAULT '[]',
                created_at TEXT NOT NULL,
                PRIMARY KEY (session_id, batch_index)
            );

            CREATE TABLE IF NOT EXISTS user_notes (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                target_type TEXT NOT NULL CHECK (target_type IN ('session', 'character')),
                target_id TEXT NOT NULL,
                content TEXT NOT NULL,
                category TEXT NOT NULL DEFAULT 'memory'
                    CHECK (category IN ('rule', 'memory', 'preference', 'bookmark')),
                is_pinned INTEGER NOT NULL DEFAULT 0 CHECK (is_pinned IN (0, 1)),
                include_in_context INTEGER NOT NULL DEFAULT 1 CHECK (include_in_context IN (0, 1)),
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS creator_earnings (
                creator_id TEXT NOT NULL,
                character_id TEXT NOT NULL,
                period TEXT NOT NULL,
                conversation_count INTEGER NOT NULL DEFAULT 0,
                tokens_earned REAL NOT NULL DEFAULT 0,
                is_settled INTEGER NOT NULL DEFAULT 0 CHECK (is_settled IN (0, 1)),
                settled_at TEXT NULL,
                PRIMARY KEY (creator_id, character_id, period)
            );

            CREATE TABLE IF NOT EXISTS events (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
                type TEXT NOT NULL,
                payload_json TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_sessions_user_activity
                ON sessions(user_id, last_activity);
            CREATE INDEX IF NOT EXISTS idx_messages_session_seq
                ON messages(session_id, seq);
            CREATE INDEX IF NOT EXISTS idx_user_notes_target
                ON user_notes(target_type, target_id);
            CREATE INDEX IF NOT EXISTS idx_events_session_created
                ON events(session_id, created_at);
            """
        )
        self._conn.commit()
