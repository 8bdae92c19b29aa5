from __future__ import annotations

import json
from datetime import UTC, datetime
from uuid import uuid4

from character_chat.storage.store import ChatStore


def utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds")


class EventEmitter:
    def __init__(self, store: ChatStore):
        self._store = store

    def emit(self, session_id: str, event_type: str, payload: dict) -> None:
        self._store.execute(
            """
            INSERT INTO events (id, session_id, type, payload_json, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                str(uuid4()),
                session_id,
                event_type,
                json.dumps(payload, ensure_ascii=False),
                utc_now(),
            ),
        )
        self._store.commit()

    def list_events(self, session_id: str, *, event_type: str | None = None) -> list[dict]:
        if event_type is None:
            rows = self._store.execute(
                """
                SELECT type, payload_json, created_at FROM events
                WHERE session_id = ?
                ORDER BY created_at ASC, rowid ASC
                """,
                (session_id,),
            ).fetchall()
        else:
            rows = self._store.execute(
                """
                SELECT type, payload_json, created_at FROM events
                WHERE session_id = ? AND type = ?
                ORDER BY created_at ASC, rowid ASC
                """,
                (session_id, event_type),
            ).fetchall()
        return [
            {"type": row["type"], "payload": json.loads(row["payload_json"]), "created_at": row["created_at"]}
            for row in rows
        ]
