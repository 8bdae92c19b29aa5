from __future__ import annotations

import json
from dataclasses import asdict
from uuid import uuid4

from character_chat.models import ChatMode, ChatSession, Message, Sender, SessionState
from character_chat.storage.events import utc_now
from character_chat.storage.store import ChatStore


class SessionRepository:
    def __init__(self, store: ChatStore):
        self._store = store

    def create(self, session: ChatSession) -> ChatSession:
        now = utc_now()
        last_activity = session.last_activity or now
        self._store.execute(
            """
            INSERT INTO sessions (
                id, user_id, character_id, provider_id, mode, total_tokens_used,
                last_activity, preset_id, title, state_json, compacted_batches, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                session.id,
                session.user_id,
                session.character_id,
                session.provider_id,
                str(session.mode),
                session.total_tokens_used,
                last_activity,
                session.preset_id,
                session.title,
                _dump_state(session.state),
                session.compacted_batches,
                now,
            ),
        )
        self._store.commit()
        if session.messages:
            self.append_messages(session.id, list(session.messages))
        return session.with_changes(last_activity=last_activity)

    def get(self, session_id: str) -> ChatSession | None:
        row = self._store.execute(
            "SELECT * FROM sessions WHERE id = ? LIMIT 1",
            (session_id,),
        ).fetchone()
        if row is None:
            return None
        return self._to_session(row, self.load_messages(session_id))

    def list_for_user(self, user_id: str, *, limit: int = 50) -> list[ChatSession]:
        rows = self._store.execute(
            """
            SELECT * FROM sessions
            WHERE user_id = ?
            ORDER BY last_activity DESC, created_at DESC
            LIMIT ?
            """,
            (user_id, max(1, limit)),
        ).fetchall()
        # Listing returns headers only; callers load the transcript with get().
        return [self._to_session(row, ()) for row in rows]

    def save(self, session: ChatSession) -> None:
        """Persist header fields. ``compacted_batches`` is owned by the compactor."""
        self._store.execute(
            """
            UPDATE sessions
            SET provider_id = ?, mode = ?, total_tokens_used = ?, last_activity = ?,
                preset_id = ?, title = ?, state_json = ?
            WHERE id = ?
            """,
            (
                session.provider_id,
                str(session.mode),
                session.total_tokens_used,
                session.last_activity or utc_now(),
                session.preset_id,
                session.title,
                _dump_state(session.state),
                session.id,
            ),
        )
        self._store.commit()

    def record_turn(self, session_id: str, tokens_used: int, last_activity: str) -> None:
        self._store.execute(
            """
            UPDATE sessions
            SET total_tokens_used = total_tokens_used + ?,
                last_activity = MAX(last_activity, ?)
            WHERE id = ?
            """,
            (tokens_used, last_activity, session_id),
        )
        self._store.commit()

    def delete(self, session_id: str) -> None:
        self._store.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
        self._store.commit()

    def append_messages(self, session_id: str, messages: list[Message]) -> int:
        """Append in order and return the new message count."""
        row = self._store.execute(
            "SELECT COALESCE(MAX(seq), 0) AS max_seq FROM messages WHERE session_id = ?",
            (session_id,),
        ).fetchone()
        next_seq = int(row["max_seq"]) + 1
        params: list[tuple] = []
        for offset, message in enumerate(messages):
            params.append(
                (
                    str(uuid4()),
                    session_id,
                    next_seq + offset,
                    str(message.sender),
                    message.content,
                    message.timestamp,
                    message.tokens_used,
                    json.dumps(list(message.suggested_replies), ensure_ascii=False),
                )
            )
        self._store.executemany(
            """
            INSERT INTO messages (id, session_id, seq, sender, content, timestamp, tokens_used, suggested_replies_json)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            params,
        )
        self._store.commit()
        return next_seq - 1 + len(messages)

    def load_messages(self, session_id: str, start: int = 0, end: int | None = None) -> tuple[Message, ...]:
        """Messages by 0-based index, half-open ``[start, end)``."""
        limit = -1 if end is None else max(0, end - start)
        rows = self._store.execute(
            """
            SELECT sender, content, timestamp, tokens_used, suggested_replies_json
            FROM messages
            WHERE session_id = ?
            ORDER BY seq ASC
            LIMIT ? OFFSET ?
            """,
            (session_id, limit, max(0, start)),
        ).fetchall()
        return tuple(
            Message(
                sender=Sender(row["sender"]),
                content=row["content"],
                timestamp=row["timestamp"],
                tokens_used=row["tokens_used"],
                suggested_replies=tuple(json.loads(row["suggested_replies_json"])),
            )
            for row in rows
        )

    def message_count(self, session_id: str) -> int:
        row = self._store.execute(
            "SELECT COUNT(*) AS c FROM messages WHERE session_id = ?",
            (session_id,),
        ).fetchone()
        return int(row["c"])

    def compaction_marker(self, session_id: str) -> int:
        row = self._store.execute(
            "SELECT compacted_batches FROM sessions WHERE id = ?",
            (session_id,),
        ).fetchone()
        return int(row["compacted_batches"]) if row is not None else 0

    def advance_compaction_marker(self, session_id: str, batches: int) -> int:
        """Single-statement monotonic advance; returns the stored marker."""
        self._store.execute(
            "UPDATE sessions SET compacted_batches = MAX(compacted_batches, ?) WHERE id = ?",
            (batches, session_id),
        )
        self._store.commit()
        return self.compaction_marker(session_id)

    def _to_session(self, row, messages: tuple[Message, ...]) -> ChatSession:
        return ChatSession(
            id=row["id"],
            user_id=row["user_id"],
            character_id=row["character_id"],
            provider_id=row["provider_id"],
            mode=ChatMode(row["mode"]),
            messages=messages,
            total_tokens_used=int(row["total_tokens_used"]),
            last_activity=row["last_activity"],
            preset_id=row["preset_id"],
            title=row["title"],
            state=_load_state(row["state_json"]),
            compacted_batches=int(row["compacted_batches"]),
        )


def _dump_state(state: SessionState) -> str:
    return json.dumps(asdict(state), ensure_ascii=False)


def _load_state(state_json: str) -> SessionState:
    try:
        data = json.loads(state_json)
    except json.JSONDecodeError:
        return SessionState()
    if not isinstance(data, dict):
        return SessionState()
    known = {k: v for k, v in data.items() if k in SessionState.__dataclass_fields__}
    return SessionState(**known)
