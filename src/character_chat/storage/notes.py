from __future__ import annotations

from character_chat.models import NoteCategory, NoteTarget, UserNote
from character_chat.storage.events import utc_now
from character_chat.storage.store import ChatStore


class NoteRepository:
    def __init__(self, store: ChatStore):
        self._store = store

    def create(self, note: UserNote) -> UserNote:
        created_at = note.created_at or utc_now()
        self._store.execute(
            """
            INSERT INTO user_notes (
                id, user_id, target_type, target_id, content, category,
                is_pinned, include_in_context, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                note.id,
                note.user_id,
                str(note.target_type),
                note.target_id,
                note.content,
                str(note.category),
                1 if note.is_pinned else 0,
                1 if note.include_in_context else 0,
                created_at,
            ),
        )
        self._store.commit()
        return self.get(note.id)

    def get(self, note_id: str) -> UserNote | None:
        row = self._store.execute("SELECT * FROM user_notes WHERE id = ? LIMIT 1", (note_id,)).fetchone()
        return self._to_note(row) if row is not None else None

    def save(self, note: UserNote) -> None:
        self._store.execute(
            """
            UPDATE user_notes
            SET content = ?, category = ?, is_pinned = ?, include_in_context = ?
            WHERE id = ?
            """,
            (
                note.content,
                str(note.category),
                1 if note.is_pinned else 0,
                1 if note.include_in_context else 0,
                note.id,
            ),
        )
        self._store.commit()

    def delete(self, note_id: str) -> None:
        self._store.execute("DELETE FROM user_notes WHERE id = ?", (note_id,))
        self._store.commit()

    def list_for_target(self, user_id: str, target_type: NoteTarget, target_id: str) -> list[UserNote]:
        rows = self._store.execute(
            """
            SELECT * FROM user_notes
            WHERE user_id = ? AND target_type = ? AND target_id = ?
            ORDER BY is_pinned DESC, created_at DESC
            """,
            (user_id, str(target_type), target_id),
        ).fetchall()
        return [self._to_note(row) for row in rows]

    def list_context_notes(self, session_id: str, character_id: str, user_id: str) -> list[UserNote]:
        """Context-eligible notes for a session or its character, pinned first."""
        rows = self._store.execute(
            """
            SELECT * FROM user_notes
            WHERE user_id = ?
              AND include_in_context = 1
              AND (
                (target_type = 'session' AND target_id = ?)
                OR (target_type = 'character' AND target_id = ?)
              )
            ORDER BY is_pinned DESC, created_at DESC, id ASC
            """,
            (user_id, session_id, character_id),
        ).fetchall()
        return [self._to_note(row) for row in rows]

    def delete_for_session(self, session_id: str) -> None:
        self._store.execute(
            "DELETE FROM user_notes WHERE target_type = 'session' AND target_id = ?",
            (session_id,),
        )
        self._store.commit()

    def _to_note(self, row) -> UserNote:
        return UserNote(
            id=row["id"],
            user_id=row["user_id"],
            target_type=NoteTarget(row["target_type"]),
            target_id=row["target_id"],
            content=row["content"],
            category=NoteCategory(row["category"]),
            is_pinned=bool(row["is_pinned"]),
            include_in_context=bool(row["include_in_context"]),
            created_at=row["created_at"],
        )
