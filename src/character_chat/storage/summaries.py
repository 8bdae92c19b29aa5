from __future__ import annotations

import json

from character_chat.models import MemorySummary, MessageRange
from character_chat.storage.events import utc_now
from character_chat.storage.store import ChatStore


class SummaryRepository:
    def __init__(self, store: ChatStore):
        self._store = store

    def save(self, summary: MemorySummary) -> bool:
        """Idempotent upsert keyed by (session, batch index).

        Returns False when a summary for the batch already existed; the stored
        summary is never overwritten.
        """
        cursor = self._store.execute(
            """
            INSERT INTO memory_summaries (
                session_id, batch_index, range_start, range_end, summary_text,
                key_events_json, emotional_tone, important_facts_json, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(session_id, batch_index) DO NOTHING
            """,
            (
                summary.session_id,
                summary.batch_index,
                summary.message_range.start,
                summary.message_range.end,
                summary.summary_text,
                json.dumps(list(summary.key_events), ensure_ascii=False),
                summary.emotional_tone,
                json.dumps(list(summary.important_facts), ensure_ascii=False),
                summary.created_at or utc_now(),
            ),
        )
        self._store.commit()
        return cursor.rowcount > 0

    def exists(self, session_id: str, batch_index: int) -> bool:
        row = self._store.execute(
            "SELECT 1 FROM memory_summaries WHERE session_id = ? AND batch_index = ? LIMIT 1",
            (session_id, batch_index),
        ).fetchone()
        return row is not None

    def list_recent(self, session_id: str, limit: int) -> list[MemorySummary]:
        """Most recent batches first."""
        if limit <= 0:
            return []
        rows = self._store.execute(
            """
            SELECT * FROM memory_summaries
            WHERE session_id = ?
            ORDER BY batch_index DESC
            LIMIT ?
            """,
            (session_id, limit),
        ).fetchall()
        return [self._to_summary(row) for row in rows]

    def list_all(self, session_id: str) -> list[MemorySummary]:
        rows = self._store.execute(
            "SELECT * FROM memory_summaries WHERE session_id = ? ORDER BY batch_index ASC",
            (session_id,),
        ).fetchall()
        return [self._to_summary(row) for row in rows]

    def stats(self, session_id: str) -> dict:
        rows = self.list_recent(session_id, 1)
        count_row = self._store.execute(
            "SELECT COUNT(*) AS c FROM memory_summaries WHERE session_id = ?",
            (session_id,),
        ).fetchone()
        latest = rows[0].message_range if rows else None
        return {
            "summary_count": int(count_row["c"]),
            "latest_summary_range": {"start": latest.start, "end": latest.end} if latest else None,
        }

    def _to_summary(self, row) -> MemorySummary:
        return MemorySummary(
            session_id=row["session_id"],
            batch_index=int(row["batch_index"]),
            message_range=MessageRange(int(row["range_start"]), int(row["range_end"])),
            summary_text=row["summary_text"],
            key_events=tuple(json.loads(row["key_events_json"])),
            emotional_tone=row["emotional_tone"],
            important_facts=tuple(json.loads(row["important_facts_json"])),
            created_at=row["created_at"],
        )
