from __future__ import annotations

from character_chat.models import CreatorTier, EarningsBucket, TrustTier, User
from character_chat.storage.events import utc_now
from character_chat.storage.store import ChatStore


class AccountRepository:
    def __init__(self, store: ChatStore):
        self._store = store

    def get_user(self, user_id: str) -> User | None:
        row = self._store.execute("SELECT * FROM users WHERE id = ? LIMIT 1", (user_id,)).fetchone()
        if row is None:
            return None
        return User(
            id=row["id"],
            tokens=float(row["tokens"]),
            trust_tier=TrustTier(row["trust_tier"]),
            creator_tier=CreatorTier(row["creator_tier"]),
        )

    def save_user(self, user: User) -> None:
        self._store.execute(
            """
            INSERT INTO users (id, tokens, trust_tier, creator_tier)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                tokens = excluded.tokens,
                trust_tier = excluded.trust_tier,
                creator_tier = excluded.creator_tier
            """,
            (user.id, user.tokens, str(user.trust_tier), str(user.creator_tier)),
        )
        self._store.commit()

    def debit(self, user_id: str, amount: float) -> bool:
        """Conditional decrement; False when the balance cannot cover ``amount``."""
        cursor = self._store.execute(
            "UPDATE users SET tokens = ROUND(tokens - ?, 4) WHERE id = ? AND tokens >= ?",
            (amount, user_id, amount),
        )
        self._store.commit()
        return cursor.rowcount == 1

    def credit_earnings(self, creator_id: str, character_id: str, period: str, tokens_earned: float) -> bool:
        """Accumulate into the bucket; False when the bucket is already settled."""
        cursor = self._store.execute(
            """
            INSERT INTO creator_earnings (creator_id, character_id, period, conversation_count, tokens_earned)
            VALUES (?, ?, ?, 1, ?)
            ON CONFLICT(creator_id, character_id, period) DO UPDATE SET
                conversation_count = conversation_count + 1,
                tokens_earned = ROUND(tokens_earned + excluded.tokens_earned, 4)
            WHERE is_settled = 0
            """,
            (creator_id, character_id, period, tokens_earned),
        )
        self._store.commit()
        return cursor.rowcount > 0

    def get_earnings(self, creator_id: str, character_id: str, period: str) -> EarningsBucket | None:
        row = self._store.execute(
            """
            SELECT * FROM creator_earnings
            WHERE creator_id = ? AND character_id = ? AND period = ?
            LIMIT 1
            """,
            (creator_id, character_id, period),
        ).fetchone()
        if row is None:
            return None
        return EarningsBucket(
            creator_id=row["creator_id"],
            character_id=row["character_id"],
            period=row["period"],
            conversation_count=int(row["conversation_count"]),
            tokens_earned=float(row["tokens_earned"]),
            is_settled=bool(row["is_settled"]),
        )

    def mark_settled(self, creator_id: str, character_id: str, period: str) -> None:
        """Called by the external settlement process."""
        self._store.execute(
            """
            UPDATE creator_earnings SET is_settled = 1, settled_at = ?
            WHERE creator_id = ? AND character_id = ? AND period = ?
            """,
            (utc_now(), creator_id, character_id, period),
        )
        self._store.commit()
