from __future__ import annotations

from collections.abc import Mapping
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal

from loguru import logger

from character_chat.errors import InsufficientBalance
from character_chat.keyed_lock import KeyedLock
from character_chat.models import CreatorTier, User
from character_chat.storage.accounts import AccountRepository

# Cost per 1000 tokens.
DEFAULT_RATES: dict[str, float] = {
    "gpt4": 1.5,
    "claude3": 1.5,
    "grok": 1.0,
    "custom": 2.0,
}
DEFAULT_RATE = 1.0
MIN_COST = 0.5
DEFAULT_CREATOR_SHARE = 0.3
DEFAULT_QUALIFYING_TIERS = frozenset({CreatorTier.LEVEL2, CreatorTier.LEVEL3})


def _round_half_up(value: float, places: str) -> float:
    return float(Decimal(str(value)).quantize(Decimal(places), rounding=ROUND_HALF_UP))


def length_multiplier(response_length: int) -> float:
    if response_length > 2000:
        return 1.5
    if response_length > 1000:
        return 1.2
    return 1.0


def compute_cost(
    provider_id: str,
    api_tokens_used: int,
    response_length: int,
    rates: Mapping[str, float] | None = None,
    default_rate: float = DEFAULT_RATE,
) -> float:
    """Token cost of one turn.

    rate x tokens/1000 x length multiplier, floored at MIN_COST and rounded
    half-up to one decimal.
    """
    rate = (rates if rates is not None else DEFAULT_RATES).get(provider_id, default_rate)
    raw = rate * (api_tokens_used / 1000) * length_multiplier(response_length)
    return _round_half_up(max(raw, MIN_COST), "0.1")


def ensure_can_afford(user: User, minimum: float = MIN_COST) -> None:
    """Reject a turn up front when the balance cannot cover the minimum cost."""
    if user.tokens < minimum:
        logger.info(f"Balance check failed: user={user.id}, balance={user.tokens}, minimum={minimum}")
        raise InsufficientBalance()


def period_key(now: datetime | None = None) -> str:
    """Calendar-month bucket key, ``YYYY-MM`` in UTC."""
    return (now or datetime.now(UTC)).strftime("%Y-%m")


@dataclass(frozen=True)
class MeteringPolicy:
    rates: Mapping[str, float] = field(default_factory=lambda: dict(DEFAULT_RATES))
    default_rate: float = DEFAULT_RATE
    creator_share: float = DEFAULT_CREATOR_SHARE
    qualifying_tiers: frozenset[CreatorTier] = DEFAULT_QUALIFYING_TIERS

    def cost(self, provider_id: str, api_tokens_used: int, response_length: int) -> float:
        return compute_cost(provider_id, api_tokens_used, response_length, self.rates, self.default_rate)

    def qualifies(self, creator: User | None) -> bool:
        return creator is not None and creator.creator_tier in self.qualifying_tiers

    def creator_earnings(self, cost: float) -> float:
        return _round_half_up(cost * self.creator_share, "0.01")


class TokenLedger:
    """Balance debits and creator earnings over the account repository.

    Debits for one user are serialized on a per-user lock, and the underlying
    update only succeeds while the balance covers the amount, so a balance
    can never go negative.
    """

    def __init__(self, accounts: AccountRepository, policy: MeteringPolicy | None = None):
        self._accounts = accounts
        self._policy = policy or MeteringPolicy()
        self._locks = KeyedLock()

    @property
    def policy(self) -> MeteringPolicy:
        return self._policy

    def lock_for(self, user_id: str) -> AbstractAsyncContextManager[None]:
        return self._locks.hold(user_id)

    def apply_debit(self, user_id: str, amount: float) -> None:
        """Caller holds ``lock_for(user_id)``."""
        if not self._accounts.debit(user_id, amount):
            logger.warning(f"Debit rejected: user={user_id}, amount={amount}")
            raise InsufficientBalance()
        logger.debug(f"Debited {amount} tokens from user={user_id}")

    async def debit(self, user_id: str, amount: float) -> None:
        async with self.lock_for(user_id):
            self.apply_debit(user_id, amount)

    def apply_credit(self, creator_id: str, character_id: str, cost: float, period: str) -> float | None:
        """Credit the creator's share; None when the bucket is already settled."""
        earned = self._policy.creator_earnings(cost)
        if not self._accounts.credit_earnings(creator_id, character_id, period, earned):
            logger.warning(
                f"Earnings credit rejected for settled bucket: creator={creator_id}, "
                f"character={character_id}, period={period}"
            )
            return None
        logger.debug(f"Credited {earned} to creator={creator_id}, character={character_id}, period={period}")
        return earned

    def credit(self, creator: User | None, character_id: str, cost: float, period: str | None = None) -> float | None:
        if not self._policy.qualifies(creator):
            return None
        return self.apply_credit(creator.id, character_id, cost, period or period_key())
