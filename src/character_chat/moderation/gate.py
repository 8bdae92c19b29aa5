from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass

from loguru import logger

from character_chat.errors import ModerationUnavailable
from character_chat.models import TrustTier
from character_chat.moderation.classifier import ModerationClassifier
from character_chat.moderation.normalizer import NormalizedText, normalize
from character_chat.moderation.patterns import (
    BANNED_WORDS,
    ILLEGAL_PATTERNS,
    PII_PATTERNS,
    REPEATED_CHAR,
    SPAM_TOKEN_MIN_LENGTH,
    SPAM_TOKEN_REPEATS,
    SUSPICIOUS_PATTERNS,
)

MASK_CHAR = "*"

# Classifier categories a verified user may receive.
VERIFIED_PERMITTED_CATEGORIES = frozenset({"sexual"})
ALWAYS_BLOCKED_CATEGORY = "sexual/minors"


@dataclass(frozen=True)
class ModerationResult:
    blocked: bool
    reason: str | None = None
    category: str | None = None
    categories: tuple[str, ...] = ()
    # Advisory only; never a security boundary.
    masked_text: str | None = None


ALLOWED = ModerationResult(blocked=False)

_BANNED_WORD_PATTERNS = [re.compile(re.escape(word), re.IGNORECASE) for word in BANNED_WORDS]


def _mask(text: str) -> str:
    masked = text
    for pattern in _BANNED_WORD_PATTERNS:
        masked = pattern.sub(lambda m: MASK_CHAR * len(m.group(0)), masked)
    for _, pattern in SUSPICIOUS_PATTERNS:
        masked = pattern.sub(lambda m: MASK_CHAR * len(m.group(0)), masked)
    return masked


def check_illegal(text: NormalizedText) -> ModerationResult | None:
    for category, pattern in ILLEGAL_PATTERNS:
        if any(pattern.search(variant) for variant in text.variants()):
            return ModerationResult(
                blocked=True,
                reason="This message contains illegal content and cannot be sent.",
                category="illegal",
                categories=(category,),
            )
    return None


def check_personal_info(raw: str) -> ModerationResult | None:
    found = tuple(name for name, pattern in PII_PATTERNS.items() if pattern.search(raw))
    if not found:
        return None
    labels = ", ".join(name.replace("_", " ") for name in found)
    return ModerationResult(
        blocked=True,
        reason=f"Personal information ({labels}) cannot be shared in chat.",
        category="personal_info",
        categories=found,
    )


def is_spam(raw: str) -> bool:
    if REPEATED_CHAR.search(raw):
        return True
    counts = Counter(token for token in raw.split() if len(token) >= SPAM_TOKEN_MIN_LENGTH)
    return any(count >= SPAM_TOKEN_REPEATS for count in counts.values())


def check_keywords(text: NormalizedText) -> ModerationResult | None:
    variants = text.variants()
    for word in BANNED_WORDS:
        needle = word.lower()
        if any(needle in variant.lower() for variant in variants):
            return ModerationResult(
                blocked=True,
                reason="This message contains inappropriate language.",
                category="banned_word",
                masked_text=_mask(text.raw),
            )
    for category, pattern in SUSPICIOUS_PATTERNS:
        if any(pattern.search(variant) for variant in variants):
            return ModerationResult(
                blocked=True,
                reason="This message contains inappropriate content.",
                category="suspicious_content",
                categories=(category,),
                masked_text=_mask(text.raw),
            )
    return None


class ModerationGate:
    """Allow/block decision for user input and model output.

    Stages run in order and stop at the first block: illegal patterns,
    personal information, spam, external classifier, keyword fallback.

    When the classifier is unavailable and ``fail_open`` is set, the text is
    treated as not flagged. That favours availability over caution and is
    logged as a warning on every occurrence.
    """

    def __init__(self, classifier: ModerationClassifier | None = None, *, fail_open: bool = True):
        self._classifier = classifier
        self._fail_open = fail_open

    async def evaluate(self, text: str, trust_tier: TrustTier) -> ModerationResult:
        result = await self._evaluate(text, trust_tier)
        if result.blocked:
            logger.warning(
                f"Moderation blocked: tier={trust_tier}, category={result.category}, "
                f"categories={list(result.categories)}"
            )
        return result

    async def _evaluate(self, text: str, trust_tier: TrustTier) -> ModerationResult:
        normalized = normalize(text)

        blocked = check_illegal(normalized) or check_personal_info(text)
        if blocked:
            return blocked

        if is_spam(text):
            return ModerationResult(blocked=True, reason="This message was detected as spam.", category="spam")

        if self._classifier is not None:
            blocked = await self._classify(text, trust_tier)
            if blocked:
                return blocked

        if trust_tier == TrustTier.UNVERIFIED:
            blocked = check_keywords(normalized)
            if blocked:
                return blocked

        return ALLOWED

    async def _classify(self, text: str, trust_tier: TrustTier) -> ModerationResult | None:
        try:
            verdict = await self._classifier.classify(text)
        except ModerationUnavailable:
            if self._fail_open:
                logger.warning("Moderation classifier unavailable; failing open (ModerationFailOpen=true)")
                return None
            logger.warning("Moderation classifier unavailable; blocking (ModerationFailOpen=false)")
            return ModerationResult(
                blocked=True,
                reason="Content moderation is temporarily unavailable. Please try again.",
                category="moderation_unavailable",
            )

        if not verdict.flagged and not verdict.categories:
            return None

        if ALWAYS_BLOCKED_CATEGORY in verdict.categories:
            offending: tuple[str, ...] = (ALWAYS_BLOCKED_CATEGORY,)
        elif trust_tier == TrustTier.VERIFIED:
            offending = tuple(c for c in verdict.categories if c not in VERIFIED_PERMITTED_CATEGORIES)
        else:
            offending = verdict.categories or ("flagged",)

        if not offending:
            logger.debug(f"Classifier categories permitted for verified tier: {list(verdict.categories)}")
            return None
        return ModerationResult(
            blocked=True,
            reason="This message violates the content policy.",
            category=offending[0],
            categories=offending,
        )
