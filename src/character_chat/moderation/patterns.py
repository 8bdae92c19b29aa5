"""Pattern tables for the moderation gate.

English patterns use word boundaries. Korean patterns do not, because
particles attach directly to the noun (``마약을``).
"""

from __future__ import annotations

import re

_I = re.IGNORECASE

# (category, pattern). Applied to every trust tier with no override.
ILLEGAL_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    ("drugs", re.compile(
        r"\b(?:how\s+to\s+(?:make|cook|buy|get)|where\s+(?:to|can\s+i)\s+buy|(?:buy|sell|selling|dealing|cooking))"
        r"\s+(?:some\s+)?(?:cocaine|heroin|meth|methamphetamine|fentanyl|crack)\b", _I)),
    ("drugs", re.compile(r"(?:마약|대마초|필로폰|코카인|헤로인)")),
    ("weapons", re.compile(
        r"\b(?:how\s+to\s+(?:make|build)|instructions?\s+(?:for|to)\s+(?:make|making|build|building))"
        r"\s+(?:an?\s+)?(?:bombs?|explosives?|pipe\s*bombs?|guns?|firearms?|silencers?)\b", _I)),
    ("weapons", re.compile(r"(?:폭발물|총기|무기제조)")),
    ("sexual_minors", re.compile(
        r"\b(?:child|children|minors?|underage|kids?|preteens?)\b.{0,40}?\b(?:sex|sexual|porn|nude|naked|explicit)\b", _I)),
    ("sexual_minors", re.compile(
        r"\b(?:sex|sexual|porn|nude|naked|explicit)\b.{0,40}?\b(?:child|children|minors?|underage|kids?|preteens?)\b", _I)),
    ("sexual_minors", re.compile(r"(?:아동|미성년자).*(?:성적|음란|포르노)")),
    ("self_harm", re.compile(
        r"\b(?:how\s+to|ways?\s+to|best\s+way\s+to)\s+(?:kill\s+(?:myself|yourself|someone|him|her)|commit\s+suicide|murder\s+\w+)\b",
        _I)),
    ("self_harm", re.compile(r"(?:살인|자살)\s*(?:방법|하는\s*법)")),
    ("personal_data_trade", re.compile(
        r"\b(?:sell|selling|buy|buying|leak|leaking)\s+(?:\w+\s+){0,2}?"
        r"(?:personal\s+data|ssns?|social\s+security\s+numbers?|credit\s+card\s+numbers?)\b", _I)),
    ("personal_data_trade", re.compile(r"(?:개인정보|주민번호)\s*(?:판매|유출)")),
]

# Matched against the raw text; every hit is reported.
PII_PATTERNS: dict[str, re.Pattern[str]] = {
    "phone": re.compile(r"(?<!\d)\d{3}[-.]?\d{3,4}[-.]?\d{4}(?!\d)"),
    "email": re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}"),
    "national_id": re.compile(r"(?<!\d)(?:\d{6}-?\d{7}|\d{3}-\d{2}-\d{4})(?!\d)"),
    "payment_card": re.compile(r"(?<!\d)\d{4}[-\s]?\d{4}[-\s]?\d{4}[-\s]?\d{4}(?!\d)"),
}

REPEATED_CHAR = re.compile(r"(.)\1{9,}")
SPAM_TOKEN_MIN_LENGTH = 3
SPAM_TOKEN_REPEATS = 5

# Keyword fallback, unverified tier only.
BANNED_WORDS: list[str] = ["fuck", "shit", "bitch", "cunt", "혐오", "폭력", "성적"]

SUSPICIOUS_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    ("violence", re.compile(r"\b(?:kill|murder|stab|torture|self[- ]harm)\b", _I)),
    ("violence", re.compile(r"(?:폭력|살인|자해)")),
    ("adult", re.compile(r"\b(?:sex|sexual|porn|nsfw|nude)\b", _I)),
    ("adult", re.compile(r"(?:성적|음란|19금)")),
    ("hate", re.compile(r"\b(?:racist|bigot|subhuman)\b", _I)),
    ("hate", re.compile(r"(?:혐오|차별|비하)")),
    ("illegal", re.compile(r"\b(?:illegal|drugs?|crime)\b", _I)),
    ("illegal", re.compile(r"(?:불법|마약|범죄)")),
]
