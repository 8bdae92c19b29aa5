from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass

_ZERO_WIDTH = dict.fromkeys(map(ord, "\u200b\u200c\u200d\u200e\u200f\u2060\ufeff\u00ad"), None)

# Cyrillic and Greek look-alikes (after lowercasing) plus leetspeak digits/symbols.
_FOLD = str.maketrans({
    "а": "a", "е": "e", "о": "o", "р": "p", "с": "c", "у": "y", "х": "x",
    "і": "i", "ј": "j", "ѕ": "s", "һ": "h", "ԁ": "d", "ӏ": "l",
    "α": "a", "ε": "e", "ι": "i", "κ": "k", "ν": "v", "ο": "o", "ρ": "p",
    "τ": "t", "υ": "u", "χ": "x",
    "0": "o", "1": "i", "3": "e", "4": "a", "5": "s", "7": "t",
    "$": "s", "@": "a",
})

_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class NormalizedText:
    raw: str
    normalized: str
    despaced: str

    def variants(self) -> tuple[str, ...]:
        """Raw text first, then each distinct folded form."""
        out: list[str] = []
        for value in (self.raw, self.normalized, self.despaced):
            if value not in out:
                out.append(value)
        return tuple(out)


def _despace(text: str) -> str:
    """Join runs of single-character tokens: ``s  e  x`` becomes ``sex``."""
    tokens = text.split(" ")
    out: list[str] = []
    run: list[str] = []
    for token in tokens:
        if len(token) == 1 and token.isalnum():
            run.append(token)
            continue
        if run:
            out.append("".join(run))
            run = []
        out.append(token)
    if run:
        out.append("".join(run))
    return " ".join(out)


def normalize(text: str) -> NormalizedText:
    folded = unicodedata.normalize("NFKC", text).translate(_ZERO_WIDTH)
    folded = folded.lower().translate(_FOLD)
    folded = _WHITESPACE.sub(" ", folded).strip()
    return NormalizedText(raw=text, normalized=folded, despaced=_despace(folded))
