"""Default keyword extractor. Any ``str -> list[str]`` callable can replace it."""

from __future__ import annotations

import re
from typing import Callable

KeywordFn = Callable[[str], list[str]]

MAX_KEYWORDS = 20

STOP_WORDS = frozenset({
    "the", "a", "an", "is", "are", "was", "were", "be", "been", "being",
    "have", "has", "had", "do", "does", "did", "will", "would", "could",
    "should", "may", "might", "shall", "can", "to", "of", "in", "for",
    "on", "with", "at", "by", "from", "as", "into", "through", "during",
    "before", "after", "above", "below", "between", "and", "but", "or",
    "not", "no", "nor", "so", "yet", "both", "each", "few", "more",
    "most", "other", "some", "such", "than", "too", "very", "just",
    "about", "up", "out", "it", "its", "my", "your", "his", "her",
    "their", "our", "this", "that", "these", "those", "i", "me", "we",
    "you", "he", "she", "they", "what", "which", "who", "whom",
    "how", "when", "where", "why", "all", "any",
})

_NON_WORD = re.compile(r"[^a-z0-9\s-]")


def extract_keywords(text: str) -> list[str]:
    """Salient terms of ``text`` in first-seen order, at most MAX_KEYWORDS."""
    words = _NON_WORD.sub(" ", text.lower()).split()
    seen: dict[str, None] = {}
    for w in words:
        if len(w) > 2 and w not in STOP_WORDS:
            seen.setdefault(w, None)
    return list(seen)[:MAX_KEYWORDS]
