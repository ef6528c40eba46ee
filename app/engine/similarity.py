"""
String similarity primitives shared by every detector.

- levenshtein_ratio: (max_len - edit_distance) / max_len over lower-cased text
- keyword extractors: punctuation stripped, length and stopword filtered
"""

import re
from typing import Iterable, Optional

from rapidfuzz.distance import Levenshtein

# Corporate suffixes and placeholder words that carry no merchant identity
MERCHANT_STOPWORDS = frozenset({"llc", "inc", "corp", "ltd", "company", "co", "name"})

TITLE_STOPWORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with", "by",
})

_NON_WORD = re.compile(r"[^\w\s]")
_DIGITS = re.compile(r"^\d+$")


def edit_distance(a: str, b: str) -> int:
    """Classic Levenshtein distance (unit insert/delete/substitute costs)."""
    return Levenshtein.distance(a, b)


def levenshtein_ratio(a: Optional[str], b: Optional[str]) -> float:
    """
    Normalised similarity in [0, 1]. Case-insensitive.
    Returns 0 when either side is empty or missing.
    """
    if not a or not b:
        return 0.0
    s1 = a.lower()
    s2 = b.lower()
    max_len = max(len(s1), len(s2))
    return (max_len - edit_distance(s1, s2)) / max_len


def contains_ignore_case(haystack: Optional[str], needle: Optional[str]) -> bool:
    if not haystack or not needle:
        return False
    return needle.lower() in haystack.lower()


def _words(text: Optional[str]) -> list[str]:
    if not text:
        return []
    return _NON_WORD.sub(" ", text.lower()).split()


def extract_keywords(
    text: Optional[str],
    min_length: int = 3,
    limit: int = 5,
    stopwords: Iterable[str] = (),
    skip_numeric: bool = False,
) -> list[str]:
    """First `limit` lower-case words of at least `min_length` characters."""
    stop = set(stopwords)
    words = [
        w for w in _words(text)
        if len(w) >= min_length and w not in stop and not (skip_numeric and _DIGITS.match(w))
    ]
    return words[:limit]


def merchant_keywords(description: Optional[str]) -> list[str]:
    """Up to three non-numeric words longer than three characters."""
    return extract_keywords(description, min_length=4, limit=3, skip_numeric=True)


def location_keywords(location: Optional[str]) -> list[str]:
    return extract_keywords(location, min_length=3, limit=5)


def title_keywords(title: Optional[str]) -> list[str]:
    return extract_keywords(title, min_length=3, limit=5, stopwords=TITLE_STOPWORDS)


def keyword_overlap(keywords: list[str], text: Optional[str]) -> int:
    """Number of keywords found as substrings of `text` (case-insensitive)."""
    if not keywords or not text:
        return 0
    lowered = text.lower()
    return sum(1 for k in keywords if k in lowered)
