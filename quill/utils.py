"""Small text helpers shared by compaction and summaries."""

from __future__ import annotations

MIN_WORD_LENGTH = 3


def _significant_words(text: str) -> set[str]:
    # Short words are mostly stop words and inflate overlap
    return {word for word in text.lower().split() if len(word) >= MIN_WORD_LENGTH}


def text_overlap(a: str, b: str) -> float:
    """Fraction (0.0-1.0) of the smaller text's significant words found in the other."""
    words_a = _significant_words(a)
    words_b = _significant_words(b)
    if not words_a or not words_b:
        return 0.0
    return len(words_a & words_b) / min(len(words_a), len(words_b))


def truncate(text: str, limit: int, marker: str = "...") -> str:
    """Cut text to limit characters, appending marker when cut."""
    if len(text) <= limit:
        return text
    return text[:limit] + marker
