"""Transcript reconciliation across overlapping chunks."""

from __future__ import annotations

import logging
from typing import Sequence

from config import WORDS_PER_SECOND

logger = logging.getLogger(__name__)


def max_overlap_words_for(overlap_seconds: float, words_per_second: float = WORDS_PER_SECOND) -> int:
    return int(round(overlap_seconds * words_per_second))


def merge_overlap(previous: str, following: str, max_overlap_words: int) -> str:
    """Append ``following`` to ``previous``, dropping words both sides share.

    The longest run (up to ``max_overlap_words``) of trailing words in
    ``previous`` that equals, case-insensitively, the leading words of
    ``following`` is removed from ``following`` before joining.
    """
    prev_words = previous.split()
    next_words = following.split()
    if not prev_words:
        return " ".join(next_words)

    matched = 0
    for i in range(min(max_overlap_words, len(prev_words), len(next_words)), 0, -1):
        tail = [w.lower() for w in prev_words[-i:]]
        head = [w.lower() for w in next_words[:i]]
        if tail == head:
            matched = i
            break

    if matched:
        logger.debug(f"Removed {matched} overlapping words: {' '.join(next_words[:matched])!r}")
    remainder = next_words[matched:]
    if not remainder:
        return previous.strip()
    return previous.strip() + " " + " ".join(remainder)


def merge_transcripts(texts: Sequence[str], max_overlap_words: int) -> str:
    if not texts:
        return ""
    if len(texts) == 1:
        return texts[0]
    merged = texts[0]
    for text in texts[1:]:
        merged = merge_overlap(merged, text, max_overlap_words)
    return merged.strip()


def reduce_fragment(accumulated: str, fragment: str) -> str:
    """Fold one streamed fragment into the text decoded so far.

    Backends either resend the full decode so far or only the newest piece.
    A fragment that extends ``accumulated`` replaces it; anything else is a delta.
    """
    if len(fragment) > len(accumulated) and fragment.startswith(accumulated):
        return fragment
    if fragment == accumulated:
        return accumulated
    return accumulated + fragment
