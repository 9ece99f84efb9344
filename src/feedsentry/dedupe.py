"""Deduplication helpers for feed items.

Headlines are normalized (case, punctuation, common market synonyms) and
compared with ``rapidfuzz`` token-set similarity.  The same story syndicated
by several wires collapses onto its first occurrence.
"""

from __future__ import annotations

import re
from typing import Iterable, List, Sequence, Tuple

from rapidfuzz import fuzz

from .models import FeedItem

# Titles shorter than this many tokens only match exactly; token-set
# similarity treats any subset as identical.
MIN_FUZZY_TOKENS = 3

_SYNONYMS = {
    r"\b(plunge|plummet|drop|fall|tumble|slide|sink)(s|d|ed)?\b": "declines",
    r"\b(surge|soar|jump|climb|rally|spike)(s|d|ed)?\b": "increases",
    r"\b(cut|lower|reduce|slash)(s|ed)?\s+(interest\s+)?rates?\b": "rate_cut",
    r"\b(hike|raise|lift)(s|d|ed)?\s+(interest\s+)?rates?\b": "rate_hike",
    r"\bfederal reserve\b": "fed",
    r"\beuropean central bank\b": "ecb",
    r"\bbank of japan\b": "boj",
}


def normalize_title(title: str) -> str:
    """Lowercase, strip punctuation and fold synonyms."""
    clean = re.sub(r"[^A-Za-z0-9]+", " ", title or "").lower()
    for pattern, replacement in _SYNONYMS.items():
        clean = re.sub(pattern, replacement, clean)
    return " ".join(clean.split())


def similarity(a: str, b: str) -> float:
    """Similarity of two normalized titles in [0, 1]."""
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    if len(a.split()) < MIN_FUZZY_TOKENS or len(b.split()) < MIN_FUZZY_TOKENS:
        return 0.0
    return fuzz.token_set_ratio(a, b) / 100.0


def is_near_duplicate(
    title: str, existing: Iterable[str], threshold: float = 0.85
) -> bool:
    """True if ``title`` matches any already-normalized title in ``existing``."""
    normalized = normalize_title(title)
    return any(similarity(normalized, prev) >= threshold for prev in existing)


def collapse_near_duplicates(
    items: Sequence[FeedItem], threshold: float = 0.85
) -> Tuple[List[FeedItem], List[FeedItem]]:
    """Split ``items`` into (kept, duplicates), keeping first occurrences."""
    kept: List[FeedItem] = []
    dupes: List[FeedItem] = []
    seen: List[str] = []
    seen_ids = set()
    for item in items:
        if item.id in seen_ids or is_near_duplicate(item.title, seen, threshold):
            dupes.append(item)
            continue
        kept.append(item)
        seen.append(normalize_title(item.title))
        seen_ids.add(item.id)
    return kept, dupes
