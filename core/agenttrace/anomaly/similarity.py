"""Lexical similarity helpers used by the detection passes.

Similarity is purely lexical: a weighted blend of word-set overlap and
normalized edit distance. No semantic understanding is attempted.
"""

from __future__ import annotations

import json
import re
import string
from typing import Any

JACCARD_WEIGHT = 0.7
EDIT_WEIGHT = 0.3

_WHITESPACE = re.compile(r"\s+")


def tokenize(text: str) -> set[str]:
    """Lower-cased word set with surrounding punctuation stripped."""
    words = (w.strip(string.punctuation) for w in text.lower().split())
    return {w for w in words if w}


def jaccard(a: set[str], b: set[str]) -> float:
    if not a and not b:
        return 1.0
    return len(a & b) / len(a | b)


def edit_distance(a: str, b: str) -> int:
    """Levenshtein distance between two strings."""
    if len(a) < len(b):
        a, b = b, a
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            current.append(
                min(
                    previous[j] + 1,
                    current[j - 1] + 1,
                    previous[j - 1] + (ca != cb),
                )
            )
        previous = current
    return previous[-1]


def text_similarity(a: str, b: str, max_chars: int = 500) -> float:
    """Similarity in [0, 1] between two texts.

    ``0.7 * jaccard(word sets) + 0.3 * (1 - edit_distance / max_length)``,
    compared case-insensitively. The edit-distance term only looks at the
    first ``max_chars`` characters of each text.
    """
    a_lower, b_lower = a.lower(), b.lower()
    word_score = jaccard(tokenize(a_lower), tokenize(b_lower))

    a_cut, b_cut = a_lower[:max_chars], b_lower[:max_chars]
    longest = max(len(a_cut), len(b_cut))
    edit_score = 1.0 if longest == 0 else 1.0 - edit_distance(a_cut, b_cut) / longest

    return JACCARD_WEIGHT * word_score + EDIT_WEIGHT * edit_score


def normalize_input(value: Any) -> str:
    """Canonical string form of a tool input for grouping.

    Mappings and sequences are JSON-encoded as given, so key order is
    significant; text is lower-cased with whitespace collapsed.
    """
    if isinstance(value, (dict, list)):
        text = json.dumps(value, default=str)
    elif value is None:
        text = ""
    else:
        text = str(value)
    return _WHITESPACE.sub(" ", text.lower()).strip()


def contains_any(words: set[str], terms: frozenset[str]) -> bool:
    return not words.isdisjoint(terms)
