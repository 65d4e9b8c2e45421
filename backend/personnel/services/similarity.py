from __future__ import annotations

from collections.abc import Iterable

from rapidfuzz.distance import Levenshtein


def levenshtein_distance(a: str, b: str) -> int:
    """Unit-cost insert/delete/substitute edit distance."""
    return Levenshtein.distance(a, b)


def similarity(a: str, b: str) -> float:
    """Edit-distance similarity on a 0-100 scale.

    ``100 * (max_len - distance) / max_len``; two empty strings are identical.
    Inputs are expected to be normalized already.
    """
    max_len = max(len(a), len(b))
    if max_len == 0:
        return 100.0
    return 100.0 * (max_len - levenshtein_distance(a, b)) / max_len


def best_similarity(query: str, choices: Iterable[str]) -> tuple[str | None, float]:
    best_choice: str | None = None
    best_score = 0.0
    for choice in choices:
        score = similarity(query, choice)
        if score > best_score:
            best_choice, best_score = choice, score
    return best_choice, best_score
