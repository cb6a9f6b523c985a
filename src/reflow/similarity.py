from __future__ import annotations

import re
from collections import Counter
from typing import Sequence

_WS_RE = re.compile(r"\s+")
_NGRAM = 3


def _normalize(text: str) -> str:
    return _WS_RE.sub(" ", text.casefold()).strip()


def _trigrams(text: str) -> Counter[str]:
    padded = f"  {text} "
    return Counter(padded[i : i + _NGRAM] for i in range(len(padded) - _NGRAM + 1))


def text_similarity(a: str, b: str) -> float:
    """Dice coefficient over character trigrams, in ``[0, 1]``.

    Comparison ignores case and runs of whitespace. Two empty strings are
    identical (1.0); an empty string shares nothing with a non-empty one.
    """
    left = _normalize(a)
    right = _normalize(b)
    if left == right:
        return 1.0
    if not left or not right:
        return 0.0
    left_grams = _trigrams(left)
    right_grams = _trigrams(right)
    shared = sum((left_grams & right_grams).values())
    total = sum(left_grams.values()) + sum(right_grams.values())
    return 2.0 * shared / total


def best_page(pages: Sequence[str], snippet: str) -> tuple[int, float]:
    """Locate the page that best matches ``snippet``.

    Literal matches win over fuzzy ones: an identical page, then a page
    starting with the snippet, then a page containing it. Otherwise the
    highest similarity score wins. Ties always go to the earliest page.
    Returns ``(index, score)``; a score of 0.0 means nothing matched.
    """
    if not pages:
        return 0, 0.0
    for idx, page in enumerate(pages):
        if page == snippet:
            return idx, 1.0
    if snippet:
        for idx, page in enumerate(pages):
            if page.startswith(snippet):
                return idx, 1.0
        for idx, page in enumerate(pages):
            if snippet in page:
                return idx, 1.0
    best_index = 0
    best_score = 0.0
    for idx, page in enumerate(pages):
        score = text_similarity(snippet, page)
        if score > best_score:
            best_index, best_score = idx, score
    return best_index, best_score
