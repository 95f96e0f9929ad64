"""Lexical relevance rank for hybrid search.

A small term-frequency ranker in the spirit of PostgreSQL's ``ts_rank``:
each distinct query term found in the document contributes
``1 + log(term frequency)``; the sum is averaged over the query terms and
squashed into [0, 1) with ``x / (1 + x)``. Common English stop words are
ignored.
"""

from __future__ import annotations

import math
import re
from collections import Counter
from collections.abc import Callable

TextRanker = Callable[[str, str], float]

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)

STOP_WORDS = frozenset(
    {
        "a", "an", "and", "are", "as", "at", "be", "by", "for", "from", "in",
        "is", "it", "of", "on", "or", "that", "the", "this", "to", "with",
    }
)


def tokenize(text: str) -> list[str]:
    """Lowercased word tokens without stop words."""
    return [t for t in _TOKEN_RE.findall(text.lower()) if t not in STOP_WORDS]


def text_rank(query: str, document: str) -> float:
    """Relevance of ``document`` to ``query`` in [0, 1).

    Returns 0 when the query has no searchable terms or none of them occur
    in the document.
    """
    terms = set(tokenize(query))
    if not terms:
        return 0.0
    frequencies = Counter(tokenize(document))

    raw = 0.0
    for term in terms:
        tf = frequencies.get(term, 0)
        if tf:
            raw += 1.0 + math.log(tf)
    raw /= len(terms)
    return raw / (1.0 + raw)
