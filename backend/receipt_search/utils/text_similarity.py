"""
Relevance signal primitives for hybrid search.

Provides the three per-candidate signals fused by the hybrid search engine
plus contextual snippet extraction:
- trigram_similarity: pg_trgm-compatible character trigram similarity
- cosine_similarity: vector alignment for the semantic signal
- keyword_score: coarse containment heuristic (1.0 / 0.7 / 0.0)
- extract_contextual_snippets: word windows around query matches

The trigram implementation reproduces PostgreSQL's ``similarity()`` so that
scores computed in Python agree with indexes built on the database side.

Usage:
    from receipt_search.utils.text_similarity import trigram_similarity

    trigram_similarity("Starbucks Coffee", "starbuck")  # ~0.5
"""

import math
import re
from typing import FrozenSet, List, Optional, Sequence

# pg_trgm treats every non-alphanumeric character as a word separator
_WORD_SPLIT = re.compile(r"[^\w]+|_+", re.UNICODE)

FULL_MATCH_SCORE = 1.0
TOKEN_MATCH_SCORE = 0.7


def trigrams(value: Optional[str]) -> FrozenSet[str]:
    """
    Return the pg_trgm trigram set of a string.

    Each lower-cased word is padded with two leading spaces and one trailing
    space before the 3-character windows are taken.
    """
    if not value:
        return frozenset()
    grams = set()
    for word in _WORD_SPLIT.split(value.lower()):
        if not word:
            continue
        padded = f"  {word} "
        for i in range(len(padded) - 2):
            grams.add(padded[i:i + 3])
    return frozenset(grams)


def trigram_similarity(left: Optional[str], right: Optional[str]) -> float:
    """Shared trigrams over the union of trigrams, in [0, 1]."""
    a = trigrams(left)
    b = trigrams(right)
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def cosine_similarity(left: Sequence[float], right: Sequence[float]) -> float:
    """
    Cosine similarity of two equal-length vectors (``1 - cosine distance``).

    Returns 0.0 when either vector has zero magnitude.

    Raises:
        ValueError: If the vectors differ in length
    """
    if len(left) != len(right):
        raise ValueError(
            f"Vector dimensions differ: {len(left)} != {len(right)}"
        )
    dot = 0.0
    norm_left = 0.0
    norm_right = 0.0
    for x, y in zip(left, right):
        dot += x * y
        norm_left += x * x
        norm_right += y * y
    if norm_left == 0.0 or norm_right == 0.0:
        return 0.0
    return dot / (math.sqrt(norm_left) * math.sqrt(norm_right))


def keyword_score(content_text: Optional[str], query_text: Optional[str]) -> float:
    """
    Coarse keyword signal.

    1.0 when the content contains the whole query (case-insensitive); 0.7
    when it contains the first whitespace-delimited query token, or else the
    last one; 0.0 otherwise. Tokens in the middle of the query are ignored.
    """
    if not content_text or not query_text or not query_text.strip():
        return 0.0

    haystack = content_text.lower()
    needle = query_text.strip().lower()
    if needle in haystack:
        return FULL_MATCH_SCORE

    tokens = needle.split()
    if tokens[0] in haystack:
        return TOKEN_MATCH_SCORE
    if tokens[-1] in haystack:
        return TOKEN_MATCH_SCORE
    return 0.0


def extract_contextual_snippets(
    content_text: Optional[str],
    query_text: Optional[str],
    window_words: int = 12,
    max_snippets: int = 3,
) -> List[str]:
    """
    Extract word windows around query-word matches.

    Every content word containing a query word marks a match position; the
    first ``max_snippets`` positions produce a snippet of ``window_words``
    words centred on the match, with ``...`` where the snippet does not
    reach the start or end of the content. When nothing matches, the
    beginning of the content is returned instead.
    """
    if not content_text or not query_text or not content_text.strip() or not query_text.strip():
        return []

    words = content_text.split()
    lowered = [w.lower() for w in words]
    query_words = query_text.lower().split()
    half = max(window_words // 2, 1)

    positions: List[int] = []
    for query_word in query_words:
        for index, word in enumerate(lowered):
            if query_word in word:
                positions.append(index)

    snippets: List[str] = []
    for position in positions[:max_snippets]:
        start = max(0, position - half)
        end = min(len(words), position + half + 1)
        snippet = " ".join(words[start:end])
        if start > 0:
            snippet = "..." + snippet
        if end < len(words):
            snippet = snippet + "..."
        snippets.append(snippet)

    if not snippets:
        snippet = " ".join(words[:window_words])
        if len(words) > window_words:
            snippet += "..."
        snippets.append(snippet)

    return snippets
