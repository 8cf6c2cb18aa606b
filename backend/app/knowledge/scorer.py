"""Lexical relevance scorer.

Ranks fragments for a query with additive keyword heuristics tuned for the
three fragment shapes the loader produces: tabular rows, flattened
``path: value`` records and free text.
"""

import logging
import re
from collections.abc import Sequence
from functools import lru_cache

from app.knowledge.models import Fragment, ScoredFragment

logger = logging.getLogger(__name__)

# Points per signal
PHRASE_POINTS = 10
WORD_POINTS = 2
KEY_POINTS = 5
CELL_POINTS = 4
VOCABULARY_POINTS = 3

DEFAULT_TOP_K = 5

# Word characters including combining marks and the Indic script blocks,
# whose vowel signs are not matched by \w.
WORD_CHARS = r"[\w\u0300-\u036f\u0900-\u0dff]"

_TOKEN_SPLIT = re.compile(r"[\s.,;:!?\"'`()\[\]{}<>|/\\\-–—।॥]+")


def tokenize(text: str, min_length: int = 3) -> list[str]:
    """Split text into distinct lowercase words of at least ``min_length`` chars."""
    seen: set[str] = set()
    words: list[str] = []
    for word in _TOKEN_SPLIT.split(text.lower()):
        if len(word) >= min_length and word not in seen:
            seen.add(word)
            words.append(word)
    return words


@lru_cache(maxsize=1024)
def word_pattern(word: str) -> re.Pattern[str]:
    """Whole-word pattern that respects Indic script boundaries."""
    return re.compile(rf"(?<!{WORD_CHARS}){re.escape(word)}(?!{WORD_CHARS})")


@lru_cache(maxsize=1024)
def _cell_pattern(word: str) -> re.Pattern[str]:
    escaped = re.escape(word)
    return re.compile(rf"\|\s*{escaped}\s*\||{escaped}\s*:")


def _line_keys(text: str) -> list[str]:
    return [line.split(":", 1)[0] for line in text.split("\n") if ":" in line]


class RelevanceScorer:
    """Additive keyword scorer over a fragment snapshot."""

    def __init__(self, vocabulary: Sequence[str], top_k: int = DEFAULT_TOP_K) -> None:
        self.vocabulary = [term.lower() for term in vocabulary if term]
        self.top_k = top_k

    def score(self, query: str, text: str) -> int:
        """Score one fragment text against a query."""
        lowered = text.lower()
        phrase = query.lower().strip(" \t\n?!.")
        words = tokenize(query)

        score = 0
        if phrase and phrase in lowered:
            score += PHRASE_POINTS

        keys = [key.lower() for key in _line_keys(text)]
        for word in words:
            if word_pattern(word).search(lowered):
                score += WORD_POINTS
            if any(word in key for key in keys):
                score += KEY_POINTS
            if _cell_pattern(word).search(lowered):
                score += CELL_POINTS

        for term in self.vocabulary:
            score += VOCABULARY_POINTS * lowered.count(term)

        return score

    def rank(
        self,
        query: str,
        fragments: Sequence[Fragment],
        top_k: int | None = None,
    ) -> list[ScoredFragment]:
        """Return the best fragments for a query.

        Only fragments with a positive score are returned, highest first.
        Equal scores keep their corpus order.

        Args:
            query: User question.
            fragments: Corpus snapshot in ingestion order.
            top_k: Maximum number of results (defaults to the scorer's top_k).
        """
        limit = self.top_k if top_k is None else top_k
        scored = [
            ScoredFragment(fragment=fragment, score=self.score(query, fragment.text))
            for fragment in fragments
        ]
        # sorted() is stable, so ties stay in ingestion order
        ranked = sorted(
            (item for item in scored if item.score > 0),
            key=lambda item: item.score,
            reverse=True,
        )
        logger.debug(
            f"Scored {len(scored)} fragments, {len(ranked)} relevant for query: {query[:50]}"
        )
        return ranked[:limit]
