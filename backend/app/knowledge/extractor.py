"""Answer extraction from ranked fragments.

Three passes run in order and the first one that produces an answer wins:

* paired Q/A: fragments holding ``Question:`` / ``Answer:`` markers (plain
  text or flattened records such as ``faq.json.items[0].question:``) are
  matched question-to-question, and the answer of the best block is returned;
* key/value: ``key: value`` lines and tabular rows whose key matches the
  query return their value; flattened record keys are matched below the
  document root;
* sentence: the sentence sharing the most words with the query.

Question text is never returned as an answer.
"""

import logging
import re
from collections.abc import Collection, Sequence
from dataclasses import dataclass

from app.knowledge.loader import record_path
from app.knowledge.models import Fragment
from app.knowledge.scorer import tokenize

logger = logging.getLogger(__name__)

DEFAULT_MIN_ANSWER_LENGTH = 10
DEFAULT_SIMILARITY_THRESHOLD = 0.3
MIN_SENTENCE_LENGTH = 10
MIN_SENTENCE_ANSWER_LENGTH = 20

_MARKER = re.compile(r"(?:^|(?<=\s))[^\s:]*?\b(question|answer)\s*:", re.IGNORECASE)
_ROW_KEY = re.compile(r"^Sheet .*, Row \d+$")
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+|\n")
_FIRST_WORD_SPLIT = re.compile(r"[\s'’.,;:!\"]+")
_STRIP_CHARS = str.maketrans("", "", '[]{}"')
_STEM_SUFFIXES = ("ing", "ed", "es", "s", "ly")


@dataclass(frozen=True)
class Extraction:
    """An answer pulled out of one fragment."""

    text: str
    fragment: Fragment
    strategy: str  # "qa_pair" | "key_value" | "sentence"


def clean_answer(text: str) -> str:
    """Strip bracket and quote punctuation left over from structured sources."""
    return text.translate(_STRIP_CHARS).strip().strip("'").strip()


def stem(word: str) -> str:
    for suffix in _STEM_SUFFIXES:
        if word.endswith(suffix) and len(word) - len(suffix) >= 3:
            return word[: -len(suffix)]
    return word


def question_similarity(query_words: Sequence[str], question_words: Sequence[str]) -> float:
    """Similarity of two word lists in [0, 1].

    Exact word matches count 2, substring containment counts 1, normalized by
    twice the longer list's length.
    """
    if not query_words or not question_words:
        return 0.0

    points = 0
    for word in query_words:
        if word in question_words:
            points += 2
        elif any(word in other or other in word for other in question_words):
            points += 1
    return points / (max(len(query_words), len(question_words)) * 2)


def _record_value(line: str, source_file: str) -> str | None:
    """Drop the ``<path>:`` prefix of a flattened record line.

    Lines that are not records are returned as they are; question records
    give None.
    """
    key, separator, value = line.strip().partition(":")
    path = record_path(key, source_file) if separator else None
    if path is None:
        return line
    if "question" in path.lower():
        return None
    return value


def qa_pairs(text: str) -> list[tuple[str, str]]:
    """Return ``(question, answer)`` pairs found in one fragment.

    A question is paired only with the answer marker that immediately follows
    it; questions without an answer are ignored.
    """
    markers = list(_MARKER.finditer(text))
    segments: list[tuple[str, str]] = []
    for i, marker in enumerate(markers):
        end = markers[i + 1].start() if i + 1 < len(markers) else len(text)
        segments.append((marker.group(1).lower(), text[marker.end() : end].strip()))

    pairs: list[tuple[str, str]] = []
    for (kind, content), following in zip(segments, segments[1:]):
        if kind == "question" and following[0] == "answer" and following[1]:
            pairs.append((content, following[1]))
    return pairs


class AnswerExtractor:
    """Pulls a direct answer out of the top-ranked fragments."""

    def __init__(
        self,
        interrogatives: Collection[str],
        stopwords: Collection[str] = (),
        min_answer_length: int = DEFAULT_MIN_ANSWER_LENGTH,
        similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
    ) -> None:
        self.interrogatives = frozenset(word.lower() for word in interrogatives)
        self.stopwords = frozenset(word.lower() for word in stopwords)
        self.min_answer_length = min_answer_length
        self.similarity_threshold = similarity_threshold

    def query_words(self, query: str) -> list[str]:
        """Content words of a query; falls back to all words if none remain."""
        words = tokenize(query)
        content = [word for word in words if word not in self.stopwords]
        return content or words

    def extract(self, query: str, fragments: Sequence[Fragment]) -> Extraction | None:
        """Run the extraction passes over ranked fragments.

        Returns:
            The first successful extraction longer than the minimum answer
            length, or None.
        """
        words = self.query_words(query)
        if not fragments or not words:
            return None

        passes = (self._extract_qa_pair, self._extract_key_value, self._extract_sentence)
        for extract_pass in passes:
            extraction = extract_pass(words, fragments)
            if extraction is not None and len(extraction.text) > self.min_answer_length:
                logger.debug(
                    f"Extracted answer via {extraction.strategy} from "
                    f"{extraction.fragment.source_file}#{extraction.fragment.index}"
                )
                return extraction
        return None

    def _extract_qa_pair(
        self, words: list[str], fragments: Sequence[Fragment]
    ) -> Extraction | None:
        best: Extraction | None = None
        best_similarity = self.similarity_threshold

        for fragment in fragments:
            for question, answer in qa_pairs(fragment.text):
                question_words = self.query_words(question)
                similarity = question_similarity(words, question_words)
                if similarity > best_similarity:
                    best_similarity = similarity
                    best = Extraction(clean_answer(answer), fragment, "qa_pair")
        return best

    def _extract_key_value(
        self, words: list[str], fragments: Sequence[Fragment]
    ) -> Extraction | None:
        best: Extraction | None = None
        best_score = 0

        for fragment in fragments:
            for line in fragment.text.split("\n"):
                line = line.strip()
                if ":" not in line:
                    continue
                key, value = (part.strip() for part in line.split(":", 1))

                if _ROW_KEY.match(key):
                    cells = [cell.strip() for cell in value.split(",")]
                    if len(cells) < 2:
                        continue
                    key, value = cells[0], ", ".join(cells[1:])
                else:
                    path = record_path(key, fragment.source_file)
                    if path is not None:
                        key, line = path, f"{path}: {value}"

                if not value or "question" in key.lower() or self._is_question(value):
                    continue

                score = sum(1 for word in words if self._key_matches(word, key.lower()))
                if score > best_score:
                    best_score = score
                    answer = clean_answer(value)
                    if len(answer) <= self.min_answer_length:
                        answer = clean_answer(line)
                    best = Extraction(answer, fragment, "key_value")
        return best

    def _extract_sentence(
        self, words: list[str], fragments: Sequence[Fragment]
    ) -> Extraction | None:
        best: tuple[int, str, Fragment] | None = None

        for fragment in fragments:
            for line in fragment.text.split("\n"):
                line = _record_value(line, fragment.source_file)
                if line is None:
                    continue
                for sentence in _SENTENCE_SPLIT.split(line):
                    sentence = sentence.strip()
                    if len(sentence) <= MIN_SENTENCE_LENGTH or self._is_question(sentence):
                        continue
                    lowered = sentence.lower()
                    score = sum(1 for word in words if word in lowered)
                    if score > 0 and (best is None or score > best[0]):
                        best = (score, sentence, fragment)

        if best is None:
            return None
        _, sentence, fragment = best
        marker = _MARKER.match(sentence)
        if marker is not None:
            sentence = sentence[marker.end() :]
        answer = clean_answer(sentence)
        if len(answer) <= MIN_SENTENCE_ANSWER_LENGTH:
            return None
        return Extraction(answer, fragment, "sentence")

    def _is_question(self, text: str) -> bool:
        if "?" in text:
            return True
        marker = _MARKER.match(text)
        if marker is not None and marker.group(1).lower() == "question":
            return True
        first = _FIRST_WORD_SPLIT.split(text.strip().lower(), maxsplit=1)[0]
        return first in self.interrogatives

    @staticmethod
    def _key_matches(word: str, key: str) -> bool:
        if word in key:
            return True
        root = stem(word)
        return any(stem(part) == root for part in tokenize(key))
