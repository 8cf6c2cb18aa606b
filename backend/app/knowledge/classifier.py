"""Domain classification for assistant queries.

Decides whether a query is a greeting, an in-domain question (Hindu Dharma,
Vedic traditions, rituals, festivals, Panchang, sampradayas) or off-topic,
and derives a QueryAnalysis used to pick fallback templates.
"""

import logging
import re
import unicodedata
import zlib
from enum import Enum

from app.knowledge.assets import KnowledgeAssets
from app.knowledge.models import QueryAnalysis
from app.knowledge.scorer import WORD_CHARS, word_pattern

logger = logging.getLogger(__name__)

# Emoji sequences such as "🙏🏽" or "🕉️" carry joiners and variation selectors.
_EMOJI_MODIFIERS = "\N{ZERO WIDTH JOINER}\N{VARIATION SELECTOR-16}\U0001F3FB-\U0001F3FF"

_TOPIC_WORD = re.compile(rf"[^\W\d_]{WORD_CHARS}*")


class GreetingKind(str, Enum):
    WELCOME = "welcome"
    THANKS = "thanks"


def normalize_query(query: str) -> str:
    """NFC-normalize and trim a query."""
    return unicodedata.normalize("NFC", query).strip()


def _alternation(phrases: list[str]) -> str:
    # Longest first so "thank you so much" wins over "thank you"
    ordered = sorted(
        {unicodedata.normalize("NFC", p) for p in phrases if p.strip()},
        key=lambda p: (-len(p), p),
    )
    return "|".join(r"\s+".join(re.escape(part) for part in p.split()) for p in ordered)


class DomainClassifier:
    """Greeting detector, keyword gate and pattern gate."""

    def __init__(self, assets: KnowledgeAssets) -> None:
        self.assets = assets
        keywords = [
            unicodedata.normalize("NFC", keyword) for keyword in assets.all_domain_keywords()
        ]
        # Latin-script keywords match whole words, optionally pluralized
        latin = [keyword.lower() for keyword in keywords if keyword.isascii()]
        self._latin_keywords = (
            re.compile(rf"(?<!{WORD_CHARS})(?:{_alternation(latin)})(?:e?s)?(?!{WORD_CHARS})")
            if latin
            else None
        )
        self._keywords = [keyword for keyword in keywords if not keyword.isascii()]
        self._greeting_patterns = self._compile_greetings(assets)

    @staticmethod
    def _compile_greetings(assets: KnowledgeAssets) -> dict[GreetingKind, re.Pattern[str]]:
        honorifics = _alternation(assets.honorifics)
        marks = re.escape(assets.trailing_marks) + _EMOJI_MODIFIERS
        suffix = rf"(?:[\s,]+(?:{honorifics}))*" if honorifics else ""

        phrases = {
            GreetingKind.WELCOME: [
                phrase
                for category in ("welcome", "exclamation")
                for terms in assets.greetings.get(category, {}).values()
                for phrase in terms
            ],
            GreetingKind.THANKS: [
                phrase
                for terms in assets.greetings.get("thanks", {}).values()
                for phrase in terms
            ],
        }
        return {
            kind: re.compile(
                rf"^\s*(?:{_alternation(terms)}){suffix}[\s{marks}]*$",
                re.IGNORECASE,
            )
            for kind, terms in phrases.items()
            if terms
        }

    def detect_greeting(self, query: str) -> GreetingKind | None:
        """Return the greeting kind when the whole message is a greeting."""
        text = normalize_query(query)
        if not text:
            return None
        # Thanks first: "dhanyavad ji" must not be read as a welcome
        for kind in (GreetingKind.THANKS, GreetingKind.WELCOME):
            pattern = self._greeting_patterns.get(kind)
            if pattern is not None and pattern.match(text):
                return kind
        return None

    def matches_keyword(self, query: str) -> bool:
        """Keyword gate: any domain term occurs in the lowercased query.

        Latin-script terms must be whole words; Indic terms may carry
        inflections and match anywhere.
        """
        text = normalize_query(query).lower()
        if self._latin_keywords is not None and self._latin_keywords.search(text):
            return True
        return any(keyword in text for keyword in self._keywords)

    def matches_pattern(self, query: str) -> bool:
        """Pattern gate: the query uses a cultural or religious phrasing."""
        return any(pattern.search(query) for pattern in self.assets.cultural_patterns)

    def is_in_domain(self, query: str) -> bool:
        """Combined domain gate. Greetings are handled separately."""
        in_domain = self.matches_keyword(query) or self.matches_pattern(query)
        if not in_domain:
            logger.info(f"Query rejected by domain gate: {query[:50]}")
        return in_domain

    def analyze(self, query: str) -> QueryAnalysis:
        """Derive question type, intent, topics, entities and sentiment."""
        text = normalize_query(query).lower()

        def contains(term: str) -> bool:
            return word_pattern(unicodedata.normalize("NFC", term.lower())).search(text) is not None

        question_type = next(
            (
                entry["type"]
                for entry in self.assets.question_types
                if any(contains(marker) for marker in entry["markers"])
            ),
            "general",
        )
        intent = next(
            (
                entry["intent"]
                for entry in self.assets.intents
                if any(contains(marker) for marker in entry["markers"])
            ),
            "general_inquiry",
        )

        topics: list[str] = []
        for pattern, topic in self.assets.topics:
            if pattern.search(text) and topic not in topics:
                topics.append(topic)

        entities = [entity for entity in self.assets.entities if contains(entity)]

        sentiment_terms = self.assets.sentiment
        if "?" in text or any(contains(term) for term in sentiment_terms.get("inquisitive", [])):
            sentiment = "inquisitive"
        elif any(contains(term) for term in sentiment_terms.get("positive", [])):
            sentiment = "positive"
        elif any(contains(term) for term in sentiment_terms.get("negative", [])):
            sentiment = "negative"
        else:
            sentiment = "neutral"

        return QueryAnalysis(
            question_type=question_type,
            intent=intent,
            topics=topics,
            entities=entities,
            sentiment=sentiment,
        )

    def primary_topic(self, query: str, analysis: QueryAnalysis) -> str:
        """Topic to substitute into a template.

        The first canonical topic, else the first content word longer than
        three characters, else the default topic.
        """
        if analysis.topics:
            return analysis.topics[0].replace("_", " ")
        for word in _TOPIC_WORD.findall(normalize_query(query)):
            if len(word) > 3 and word.lower() not in self.assets.stopwords:
                return word
        return self.assets.default_topic

    def template_answer(self, query: str, language: str) -> str | None:
        """Build a topic-substituted template reply, or None if no template fits."""
        analysis = self.analyze(query)

        if analysis.intent == "ritual_inquiry":
            category = "ritual"
        elif analysis.intent == "scriptural_inquiry":
            category = "scriptural"
        elif analysis.question_type == "explanation":
            category = "explanation"
        else:
            category = "default"

        templates = self.assets.templates.get(category) or self.assets.templates.get("default", {})
        choices = templates.get(language) or templates.get(self.assets.default_language)
        if not choices:
            return None

        # Stable choice per query so repeated questions get the same reply
        template = choices[zlib.crc32(query.encode("utf-8")) % len(choices)]
        return template.format(topic=self.primary_topic(query, analysis))
