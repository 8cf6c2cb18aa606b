"""Versioned multi-language data assets for the assistant.

Keyword lists, cultural patterns, greeting phrases, canned responses and
answer templates live as JSON files under ``knowledge/data`` so they can be
audited and extended without touching the matching logic. A deployment may
point ``KNOWLEDGE_ASSETS_DIR`` at a directory holding replacement files; any
file missing there is read from the bundled defaults.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_ASSETS_DIR = Path(__file__).parent / "data"

ASSET_FILES = (
    "vocabulary.json",
    "greetings.json",
    "analysis.json",
    "responses.json",
    "templates.json",
)

GREETING_CATEGORIES = ("welcome", "exclamation", "thanks")


@dataclass(frozen=True)
class KnowledgeAssets:
    """All data tables used by the classifier, scorer, extractor and replies."""

    versions: dict[str, str]

    # vocabulary.json
    domain_keywords: dict[str, list[str]]
    cultural_patterns: list[re.Pattern[str]]
    scoring_vocabulary: list[str]
    interrogatives: list[str]
    stopwords: frozenset[str]

    # greetings.json
    greetings: dict[str, dict[str, list[str]]]
    honorifics: list[str]
    trailing_marks: str

    # analysis.json
    question_types: list[dict[str, Any]]
    intents: list[dict[str, Any]]
    topics: list[tuple[re.Pattern[str], str]]
    default_topic: str
    entities: list[str]
    sentiment: dict[str, list[str]]

    # responses.json
    default_language: str
    language_aliases: dict[str, str]
    responses: dict[str, dict[str, str]]

    # templates.json
    templates: dict[str, dict[str, list[str]]] = field(default_factory=dict)

    @property
    def languages(self) -> list[str]:
        """Language codes that have a full set of canned responses."""
        return list(self.responses)

    def all_domain_keywords(self) -> list[str]:
        """Flatten the per-language keyword lists, preserving order."""
        keywords: list[str] = []
        for terms in self.domain_keywords.values():
            keywords.extend(terms)
        return keywords

    def normalize_language(self, language: str | None) -> str:
        """Map a language name or code onto a supported language code.

        Unknown languages fall back to the default language.
        """
        if not language:
            return self.default_language
        code = language.strip().lower()
        code = self.language_aliases.get(code, code)
        if code not in self.responses:
            return self.default_language
        return code

    def response(self, language: str, key: str) -> str:
        """Return a canned response, falling back to the default language."""
        localized = self.responses.get(language, {})
        if key in localized:
            return localized[key]
        return self.responses[self.default_language][key]


def load_assets(assets_dir: Path | str | None = None) -> KnowledgeAssets:
    """Load the data assets.

    Args:
        assets_dir: Optional override directory. Files present there take
            precedence over the bundled ones.

    Returns:
        Parsed KnowledgeAssets.

    Raises:
        ValueError: If an asset file is malformed.
    """
    override = Path(assets_dir) if assets_dir else None
    raw: dict[str, dict[str, Any]] = {}

    for name in ASSET_FILES:
        path = DEFAULT_ASSETS_DIR / name
        if override is not None and (override / name).exists():
            path = override / name
            logger.info(f"Using knowledge asset override: {path}")
        raw[name] = _read_asset(path)

    vocabulary = raw["vocabulary.json"]
    greetings = raw["greetings.json"]
    analysis = raw["analysis.json"]
    responses = raw["responses.json"]
    templates = raw["templates.json"]

    default_language = responses.get("default_language", "en")
    languages = responses.get("languages", {})
    if default_language not in languages:
        raise ValueError(
            f"responses.json has no entries for default language '{default_language}'"
        )

    return KnowledgeAssets(
        versions={name: data["version"] for name, data in raw.items()},
        domain_keywords={
            lang: [term.lower() for term in terms]
            for lang, terms in vocabulary["domain_keywords"].items()
        },
        cultural_patterns=[
            re.compile(pattern, re.IGNORECASE)
            for pattern in vocabulary["cultural_patterns"]
        ],
        scoring_vocabulary=[term.lower() for term in vocabulary["scoring_vocabulary"]],
        interrogatives=[term.lower() for term in vocabulary["interrogatives"]],
        stopwords=frozenset(word.lower() for word in vocabulary.get("stopwords", [])),
        greetings={
            category: greetings.get(category, {}) for category in GREETING_CATEGORIES
        },
        honorifics=greetings.get("honorifics", []),
        trailing_marks=greetings.get("trailing_marks", ""),
        question_types=analysis["question_types"],
        intents=analysis["intents"],
        topics=[
            (re.compile(entry["pattern"], re.IGNORECASE), entry["topic"])
            for entry in analysis["topics"]
        ],
        default_topic=analysis.get("default_topic", "dharma"),
        entities=analysis["entities"],
        sentiment=analysis["sentiment"],
        default_language=default_language,
        language_aliases=responses.get("language_aliases", {}),
        responses=languages,
        templates={
            category: entries
            for category, entries in templates.items()
            if category != "version"
        },
    )


def _read_asset(path: Path) -> dict[str, Any]:
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ValueError(f"Failed to read knowledge asset {path}: {e}") from e

    if not isinstance(data, dict) or "version" not in data:
        raise ValueError(f"Knowledge asset {path} is missing a 'version' field")
    return data
