"""Tests for answer extraction from ranked fragments."""

import json
from unittest.mock import MagicMock

import pytest

from app.knowledge.assets import KnowledgeAssets
from app.knowledge.extractor import (
    AnswerExtractor,
    clean_answer,
    qa_pairs,
    question_similarity,
)
from app.knowledge.loader import build_fragments
from app.knowledge.models import Fragment, SourceType


def make_fragment(
    text: str,
    source_type: SourceType = SourceType.OPAQUE_TEXT,
    index: int = 0,
) -> Fragment:
    return Fragment(text=text, source_file="source", source_type=source_type, index=index)


@pytest.fixture
def extractor(assets: KnowledgeAssets) -> AnswerExtractor:
    return AnswerExtractor(assets.interrogatives, assets.stopwords)


class TestHelpers:
    """Tests for the extraction helpers."""

    def test_question_similarity(self):
        assert question_similarity(["capital", "dharma"], ["capital", "dharma"]) == 1.0
        # one exact match, one substring match, over a longest list of 2
        assert question_similarity(["karma", "yog"], ["karma", "yoga"]) == 0.75
        assert question_similarity([], ["karma"]) == 0.0

    def test_qa_pairs_only_adjacent_answers(self):
        text = (
            "Question: What is karma? "
            "Question: What is dharma? Answer: Dharma is righteous duty."
        )

        assert qa_pairs(text) == [("What is dharma?", "Dharma is righteous duty.")]

    def test_qa_pairs_flattened_records(self):
        text = (
            "faq.json.items[0].question: What is ahimsa?\n"
            "faq.json.items[0].answer: Ahimsa means non-violence."
        )

        assert qa_pairs(text) == [("What is ahimsa?", "Ahimsa means non-violence.")]

    def test_clean_answer(self):
        assert clean_answer(' ["Ekadashi"] ') == "Ekadashi"


class TestQAPairs:
    """Tests for the paired question/answer pass."""

    def test_returns_answer_not_question(self, extractor: AnswerExtractor):
        fragment = make_fragment(
            "Question: What is the capital of dharma study? "
            "Answer: Varanasi is the traditional center."
        )

        extraction = extractor.extract("capital of dharma study", [fragment])

        assert extraction is not None
        assert extraction.text == "Varanasi is the traditional center."
        assert extraction.strategy == "qa_pair"
        assert extraction.fragment is fragment

    def test_flattened_json_record(self, extractor: AnswerExtractor):
        fragment = make_fragment(
            "faq.json.items[0].question: What is ahimsa?\n"
            "faq.json.items[0].answer: Ahimsa means non-violence toward all beings.",
            source_type=SourceType.STRUCTURED,
        )

        extraction = extractor.extract("What is ahimsa?", [fragment])

        assert extraction is not None
        assert extraction.text == "Ahimsa means non-violence toward all beings."

    def test_answer_of_another_question_is_not_used(self, extractor: AnswerExtractor):
        fragment = make_fragment(
            "Question: What is karma? "
            "Question: What is dharma? Answer: Dharma is righteous duty."
        )

        assert extractor.extract("What is karma?", [fragment]) is None

    def test_later_pass_failure_keeps_earlier_answer(
        self, extractor: AnswerExtractor, monkeypatch
    ):
        monkeypatch.setattr(
            extractor, "_extract_sentence", MagicMock(side_effect=RuntimeError("boom"))
        )
        fragment = make_fragment(
            "Question: What is the capital of dharma study? "
            "Answer: Varanasi is the traditional center."
        )

        extraction = extractor.extract("capital of dharma study", [fragment])

        assert extraction is not None
        assert extraction.text == "Varanasi is the traditional center."
        extractor._extract_sentence.assert_not_called()


class TestKeyValue:
    """Tests for the key/value and tabular row pass."""

    def test_short_tabular_value_returns_full_row(self, extractor: AnswerExtractor):
        fragment = make_fragment(
            "Sheet Panchang, Row 3: Tithi, Ekadashi", source_type=SourceType.TABULAR
        )

        extraction = extractor.extract("What is the tithi today?", [fragment])

        assert extraction is not None
        assert extraction.text == "Sheet Panchang, Row 3: Tithi, Ekadashi"
        assert extraction.strategy == "key_value"

    def test_long_tabular_value(self, extractor: AnswerExtractor):
        fragment = make_fragment(
            "Sheet Festivals, Row 1: Festival, Month\n"
            "Sheet Festivals, Row 2: Diwali, Kartika Amavasya",
            source_type=SourceType.TABULAR,
        )

        extraction = extractor.extract("When is Diwali?", [fragment])

        assert extraction is not None
        assert extraction.text == "Kartika Amavasya"

    def test_key_matches_word_stems(self, extractor: AnswerExtractor):
        fragment = make_fragment("Fasting rules: no grains are eaten on Ekadashi")

        extraction = extractor.extract("rule for fasts", [fragment])

        assert extraction is not None
        assert extraction.text == "no grains are eaten on Ekadashi"

    def test_question_values_skipped(self, extractor: AnswerExtractor):
        fragment = make_fragment("Topic: What is the meaning of moksha?")

        assert extractor.extract("meaning of moksha topic", [fragment]) is None

    def test_record_keys_scored_below_filename(self, extractor: AnswerExtractor):
        fragments = build_fragments(
            json.dumps(
                {
                    "author": "Swami Someone Anand",
                    "summary": "Karma is the law of cause and effect. Every action bears its fruit.",
                }
            ).encode(),
            "karma_notes.json",
        )

        extraction = extractor.extract("What is karma?", fragments)

        assert extraction is not None
        assert extraction.text == "Karma is the law of cause and effect."
        assert extraction.strategy == "sentence"

    def test_question_in_filename_does_not_hide_records(self, extractor: AnswerExtractor):
        fragments = build_fragments(
            json.dumps({"ekadashi": {"fasting_rules": "No grains are eaten on Ekadashi day"}}).encode(),
            "common_questions.json",
        )

        extraction = extractor.extract("ekadashi fasting rules", fragments)

        assert extraction is not None
        assert extraction.text == "No grains are eaten on Ekadashi day"
        assert extraction.strategy == "key_value"


class TestSentence:
    """Tests for the best-sentence pass."""

    def test_skips_question_sentences(self, extractor: AnswerExtractor):
        fragment = make_fragment(
            "What is the meaning of moksha? "
            "Moksha is liberation from the cycle of rebirth."
        )

        extraction = extractor.extract("meaning of moksha", [fragment])

        assert extraction is not None
        assert extraction.text == "Moksha is liberation from the cycle of rebirth."
        assert extraction.strategy == "sentence"

    def test_interrogative_first_word_is_a_question(self, extractor: AnswerExtractor):
        fragment = make_fragment("How to observe the Ekadashi vrat properly")

        assert extractor.extract("ekadashi vrat", [fragment]) is None

    def test_strips_leading_answer_marker(self, extractor: AnswerExtractor):
        fragment = make_fragment("Answer: Pradosham is observed at twilight on trayodashi.")

        extraction = extractor.extract("pradosham twilight", [fragment])

        assert extraction is not None
        assert extraction.text == "Pradosham is observed at twilight on trayodashi."

    def test_record_path_stripped_from_sentence(self, extractor: AnswerExtractor):
        fragments = build_fragments(
            json.dumps({"rules": {"item1": "No grains are eaten on Ekadashi day"}}).encode(),
            "common_questions.json",
        )

        extraction = extractor.extract("grains ekadashi", fragments)

        assert extraction is not None
        assert extraction.text == "No grains are eaten on Ekadashi day"
        assert extraction.strategy == "sentence"

    def test_no_fragments(self, extractor: AnswerExtractor):
        assert extractor.extract("What is dharma?", []) is None
