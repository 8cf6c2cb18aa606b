"""Tests for in-memory corpora."""

import pytest

from app.knowledge.corpus import Corpus, CorpusRegistry
from app.knowledge.models import Fragment, SourceType


def make_fragments(source_file: str, count: int) -> list[Fragment]:
    return [
        Fragment(
            text=f"{source_file} part {i}",
            source_file=source_file,
            source_type=SourceType.OPAQUE_TEXT,
            index=i,
        )
        for i in range(count)
    ]


class TestCorpus:
    """Tests for a single user's corpus."""

    def test_replace_and_snapshot_order(self):
        corpus = Corpus()
        corpus.replace("a.txt", make_fragments("a.txt", 2))
        corpus.replace("b.txt", list(reversed(make_fragments("b.txt", 2))))

        assert [(f.source_file, f.index) for f in corpus.snapshot()] == [
            ("a.txt", 0),
            ("a.txt", 1),
            ("b.txt", 0),
            ("b.txt", 1),
        ]
        assert corpus.stats().total_chunks == 4
        assert corpus.stats().total_documents == 2

    def test_reingest_replaces_document(self):
        corpus = Corpus()
        corpus.replace("a.txt", make_fragments("a.txt", 3))
        corpus.replace("a.txt", make_fragments("a.txt", 1))

        assert len(corpus) == 1
        assert corpus.source_files == ["a.txt"]

    def test_snapshot_is_isolated_from_later_writes(self):
        corpus = Corpus()
        corpus.replace("a.txt", make_fragments("a.txt", 2))
        snapshot = corpus.snapshot()

        corpus.replace("b.txt", make_fragments("b.txt", 2))
        corpus.remove("a.txt")

        assert [f.source_file for f in snapshot] == ["a.txt", "a.txt"]
        assert [f.source_file for f in corpus.snapshot()] == ["b.txt", "b.txt"]

    def test_remove_unknown_document(self):
        corpus = Corpus()

        assert corpus.remove("missing.txt") is False
        assert corpus.is_empty

    def test_clear(self):
        corpus = Corpus()
        corpus.replace("a.txt", make_fragments("a.txt", 2))

        corpus.clear()

        assert corpus.is_empty
        assert corpus.stats().total_documents == 0

    def test_rejects_foreign_fragments(self):
        corpus = Corpus()

        with pytest.raises(ValueError):
            corpus.replace("a.txt", make_fragments("b.txt", 1))

    def test_rejects_duplicate_indices(self):
        corpus = Corpus()
        fragments = make_fragments("a.txt", 1) * 2

        with pytest.raises(ValueError):
            corpus.replace("a.txt", fragments)
        assert corpus.is_empty


class TestCorpusRegistry:
    """Tests for per-user corpora."""

    def test_users_are_isolated(self):
        registry = CorpusRegistry()
        registry.get("user-1").replace("a.txt", make_fragments("a.txt", 1))

        assert len(registry.get("user-1")) == 1
        assert registry.get("user-2").is_empty

    def test_load_groups_fragments_by_document(self):
        registry = CorpusRegistry()
        fragments = make_fragments("a.txt", 2) + make_fragments("b.txt", 3)

        corpus = registry.load("user-1", fragments)

        assert corpus.stats().total_documents == 2
        assert corpus.stats().total_chunks == 5
        assert registry.is_loaded("user-1")

    def test_drop_marks_corpus_unloaded(self):
        registry = CorpusRegistry()
        registry.load("user-1", make_fragments("a.txt", 1))

        registry.drop("user-1")

        assert not registry.is_loaded("user-1")
        assert registry.get("user-1").is_empty
