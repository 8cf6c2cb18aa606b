"""In-memory corpora of fragments, one per user.

Writers replace a document's fragments in a single synchronous step and
readers work on an immutable snapshot, so a query sees either none or all of
a document's fragments even while another request is ingesting.
"""

import logging

from app.knowledge.models import CorpusStats, Fragment

logger = logging.getLogger(__name__)


class Corpus:
    """All fragments currently available for one user's queries."""

    def __init__(self) -> None:
        # source_file -> fragments of that document, in index order
        self._documents: dict[str, tuple[Fragment, ...]] = {}
        self._snapshot: tuple[Fragment, ...] = ()

    def __len__(self) -> int:
        return len(self._snapshot)

    @property
    def is_empty(self) -> bool:
        return not self._snapshot

    @property
    def source_files(self) -> list[str]:
        return list(self._documents)

    def snapshot(self) -> tuple[Fragment, ...]:
        """Return all fragments in ingestion order."""
        return self._snapshot

    def replace(self, source_file: str, fragments: list[Fragment]) -> None:
        """Install the fragments of one document, replacing any previous version.

        Raises:
            ValueError: If a fragment belongs to another source or indices repeat.
        """
        indices = [f.index for f in fragments]
        if any(f.source_file != source_file for f in fragments):
            raise ValueError(f"Fragments for {source_file} include another source")
        if len(set(indices)) != len(indices):
            raise ValueError(f"Duplicate fragment index in {source_file}")

        documents = {k: v for k, v in self._documents.items() if k != source_file}
        documents[source_file] = tuple(sorted(fragments, key=lambda f: f.index))
        self._install(documents)

    def remove(self, source_file: str) -> bool:
        """Drop one document's fragments. Returns False if it was not loaded."""
        if source_file not in self._documents:
            return False
        documents = {k: v for k, v in self._documents.items() if k != source_file}
        self._install(documents)
        return True

    def clear(self) -> None:
        self._install({})

    def stats(self) -> CorpusStats:
        return CorpusStats(
            total_chunks=len(self._snapshot),
            total_documents=len(self._documents),
        )

    def _install(self, documents: dict[str, tuple[Fragment, ...]]) -> None:
        self._documents = documents
        self._snapshot = tuple(f for fragments in documents.values() for f in fragments)


class CorpusRegistry:
    """Per-user corpora held by the assistant service."""

    def __init__(self) -> None:
        self._corpora: dict[str, Corpus] = {}

    def is_loaded(self, user_id: str) -> bool:
        """Whether the user's corpus has been loaded since startup or the last drop."""
        return user_id in self._corpora

    def get(self, user_id: str) -> Corpus:
        """Return the user's corpus, creating an empty one on first use."""
        corpus = self._corpora.get(user_id)
        if corpus is None:
            corpus = Corpus()
            self._corpora[user_id] = corpus
        return corpus

    def load(self, user_id: str, fragments: list[Fragment]) -> Corpus:
        """Rebuild a user's corpus from a full list of persisted fragments."""
        grouped: dict[str, list[Fragment]] = {}
        for fragment in fragments:
            grouped.setdefault(fragment.source_file, []).append(fragment)

        corpus = Corpus()
        for source_file, document_fragments in grouped.items():
            corpus.replace(source_file, document_fragments)
        self._corpora[user_id] = corpus

        logger.info(
            f"Reloaded corpus for user {user_id}: "
            f"{len(corpus)} fragments from {len(grouped)} documents"
        )
        return corpus

    def drop(self, user_id: str) -> None:
        self._corpora.pop(user_id, None)
