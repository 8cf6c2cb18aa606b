"""Dharma assistant service: the query state machine and document ingestion.

One ``DharmaAssistant`` is built per process in the FastAPI lifespan and handed
to request handlers. Every query ends in exactly one ``AssistantReply``:

    received -> greeting? -> in domain? -> corpus empty? -> rank -> extract
      -> direct answer | synthesized answer | external lookup
      -> external answer | template | not found | technical error
"""

from __future__ import annotations

import dataclasses
import logging
import time
from collections.abc import Sequence
from typing import TYPE_CHECKING

import httpx

from app.knowledge.assets import KnowledgeAssets, load_assets
from app.knowledge.classifier import DomainClassifier
from app.knowledge.corpus import CorpusRegistry
from app.knowledge.embeddings import EmbeddingFn, build_embedding_fn
from app.knowledge.errors import IngestionError, KnowledgeSearchUnavailable
from app.knowledge.extractor import AnswerExtractor, clean_answer
from app.knowledge.loader import DEFAULT_MAX_LENGTH, infer_source_type, load_document
from app.knowledge.models import (
    AssistantReply,
    CorpusStats,
    Fragment,
    IngestionReport,
    ReplyKind,
)
from app.knowledge.scorer import RelevanceScorer
from app.services.knowledge_search import KnowledgeSearchClient

if TYPE_CHECKING:
    from app.core.config import Settings
    from app.observability import MetricsBackend
    from app.services.document_store import DocumentStore

logger = logging.getLogger(__name__)

DEFAULT_SYNTHESIS_FRAGMENTS = 3
DEFAULT_MIN_SYNTHESIS_LENGTH = 50


class DharmaAssistant:
    """Answers Dharma questions from a user's documents, with external fallback."""

    def __init__(
        self,
        assets: KnowledgeAssets,
        classifier: DomainClassifier,
        scorer: RelevanceScorer,
        extractor: AnswerExtractor,
        search: KnowledgeSearchClient | None = None,
        embed: EmbeddingFn | None = None,
        corpora: CorpusRegistry | None = None,
        chunk_max_length: int = DEFAULT_MAX_LENGTH,
        synthesis_fragment_count: int = DEFAULT_SYNTHESIS_FRAGMENTS,
        min_synthesis_length: int = DEFAULT_MIN_SYNTHESIS_LENGTH,
        template_fallback: bool = False,
        metrics: MetricsBackend | None = None,
    ) -> None:
        self.assets = assets
        self.classifier = classifier
        self.scorer = scorer
        self.extractor = extractor
        self.search = search
        self.embed = embed
        self.corpora = corpora or CorpusRegistry()
        self.chunk_max_length = chunk_max_length
        self.synthesis_fragment_count = synthesis_fragment_count
        self.min_synthesis_length = min_synthesis_length
        self.template_fallback = template_fallback
        self.metrics = metrics

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        assets: KnowledgeAssets | None = None,
        http_client: httpx.AsyncClient | None = None,
        metrics: MetricsBackend | None = None,
    ) -> DharmaAssistant:
        """Wire up the assistant and its collaborators from settings."""
        assets = assets or load_assets(settings.knowledge_assets_dir)
        logger.info(f"Loaded knowledge assets: {assets.versions}")

        default_language = settings.assistant_default_language
        if default_language != assets.default_language:
            if default_language not in assets.responses:
                raise ValueError(
                    f"No canned responses for default language '{default_language}'"
                )
            assets = dataclasses.replace(assets, default_language=default_language)

        return cls(
            assets=assets,
            classifier=DomainClassifier(assets),
            scorer=RelevanceScorer(assets.scoring_vocabulary, top_k=settings.retrieval_top_k),
            extractor=AnswerExtractor(
                assets.interrogatives,
                assets.stopwords,
                min_answer_length=settings.min_answer_length,
                similarity_threshold=settings.qa_similarity_threshold,
            ),
            search=KnowledgeSearchClient.from_settings(
                settings, assets, client=http_client, metrics=metrics
            ),
            embed=build_embedding_fn(settings),
            chunk_max_length=settings.chunk_max_length,
            synthesis_fragment_count=settings.synthesis_fragment_count,
            min_synthesis_length=settings.min_synthesis_length,
            template_fallback=settings.assistant_template_fallback,
            metrics=metrics,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def answer(
        self,
        query: str,
        language: str | None = None,
        user_id: str = "anonymous",
    ) -> AssistantReply:
        """Produce exactly one reply for a query. Never raises."""
        language = self.assets.normalize_language(language)
        try:
            reply = await self._answer(query, language, user_id)
        except Exception:
            logger.exception(f"Unexpected failure answering query for user {user_id}")
            reply = self._canned(ReplyKind.TECHNICAL_ERROR, "technical_error", language)

        if self.metrics is not None:
            self.metrics.observe_assistant_reply(reply.kind.value)
        return reply

    async def _answer(self, query: str, language: str, user_id: str) -> AssistantReply:
        greeting = self.classifier.detect_greeting(query)
        if greeting is not None:
            return self._canned(ReplyKind.GREETING, greeting.value, language)

        if not self.classifier.is_in_domain(query):
            return self._canned(ReplyKind.OFF_TOPIC, "off_topic", language)

        fragments = self.corpora.get(user_id).snapshot()
        if fragments:
            reply = self._answer_from_documents(query, language, fragments)
            if reply is not None:
                return reply

        return await self._answer_externally(query, language)

    def _answer_from_documents(
        self,
        query: str,
        language: str,
        fragments: Sequence[Fragment],
    ) -> AssistantReply | None:
        try:
            ranked = [scored.fragment for scored in self.scorer.rank(query, fragments)]
        except Exception:
            logger.exception("Relevance scoring failed; treating as a miss")
            return None
        if not ranked:
            return None

        try:
            extraction = self.extractor.extract(query, ranked)
        except Exception:
            logger.exception("Answer extraction failed; treating as a miss")
            extraction = None

        if extraction is not None:
            return AssistantReply(
                kind=ReplyKind.DIRECT_ANSWER,
                text=self.assets.response(language, "direct_prefix") + extraction.text,
                language=language,
                sources=[extraction.fragment.source_file],
            )

        top = ranked[: self.synthesis_fragment_count]
        synthesized = " ".join(clean_answer(fragment.text) for fragment in top).strip()
        if len(synthesized) > self.min_synthesis_length:
            return AssistantReply(
                kind=ReplyKind.SYNTHESIZED_ANSWER,
                text=self.assets.response(language, "synthesis_prefix") + synthesized,
                language=language,
                sources=list(dict.fromkeys(fragment.source_file for fragment in top)),
            )
        return None

    async def _answer_externally(self, query: str, language: str) -> AssistantReply:
        if self.search is None or not self.search.configured:
            return self._unconfigured_fallback(query, language)

        try:
            answer = await self.search.search(query, language)
        except KnowledgeSearchUnavailable as e:
            if not e.configured:
                return self._unconfigured_fallback(query, language)
            logger.error(
                f"Knowledge search failed: {e} "
                f"({'; '.join(str(error) for error in e.errors)})"
            )
            return self._canned(ReplyKind.TECHNICAL_ERROR, "technical_error", language)

        if not answer:
            return self._canned(ReplyKind.NOT_FOUND, "not_found", language)
        return AssistantReply(kind=ReplyKind.EXTERNAL_ANSWER, text=answer, language=language)

    def _unconfigured_fallback(self, query: str, language: str) -> AssistantReply:
        if self.template_fallback:
            text = self.classifier.template_answer(query, language)
            if text:
                return AssistantReply(
                    kind=ReplyKind.TEMPLATE_ANSWER, text=text, language=language
                )
        return self._canned(ReplyKind.NOT_FOUND, "not_found", language)

    def _canned(self, kind: ReplyKind, key: str, language: str) -> AssistantReply:
        return AssistantReply(
            kind=kind,
            text=self.assets.response(language, key),
            language=language,
        )

    # ------------------------------------------------------------------
    # Corpus management
    # ------------------------------------------------------------------

    async def ensure_corpus(self, user_id: str, store: DocumentStore) -> None:
        """Load the user's corpus from the store unless it is already in memory."""
        if not self.corpora.is_loaded(user_id):
            await self.reload(user_id, store)

    async def reload(self, user_id: str, store: DocumentStore) -> CorpusStats:
        """Replace the user's in-memory corpus with the persisted fragments."""
        fragments = await store.load_fragments(user_id)
        return self.corpora.load(user_id, fragments).stats()

    def clear(self, user_id: str) -> None:
        """Forget the user's in-memory corpus; the next request reloads it."""
        self.corpora.drop(user_id)
        logger.info(f"Cleared in-memory corpus for user {user_id}")

    def remove_document(self, user_id: str, filename: str) -> bool:
        return self.corpora.get(user_id).remove(filename)

    def stats(self, user_id: str) -> CorpusStats:
        return self.corpora.get(user_id).stats()

    async def ingest_documents(
        self,
        user_id: str,
        files: Sequence[tuple[str, bytes]],
        store: DocumentStore | None = None,
    ) -> list[IngestionReport]:
        """Ingest uploaded files one by one.

        A file that fails is reported and skipped; the others continue. A
        document becomes visible to queries only once all of its fragments
        are built and stored.
        """
        reports: list[IngestionReport] = []
        for filename, content in files:
            start = time.perf_counter()
            report = await self._ingest_one(user_id, filename, content, store)
            duration_ms = (time.perf_counter() - start) * 1000
            if self.metrics is not None:
                self.metrics.observe_ingestion(
                    report.source_type.value if report.source_type else "unknown",
                    report.success,
                    report.fragments,
                    duration_ms,
                )
            reports.append(report)
        return reports

    async def _ingest_one(
        self,
        user_id: str,
        filename: str,
        content: bytes,
        store: DocumentStore | None,
    ) -> IngestionReport:
        source_type = None
        try:
            source_type = infer_source_type(filename)
            fragments = await load_document(
                content,
                filename,
                source_type=source_type,
                max_length=self.chunk_max_length,
                embed=self.embed,
            )
            if store is not None:
                await store.save_fragments(user_id, filename, source_type, fragments)
        except IngestionError as e:
            logger.warning(f"Skipping {filename} for user {user_id}: {e.reason}")
            return IngestionReport(
                filename=filename, source_type=source_type, success=False, error=e.reason
            )
        except Exception as e:
            logger.exception(f"Failed to store {filename} for user {user_id}")
            if store is not None:
                await store.rollback()
            return IngestionReport(
                filename=filename,
                source_type=source_type,
                success=False,
                error=f"could not be stored: {type(e).__name__}",
            )

        self.corpora.get(user_id).replace(filename, fragments)
        return IngestionReport(
            filename=filename,
            source_type=source_type,
            fragments=len(fragments),
            embedded=sum(1 for fragment in fragments if fragment.embedding),
        )

    async def aclose(self) -> None:
        if self.search is not None:
            await self.search.aclose()
