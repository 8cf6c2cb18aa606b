"""Document-grounded answer retrieval for the Dharma assistant.

This module chunks uploaded documents into fragments, scores them against a
question, extracts a direct answer where one exists and otherwise falls back
to the external knowledge lookup.
"""

from app.knowledge.assistant import DharmaAssistant
from app.knowledge.models import (
    AssistantReply,
    CorpusStats,
    Fragment,
    IngestionReport,
    QueryAnalysis,
    ReplyKind,
    ScoredFragment,
    SourceType,
)

__all__ = [
    "AssistantReply",
    "CorpusStats",
    "DharmaAssistant",
    "Fragment",
    "IngestionReport",
    "QueryAnalysis",
    "ReplyKind",
    "ScoredFragment",
    "SourceType",
]
