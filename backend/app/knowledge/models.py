"""Data models for knowledge base fragments, query analysis and replies."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class SourceType(str, Enum):
    """Kind of document a fragment was extracted from."""

    TABULAR = "tabular"
    STRUCTURED = "structured"
    OPAQUE_TEXT = "opaque_text"


class Fragment(BaseModel):
    """A bounded-length slice of one source document's text.

    Fragments are immutable once created; re-ingesting a document replaces
    them as a whole.
    """

    model_config = ConfigDict(frozen=True)

    text: str = Field(..., description="Fragment text content")
    source_file: str = Field(..., description="Source filename")
    source_type: SourceType = Field(..., description="Kind of source document")
    index: int = Field(..., ge=0, description="Ordinal position within the source document")
    embedding: list[float] = Field(
        default_factory=list,
        description="Embedding vector (empty when no embedding is available)",
    )


class ScoredFragment(BaseModel):
    """A fragment paired with its relevance score for one query."""

    fragment: Fragment
    score: int = Field(..., description="Lexical relevance score")


class QueryAnalysis(BaseModel):
    """Derived classification of a single user query."""

    question_type: str = "general"  # definition | process | explanation | timing | location | general
    intent: str = "general_inquiry"
    topics: list[str] = Field(default_factory=list)
    entities: list[str] = Field(default_factory=list)
    sentiment: str = "neutral"  # inquisitive | neutral | positive | negative


class ReplyKind(str, Enum):
    """Terminal state of one assistant query."""

    GREETING = "greeting"
    OFF_TOPIC = "off_topic"
    DIRECT_ANSWER = "direct_answer"
    SYNTHESIZED_ANSWER = "synthesized_answer"
    EXTERNAL_ANSWER = "external_answer"
    TEMPLATE_ANSWER = "template_answer"
    NOT_FOUND = "not_found"
    TECHNICAL_ERROR = "technical_error"


class AssistantReply(BaseModel):
    """Response produced for one query."""

    kind: ReplyKind
    text: str
    language: str
    sources: list[str] = Field(
        default_factory=list,
        description="Source filenames of the fragments behind the answer",
    )


class IngestionReport(BaseModel):
    """Outcome of ingesting one uploaded document."""

    filename: str
    source_type: SourceType | None = None
    fragments: int = 0
    embedded: int = 0
    success: bool = True
    error: str | None = None


class CorpusStats(BaseModel):
    """Size of a user's corpus."""

    total_chunks: int
    total_documents: int
