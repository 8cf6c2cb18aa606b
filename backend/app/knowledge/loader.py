"""Document loader and sentence-boundary chunker for the knowledge base.

Turns uploaded spreadsheets, JSON records, PDFs and plain text into
bounded-length Fragments suitable for lexical scoring and (optionally)
embedding.
"""

import io
import json
import logging
import re
from pathlib import Path
from typing import Any

import pandas as pd
from pypdf import PdfReader

from app.knowledge.embeddings import EmbeddingFn
from app.knowledge.errors import IngestionError
from app.knowledge.models import Fragment, SourceType

logger = logging.getLogger(__name__)

# Default chunk configuration
DEFAULT_MAX_LENGTH = 500  # characters

EXTENSION_SOURCE_TYPES: dict[str, SourceType] = {
    ".xlsx": SourceType.TABULAR,
    ".csv": SourceType.TABULAR,
    ".json": SourceType.STRUCTURED,
    ".pdf": SourceType.OPAQUE_TEXT,
    ".txt": SourceType.OPAQUE_TEXT,
    ".md": SourceType.OPAQUE_TEXT,
}

_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+")
_HAS_CONTENT = re.compile(r"\w")


def infer_source_type(filename: str) -> SourceType:
    """Infer the source type from a filename extension.

    Raises:
        IngestionError: If the extension is not supported.
    """
    suffix = Path(filename).suffix.lower()
    source_type = EXTENSION_SOURCE_TYPES.get(suffix)
    if source_type is None:
        raise IngestionError(filename, f"unsupported file type '{suffix or filename}'")
    return source_type


def extract_text(content: bytes, filename: str, source_type: SourceType) -> str:
    """Extract the line-oriented text of one document.

    Args:
        content: Raw file bytes.
        filename: Original filename (used for sheet names and JSON paths).
        source_type: Declared kind of the document.

    Returns:
        Extracted text; never empty.

    Raises:
        IngestionError: If the document cannot be read or holds no text.
    """
    if source_type == SourceType.TABULAR:
        text = _extract_tabular(content, filename)
    elif source_type == SourceType.STRUCTURED:
        text = _extract_structured(content, filename)
    else:
        text = _extract_opaque(content, filename)

    if not text.strip():
        raise IngestionError(filename, "no extractable text")
    return text


def _extract_tabular(content: bytes, filename: str) -> str:
    """Render every non-empty row as ``Sheet <name>, Row <n>: <cells>``."""
    path = Path(filename)
    try:
        if path.suffix.lower() == ".csv":
            sheets = {
                path.stem: pd.read_csv(
                    io.BytesIO(content), header=None, dtype=object, skip_blank_lines=False
                )
            }
        else:
            sheets = pd.read_excel(
                io.BytesIO(content), sheet_name=None, header=None, engine="openpyxl"
            )
    except Exception as e:
        raise IngestionError(filename, f"unreadable spreadsheet: {e}") from e

    lines: list[str] = []
    for sheet_name, df in sheets.items():
        for row_number, row in enumerate(df.itertuples(index=False), start=1):
            cells = [_format_cell(value) for value in row]
            cells = [cell for cell in cells if cell]
            if cells:
                lines.append(f"Sheet {sheet_name}, Row {row_number}: {', '.join(cells)}")

    return "\n".join(lines)


def _format_cell(value: Any) -> str:
    if value is None or (not isinstance(value, str) and pd.isna(value)):
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def _extract_structured(content: bytes, filename: str) -> str:
    """Flatten a JSON document into ``<dotted.path>: <scalar>`` lines."""
    try:
        data = json.loads(content.decode("utf-8-sig"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise IngestionError(filename, f"invalid JSON: {e}") from e

    lines: list[str] = []
    _flatten(data, filename, lines)
    return "\n".join(lines)


def _flatten(value: Any, path: str, lines: list[str]) -> None:
    if isinstance(value, bool):
        lines.append(f"{path}: {'true' if value else 'false'}")
    elif isinstance(value, (int, float)):
        lines.append(f"{path}: {value}")
    elif isinstance(value, str):
        if value.strip():
            lines.append(f"{path}: {value}")
    elif isinstance(value, list):
        for index, item in enumerate(value):
            _flatten(item, f"{path}[{index}]", lines)
    elif isinstance(value, dict):
        for key, item in value.items():
            _flatten(item, f"{path}.{key}" if path else str(key), lines)


def record_path(key: str, filename: str) -> str | None:
    """Path of a flattened record key below its document root.

    ``karma_notes.json.summary`` read from ``karma_notes.json`` gives
    ``summary``. Returns None when the key is not rooted at ``filename``.
    """
    if not key.startswith(filename):
        return None
    rest = key[len(filename) :]
    if rest.startswith("."):
        return rest[1:]
    if rest.startswith("["):
        return rest
    return None


def _extract_opaque(content: bytes, filename: str) -> str:
    if Path(filename).suffix.lower() != ".pdf":
        return content.decode("utf-8", errors="replace")

    try:
        reader = PdfReader(io.BytesIO(content))
        pages = [page.extract_text() or "" for page in reader.pages]
    except Exception as e:
        raise IngestionError(filename, f"unreadable PDF: {e}") from e

    return "\n\n".join(page for page in pages if page.strip())


def split_sentences(text: str) -> list[tuple[str, bool]]:
    """Split text at sentence punctuation and line breaks.

    Returns:
        ``(sentence, starts_line)`` pairs in source order. Sentences without
        any word character are dropped.
    """
    sentences: list[tuple[str, bool]] = []
    for line in text.splitlines():
        first = True
        for sentence in _SENTENCE_BOUNDARY.split(line.strip()):
            sentence = sentence.strip()
            if not sentence or not _HAS_CONTENT.search(sentence):
                continue
            sentences.append((sentence, first))
            first = False
    return sentences


def chunk_text(text: str, max_length: int = DEFAULT_MAX_LENGTH) -> list[str]:
    """Greedily pack sentences into chunks of at most ``max_length`` chars.

    A chunk only exceeds the limit when it consists of a single sentence that
    is longer than the limit on its own. Line structure is kept: sentences
    that began a source line start a new line in the chunk.
    """
    chunks: list[str] = []
    buffer = ""

    for sentence, starts_line in split_sentences(text):
        separator = "\n" if starts_line else " "
        if buffer and len(buffer) + len(separator) + len(sentence) > max_length:
            chunks.append(buffer)
            buffer = sentence
        elif buffer:
            buffer = f"{buffer}{separator}{sentence}"
        else:
            buffer = sentence

    if buffer:
        chunks.append(buffer)

    return chunks


def build_fragments(
    content: bytes,
    filename: str,
    source_type: SourceType | None = None,
    max_length: int = DEFAULT_MAX_LENGTH,
) -> list[Fragment]:
    """Extract and chunk one document into Fragments (without embeddings).

    Raises:
        IngestionError: If the document cannot be turned into any fragment.
    """
    if source_type is None:
        source_type = infer_source_type(filename)

    text = extract_text(content, filename, source_type)
    chunks = chunk_text(text, max_length=max_length)
    if not chunks:
        raise IngestionError(filename, "no extractable text")

    return [
        Fragment(text=chunk, source_file=filename, source_type=source_type, index=index)
        for index, chunk in enumerate(chunks)
    ]


async def embed_fragments(
    fragments: list[Fragment],
    embed: EmbeddingFn | None,
) -> list[Fragment]:
    """Attach embeddings to fragments when an embedding function is available.

    A failed embedding leaves that fragment without one; ingestion continues.
    """
    if embed is None:
        return fragments

    embedded: list[Fragment] = []
    for fragment in fragments:
        try:
            vector = await embed(fragment.text)
        except Exception as e:
            logger.warning(
                f"Embedding failed for {fragment.source_file}#{fragment.index}: {e}"
            )
            embedded.append(fragment)
            continue
        embedded.append(fragment.model_copy(update={"embedding": list(vector)}))

    return embedded


async def load_document(
    content: bytes,
    filename: str,
    source_type: SourceType | None = None,
    max_length: int = DEFAULT_MAX_LENGTH,
    embed: EmbeddingFn | None = None,
) -> list[Fragment]:
    """Build the complete fragment list of one document, embeddings included."""
    fragments = build_fragments(content, filename, source_type, max_length)
    fragments = await embed_fragments(fragments, embed)
    logger.info(
        f"Loaded {filename}: {len(fragments)} fragments "
        f"({sum(1 for f in fragments if f.embedding)} embedded)"
    )
    return fragments
