"""Database models for Savitara."""

from app.models.document import Document, DocumentChunk

__all__ = [
    "Document",
    "DocumentChunk",
]
