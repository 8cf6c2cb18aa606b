"""Durable storage of uploaded documents and their fragments."""

import logging

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.knowledge.models import Fragment, SourceType
from app.models.document import Document, DocumentChunk

logger = logging.getLogger(__name__)


class DocumentStore:
    """Persists fragments per user and reloads them into a corpus."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def save_fragments(
        self,
        user_id: str,
        filename: str,
        source_type: SourceType,
        fragments: list[Fragment],
    ) -> Document:
        """Store one document and all of its fragments.

        An earlier upload with the same filename is replaced.
        """
        previous = await self.db.execute(
            select(Document.id).where(
                Document.user_id == user_id,
                Document.filename == filename,
            )
        )
        previous_ids = list(previous.scalars().all())
        if previous_ids:
            await self.db.execute(
                delete(DocumentChunk).where(DocumentChunk.document_id.in_(previous_ids))
            )
            await self.db.execute(delete(Document).where(Document.id.in_(previous_ids)))
            logger.info(f"Replaced previous upload of {filename} for user {user_id}")

        document = Document(
            user_id=user_id,
            filename=filename,
            file_type=source_type.value,
            processed_chunks=len(fragments),
        )
        self.db.add(document)
        await self.db.flush()

        self.db.add_all(
            [
                DocumentChunk(
                    document_id=document.id,
                    user_id=user_id,
                    chunk_text=fragment.text,
                    chunk_index=fragment.index,
                    chunk_metadata={
                        "filename": filename,
                        "fileType": source_type.value,
                        "totalChunks": len(fragments),
                    },
                    embedding=fragment.embedding or None,
                )
                for fragment in fragments
            ]
        )
        await self.db.commit()
        await self.db.refresh(document)
        return document

    async def list_documents(self, user_id: str) -> list[Document]:
        result = await self.db.execute(
            select(Document)
            .where(Document.user_id == user_id)
            .order_by(Document.id)
        )
        return list(result.scalars().all())

    async def get_document(self, user_id: str, document_id: int) -> Document | None:
        result = await self.db.execute(
            select(Document).where(
                Document.id == document_id,
                Document.user_id == user_id,
            )
        )
        return result.scalar_one_or_none()

    async def delete_document(self, user_id: str, document_id: int) -> Document | None:
        """Delete a document and its chunks. Returns the deleted document."""
        document = await self.get_document(user_id, document_id)
        if document is None:
            return None

        await self.db.execute(
            delete(DocumentChunk).where(DocumentChunk.document_id == document_id)
        )
        await self.db.delete(document)
        await self.db.commit()
        return document

    async def load_fragments(self, user_id: str) -> list[Fragment]:
        """Load every stored fragment of a user, by document then chunk index."""
        result = await self.db.execute(
            select(DocumentChunk, Document.filename, Document.file_type)
            .join(Document, DocumentChunk.document_id == Document.id)
            .where(DocumentChunk.user_id == user_id)
            .order_by(DocumentChunk.document_id, DocumentChunk.chunk_index)
        )

        fragments: list[Fragment] = []
        for chunk, filename, file_type in result.all():
            fragments.append(
                Fragment(
                    text=chunk.chunk_text,
                    source_file=filename,
                    source_type=SourceType(file_type),
                    index=chunk.chunk_index,
                    embedding=chunk.embedding or [],
                )
            )
        return fragments

    async def count_chunks(self, user_id: str) -> int:
        result = await self.db.execute(
            select(func.count(DocumentChunk.id)).where(DocumentChunk.user_id == user_id)
        )
        return result.scalar_one()

    async def rollback(self) -> None:
        await self.db.rollback()
