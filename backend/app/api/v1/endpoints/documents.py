"""Document upload and corpus management endpoints."""

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile, status
from pydantic import BaseModel, ConfigDict

from app.api.deps import get_assistant, get_document_store, get_user_id
from app.knowledge.assistant import DharmaAssistant
from app.knowledge.models import CorpusStats, IngestionReport
from app.services.document_store import DocumentStore

logger = logging.getLogger(__name__)
router = APIRouter()


# Response Models
class UploadResponse(BaseModel):
    """Per-file outcome of an upload."""
    documents: list[IngestionReport]
    processed: int
    failed: int


class DocumentResponse(BaseModel):
    """A stored document."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    filename: str
    file_type: str
    processed_chunks: int
    created_at: datetime


@router.post("", response_model=UploadResponse)
async def upload_documents(
    files: list[UploadFile] = File(default=[]),
    user_id: str = Depends(get_user_id),
    assistant: DharmaAssistant = Depends(get_assistant),
    store: DocumentStore = Depends(get_document_store),
) -> UploadResponse:
    """Upload one or more documents into the user's knowledge base.

    Files that cannot be processed are reported and skipped; the others are
    still ingested.
    """
    if not files:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No files uploaded",
        )

    await assistant.ensure_corpus(user_id, store)

    uploads: list[tuple[str, bytes]] = []
    for upload in files:
        uploads.append((upload.filename or "upload", await upload.read()))

    reports = await assistant.ingest_documents(user_id, uploads, store=store)
    processed = sum(1 for report in reports if report.success)
    logger.info(f"User {user_id} uploaded {len(reports)} files, {processed} processed")

    return UploadResponse(
        documents=reports,
        processed=processed,
        failed=len(reports) - processed,
    )


@router.get("", response_model=list[DocumentResponse])
async def list_documents(
    user_id: str = Depends(get_user_id),
    store: DocumentStore = Depends(get_document_store),
) -> list[DocumentResponse]:
    """List the user's stored documents."""
    documents = await store.list_documents(user_id)
    return [DocumentResponse.model_validate(document) for document in documents]


@router.get("/stats", response_model=CorpusStats)
async def document_stats(
    user_id: str = Depends(get_user_id),
    store: DocumentStore = Depends(get_document_store),
) -> CorpusStats:
    """Count the user's stored documents and chunks."""
    documents = await store.list_documents(user_id)
    return CorpusStats(
        total_chunks=await store.count_chunks(user_id),
        total_documents=len(documents),
    )


@router.post("/reload", response_model=CorpusStats)
async def reload_documents(
    user_id: str = Depends(get_user_id),
    assistant: DharmaAssistant = Depends(get_assistant),
    store: DocumentStore = Depends(get_document_store),
) -> CorpusStats:
    """Reload the in-memory corpus from the stored chunks."""
    return await assistant.reload(user_id, store)


@router.delete("/cache", status_code=status.HTTP_204_NO_CONTENT)
async def clear_document_cache(
    user_id: str = Depends(get_user_id),
    assistant: DharmaAssistant = Depends(get_assistant),
) -> None:
    """Drop the in-memory corpus; the next request reloads it from storage."""
    assistant.clear(user_id)


@router.delete("/{document_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_document(
    document_id: int,
    user_id: str = Depends(get_user_id),
    assistant: DharmaAssistant = Depends(get_assistant),
    store: DocumentStore = Depends(get_document_store),
) -> None:
    """Delete a document, its stored chunks and its in-memory fragments."""
    document = await store.delete_document(user_id, document_id)
    if document is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Document not found"
        )

    assistant.remove_document(user_id, document.filename)
    logger.info(f"Deleted document {document_id} ({document.filename}) for user {user_id}")
