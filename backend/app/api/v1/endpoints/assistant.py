"""Assistant question-answering endpoint."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError

from app.api.deps import get_assistant, get_document_store, get_user_id
from app.knowledge.assistant import DharmaAssistant
from app.knowledge.models import ReplyKind
from app.services.document_store import DocumentStore

logger = logging.getLogger(__name__)
router = APIRouter()


# Request/Response Models
class AskRequest(BaseModel):
    """A question for the assistant."""
    message: str = Field(..., min_length=1, max_length=4000)
    language: Optional[str] = Field(
        default=None,
        description="Language code or name (en, hi, te, kannada, ...)",
    )


class AskResponse(BaseModel):
    """The assistant's reply."""
    reply: str
    kind: ReplyKind
    language: str
    sources: list[str] = []


@router.post("/ask", response_model=AskResponse)
async def ask(
    request: AskRequest,
    user_id: str = Depends(get_user_id),
    assistant: DharmaAssistant = Depends(get_assistant),
    store: DocumentStore = Depends(get_document_store),
) -> AskResponse:
    """Answer a question from the user's documents or the external lookup.

    Args:
        request: Question and preferred language
        user_id: Caller identity
        assistant: Assistant service
        store: Document store used to load the corpus on first use

    Returns:
        Reply text and the kind of answer that produced it
    """
    try:
        await assistant.ensure_corpus(user_id, store)
    except SQLAlchemyError:
        logger.exception(f"Could not load corpus for user {user_id}; answering without it")

    reply = await assistant.answer(request.message, request.language, user_id=user_id)
    return AskResponse(
        reply=reply.text,
        kind=reply.kind,
        language=reply.language,
        sources=reply.sources,
    )
