"""Request-scoped dependencies shared by the API endpoints."""

from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.knowledge.assistant import DharmaAssistant
from app.services.document_store import DocumentStore


async def get_user_id(
    x_user_id: Optional[str] = Header(default=None, alias="X-User-ID"),
) -> str:
    """Caller identity, asserted by the upstream auth layer."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-ID header",
        )
    return x_user_id.strip()


def get_assistant(request: Request) -> DharmaAssistant:
    """The assistant service built in the application lifespan."""
    return request.app.state.assistant


def get_document_store(db: AsyncSession = Depends(get_db)) -> DocumentStore:
    return DocumentStore(db)
