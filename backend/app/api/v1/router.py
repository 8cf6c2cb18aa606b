"""API v1 router aggregating all endpoint routers.

Assistant:
  /api/v1/assistant/ask

Documents:
  /api/v1/documents (upload, list)
  /api/v1/documents/stats, /reload, /cache
  /api/v1/documents/{id} (delete)
"""

from fastapi import APIRouter

from app.api.v1.endpoints import assistant, documents

api_router = APIRouter()

# -------------------------------------------------------------------------
# Assistant
# -------------------------------------------------------------------------
api_router.include_router(assistant.router, prefix="/assistant", tags=["assistant"])

# -------------------------------------------------------------------------
# Documents (knowledge base)
# -------------------------------------------------------------------------
api_router.include_router(documents.router, prefix="/documents", tags=["documents"])
