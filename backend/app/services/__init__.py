"""Service layer for Savitara.

Services wrap external systems: the document database and the external
knowledge-answer API.
"""

from app.services.document_store import DocumentStore
from app.services.knowledge_search import KnowledgeSearchClient, first_successful

__all__ = [
    "DocumentStore",
    "KnowledgeSearchClient",
    "first_successful",
]
