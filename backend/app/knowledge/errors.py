"""Exceptions raised inside the knowledge subsystem.

None of these reach an HTTP caller as-is: ingestion errors become a failed
IngestionReport and lookup errors become a canned assistant reply.
"""


class KnowledgeError(Exception):
    """Base class for knowledge subsystem errors."""


class IngestionError(KnowledgeError):
    """A document could not be turned into fragments."""

    def __init__(self, filename: str, reason: str) -> None:
        self.filename = filename
        self.reason = reason
        super().__init__(f"{filename}: {reason}")


class KnowledgeSearchError(KnowledgeError):
    """A single external knowledge model call failed."""

    def __init__(self, model: str, reason: str, status_code: int | None = None) -> None:
        self.model = model
        self.reason = reason
        self.status_code = status_code
        super().__init__(f"{model}: {reason}")


class KnowledgeSearchUnavailable(KnowledgeError):
    """The external knowledge lookup cannot produce an answer at all.

    Raised when it is not configured, or when every model in the fallback
    list failed (``errors`` then holds one entry per attempted model).
    """

    def __init__(self, message: str, errors: list[KnowledgeSearchError] | None = None) -> None:
        self.errors = errors or []
        super().__init__(message)

    @property
    def configured(self) -> bool:
        """False when no model was even attempted."""
        return bool(self.errors)
