"""
Error Taxonomy for the HR RAG Pipeline

Every user-visible failure carries a machine-readable code plus a human
message. Internal causes are logged where the error is classified and are
never part of the payload returned to callers.
"""

from datetime import datetime
from typing import Optional


class HRRagError(Exception):
    """Base class for pipeline errors."""

    code: str = "internal_error"
    http_status: int = 500

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class ValidationError(HRRagError):
    """Bad size, type or request shape. Surfaced to the caller, never retried."""
    code = "validation_error"
    http_status = 400


class SecurityRejection(HRRagError):
    """File rejected by the security screen."""
    code = "security_rejected"
    http_status = 400

    def __init__(self, message: str, issues: Optional[list] = None):
        super().__init__(message)
        self.issues = issues or []


class ExtractionError(HRRagError):
    code = "extraction_failed"
    http_status = 422


class UnsupportedFileType(ExtractionError):
    code = "unsupported_file_type"
    http_status = 400


class ChunkingError(HRRagError):
    code = "chunking_failed"
    http_status = 422


class EmbeddingError(HRRagError):
    code = "embedding_failed"
    http_status = 502


class CorpusSearchError(HRRagError):
    """One corpus could not be searched. Non-fatal at the request level."""
    code = "corpus_unavailable"
    http_status = 503

    def __init__(self, message: str, corpus: str):
        super().__init__(message)
        self.corpus = corpus


class CacheError(HRRagError):
    code = "cache_error"
    http_status = 500


class OperationCancelled(HRRagError):
    """Caller aborted the operation."""
    code = "cancelled"
    http_status = 499


class DocumentNotFound(HRRagError):
    code = "not_found"
    http_status = 404


class InvalidTransition(HRRagError):
    """Requested lifecycle change is not allowed from the current state."""
    code = "invalid_transition"
    http_status = 409


class QuotaExceededError(HRRagError):
    """Raised when a quota limit is exceeded."""
    code = "quota_exceeded"
    http_status = 429

    def __init__(
        self,
        message: str,
        quota_type: str,
        current: int,
        limit: int,
        reset_at: Optional[datetime] = None,
    ):
        super().__init__(message)
        self.quota_type = quota_type
        self.current = current
        self.limit = limit
        self.reset_at = reset_at

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update({
            "quota_type": self.quota_type,
            "current": self.current,
            "limit": self.limit,
            "reset_at": self.reset_at.isoformat() if self.reset_at else None,
        })
        return data


def status_for_exception(exc: BaseException) -> int:
    """Map an exception to the status code exposed to the API layer."""
    if isinstance(exc, HRRagError):
        return exc.http_status
    return 500


def error_payload(exc: BaseException) -> dict:
    """User-visible error body. Unknown exceptions never leak their message."""
    if isinstance(exc, HRRagError):
        return exc.to_dict()
    return {"code": HRRagError.code, "message": "Unexpected error"}
