"""Error taxonomy shared by the cache and chat layers.

Every error carries a stable ``code`` and an HTTP-style ``status_code`` so a
caller can tell "retry now" from "re-upload the document" from "malformed
request" without parsing messages.
"""
from typing import Any, Dict, Optional


class ReaderError(Exception):
    """Base class for errors surfaced to callers."""
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.__class__.__doc__)
        self.message = message or self.__class__.__doc__

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code, "status": self.status_code}


class NotFoundError(ReaderError):
    """Referenced resource not found."""
    status_code = 404
    code = "NOT_FOUND"


class AccessDeniedError(ReaderError):
    """Access denied."""
    status_code = 403
    code = "ACCESS_DENIED"


class ValidationFailure(ReaderError):
    """Malformed request."""
    status_code = 400
    code = "VALIDATION_FAILED"


class ContextLimitExceededError(ValidationFailure):
    """Conversation too long, please start a new session."""
    status_code = 413
    code = "CONTEXT_LIMIT_EXCEEDED"


class UpstreamGenerationError(ReaderError):
    """Generation backend request failed."""
    status_code = 502
    code = "UPSTREAM_GENERATION_FAILED"


class DocumentUploadError(UpstreamGenerationError):
    """Document upload to the generation backend failed."""
    code = "DOCUMENT_UPLOAD_FAILED"


class SessionExpiredError(ReaderError):
    """Conversation cache has expired."""
    status_code = 410
    code = "CACHE_EXPIRED"


class RateLimitedError(ReaderError):
    """API rate limit exceeded. Please try again later."""
    status_code = 429
    code = "RATE_LIMITED"
