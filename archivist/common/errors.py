"""
Error taxonomy shared by ingestion, retrieval and synthesis.

Every error surfaced to a caller carries an ErrorCode so that responses can
report it without leaking exception internals.
"""

from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCode(str, Enum):
    """Caller-visible error codes"""
    REJECTED_LOW_QUALITY = "RejectedLowQuality"
    EMBEDDING_FAILED = "EmbeddingFailed"
    PARTIALLY_INDEXED = "PartiallyIndexed"
    PRIVACY_DENIED = "PrivacyDenied"
    SYNTHESIS_UNAVAILABLE = "SynthesisUnavailable"
    PROVIDER_TIMEOUT = "ProviderTimeout"
    INVALID_FILTER = "InvalidFilter"


class ArchivistError(Exception):
    """Base class for errors with a taxonomy code."""

    code: ErrorCode

    def __init__(self, message: str = "", **details: Any):
        super().__init__(message or self.code.value)
        self.message = message or self.code.value
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        data = {"code": self.code.value, "message": self.message}
        if self.details:
            data["details"] = self.details
        return data


class RejectedLowQuality(ArchivistError):
    """Document quality score is below the ingestion threshold."""
    code = ErrorCode.REJECTED_LOW_QUALITY


class EmbeddingFailed(ArchivistError):
    """Embeddings could not be produced after retries."""
    code = ErrorCode.EMBEDDING_FAILED


class PartiallyIndexed(ArchivistError):
    """Vector and metadata writes diverged and could not be rolled back."""
    code = ErrorCode.PARTIALLY_INDEXED


class PrivacyDenied(ArchivistError):
    """No retrieval result survived privacy filtering."""
    code = ErrorCode.PRIVACY_DENIED


class SynthesisUnavailable(ArchivistError):
    """Every configured generation provider failed."""
    code = ErrorCode.SYNTHESIS_UNAVAILABLE

    def __init__(self, message: str = "", attempts: Optional[List[str]] = None):
        super().__init__(message, attempts=attempts or [])
        self.attempts = attempts or []


class InvalidFilter(ArchivistError):
    """Search filters are malformed."""
    code = ErrorCode.INVALID_FILTER


# ============================================================================
# Provider-level errors
# ============================================================================

class ProviderError(Exception):
    """Failure reported by an embedding or generation provider."""

    transient = False

    def __init__(self, message: str = "", provider: str = ""):
        super().__init__(message)
        self.provider = provider


class ProviderTimeout(ProviderError, ArchivistError):
    """Provider call exceeded its timeout."""
    code = ErrorCode.PROVIDER_TIMEOUT
    transient = True

    def __init__(self, message: str = "", provider: str = ""):
        ArchivistError.__init__(self, message or "provider call timed out", provider=provider)
        self.provider = provider


class RateLimited(ProviderError):
    transient = True


class QuotaExceeded(ProviderError):
    transient = True


class InvalidInput(ProviderError):
    pass


class ProviderUnavailable(ProviderError):
    pass


class MalformedResponse(ProviderError):
    pass


def is_transient(exc: BaseException) -> bool:
    """True for provider failures worth retrying locally."""
    return isinstance(exc, ProviderError) and exc.transient
