"""Custom exception hierarchy for the docvault storage and analysis layer.

Every error carries optional context (document id, job id, object path,
elapsed time, attempt count) so failures can be logged consistently without
re-deriving what the caller was doing. Outcomes that are part of normal
control flow (cache misses, low confidence, timed-out analysis) are not
exceptions; see ``docvault.models.outcome`` and ``AnalysisResult``.
"""
from __future__ import annotations

from typing import Any


class DocVaultError(Exception):
    """Base class for all docvault failures."""

    def __init__(
        self,
        message: str = "",
        *,
        document_id: str | None = None,
        job_id: str | None = None,
        path: str | None = None,
        elapsed_ms: int | None = None,
        attempts: int | None = None,
    ) -> None:
        super().__init__(message or self.__class__.__doc__ or self.__class__.__name__)
        self.document_id = document_id
        self.job_id = job_id
        self.path = path
        self.elapsed_ms = elapsed_ms
        self.attempts = attempts

    def context(self) -> dict[str, Any]:
        data = {
            "error_type": self.__class__.__name__,
            "document_id": self.document_id,
            "job_id": self.job_id,
            "path": self.path,
            "elapsed_ms": self.elapsed_ms,
            "attempts": self.attempts,
        }
        return {key: value for key, value in data.items() if value is not None}


class InvalidInputError(DocVaultError, ValueError):
    """Raised when caller supplied input (bytes, names, options) is invalid."""


class ConfigurationError(DocVaultError):
    """Raised when required configuration is missing or inconsistent."""


class TransientError(DocVaultError):
    """A dependency failed in a way that may succeed on a later attempt."""


class KeyServiceUnavailable(TransientError):
    """The key management service could not be reached."""


class StorageUnavailable(TransientError):
    """The object store could not be reached or its circuit is open."""


class AnalysisUnavailable(TransientError):
    """The analysis engine could not be reached."""


class CacheUnavailable(TransientError):
    """The cache backend could not be reached within its timeout."""


class RateLimitExceeded(TransientError):
    """No concurrency slot became available within the bounded wait."""


class CircuitOpenError(TransientError):
    """Raised by a circuit breaker that is refusing calls."""

    def __init__(self, name: str, retry_after: float = 0.0, **context: Any) -> None:
        super().__init__(f"circuit '{name}' is open", **context)
        self.name = name
        self.retry_after = retry_after


class KeyServiceDenied(DocVaultError):
    """The key management service rejected the caller's authorization."""


class IntegrityError(DocVaultError):
    """Stored data failed verification. Never retried."""


class IntegrityCheckFailed(IntegrityError):
    """Ciphertext checksum did not match the stored checksum."""


class DecryptionFailed(IntegrityError):
    """Ciphertext or wrapped key could not be decrypted."""


class DocumentNotFound(DocVaultError, LookupError):
    """No object or record exists for the requested reference."""


class AccessDenied(DocVaultError, PermissionError):
    """The caller does not own the requested document."""


class AnalysisCancelled(DocVaultError):
    """The caller cancelled an in-flight analysis."""


class InvalidTransition(DocVaultError):
    """An analysis job was moved to a state it cannot reach."""


__all__ = [
    "DocVaultError",
    "InvalidInputError",
    "ConfigurationError",
    "TransientError",
    "KeyServiceUnavailable",
    "StorageUnavailable",
    "AnalysisUnavailable",
    "CacheUnavailable",
    "RateLimitExceeded",
    "CircuitOpenError",
    "KeyServiceDenied",
    "IntegrityError",
    "IntegrityCheckFailed",
    "DecryptionFailed",
    "DocumentNotFound",
    "AccessDenied",
    "AnalysisCancelled",
    "InvalidTransition",
]
