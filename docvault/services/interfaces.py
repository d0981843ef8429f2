"""Interfaces for the remote dependencies docvault orchestrates.

Backends translate their SDK failures into ``docvault.errors`` types:
transport faults become the matching ``*Unavailable`` error, authorization
failures ``KeyServiceDenied``, and unusable key material ``DecryptionFailed``.
"""

from __future__ import annotations

from typing import Mapping, Protocol

from docvault.models.analysis import AnalysisOptions, AnalysisResult, AnalysisSource, EngineJobSnapshot
from docvault.models.documents import DocumentVersion, StoredDocumentRef, StoredObject


class KeyManagementBackend(Protocol):
    """Remote key service holding the master key."""

    async def generate_data_key(self, *, context: str) -> tuple[bytes | bytearray, bytes]:
        """Return ``(plaintext_key, wrapped_key)`` for a fresh 256-bit key.

        A ``bytearray`` key is handed to the caller without another copy.
        """
        ...

    async def encrypt(self, plaintext: bytes, *, context: str) -> bytes: ...

    async def decrypt(self, wrapped: bytes, *, context: str) -> bytes: ...


class ObjectStorageBackend(Protocol):
    """Object store keyed by path with string metadata."""

    async def put(
        self,
        path: str,
        data: bytes,
        *,
        content_type: str,
        metadata: Mapping[str, str],
        kms_key_name: str | None = None,
    ) -> None: ...

    async def get(self, path: str) -> StoredObject | None:
        """Return the object, or ``None`` when nothing is stored at ``path``."""
        ...

    async def head(self, path: str) -> StoredObject | None:
        """Like ``get`` but ``data`` is empty; used for metadata lookups."""
        ...

    async def delete(self, path: str) -> bool:
        """Return ``False`` when the object was already absent."""
        ...


class AnalysisEngine(Protocol):
    """Asynchronous document analysis (OCR) engine."""

    async def submit_job(self, source: AnalysisSource, options: AnalysisOptions) -> str: ...

    async def get_job(self, job_id: str) -> EngineJobSnapshot: ...


class CacheBackend(Protocol):
    """Byte-blob cache with a structured compression flag and TTL."""

    async def get(self, key: str) -> tuple[bytes, bool] | None:
        """Return ``(payload, compressed)`` or ``None`` on a miss."""
        ...

    async def set(self, key: str, payload: bytes, *, compressed: bool, ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> None: ...


class AnalysisSourceProvider(Protocol):
    """Makes a stored document readable by the analysis engine."""

    async def stage(self, document_ref: str) -> AnalysisSource: ...

    async def release(self, source: AnalysisSource) -> None: ...


class DocumentRepository(Protocol):
    """Persistence for document records, their versions and analysis history."""

    async def add(self, ref: StoredDocumentRef) -> None: ...

    async def get(self, document_id: str) -> StoredDocumentRef | None: ...

    async def delete(self, document_id: str) -> bool:
        """Remove the record together with its versions and analysis history."""
        ...

    async def add_version(self, version: DocumentVersion) -> None: ...

    async def versions(self, document_id: str) -> list[DocumentVersion]:
        """Versions oldest first."""
        ...

    async def add_analysis_result(self, document_id: str, result: AnalysisResult) -> None: ...

    async def analysis_history(self, document_id: str) -> list[AnalysisResult]:
        """Recorded analysis results oldest first."""
        ...


class MetricsClient(Protocol):
    """Interface for emitting counters and latency histograms."""

    def observe_latency(self, name: str, value: float, **labels: str) -> None: ...

    def increment(self, name: str, amount: int = 1, **labels: str) -> None: ...


__all__ = [
    "AnalysisEngine",
    "AnalysisSourceProvider",
    "CacheBackend",
    "DocumentRepository",
    "KeyManagementBackend",
    "MetricsClient",
    "ObjectStorageBackend",
]
