"""Document facade: the operations exposed to the (external) API layer.

Documents are stored at ``{category}/{owner_token}/{object_id}{ext}`` where
``owner_token`` is a SHA-256 pseudonym of the owner reference, so neither the
owner nor the original file name appears in object paths. The original name
is kept only in key-service encrypted form on the document record.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import os
import uuid
from typing import Any

from docvault.errors import AccessDenied, DocumentNotFound, InvalidInputError, StorageUnavailable
from docvault.models.analysis import AnalysisJob, AnalysisOptions, AnalysisResult, AnalysisSource
from docvault.models.documents import ALLOWED_EXTENSIONS, DocumentType, DocumentVersion, StoredDocumentRef
from docvault.utils.logging_utils import stage_marker, structured_log

from .analysis import AnalysisOrchestrator
from .encryption import EncryptionEngine
from .interfaces import AnalysisSourceProvider, DocumentRepository, MetricsClient, ObjectStorageBackend
from .object_store import ResilientObjectStore
from .resilience import CircuitBreaker, ResilientCaller, RetryPolicy
from .result_cache import METADATA_TTL_SECONDS, ResultCache

LOG = logging.getLogger(__name__)

DEFAULT_MAX_DOCUMENT_BYTES = 100 * 1024 * 1024
MAX_NAME_LENGTH = 255

_MIME_BY_EXTENSION = {
    ".pdf": "application/pdf",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".txt": "text/plain",
}


def owner_token(owner_ref: str) -> str:
    return hashlib.sha256(owner_ref.encode("utf-8")).hexdigest()[:32]


def document_path(document_type: DocumentType, owner_ref: str, object_id: str, extension: str) -> str:
    return f"{document_type.value}/{owner_token(owner_ref)}/{object_id}{extension}"


class DocumentService:
    def __init__(
        self,
        *,
        store: ResilientObjectStore,
        encryption: EncryptionEngine,
        analysis: AnalysisOrchestrator,
        repository: DocumentRepository,
        cache: ResultCache | None = None,
        max_document_bytes: int = DEFAULT_MAX_DOCUMENT_BYTES,
        metadata_ttl_seconds: int = METADATA_TTL_SECONDS,
        metrics: MetricsClient | None = None,
    ) -> None:
        self._store = store
        self._encryption = encryption
        self._analysis = analysis
        self._repository = repository
        self._cache = cache
        self.max_document_bytes = max_document_bytes
        self._metadata_ttl_seconds = metadata_ttl_seconds
        self._metrics = metrics

    async def upload_document(
        self,
        owner_ref: str,
        data: bytes | bytearray,
        name: str,
        type_tag: str | DocumentType,
        content_type: str | None = None,
    ) -> StoredDocumentRef:
        """Encrypt and store a document; returns the persisted reference.

        Raises ``InvalidInputError`` for a missing owner, empty or oversized
        content, an unknown type tag or a disallowed file extension.
        """
        document_type, extension = self._validate_upload(owner_ref, data, name, type_tag)
        content_type = content_type or _MIME_BY_EXTENSION.get(extension, "application/octet-stream")
        document_id = uuid.uuid4().hex
        path = document_path(document_type, owner_ref, document_id, extension)

        async with stage_marker(
            LOG, stage="document_upload", document_id=document_id, document_type=document_type.value
        ) as marker:
            encrypted_name = await self._encryption.encrypt_name(name)
            receipt = await self._store.upload_with_receipt(data, path, content_type)
            ref = StoredDocumentRef(
                document_id=document_id,
                owner_ref=owner_ref,
                path=receipt.path,
                document_type=document_type,
                content_type=content_type,
                size_bytes=receipt.size_bytes,
                checksum=receipt.checksum,
                encrypted_name=encrypted_name,
            )
            try:
                await self._repository.add(ref)
                await self._repository.add_version(
                    DocumentVersion(document_id=document_id, path=receipt.path, checksum=receipt.checksum)
                )
            except BaseException:
                await self._discard_object(receipt.path, document_id)
                raise
            marker.add_completion_fields(bytes=receipt.size_bytes, path=receipt.path)
        if self._metrics:
            self._metrics.increment("documents_stored_total", stage=document_type.value)
        return ref

    async def download_document(self, ref: StoredDocumentRef | str, *, owner_ref: str | None = None) -> bytes:
        document = await self._resolve(ref, owner_ref)
        return await self._store.download(document.path)

    async def delete_document(self, ref: StoredDocumentRef | str, *, owner_ref: str | None = None) -> bool:
        """Remove object, record and cached entries; ``False`` if nothing existed.

        With ``owner_ref`` set, a record owned by someone else raises
        ``AccessDenied`` and nothing is removed.
        """
        document_id = ref.document_id if isinstance(ref, StoredDocumentRef) else ref
        if not document_id:
            raise InvalidInputError("document reference must not be empty")
        record = await self._repository.get(document_id)
        if record is not None and owner_ref is not None:
            self._check_owner(record, owner_ref)
        path = record.path if record is not None else (
            ref.path if isinstance(ref, StoredDocumentRef) else None
        )
        object_deleted = await self._store.delete(path) if path else False
        record_deleted = await self._repository.delete(document_id)
        if self._cache is not None:
            await self._cache.remove_analysis(document_id)
            await self._cache.remove_metadata(document_id)
        deleted = object_deleted or record_deleted
        structured_log(
            LOG,
            logging.INFO,
            "document_deleted",
            document_id=document_id,
            status="deleted" if deleted else "absent",
        )
        return deleted

    async def analyze_document(
        self,
        ref: StoredDocumentRef | str,
        options: AnalysisOptions | None = None,
        *,
        owner_ref: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> AnalysisResult:
        """Run (or serve from cache) an analysis; fresh results join the history."""
        document = await self._resolve(ref, owner_ref)
        result = await self._analysis.analyze(document.document_id, options, cancel_event=cancel_event)
        if not result.cached:
            try:
                await self._repository.add_analysis_result(document.document_id, result)
            except DocumentNotFound:
                # deleted while the job ran
                structured_log(
                    LOG,
                    logging.WARNING,
                    "analysis_history_skipped",
                    document_id=document.document_id,
                    job_id=result.job_id,
                )
        return result

    async def get_analysis_status(self, job_id: str) -> AnalysisJob:
        return await self._analysis.get_status(job_id)

    async def get_analysis_history(
        self, ref: StoredDocumentRef | str, *, owner_ref: str | None = None
    ) -> list[AnalysisResult]:
        document = await self._resolve(ref, owner_ref)
        return await self._repository.analysis_history(document.document_id)

    async def get_document_versions(
        self, ref: StoredDocumentRef | str, *, owner_ref: str | None = None
    ) -> list[DocumentVersion]:
        document = await self._resolve(ref, owner_ref)
        return await self._repository.versions(document.document_id)


    async def get_document(self, document_id: str) -> StoredDocumentRef:
        """Document record, served from the metadata cache when possible."""
        if not document_id:
            raise InvalidInputError("document_id must not be empty")
        if self._cache is not None:
            cached = await self._cache.get_metadata(document_id)
            if cached.is_ok and cached.value:
                try:
                    return StoredDocumentRef.from_dict(cached.value)
                except (KeyError, TypeError, ValueError):
                    await self._cache.remove_metadata(document_id)
        record = await self._repository.get(document_id)
        if record is None:
            raise DocumentNotFound(f"unknown document {document_id}", document_id=document_id)
        if self._cache is not None:
            await self._cache.set_metadata(document_id, record.to_dict(), self._metadata_ttl_seconds)
        return record

    async def document_name(self, ref: StoredDocumentRef | str, *, owner_ref: str | None = None) -> str:
        document = await self._resolve(ref, owner_ref)
        return await self._encryption.decrypt_name(document.encrypted_name)

    async def _resolve(self, ref: StoredDocumentRef | str, owner_ref: str | None = None) -> StoredDocumentRef:
        if isinstance(ref, StoredDocumentRef) and owner_ref is None:
            return ref
        if isinstance(ref, StoredDocumentRef):
            ref = ref.document_id
        if not isinstance(ref, str) or not ref:
            raise InvalidInputError("document reference must be a StoredDocumentRef or id")
        document = await self.get_document(ref)
        if owner_ref is not None:
            self._check_owner(document, owner_ref)
        return document

    def _check_owner(self, document: StoredDocumentRef, owner_ref: str) -> None:
        # ownership is checked against the stored record, never the caller's copy
        if not hmac.compare_digest(document.owner_ref.encode("utf-8"), owner_ref.encode("utf-8")):
            if self._metrics:
                self._metrics.increment("access_denied_total", stage="documents")
            structured_log(LOG, logging.WARNING, "document_access_denied", document_id=document.document_id)
            raise AccessDenied("caller does not own this document", document_id=document.document_id)

    def _validate_upload(
        self,
        owner_ref: Any,
        data: Any,
        name: Any,
        type_tag: Any,
    ) -> tuple[DocumentType, str]:
        if not isinstance(owner_ref, str) or not owner_ref.strip():
            raise InvalidInputError("owner_ref is required")
        if not isinstance(data, (bytes, bytearray)):
            raise InvalidInputError("document content must be bytes")
        if not data:
            raise InvalidInputError("document content is empty")
        if len(data) > self.max_document_bytes:
            raise InvalidInputError(
                f"document exceeds the {self.max_document_bytes} byte limit"
            )
        if not isinstance(name, str) or not name.strip():
            raise InvalidInputError("file name is required")
        if len(name) > MAX_NAME_LENGTH or "/" in name or "\\" in name:
            raise InvalidInputError("file name is too long or contains path separators")
        extension = os.path.splitext(name)[1].lower()
        if extension not in ALLOWED_EXTENSIONS:
            raise InvalidInputError(f"file extension '{extension or '(none)'}' is not allowed")
        try:
            document_type = DocumentType.parse(type_tag)
        except ValueError as exc:
            raise InvalidInputError(str(exc)) from exc
        return document_type, extension

    async def _discard_object(self, path: str, document_id: str) -> None:
        try:
            await self._repository.delete(document_id)
            await self._store.delete(path)
        except Exception as exc:  # noqa: BLE001 - original error is what matters
            structured_log(
                LOG, logging.WARNING, "document_orphan_cleanup_failed", path=path, error_type=type(exc).__name__
            )


class DecryptedStagingProvider(AnalysisSourceProvider):
    """Stages a decrypted copy of a stored document where the engine can read it.

    The staged copy is written with server-side encryption when a key name is
    configured and removed once the analysis ends, however it ends. Staging
    writes and deletes run under a timeout and the staging breaker.
    """

    def __init__(
        self,
        *,
        store: ResilientObjectStore,
        repository: DocumentRepository,
        staging: ObjectStorageBackend,
        uri_prefix: str,
        kms_key_name: str | None = None,
        breaker: CircuitBreaker | None = None,
        policy: RetryPolicy | None = None,
        timeout_seconds: float = 10.0,
        metrics: MetricsClient | None = None,
    ) -> None:
        self._store = store
        self._repository = repository
        self._staging = staging
        self._uri_prefix = uri_prefix if uri_prefix.endswith("/") else uri_prefix + "/"
        self._kms_key_name = kms_key_name
        self._caller = ResilientCaller(
            "staging",
            breaker=breaker or CircuitBreaker("staging", metrics=metrics),
            unavailable=StorageUnavailable,
            policy=policy,
            timeout_seconds=timeout_seconds,
            metrics=metrics,
        )

    async def stage(self, document_ref: str) -> AnalysisSource:
        record = await self._repository.get(document_ref)
        if record is None:
            raise DocumentNotFound(f"unknown document {document_ref}", document_id=document_ref)
        plaintext = await self._store.download(record.path)
        extension = os.path.splitext(record.path)[1]
        staged_path = f"staging/{record.document_id}/{uuid.uuid4().hex}{extension}"
        await self._caller.call(
            "put",
            lambda: self._staging.put(
                staged_path,
                plaintext,
                content_type=record.content_type,
                metadata={"document-id": record.document_id},
                kms_key_name=self._kms_key_name,
            ),
            document_id=record.document_id,
        )
        return AnalysisSource(
            document_ref=document_ref,
            uri=f"{self._uri_prefix}{staged_path}",
            mime_type=record.content_type,
        )

    async def release(self, source: AnalysisSource) -> None:
        if not source.uri.startswith(self._uri_prefix):
            return
        staged_path = source.uri[len(self._uri_prefix):]
        await self._caller.attempt("delete", lambda: self._staging.delete(staged_path))


__all__ = [
    "DecryptedStagingProvider",
    "DocumentService",
    "document_path",
    "owner_token",
]
