"""Resilient, encrypting object store client.

Uploads encrypt, checksum the ciphertext and persist wrapped key + checksum as
object metadata. Downloads verify the checksum before decrypting. Every backend
call runs under timeout, retry and the storage circuit breaker.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from docvault.errors import DocumentNotFound, IntegrityCheckFailed, InvalidInputError, StorageUnavailable
from docvault.models.documents import (
    META_CHECKSUM,
    META_CIPHER,
    META_UPLOADED_AT,
    META_WRAPPED_KEY,
    EncryptedBlob,
    StoredObject,
)
from docvault.models.outcome import Outcome
from docvault.utils.logging_utils import stage_marker, structured_log

from .encryption import CIPHER_LABEL, EncryptionEngine
from .interfaces import MetricsClient, ObjectStorageBackend
from .resilience import CircuitBreaker, PathLockRegistry, ResilientCaller, RetryPolicy

LOG = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class UploadReceipt:
    path: str
    checksum: str
    size_bytes: int


def content_checksum(data: bytes) -> str:
    """Base64 SHA-256 digest, the form stored in object metadata."""
    return base64.b64encode(hashlib.sha256(data).digest()).decode("ascii")


def normalise_path(path: str) -> str:
    cleaned = (path or "").strip().lstrip("/")
    if not cleaned or cleaned.endswith("/"):
        raise InvalidInputError("object path must name an object")
    if any(part in ("", ".", "..") for part in cleaned.split("/")):
        raise InvalidInputError(f"object path '{path}' contains empty or relative segments")
    return cleaned


class ResilientObjectStore:
    def __init__(
        self,
        backend: ObjectStorageBackend,
        encryption: EncryptionEngine,
        *,
        breaker: CircuitBreaker,
        policy: RetryPolicy | None = None,
        timeout_seconds: float = 10.0,
        lock_timeout_seconds: float = 30.0,
        kms_key_name: str | None = None,
        replica: ObjectStorageBackend | None = None,
        metrics: MetricsClient | None = None,
        caller: ResilientCaller | None = None,
        replica_breaker: CircuitBreaker | None = None,
    ) -> None:
        self._backend = backend
        self._encryption = encryption
        self._replica = replica
        self._kms_key_name = kms_key_name
        self._metrics = metrics
        self._locks = PathLockRegistry(acquire_timeout=lock_timeout_seconds)
        self._replication_tasks: set[asyncio.Task[None]] = set()
        self._caller = caller or ResilientCaller(
            "object_store",
            breaker=breaker,
            unavailable=StorageUnavailable,
            policy=policy,
            timeout_seconds=timeout_seconds,
            metrics=metrics,
        )
        # one bounded attempt per copy; the replica has its own breaker
        self._replica_caller = ResilientCaller(
            "object_store_replica",
            breaker=replica_breaker or CircuitBreaker("object_store_replica", metrics=metrics),
            unavailable=StorageUnavailable,
            policy=policy,
            timeout_seconds=self._caller.timeout_seconds,
            metrics=metrics,
        )

    async def upload(
        self,
        data: bytes | bytearray,
        path: str,
        content_type: str = "application/octet-stream",
    ) -> str:
        """Encrypt and store ``data`` at ``path``; returns the stored path.

        Concurrent uploads to the same path are applied one at a time.
        """
        receipt = await self.upload_with_receipt(data, path, content_type)
        return receipt.path

    async def upload_with_receipt(
        self,
        data: bytes | bytearray,
        path: str,
        content_type: str = "application/octet-stream",
    ) -> UploadReceipt:
        stored_path = normalise_path(path)
        size = len(data)
        async with self._locks.hold(stored_path):
            async with stage_marker(LOG, stage="object_upload", path=stored_path, bytes=size):
                ciphertext, wrapped_key = await self._encryption.encrypt_document(data)
                blob = EncryptedBlob(
                    ciphertext=ciphertext,
                    wrapped_key=wrapped_key,
                    checksum=content_checksum(ciphertext),
                    content_type=content_type,
                )
                metadata = _blob_metadata(blob)
                await self._caller.call(
                    "put",
                    lambda: self._backend.put(
                        stored_path,
                        blob.ciphertext,
                        content_type=content_type,
                        metadata=metadata,
                        kms_key_name=self._kms_key_name,
                    ),
                    path=stored_path,
                )
        if self._metrics:
            self._metrics.increment("documents_uploaded_total", stage="object_store")
        if self._replica is not None:
            self._schedule_replication(stored_path, blob, metadata)
        return UploadReceipt(path=stored_path, checksum=blob.checksum, size_bytes=size)

    async def download(self, path: str) -> bytes:
        stored_path = normalise_path(path)
        async with stage_marker(LOG, stage="object_download", path=stored_path):
            stored = await self._caller.call(
                "get", lambda: self._backend.get(stored_path), path=stored_path
            )
            if stored is None:
                raise DocumentNotFound(f"no object at {stored_path}", path=stored_path)
            blob = _blob_from_object(stored, stored_path)
            actual = content_checksum(blob.ciphertext)
            if not hmac.compare_digest(actual, blob.checksum):
                if self._metrics:
                    self._metrics.increment("integrity_failures_total", stage="object_store")
                structured_log(
                    LOG, logging.ERROR, "object_integrity_failed", path=stored_path, bytes=len(blob.ciphertext)
                )
                raise IntegrityCheckFailed(
                    "stored checksum does not match ciphertext", path=stored_path
                )
            return await self._encryption.decrypt_document(blob.ciphertext, blob.wrapped_key)

    async def delete(self, path: str) -> bool:
        """Remove the object; ``False`` when nothing was stored there."""
        stored_path = normalise_path(path)
        deleted = await self._caller.call(
            "delete", lambda: self._backend.delete(stored_path), path=stored_path
        )
        structured_log(
            LOG, logging.INFO, "object_deleted", path=stored_path, status="deleted" if deleted else "absent"
        )
        return bool(deleted)

    async def exists(self, path: str) -> bool:
        stored_path = normalise_path(path)
        stored = await self._caller.call("head", lambda: self._backend.head(stored_path), path=stored_path)
        return stored is not None

    async def get_metadata(self, path: str) -> Outcome[dict[str, Any]]:
        """Content type, size and update time; ``NotFound`` for a missing object.

        Transport faults are reported as ``Unavailable`` rather than raised.
        """
        stored_path = normalise_path(path)
        try:
            stored = await self._caller.call(
                "head", lambda: self._backend.head(stored_path), path=stored_path
            )
        except StorageUnavailable as exc:
            return Outcome.unavailable(str(exc))
        if stored is None:
            return Outcome.not_found()
        return Outcome.ok(
            {
                "path": stored_path,
                "content_type": stored.content_type,
                "updated_at": stored.updated_at,
                "checksum": stored.metadata.get(META_CHECKSUM),
                "cipher": stored.metadata.get(META_CIPHER),
                "size_bytes": stored.size,
            }
        )

    def _schedule_replication(self, path: str, blob: EncryptedBlob, metadata: dict[str, str]) -> None:
        task = asyncio.create_task(self._replicate(path, blob, metadata))
        self._replication_tasks.add(task)
        task.add_done_callback(self._replication_tasks.discard)

    async def _replicate(self, path: str, blob: EncryptedBlob, metadata: dict[str, str]) -> None:
        assert self._replica is not None
        started = time.perf_counter()
        try:
            await self._replica_caller.attempt(
                "replicate",
                lambda: self._replica.put(
                    path,
                    blob.ciphertext,
                    content_type=blob.content_type,
                    metadata=metadata,
                    kms_key_name=self._kms_key_name,
                ),
            )
        except Exception as exc:  # noqa: BLE001 - replication is best effort
            if self._metrics:
                self._metrics.increment("replication_failures_total", stage="object_store")
            structured_log(
                LOG,
                logging.WARNING,
                "object_replication_failed",
                path=path,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        structured_log(
            LOG,
            logging.INFO,
            "object_replicated",
            path=path,
            duration_ms=int((time.perf_counter() - started) * 1000),
        )

    async def drain(self) -> None:
        """Wait for in-flight replication writes (used on shutdown and in tests).

        Each write is bounded by the store timeout, so this always returns.
        """
        if self._replication_tasks:
            await asyncio.gather(*list(self._replication_tasks), return_exceptions=True)


def _blob_metadata(blob: EncryptedBlob) -> dict[str, str]:
    return {
        META_WRAPPED_KEY: base64.b64encode(blob.wrapped_key).decode("ascii"),
        META_CHECKSUM: blob.checksum,
        META_UPLOADED_AT: datetime.now(tz=timezone.utc).isoformat(),
        META_CIPHER: CIPHER_LABEL,
    }


def _blob_from_object(stored: StoredObject, path: str) -> EncryptedBlob:
    metadata = stored.metadata or {}
    checksum = metadata.get(META_CHECKSUM)
    wrapped = metadata.get(META_WRAPPED_KEY)
    if not checksum or not wrapped:
        raise IntegrityCheckFailed("object is missing integrity metadata", path=path)
    try:
        wrapped_key = base64.b64decode(wrapped, validate=True)
    except ValueError as exc:
        raise IntegrityCheckFailed("wrapped key metadata is corrupt", path=path) from exc
    return EncryptedBlob(
        ciphertext=stored.data,
        wrapped_key=wrapped_key,
        checksum=checksum,
        content_type=stored.content_type or "application/octet-stream",
    )


__all__ = ["ResilientObjectStore", "UploadReceipt", "content_checksum", "normalise_path"]
