"""Google Cloud Storage object backend.

The storage SDK is synchronous, so every call runs in a worker thread. SDK
errors are translated: 404 becomes ``None``/``False``, 401/403 a
configuration error and transport or 5xx/429 faults ``StorageUnavailable``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Mapping, TypeVar

from google.api_core import exceptions as gexc
from google.cloud import storage  # type: ignore[attr-defined]

from docvault.errors import ConfigurationError, StorageUnavailable
from docvault.models.documents import StoredObject

_LOG = logging.getLogger("docvault.gcs")

T = TypeVar("T")

_TRANSIENT = (
    gexc.TooManyRequests,
    gexc.InternalServerError,
    gexc.BadGateway,
    gexc.ServiceUnavailable,
    gexc.GatewayTimeout,
    gexc.DeadlineExceeded,
    gexc.RetryError,
)


class GcsObjectStorage:
    def __init__(self, bucket_name: str, *, client: storage.Client | None = None) -> None:
        if not bucket_name:
            raise ConfigurationError("bucket name is required")
        self.bucket_name = bucket_name
        self._client = client or storage.Client()
        self._bucket = self._client.bucket(bucket_name)

    async def put(
        self,
        path: str,
        data: bytes,
        *,
        content_type: str,
        metadata: Mapping[str, str],
        kms_key_name: str | None = None,
    ) -> None:
        def _upload() -> None:
            blob = self._bucket.blob(path, kms_key_name=kms_key_name) if kms_key_name else self._bucket.blob(path)
            blob.metadata = dict(metadata)
            blob.upload_from_string(data, content_type=content_type)

        await self._run("put", path, _upload)
        _LOG.info(
            "gcs_object_written",
            extra={"bucket": self.bucket_name, "path": path, "bytes": len(data), "cmek": bool(kms_key_name)},
        )

    async def get(self, path: str) -> StoredObject | None:
        def _download() -> StoredObject | None:
            blob = self._bucket.get_blob(path)
            if blob is None:
                return None
            try:
                data = blob.download_as_bytes(if_generation_match=blob.generation)
            except gexc.NotFound:
                return None
            return _to_stored(blob, data)

        return await self._run("get", path, _download)

    async def head(self, path: str) -> StoredObject | None:
        def _head() -> StoredObject | None:
            blob = self._bucket.get_blob(path)
            return _to_stored(blob, b"") if blob is not None else None

        return await self._run("head", path, _head)

    async def delete(self, path: str) -> bool:
        def _delete() -> bool:
            try:
                self._bucket.blob(path).delete()
            except gexc.NotFound:
                return False
            return True

        return await self._run("delete", path, _delete)

    async def _run(self, operation: str, path: str, fn: Callable[[], T]) -> T:
        try:
            return await asyncio.to_thread(fn)
        except (gexc.Unauthorized, gexc.Forbidden) as exc:
            raise ConfigurationError(
                f"access denied for gs://{self.bucket_name}/{path}: {exc}", path=path
            ) from exc
        except gexc.PreconditionFailed as exc:
            # Object replaced between metadata read and download.
            raise StorageUnavailable(f"object changed during {operation}", path=path) from exc
        except _TRANSIENT as exc:
            raise StorageUnavailable(f"gcs {operation} failed: {exc}", path=path) from exc
        except (ConnectionError, OSError) as exc:
            raise StorageUnavailable(f"gcs {operation} transport error: {exc}", path=path) from exc


def _to_stored(blob: Any, data: bytes) -> StoredObject:
    updated = getattr(blob, "updated", None)
    return StoredObject(
        data=data,
        metadata=dict(blob.metadata or {}),
        content_type=blob.content_type,
        updated_at=updated.isoformat() if updated is not None else None,
        size=blob.size,
    )


__all__ = ["GcsObjectStorage"]
