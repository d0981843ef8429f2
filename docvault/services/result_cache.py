"""Best-effort result cache in front of storage and analysis.

Payloads larger than the compression threshold are gzip-compressed; the
compression flag travels as structured metadata next to the payload. Every
call is bounded by a short timeout and backend faults never escape: ``get``
reports them as ``Outcome.unavailable`` and writes are logged and dropped.
"""

from __future__ import annotations

import asyncio
import gzip
import json
import logging
import zlib
from typing import Any, Awaitable, Mapping, TypeVar

from docvault.errors import CacheUnavailable, InvalidInputError
from docvault.models.analysis import AnalysisResult
from docvault.models.outcome import Outcome
from docvault.utils.logging_utils import structured_log

from .interfaces import CacheBackend, MetricsClient

LOG = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_COMPRESSION_THRESHOLD = 100 * 1024
ANALYSIS_TTL_SECONDS = 24 * 60 * 60
METADATA_TTL_SECONDS = 30 * 60


def analysis_key(document_ref: str) -> str:
    return f"analysis:{document_ref}"


def metadata_key(document_id: str) -> str:
    return f"metadata:{document_id}"


class ResultCache:
    def __init__(
        self,
        backend: CacheBackend,
        *,
        timeout_seconds: float = 0.5,
        compression_threshold: int = DEFAULT_COMPRESSION_THRESHOLD,
        metrics: MetricsClient | None = None,
    ) -> None:
        self._backend = backend
        self.timeout_seconds = timeout_seconds
        self.compression_threshold = compression_threshold
        self._metrics = metrics

    async def get(self, key: str) -> Outcome[bytes]:
        _check_key(key)
        try:
            entry = await self._bounded(self._backend.get(key))
        except CacheUnavailable as exc:
            self._count("cache_unavailable_total")
            structured_log(LOG, logging.WARNING, "cache_unavailable", operation="get", reason=str(exc))
            return Outcome.unavailable(str(exc))
        if entry is None:
            self._count("cache_miss_total")
            return Outcome.not_found()
        payload, compressed = entry
        if compressed:
            try:
                payload = gzip.decompress(payload)
            except (OSError, EOFError, zlib.error) as exc:
                structured_log(
                    LOG, logging.WARNING, "cache_entry_corrupt", operation="get", error_type=type(exc).__name__
                )
                await self.remove(key)
                return Outcome.not_found()
        self._count("cache_hit_total")
        return Outcome.ok(payload)

    async def set(self, key: str, payload: bytes, ttl_seconds: int) -> bool:
        """Store ``payload``; returns ``False`` when the write was dropped."""
        _check_key(key)
        if ttl_seconds <= 0:
            raise InvalidInputError("ttl_seconds must be positive")
        compressed = len(payload) > self.compression_threshold
        body = gzip.compress(payload) if compressed else bytes(payload)
        try:
            await self._bounded(
                self._backend.set(key, body, compressed=compressed, ttl_seconds=ttl_seconds)
            )
        except CacheUnavailable as exc:
            self._count("cache_unavailable_total")
            structured_log(LOG, logging.WARNING, "cache_write_dropped", operation="set", reason=str(exc))
            return False
        return True

    async def remove(self, key: str) -> bool:
        _check_key(key)
        try:
            await self._bounded(self._backend.delete(key))
        except CacheUnavailable as exc:
            structured_log(LOG, logging.WARNING, "cache_write_dropped", operation="remove", reason=str(exc))
            return False
        return True

    # Typed helpers ---------------------------------------------------------

    async def get_analysis(self, document_ref: str) -> Outcome[AnalysisResult]:
        outcome = await self.get(analysis_key(document_ref))
        if not outcome.is_ok:
            return outcome  # type: ignore[return-value]
        try:
            return Outcome.ok(AnalysisResult.from_json(outcome.value or b"", cached=True))
        except (ValueError, KeyError, TypeError) as exc:
            structured_log(
                LOG, logging.WARNING, "cache_entry_corrupt", operation="get_analysis", error_type=type(exc).__name__
            )
            await self.remove(analysis_key(document_ref))
            return Outcome.not_found()

    async def set_analysis(self, result: AnalysisResult, ttl_seconds: int = ANALYSIS_TTL_SECONDS) -> bool:
        return await self.set(analysis_key(result.document_ref), result.to_json(), ttl_seconds)

    async def remove_analysis(self, document_ref: str) -> bool:
        return await self.remove(analysis_key(document_ref))

    async def get_metadata(self, document_id: str) -> Outcome[dict[str, Any]]:
        outcome = await self.get(metadata_key(document_id))
        if not outcome.is_ok:
            return outcome  # type: ignore[return-value]
        try:
            return Outcome.ok(json.loads((outcome.value or b"").decode("utf-8")))
        except ValueError:
            await self.remove(metadata_key(document_id))
            return Outcome.not_found()

    async def set_metadata(
        self, document_id: str, metadata: Mapping[str, Any], ttl_seconds: int = METADATA_TTL_SECONDS
    ) -> bool:
        payload = json.dumps(dict(metadata), sort_keys=True, default=str).encode("utf-8")
        return await self.set(metadata_key(document_id), payload, ttl_seconds)

    async def remove_metadata(self, document_id: str) -> bool:
        return await self.remove(metadata_key(document_id))

    async def _bounded(self, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise CacheUnavailable(f"cache call exceeded {self.timeout_seconds}s") from exc
        except CacheUnavailable:
            raise
        except Exception as exc:  # noqa: BLE001 - cache faults never escalate
            raise CacheUnavailable(f"cache backend error: {exc}") from exc

    def _count(self, name: str) -> None:
        if self._metrics:
            self._metrics.increment(name, stage="cache")


def _check_key(key: str) -> None:
    if not key or not isinstance(key, str):
        raise InvalidInputError("cache key must be a non-empty string")


__all__ = [
    "ANALYSIS_TTL_SECONDS",
    "METADATA_TTL_SECONDS",
    "ResultCache",
    "analysis_key",
    "metadata_key",
]
