"""Key service client: data-key generation and direct small-payload crypto."""

from __future__ import annotations

import logging
import time

from docvault.errors import InvalidInputError, KeyServiceUnavailable

from .interfaces import KeyManagementBackend, MetricsClient
from .resilience import CircuitBreaker, ConcurrencyLimiter, ResilientCaller, RetryPolicy

LOG = logging.getLogger(__name__)

MAX_DIRECT_PAYLOAD_BYTES = 4096
DATA_KEY_BYTES = 32


class KeyServiceClient:
    """Wraps a ``KeyManagementBackend`` with limits, retries and a breaker.

    The concurrency slot is taken before the resilient call so that queued
    callers fail with ``RateLimitExceeded`` instead of consuming retry budget.
    ``context`` is bound as additional authenticated data and must match on
    decrypt.
    """

    def __init__(
        self,
        backend: KeyManagementBackend,
        *,
        breaker: CircuitBreaker,
        limiter: ConcurrencyLimiter | None = None,
        policy: RetryPolicy | None = None,
        timeout_seconds: float = 10.0,
        metrics: MetricsClient | None = None,
        caller: ResilientCaller | None = None,
    ) -> None:
        self._backend = backend
        self._limiter = limiter or ConcurrencyLimiter()
        self._metrics = metrics
        self._caller = caller or ResilientCaller(
            "key_service",
            breaker=breaker,
            unavailable=KeyServiceUnavailable,
            policy=policy,
            timeout_seconds=timeout_seconds,
            metrics=metrics,
        )

    async def generate_data_key(self, *, context: str = "document") -> tuple[bytearray, bytes]:
        """Return ``(plaintext_key, wrapped_key)``.

        The plaintext key is the only mutable copy; callers own wiping it.
        """
        async with self._limiter.slot("generate_data_key"):
            started = time.perf_counter()
            plaintext, wrapped = await self._caller.call(
                "generate_data_key",
                lambda: self._backend.generate_data_key(context=context),
            )
            self._observe("generate_data_key", started)
        key = _adopt(plaintext)
        if len(key) != DATA_KEY_BYTES:
            size = len(key)
            wipe(key)
            raise KeyServiceUnavailable(f"key service returned a {size * 8}-bit key, expected 256")
        return key, wrapped

    async def unwrap_data_key(self, wrapped: bytes, *, context: str = "document") -> bytearray:
        """Unwrap a data key into a buffer the caller owns and must wipe."""
        return _adopt(await self.decrypt(wrapped, context=context))

    async def encrypt(self, payload: bytes, *, context: str = "name") -> bytes:
        _check_direct_payload(payload)
        async with self._limiter.slot("encrypt"):
            started = time.perf_counter()
            wrapped = await self._caller.call(
                "encrypt", lambda: self._backend.encrypt(bytes(payload), context=context)
            )
            self._observe("encrypt", started)
        return wrapped

    async def decrypt(self, wrapped: bytes, *, context: str = "name") -> bytes:
        if not wrapped:
            raise InvalidInputError("wrapped payload is empty")
        async with self._limiter.slot("decrypt"):
            started = time.perf_counter()
            plaintext = await self._caller.call(
                "decrypt", lambda: self._backend.decrypt(bytes(wrapped), context=context)
            )
            self._observe("decrypt", started)
        return plaintext

    def _observe(self, operation: str, started: float) -> None:
        if self._metrics:
            self._metrics.observe_latency(
                f"kms_{operation}_seconds", time.perf_counter() - started, stage="key_service"
            )


def wipe(buffer: bytearray | memoryview) -> None:
    """Overwrite a mutable buffer with zeros in place."""
    buffer[:] = bytes(len(buffer))


def _adopt(material: bytes | bytearray) -> bytearray:
    if isinstance(material, bytearray):
        return material
    return bytearray(material)


def _check_direct_payload(payload: bytes) -> None:
    if not isinstance(payload, (bytes, bytearray, memoryview)):
        raise InvalidInputError("payload must be bytes")
    if len(payload) > MAX_DIRECT_PAYLOAD_BYTES:
        raise InvalidInputError(
            f"direct key-service payloads are limited to {MAX_DIRECT_PAYLOAD_BYTES} bytes"
        )


__all__ = ["KeyServiceClient", "MAX_DIRECT_PAYLOAD_BYTES", "DATA_KEY_BYTES", "wipe"]
