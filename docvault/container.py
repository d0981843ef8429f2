"""Composition root: builds one wired ``DocumentService`` per deployment.

Circuit breakers are created here, once per remote dependency, and shared by
every client that talks to that dependency.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List

from docvault.backends.memory import (
    MEMORY_URI_PREFIX,
    InMemoryCacheBackend,
    InMemoryObjectStorage,
    LocalKeyManagement,
    LocalTextAnalysisEngine,
)
from docvault.config import AppConfig, get_config
from docvault.logging_setup import configure_logging
from docvault.services.analysis import AnalysisOrchestrator, AnalysisSettings, PollSchedule
from docvault.services.document_service import DecryptedStagingProvider, DocumentService
from docvault.services.encryption import EncryptionEngine
from docvault.services.interfaces import (
    AnalysisEngine,
    CacheBackend,
    DocumentRepository,
    KeyManagementBackend,
    MetricsClient,
    ObjectStorageBackend,
)
from docvault.services.key_service import KeyServiceClient
from docvault.services.metrics import NullMetrics, PrometheusMetrics
from docvault.services.object_store import ResilientObjectStore
from docvault.services.repository import InMemoryDocumentRepository
from docvault.services.resilience import CircuitBreaker, ConcurrencyLimiter, RetryPolicy
from docvault.services.result_cache import ResultCache

_LOG = logging.getLogger(__name__)


@dataclass(slots=True)
class Backends:
    keys: KeyManagementBackend
    storage: ObjectStorageBackend
    staging: ObjectStorageBackend
    staging_uri_prefix: str
    engine: AnalysisEngine
    cache: CacheBackend
    replica: ObjectStorageBackend | None = None
    closers: List[Callable[[], Awaitable[Any]]] = field(default_factory=list)


@dataclass(slots=True)
class Breakers:
    key_service: CircuitBreaker
    object_store: CircuitBreaker
    analysis_engine: CircuitBreaker
    replica: CircuitBreaker
    staging: CircuitBreaker


@dataclass(slots=True)
class DocVault:
    documents: DocumentService
    store: ResilientObjectStore
    analysis: AnalysisOrchestrator
    cache: ResultCache
    breakers: Breakers
    closers: List[Callable[[], Awaitable[Any]]] = field(default_factory=list)

    async def aclose(self) -> None:
        await self.store.drain()
        for closer in self.closers:
            await closer()


def build_breakers(config: AppConfig, metrics: MetricsClient | None = None) -> Breakers:
    def _breaker(name: str) -> CircuitBreaker:
        return CircuitBreaker(
            name,
            failure_threshold=config.breaker_failure_threshold,
            window_seconds=config.breaker_window_seconds,
            cooldown_seconds=config.breaker_cooldown_seconds,
            metrics=metrics,
        )

    return Breakers(
        key_service=_breaker("key_service"),
        object_store=_breaker("object_store"),
        analysis_engine=_breaker("analysis_engine"),
        replica=_breaker("object_store_replica"),
        staging=_breaker("staging"),
    )


def memory_backends() -> Backends:
    staging = InMemoryObjectStorage()
    return Backends(
        keys=LocalKeyManagement(),
        storage=InMemoryObjectStorage(),
        staging=staging,
        staging_uri_prefix=MEMORY_URI_PREFIX,
        engine=LocalTextAnalysisEngine(staging),
        cache=InMemoryCacheBackend(),
    )


def gcp_backends(config: AppConfig) -> Backends:  # pragma: no cover - requires GCP credentials
    from docvault.backends.cloud_kms import CloudKmsKeyManagement
    from docvault.backends.documentai import DocumentAiBatchEngine
    from docvault.backends.gcs import GcsObjectStorage
    from docvault.backends.redis_cache import RedisCacheBackend

    cache = RedisCacheBackend.from_url(
        config.redis_url or "",
        socket_timeout=config.cache_timeout_seconds,
        socket_connect_timeout=config.cache_timeout_seconds,
    )
    return Backends(
        keys=CloudKmsKeyManagement(config.kms_key_name),
        storage=GcsObjectStorage(config.document_bucket),
        staging=GcsObjectStorage(config.staging_bucket),
        staging_uri_prefix=f"gs://{config.staging_bucket}/",
        engine=DocumentAiBatchEngine(
            processor_name=config.processor_name,
            output_bucket=config.analysis_output_bucket,
            location=config.doc_ai_location,
            kms_key_name=config.storage_cmek_key_name,
        ),
        cache=cache,
        replica=GcsObjectStorage(config.replica_bucket) if config.enable_replication and config.replica_bucket else None,
        closers=[cache.aclose],
    )


def build_docvault(
    config: AppConfig | None = None,
    *,
    backends: Backends | None = None,
    repository: DocumentRepository | None = None,
    metrics: MetricsClient | None = None,
) -> DocVault:
    config = config or get_config()
    config.validate_required()
    on_gcp = config.backend_mode.strip().lower() == "gcp"
    if on_gcp:
        configure_logging(config.log_level.strip().upper())
    if metrics is None:
        metrics = PrometheusMetrics.default() if on_gcp else NullMetrics()
    if backends is None:
        backends = gcp_backends(config) if on_gcp else memory_backends()
    repository = repository or InMemoryDocumentRepository()

    breakers = build_breakers(config, metrics)
    policy = RetryPolicy(
        attempts=config.retry_attempts,
        initial_seconds=config.retry_initial_seconds,
        max_seconds=config.retry_max_seconds,
    )
    keys = KeyServiceClient(
        backends.keys,
        breaker=breakers.key_service,
        limiter=ConcurrencyLimiter(config.key_max_concurrency, config.key_acquire_timeout_seconds),
        policy=policy,
        timeout_seconds=config.kms_timeout_seconds,
        metrics=metrics,
    )
    encryption = EncryptionEngine(keys)
    store = ResilientObjectStore(
        backends.storage,
        encryption,
        breaker=breakers.object_store,
        policy=policy,
        timeout_seconds=config.storage_timeout_seconds,
        lock_timeout_seconds=config.upload_lock_timeout_seconds,
        kms_key_name=config.storage_cmek_key_name,
        replica=backends.replica,
        replica_breaker=breakers.replica,
        metrics=metrics,
    )
    cache = ResultCache(
        backends.cache,
        timeout_seconds=config.cache_timeout_seconds,
        compression_threshold=config.cache_compression_threshold,
        metrics=metrics,
    )
    analysis = AnalysisOrchestrator(
        backends.engine,
        breaker=breakers.analysis_engine,
        cache=cache,
        sources=DecryptedStagingProvider(
            store=store,
            repository=repository,
            staging=backends.staging,
            uri_prefix=backends.staging_uri_prefix,
            kms_key_name=config.storage_cmek_key_name,
            breaker=breakers.staging,
            policy=policy,
            timeout_seconds=config.storage_timeout_seconds,
            metrics=metrics,
        ),
        settings=AnalysisSettings(
            deadline_seconds=config.analysis_timeout_seconds,
            min_confidence=config.analysis_min_confidence,
            block_floor=config.analysis_block_confidence_floor,
            processing_budget_ms=config.analysis_processing_budget_ms,
            cache_ttl_seconds=config.analysis_cache_ttl_seconds,
        ),
        schedule=PollSchedule(
            initial_seconds=config.poll_initial_seconds,
            multiplier=config.poll_multiplier,
            max_seconds=config.poll_max_seconds,
            jitter_seconds=config.poll_jitter_seconds,
            timeout_seconds=config.poll_timeout_seconds,
            max_failures=config.max_poll_failures,
        ),
        policy=policy,
        metrics=metrics,
    )
    documents = DocumentService(
        store=store,
        encryption=encryption,
        analysis=analysis,
        repository=repository,
        cache=cache,
        max_document_bytes=config.max_document_bytes,
        metadata_ttl_seconds=config.metadata_cache_ttl_seconds,
        metrics=metrics,
    )
    _LOG.info(
        "docvault_ready",
        extra={"backend_mode": config.backend_mode, "replication": backends.replica is not None},
    )
    return DocVault(
        documents=documents,
        store=store,
        analysis=analysis,
        cache=cache,
        breakers=breakers,
        closers=list(backends.closers),
    )


__all__ = ["Backends", "Breakers", "DocVault", "build_breakers", "build_docvault", "memory_backends"]
