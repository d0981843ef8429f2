from __future__ import annotations

import logging

import pytest
from prometheus_client import CollectorRegistry

from docvault.backends.memory import InMemoryObjectStorage
from docvault.services.encryption import EncryptionEngine
from docvault.services.key_service import KeyServiceClient
from docvault.services.metrics import NullMetrics, PrometheusMetrics
from docvault.services.object_store import ResilientObjectStore
from docvault.services.resilience import CircuitBreaker
from tests.stubs.backend_stubs import FAST_RETRY, CountingKeyBackend, FlakyObjectStorage


def test_counters_and_latency_are_labelled_by_stage():
    registry = CollectorRegistry()
    metrics = PrometheusMetrics(registry=registry)
    metrics.increment("cache_hit_total", stage="cache")
    metrics.increment("cache_hit_total", amount=2, stage="cache")
    with metrics.time("analysis_seconds", stage="analysis"):
        pass

    assert metrics.count_of("cache_hit_total", stage="cache") == 3
    count = registry.get_sample_value(
        "docvault_operation_latency_seconds_count", {"stage": "analysis", "name": "analysis_seconds"}
    )
    assert count == 1


def test_null_metrics_only_logs(caplog):
    with caplog.at_level(logging.DEBUG, logger="docvault.services.metrics"):
        NullMetrics().increment("x", stage="y")
        NullMetrics().observe_latency("x", 1.0, stage="y")
    assert "counter dropped" in caplog.text
    assert "metric dropped" in caplog.text


@pytest.mark.asyncio
async def test_object_store_reports_uploads_retries_and_replication_failures():
    metrics = PrometheusMetrics(registry=CollectorRegistry())
    keys = KeyServiceClient(CountingKeyBackend(), breaker=CircuitBreaker("key_service"), policy=FAST_RETRY)
    backend = InMemoryObjectStorage()
    store = ResilientObjectStore(
        backend,
        EncryptionEngine(keys),
        breaker=CircuitBreaker("object_store"),
        policy=FAST_RETRY,
        replica=FlakyObjectStorage(down=True),
        metrics=metrics,
    )
    await store.upload(b"abc", "personal/o/a.txt")
    await store.drain()

    assert metrics.count_of("documents_uploaded_total", stage="object_store") == 1
    assert metrics.count_of("replication_failures_total", stage="object_store") == 1
