"""Prometheus metrics for docvault.

Counters and latency histograms are labelled by ``stage`` (the component that
emitted them, e.g. ``object_store``) and ``name`` (what happened). A private
``CollectorRegistry`` can be passed in so tests do not touch the process-wide
default registry.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import ClassVar, Iterator

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Histogram

from .interfaces import MetricsClient

LOG = logging.getLogger(__name__)

LATENCY_BUCKETS = (0.005, 0.025, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 120.0, 300.0)


class PrometheusMetrics(MetricsClient):
    _DEFAULT_INSTANCE: ClassVar["PrometheusMetrics | None"] = None

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry if registry is not None else REGISTRY
        self._latency = Histogram(
            "docvault_operation_latency_seconds",
            "Latency of key service, storage, cache and analysis operations",
            ["stage", "name"],
            buckets=LATENCY_BUCKETS,
            registry=self.registry,
        )
        self._events = Counter(
            "docvault_events_total",
            "Counts of docvault events (uploads, retries, breaker transitions, cache hits)",
            ["stage", "name"],
            registry=self.registry,
        )

    def observe_latency(self, name: str, value: float, **labels: str) -> None:
        self._latency.labels(stage=labels.get("stage", "unknown"), name=name).observe(value)

    def increment(self, name: str, amount: int = 1, **labels: str) -> None:
        self._events.labels(stage=labels.get("stage", "unknown"), name=name).inc(amount)

    @contextmanager
    def time(self, name: str, **labels: str) -> Iterator[None]:
        started = time.perf_counter()
        try:
            yield
        finally:
            self.observe_latency(name, time.perf_counter() - started, **labels)

    def count_of(self, name: str, stage: str = "unknown") -> float:
        value = self.registry.get_sample_value(
            "docvault_events_total", {"stage": stage, "name": name}
        )
        return value or 0.0

    @classmethod
    def default(cls) -> "PrometheusMetrics":
        """Process-wide instance bound to the default registry."""
        if cls._DEFAULT_INSTANCE is None:
            cls._DEFAULT_INSTANCE = cls()
        return cls._DEFAULT_INSTANCE


class NullMetrics(MetricsClient):
    def observe_latency(self, name: str, value: float, **labels: str) -> None:
        LOG.debug("metric dropped: %s=%s labels=%s", name, value, labels)

    def increment(self, name: str, amount: int = 1, **labels: str) -> None:
        LOG.debug("counter dropped: %s+=%s labels=%s", name, amount, labels)


__all__ = ["NullMetrics", "PrometheusMetrics"]
