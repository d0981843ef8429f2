"""Analysis orchestrator: cache probe, job submission, polling and validation.

Per job the orchestrator drives ``SUBMITTED -> IN_PROGRESS -> {SUCCEEDED |
FAILED | TIMED_OUT}``. Polling waits ``initial * multiplier**n`` (capped, plus
jitter) between status checks and never runs past the wall-clock deadline.
Quality problems (low confidence, slow processing) are reported as warnings
on the result; failed and timed-out jobs are returned, not raised.
"""

from __future__ import annotations

import asyncio
import logging
import random
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Awaitable, Callable

from docvault.errors import AnalysisCancelled, AnalysisUnavailable, InvalidInputError, TransientError
from docvault.models.analysis import (
    AnalysisJob,
    AnalysisOptions,
    AnalysisResult,
    AnalysisSource,
    AnalysisStatus,
    AnalysisWarning,
    EngineJobSnapshot,
    EngineJobState,
)
from docvault.utils.logging_utils import structured_log

from .interfaces import AnalysisEngine, AnalysisSourceProvider, MetricsClient
from .normalizer import normalise_blocks
from .resilience import CircuitBreaker, ResilientCaller, RetryPolicy
from .result_cache import ANALYSIS_TTL_SECONDS, ResultCache

LOG = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]

_ENGINE_STATUS = {
    EngineJobState.IN_PROGRESS: AnalysisStatus.IN_PROGRESS,
    EngineJobState.SUCCEEDED: AnalysisStatus.SUCCEEDED,
    EngineJobState.FAILED: AnalysisStatus.FAILED,
}


@dataclass(frozen=True, slots=True)
class PollSchedule:
    initial_seconds: float = 2.0
    multiplier: float = 2.0
    max_seconds: float = 30.0
    jitter_seconds: float = 0.5
    timeout_seconds: float = 10.0
    max_failures: int = 3

    def next_interval(self, current: float) -> float:
        return min(current * self.multiplier, self.max_seconds)


@dataclass(frozen=True, slots=True)
class AnalysisSettings:
    deadline_seconds: float = 300.0
    min_confidence: float = 0.98
    block_floor: float = 0.5
    processing_budget_ms: int = 3000
    cache_ttl_seconds: int = ANALYSIS_TTL_SECONDS


class PassThroughSourceProvider(AnalysisSourceProvider):
    """Engine reads the document reference as-is (already engine-readable)."""

    async def stage(self, document_ref: str) -> AnalysisSource:
        return AnalysisSource(document_ref=document_ref, uri=document_ref)

    async def release(self, source: AnalysisSource) -> None:
        return None


@dataclass(slots=True)
class _PollOutcome:
    snapshot: EngineJobSnapshot | None
    reason: str | None = None


class AnalysisOrchestrator:
    def __init__(
        self,
        engine: AnalysisEngine,
        *,
        breaker: CircuitBreaker,
        cache: ResultCache | None = None,
        sources: AnalysisSourceProvider | None = None,
        settings: AnalysisSettings | None = None,
        schedule: PollSchedule | None = None,
        policy: RetryPolicy | None = None,
        submit_timeout_seconds: float = 10.0,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
        jitter: Callable[[float], float] | None = None,
        metrics: MetricsClient | None = None,
        max_tracked_jobs: int = 1000,
    ) -> None:
        self._engine = engine
        self._cache = cache
        self._sources = sources or PassThroughSourceProvider()
        self.settings = settings or AnalysisSettings()
        self.schedule = schedule or PollSchedule()
        self._clock = clock
        self._sleep = sleep
        self._jitter = jitter or (lambda upper: random.uniform(0.0, upper))
        self._metrics = metrics
        self._caller = ResilientCaller(
            "analysis_engine",
            breaker=breaker,
            unavailable=AnalysisUnavailable,
            policy=policy,
            timeout_seconds=submit_timeout_seconds,
            sleep=sleep,
            clock=clock,
            metrics=metrics,
        )
        self._jobs: OrderedDict[str, AnalysisJob] = OrderedDict()
        self._jobs_lock = threading.Lock()
        self._max_tracked_jobs = max_tracked_jobs

    async def analyze(
        self,
        document_ref: str,
        options: AnalysisOptions | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> AnalysisResult:
        """Analyse a stored document, serving a cached success when present.

        Raises ``InvalidInputError`` for bad arguments, ``AnalysisUnavailable``
        when the job cannot be submitted and ``AnalysisCancelled`` when
        ``cancel_event`` fires. Everything else is reported on the result.
        """
        if not document_ref or not isinstance(document_ref, str):
            raise InvalidInputError("document_ref must be a non-empty string")
        options = options or AnalysisOptions()
        started = self._clock()
        deadline = started + (options.timeout_seconds or self.settings.deadline_seconds)

        if options.use_cache and self._cache is not None:
            cached = await self._cache.get_analysis(document_ref)
            if cached.is_ok and cached.value is not None:
                self._count("analysis_cache_hit_total")
                structured_log(
                    LOG, logging.INFO, "analysis_cache_hit", document_id=document_ref, job_id=cached.value.job_id
                )
                return cached.value

        _raise_if_cancelled(cancel_event, document_ref)
        source = await self._sources.stage(document_ref)
        try:
            return await self._run_job(document_ref, source, started, deadline, options, cancel_event)
        finally:
            await self._release(source)

    async def _run_job(
        self,
        document_ref: str,
        source: AnalysisSource,
        started: float,
        deadline: float,
        options: AnalysisOptions,
        cancel_event: asyncio.Event | None,
    ) -> AnalysisResult:
        job_id = await self._caller.call(
            "submit_job",
            lambda: self._engine.submit_job(source, options),
            document_id=document_ref,
        )
        job = AnalysisJob(job_id=job_id, document_ref=document_ref)
        self._track(job)
        structured_log(LOG, logging.INFO, "analysis_submitted", document_id=document_ref, job_id=job_id)
        try:
            outcome = await self._poll(job, deadline, cancel_event)
        except asyncio.CancelledError:
            structured_log(
                LOG, logging.WARNING, "analysis_cancelled", document_id=document_ref, job_id=job_id, reason="task"
            )
            raise
        except AnalysisCancelled:
            structured_log(
                LOG, logging.WARNING, "analysis_cancelled", document_id=document_ref, job_id=job_id, reason="event"
            )
            raise

        result = self._finish(job, outcome, started, options)
        if result.status is AnalysisStatus.SUCCEEDED and options.use_cache and self._cache is not None:
            await self._cache.set_analysis(result, self.settings.cache_ttl_seconds)
        return result

    async def get_status(self, job_id: str) -> AnalysisJob:
        """Current view of a job; never changes the tracked job."""
        if not job_id:
            raise InvalidInputError("job_id must be a non-empty string")
        with self._jobs_lock:
            tracked = self._jobs.get(job_id)
            local = tracked.snapshot() if tracked is not None else None
        if local is not None and local.status.is_terminal:
            return local
        snapshot = await self._caller.call(
            "get_job", lambda: self._engine.get_job(job_id), job_id=job_id
        )
        status = _ENGINE_STATUS[snapshot.state]
        if local is None:
            return AnalysisJob(job_id=job_id, document_ref="", status=status, error=snapshot.error)
        local.status = status
        local.error = snapshot.error
        return local

    async def _poll(
        self,
        job: AnalysisJob,
        deadline: float,
        cancel_event: asyncio.Event | None,
    ) -> _PollOutcome:
        interval = self.schedule.initial_seconds
        failures = 0
        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                return _PollOutcome(None, "analysis deadline exceeded")
            wait = min(interval + self._jitter(self.schedule.jitter_seconds), remaining)
            await self._pause(wait, cancel_event, job)

            remaining = deadline - self._clock()
            if remaining <= 0:
                return _PollOutcome(None, "analysis deadline exceeded")
            try:
                snapshot = await self._caller.attempt(
                    "get_job",
                    lambda: self._engine.get_job(job.job_id),
                    timeout=min(self.schedule.timeout_seconds, remaining),
                )
            except TransientError as exc:
                failures += 1
                structured_log(
                    LOG,
                    logging.WARNING,
                    "analysis_poll_failed",
                    job_id=job.job_id,
                    attempts=failures,
                    error_type=type(exc).__name__,
                )
                if failures > self.schedule.max_failures:
                    return _PollOutcome(None, f"status polling failed {failures} times in a row")
                interval = self.schedule.next_interval(interval)
                continue

            failures = 0
            if snapshot.state is EngineJobState.IN_PROGRESS:
                if job.status is AnalysisStatus.SUBMITTED:
                    job.transition_to(AnalysisStatus.IN_PROGRESS)
                interval = self.schedule.next_interval(interval)
                continue
            return _PollOutcome(snapshot)

    async def _pause(self, seconds: float, cancel_event: asyncio.Event | None, job: AnalysisJob) -> None:
        if cancel_event is None:
            await self._sleep(seconds)
            return
        _raise_if_cancelled(cancel_event, job.document_ref, job.job_id)
        sleeper = asyncio.ensure_future(self._sleep(seconds))
        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, waiter):
                if not task.done():
                    task.cancel()
        _raise_if_cancelled(cancel_event, job.document_ref, job.job_id)

    def _finish(
        self,
        job: AnalysisJob,
        outcome: _PollOutcome,
        started: float,
        options: AnalysisOptions,
    ) -> AnalysisResult:
        elapsed_ms = int((self._clock() - started) * 1000)
        snapshot = outcome.snapshot
        if snapshot is None:
            job.transition_to(AnalysisStatus.TIMED_OUT, error=outcome.reason)
            result = AnalysisResult(
                job_id=job.job_id,
                document_ref=job.document_ref,
                status=AnalysisStatus.TIMED_OUT,
                processing_ms=elapsed_ms,
                error=outcome.reason,
            )
        elif snapshot.state is EngineJobState.FAILED:
            error = snapshot.error or "analysis engine reported failure"
            job.transition_to(AnalysisStatus.FAILED, error=error)
            result = AnalysisResult(
                job_id=job.job_id,
                document_ref=job.document_ref,
                status=AnalysisStatus.FAILED,
                processing_ms=elapsed_ms,
                error=error,
            )
        else:
            floor = _pick(options.block_confidence_floor, self.settings.block_floor)
            minimum = _pick(options.min_confidence, self.settings.min_confidence)
            budget = options.processing_budget_ms or self.settings.processing_budget_ms
            blocks = normalise_blocks(snapshot.blocks, block_floor=floor)
            warnings: list[AnalysisWarning] = []
            if blocks.confidence < minimum:
                warnings.append(AnalysisWarning.LOW_CONFIDENCE)
            if blocks.flagged_blocks:
                warnings.append(AnalysisWarning.LOW_CONFIDENCE_BLOCKS)
            if elapsed_ms > budget:
                warnings.append(AnalysisWarning.OVER_BUDGET)
            job.transition_to(AnalysisStatus.SUCCEEDED)
            result = AnalysisResult(
                job_id=job.job_id,
                document_ref=job.document_ref,
                status=AnalysisStatus.SUCCEEDED,
                text_blocks=blocks.text_blocks,
                tables=blocks.tables,
                key_values=blocks.key_values,
                confidence=blocks.confidence,
                processing_ms=elapsed_ms,
                warnings=warnings,
            )

        self._count(f"analysis_{result.status.value.lower()}_total")
        if self._metrics:
            self._metrics.observe_latency("analysis_seconds", elapsed_ms / 1000, stage="analysis")
        structured_log(
            LOG,
            logging.WARNING if result.warnings or result.status is not AnalysisStatus.SUCCEEDED else logging.INFO,
            "analysis_finished",
            document_id=job.document_ref,
            job_id=job.job_id,
            status=result.status.value,
            confidence=result.confidence,
            elapsed_ms=elapsed_ms,
            warnings=[w.value for w in result.warnings] or None,
            error=result.error,
        )
        return result

    async def _release(self, source: AnalysisSource) -> None:
        try:
            await self._sources.release(source)
        except Exception as exc:  # noqa: BLE001 - staging cleanup is best effort
            structured_log(
                LOG,
                logging.WARNING,
                "analysis_staging_cleanup_failed",
                document_id=source.document_ref,
                error_type=type(exc).__name__,
            )

    def _track(self, job: AnalysisJob) -> None:
        with self._jobs_lock:
            self._jobs[job.job_id] = job
            while len(self._jobs) > self._max_tracked_jobs:
                self._jobs.popitem(last=False)

    def _count(self, name: str) -> None:
        if self._metrics:
            self._metrics.increment(name, stage="analysis")


def _pick(override: float | None, default: float) -> float:
    return default if override is None else override


def _raise_if_cancelled(event: asyncio.Event | None, document_ref: str, job_id: str | None = None) -> None:
    if event is not None and event.is_set():
        raise AnalysisCancelled("analysis cancelled by caller", document_id=document_ref, job_id=job_id)


__all__ = [
    "AnalysisOrchestrator",
    "AnalysisSettings",
    "PassThroughSourceProvider",
    "PollSchedule",
]
