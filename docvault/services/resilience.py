"""Resilience primitives shared by every remote dependency.

* ``CircuitBreaker``: CLOSED -> OPEN after N consecutive failures inside a
  rolling window, OPEN -> HALF_OPEN once the cooldown elapses, then exactly one
  trial request decides between CLOSED and OPEN again.
* ``ResilientCaller``: per-call timeout + bounded exponential backoff
  (tenacity) composed with a breaker. Exhausted retries and open circuits are
  surfaced as the dependency's ``*Unavailable`` error.
* ``ConcurrencyLimiter``: per-operation concurrency ceiling with a bounded wait.
* ``PathLockRegistry``: serialises writers of the same object path.

Breakers are built once per dependency by the composition root and handed to
the clients that share them.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from docvault.errors import (
    CircuitOpenError,
    DocVaultError,
    RateLimitExceeded,
    StorageUnavailable,
    TransientError,
)
from docvault.utils.logging_utils import structured_log

from .interfaces import MetricsClient

LOG = logging.getLogger(__name__)

T = TypeVar("T")
Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


class BreakerState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """Thread-safe circuit breaker with an injectable clock."""

    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 5,
        window_seconds: float = 60.0,
        cooldown_seconds: float = 30.0,
        clock: Clock = time.monotonic,
        metrics: MetricsClient | None = None,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.name = name
        self.failure_threshold = failure_threshold
        self.window_seconds = window_seconds
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._metrics = metrics
        self._lock = threading.Lock()
        self._state = BreakerState.CLOSED
        self._failures: deque[float] = deque()
        self._opened_at = 0.0
        self._trial_in_flight = False

    @property
    def state(self) -> BreakerState:
        with self._lock:
            return self._state

    def before_call(self) -> None:
        """Admit a call or raise ``CircuitOpenError``."""
        with self._lock:
            if self._state is BreakerState.CLOSED:
                return
            now = self._clock()
            if self._state is BreakerState.OPEN:
                remaining = self._opened_at + self.cooldown_seconds - now
                if remaining > 0:
                    raise CircuitOpenError(self.name, retry_after=remaining)
                self._transition(BreakerState.HALF_OPEN)
            if self._trial_in_flight:
                raise CircuitOpenError(self.name)
            self._trial_in_flight = True

    def record_success(self) -> None:
        with self._lock:
            self._failures.clear()
            self._trial_in_flight = False
            if self._state is not BreakerState.CLOSED:
                self._transition(BreakerState.CLOSED)

    def record_failure(self) -> None:
        with self._lock:
            now = self._clock()
            self._trial_in_flight = False
            if self._state is BreakerState.HALF_OPEN:
                self._opened_at = now
                self._transition(BreakerState.OPEN)
                return
            self._failures.append(now)
            while self._failures and now - self._failures[0] > self.window_seconds:
                self._failures.popleft()
            if self._state is BreakerState.CLOSED and len(self._failures) >= self.failure_threshold:
                self._opened_at = now
                self._failures.clear()
                self._transition(BreakerState.OPEN)

    def release_trial(self) -> None:
        """Give back a half-open trial slot without judging the dependency."""
        with self._lock:
            self._trial_in_flight = False

    def _transition(self, state: BreakerState) -> None:
        previous, self._state = self._state, state
        structured_log(
            LOG,
            logging.WARNING if state is BreakerState.OPEN else logging.INFO,
            "circuit_state_changed",
            dependency=self.name,
            state=state.value,
            reason=f"{previous.value}->{state.value}",
        )
        if self._metrics:
            self._metrics.increment(f"circuit_{state.value.lower()}_total", stage=self.name)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    attempts: int = 3
    initial_seconds: float = 1.0
    max_seconds: float = 8.0
    jitter_seconds: float = 0.25


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, TransientError) and not isinstance(exc, CircuitOpenError)


class ResilientCaller:
    """Run remote calls under timeout, retry and a circuit breaker."""

    def __init__(
        self,
        name: str,
        *,
        breaker: CircuitBreaker,
        unavailable: type[TransientError],
        policy: RetryPolicy | None = None,
        timeout_seconds: float = 10.0,
        sleep: Sleep = asyncio.sleep,
        clock: Clock = time.monotonic,
        metrics: MetricsClient | None = None,
    ) -> None:
        self.name = name
        self.breaker = breaker
        self.policy = policy or RetryPolicy()
        self.timeout_seconds = timeout_seconds
        self._unavailable = unavailable
        self._sleep = sleep
        self._clock = clock
        self._metrics = metrics

    async def call(
        self,
        operation: str,
        factory: Callable[[], Awaitable[T]],
        **context: Any,
    ) -> T:
        """Await ``factory()`` with retries; a fresh awaitable is built per attempt."""
        started = self._clock()
        attempts = 0
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.policy.attempts),
                wait=wait_exponential(multiplier=self.policy.initial_seconds, max=self.policy.max_seconds)
                + wait_random(0, self.policy.jitter_seconds),
                retry=retry_if_exception(_is_retryable),
                sleep=self._sleep,
                before_sleep=lambda state: self._log_retry(operation, state),
                reraise=True,
            ):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    return await self.attempt(operation, factory)
        except TransientError as exc:
            elapsed_ms = int((self._clock() - started) * 1000)
            if self._metrics:
                self._metrics.increment(f"{operation}_unavailable_total", stage=self.name)
            structured_log(
                LOG,
                logging.ERROR,
                "dependency_unavailable",
                dependency=self.name,
                operation=operation,
                attempts=attempts,
                elapsed_ms=elapsed_ms,
                error_type=type(exc).__name__,
            )
            raise self._unavailable(
                f"{self.name} {operation} failed: {exc}",
                attempts=attempts,
                elapsed_ms=elapsed_ms,
                **context,
            ) from exc
        raise self._unavailable(f"{self.name} {operation} exhausted retries", **context)

    async def attempt(
        self,
        operation: str,
        factory: Callable[[], Awaitable[T]],
        *,
        timeout: float | None = None,
    ) -> T:
        """One guarded call without retries; the breaker still sees the outcome."""
        limit = self.timeout_seconds if timeout is None else timeout
        self.breaker.before_call()
        try:
            result = await asyncio.wait_for(factory(), timeout=limit)
        except asyncio.TimeoutError as exc:
            self.breaker.record_failure()
            raise self._unavailable(f"{operation} timed out after {limit}s") from exc
        except TransientError:
            self.breaker.record_failure()
            raise
        except ConnectionError as exc:
            self.breaker.record_failure()
            raise self._unavailable(f"{operation} connection failed: {exc}") from exc
        except DocVaultError:
            # The dependency answered; the error is about the request.
            self.breaker.record_success()
            raise
        except BaseException:
            self.breaker.release_trial()
            raise
        self.breaker.record_success()
        return result

    def _log_retry(self, operation: str, state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        if self._metrics:
            self._metrics.increment(f"{operation}_retries_total", stage=self.name)
        structured_log(
            LOG,
            logging.WARNING,
            "dependency_retry",
            dependency=self.name,
            operation=operation,
            attempts=state.attempt_number,
            error_type=type(exc).__name__ if exc else None,
        )


class ConcurrencyLimiter:
    """Per-operation semaphores; waiting too long raises ``RateLimitExceeded``."""

    def __init__(self, max_concurrency: int = 10, acquire_timeout: float = 5.0) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.max_concurrency = max_concurrency
        self.acquire_timeout = acquire_timeout
        self._semaphores: dict[str, asyncio.Semaphore] = {}

    @asynccontextmanager
    async def slot(self, operation: str) -> AsyncIterator[None]:
        semaphore = self._semaphores.get(operation)
        if semaphore is None:
            semaphore = self._semaphores[operation] = asyncio.Semaphore(self.max_concurrency)
        try:
            await asyncio.wait_for(semaphore.acquire(), timeout=self.acquire_timeout)
        except asyncio.TimeoutError:
            raise RateLimitExceeded(
                f"no {operation} slot free within {self.acquire_timeout}s"
            ) from None
        try:
            yield
        finally:
            semaphore.release()


class _PathLock:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class PathLockRegistry:
    """One ``asyncio.Lock`` per path, dropped once no task holds or awaits it."""

    def __init__(self, acquire_timeout: float = 30.0) -> None:
        self.acquire_timeout = acquire_timeout
        self._locks: dict[str, _PathLock] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, path: str) -> AsyncIterator[None]:
        entry = self._locks.get(path)
        if entry is None:
            entry = self._locks[path] = _PathLock()
        entry.users += 1
        try:
            try:
                await asyncio.wait_for(entry.lock.acquire(), timeout=self.acquire_timeout)
            except asyncio.TimeoutError:
                raise StorageUnavailable(
                    f"timed out waiting for the write lock on {path}", path=path
                ) from None
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            entry.users -= 1
            if entry.users == 0:
                self._locks.pop(path, None)


__all__ = [
    "BreakerState",
    "CircuitBreaker",
    "ConcurrencyLimiter",
    "PathLockRegistry",
    "ResilientCaller",
    "RetryPolicy",
]
