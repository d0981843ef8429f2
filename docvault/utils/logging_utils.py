"""Structured log events and timed operation markers.

Every record carries an ``event`` attribute plus a small set of allow-listed
fields, so arbitrary keyword arguments (payloads, keys, names) never reach a
log sink by accident.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict

STRUCTURED_LOG_ALLOWED_FIELDS: frozenset[str] = frozenset(
    {
        "attempts",
        "bytes",
        "cached",
        "component",
        "confidence",
        "content_type",
        "correlation_id",
        "dependency",
        "document_id",
        "document_type",
        "duration_ms",
        "elapsed_ms",
        "error",
        "error_type",
        "event",
        "job_id",
        "operation",
        "path",
        "reason",
        "stage",
        "state",
        "status",
        "warnings",
    }
)

STAGE_EVENT = "docvault_stage"


def safe_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Keep allow-listed, non-empty fields."""
    return {k: v for k, v in fields.items() if v is not None and k in STRUCTURED_LOG_ALLOWED_FIELDS}


def structured_log(logger: logging.Logger, level: int, event: str, **fields: Any) -> None:
    extra = safe_fields(fields)
    extra["event"] = event
    extra["_structured_log"] = True
    logger.log(level, event, extra=extra)


@dataclass
class StageMarker:
    """Logs ``started`` on entry and ``completed`` or ``failed`` on exit.

    Works as both a sync and an async context manager. Fields added with
    ``add_completion_fields`` only appear on the closing record.
    """

    logger: logging.Logger
    stage: str
    level: int = logging.INFO
    fields: Dict[str, Any] = field(default_factory=dict)
    _extra: Dict[str, Any] = field(default_factory=dict, init=False, repr=False)
    _t0: float | None = field(default=None, init=False, repr=False)

    def add_completion_fields(self, **fields: Any) -> None:
        self._extra.update(safe_fields(fields))

    def _open(self) -> "StageMarker":
        self._t0 = time.perf_counter()
        structured_log(self.logger, self.level, STAGE_EVENT, stage=self.stage, status="started", **self.fields)
        return self

    def _close(self, exc: BaseException | None) -> bool:
        elapsed = 0 if self._t0 is None else int((time.perf_counter() - self._t0) * 1000)
        closing = {**self.fields, **self._extra, "stage": self.stage, "duration_ms": elapsed}
        if exc is None:
            structured_log(self.logger, self.level, STAGE_EVENT, **closing, status="completed")
            return False
        closing.update(status="failed", error_type=type(exc).__name__)
        structured_log(self.logger, logging.ERROR, STAGE_EVENT, **closing)
        return False

    def __enter__(self) -> "StageMarker":
        return self._open()

    def __exit__(self, exc_type, exc, tb) -> bool:
        return self._close(exc)

    async def __aenter__(self) -> "StageMarker":
        return self._open()

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        return self._close(exc)


def stage_marker(logger: logging.Logger, *, stage: str, level: int = logging.INFO, **fields: Any) -> StageMarker:
    return StageMarker(logger, stage, level, safe_fields(fields))


__all__ = [
    "STAGE_EVENT",
    "STRUCTURED_LOG_ALLOWED_FIELDS",
    "StageMarker",
    "safe_fields",
    "stage_marker",
    "structured_log",
]
