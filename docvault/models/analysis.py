"""Analysis job state, raw engine blocks and normalised analysis results."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping

from docvault.errors import InvalidInputError, InvalidTransition

ISO8601 = "%Y-%m-%dT%H:%M:%S.%fZ"


def _now_utc() -> str:
    return datetime.now(tz=timezone.utc).strftime(ISO8601)


class AnalysisStatus(str, Enum):
    """Job states as seen by callers.

    Jobs move left-to-right; SUCCEEDED, FAILED and TIMED_OUT are terminal.
    """

    SUBMITTED = "SUBMITTED"
    IN_PROGRESS = "IN_PROGRESS"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset({AnalysisStatus.SUCCEEDED, AnalysisStatus.FAILED, AnalysisStatus.TIMED_OUT})

_TRANSITIONS: dict[AnalysisStatus, frozenset[AnalysisStatus]] = {
    AnalysisStatus.SUBMITTED: frozenset(
        {AnalysisStatus.IN_PROGRESS, *_TERMINAL}
    ),
    AnalysisStatus.IN_PROGRESS: frozenset({AnalysisStatus.IN_PROGRESS, *_TERMINAL}),
    AnalysisStatus.SUCCEEDED: frozenset(),
    AnalysisStatus.FAILED: frozenset(),
    AnalysisStatus.TIMED_OUT: frozenset(),
}


@dataclass(slots=True)
class AnalysisJob:
    job_id: str
    document_ref: str
    status: AnalysisStatus = AnalysisStatus.SUBMITTED
    submitted_at: str = field(default_factory=_now_utc)
    updated_at: str = field(default_factory=_now_utc)
    error: str | None = None

    def transition_to(self, status: AnalysisStatus, *, error: str | None = None) -> None:
        if status not in _TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"cannot move job from {self.status.value} to {status.value}",
                job_id=self.job_id,
            )
        self.status = status
        self.updated_at = _now_utc()
        if error is not None:
            self.error = error

    def snapshot(self) -> "AnalysisJob":
        return replace(self)


class AnalysisFeature(str, Enum):
    TEXT = "TEXT"
    TABLES = "TABLES"
    FORMS = "FORMS"


@dataclass(frozen=True, slots=True)
class AnalysisOptions:
    """Per-call overrides; ``None`` falls back to the configured default."""

    features: tuple[AnalysisFeature, ...] = (AnalysisFeature.TABLES, AnalysisFeature.FORMS)
    min_confidence: float | None = None
    block_confidence_floor: float | None = None
    processing_budget_ms: int | None = None
    timeout_seconds: float | None = None
    use_cache: bool = True

    def __post_init__(self) -> None:
        for name in ("min_confidence", "block_confidence_floor"):
            value = getattr(self, name)
            if value is not None and not 0.0 <= value <= 1.0:
                raise InvalidInputError(f"{name} must be between 0 and 1")
        if self.processing_budget_ms is not None and self.processing_budget_ms <= 0:
            raise InvalidInputError("processing_budget_ms must be positive")
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise InvalidInputError("timeout_seconds must be positive")


# --- raw engine output -----------------------------------------------------


class EngineJobState(str, Enum):
    IN_PROGRESS = "IN_PROGRESS"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class BlockType(str, Enum):
    PAGE = "PAGE"
    LINE = "LINE"
    WORD = "WORD"
    TABLE = "TABLE"
    CELL = "CELL"
    KEY = "KEY"
    VALUE = "VALUE"


@dataclass(frozen=True, slots=True)
class BoundingBox:
    left: float
    top: float
    width: float
    height: float


@dataclass(frozen=True, slots=True)
class RawBlock:
    """One engine block. ``relationships`` maps a kind (CHILD, VALUE) to block ids."""

    block_id: str
    block_type: BlockType
    confidence: float
    text: str = ""
    page: int = 1
    geometry: BoundingBox | None = None
    relationships: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    row_index: int | None = None
    column_index: int | None = None

    def related(self, kind: str) -> tuple[str, ...]:
        return tuple(self.relationships.get(kind, ()))


@dataclass(frozen=True, slots=True)
class EngineJobSnapshot:
    job_id: str
    state: EngineJobState
    blocks: tuple[RawBlock, ...] = ()
    error: str | None = None


@dataclass(frozen=True, slots=True)
class AnalysisSource:
    """Where the engine should read a document from."""

    document_ref: str
    uri: str
    mime_type: str = "application/pdf"


# --- normalised results ------------------------------------------------------


class AnalysisWarning(str, Enum):
    LOW_CONFIDENCE = "LOW_CONFIDENCE"
    LOW_CONFIDENCE_BLOCKS = "LOW_CONFIDENCE_BLOCKS"
    OVER_BUDGET = "OVER_BUDGET"


@dataclass(frozen=True, slots=True)
class TextBlock:
    text: str
    confidence: float
    page: int = 1
    geometry: BoundingBox | None = None
    below_threshold: bool = False


@dataclass(frozen=True, slots=True)
class TableCell:
    row: int
    column: int
    text: str
    confidence: float


@dataclass(frozen=True, slots=True)
class Table:
    page: int
    cells: tuple[TableCell, ...]
    confidence: float

    @property
    def rows(self) -> list[list[str]]:
        if not self.cells:
            return []
        height = max(cell.row for cell in self.cells)
        width = max(cell.column for cell in self.cells)
        grid = [["" for _ in range(width)] for _ in range(height)]
        for cell in self.cells:
            grid[cell.row - 1][cell.column - 1] = cell.text
        return grid


@dataclass(frozen=True, slots=True)
class KeyValuePair:
    key: str
    value: str
    confidence: float
    below_threshold: bool = False


@dataclass(slots=True)
class AnalysisResult:
    job_id: str
    document_ref: str
    status: AnalysisStatus
    text_blocks: list[TextBlock] = field(default_factory=list)
    tables: list[Table] = field(default_factory=list)
    key_values: list[KeyValuePair] = field(default_factory=list)
    confidence: float | None = None
    processing_ms: int = 0
    error: str | None = None
    warnings: list[AnalysisWarning] = field(default_factory=list)
    cached: bool = False

    def __post_init__(self) -> None:
        # Aggregate confidence only means something for a succeeded job.
        if self.status is not AnalysisStatus.SUCCEEDED:
            self.confidence = None

    @property
    def text(self) -> str:
        return "\n".join(block.text for block in self.text_blocks)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        payload["warnings"] = [warning.value for warning in self.warnings]
        payload.pop("cached", None)
        return payload

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict(), separators=(",", ":"), sort_keys=True).encode("utf-8")

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any], *, cached: bool = False) -> "AnalysisResult":
        def _geometry(raw: Mapping[str, Any] | None) -> BoundingBox | None:
            return BoundingBox(**raw) if raw else None

        return cls(
            job_id=payload["job_id"],
            document_ref=payload["document_ref"],
            status=AnalysisStatus(payload["status"]),
            text_blocks=[
                TextBlock(**{**block, "geometry": _geometry(block.get("geometry"))})
                for block in payload.get("text_blocks", [])
            ],
            tables=[
                Table(
                    page=table["page"],
                    cells=tuple(TableCell(**cell) for cell in table.get("cells", [])),
                    confidence=table["confidence"],
                )
                for table in payload.get("tables", [])
            ],
            key_values=[KeyValuePair(**pair) for pair in payload.get("key_values", [])],
            confidence=payload.get("confidence"),
            processing_ms=int(payload.get("processing_ms", 0)),
            error=payload.get("error"),
            warnings=[AnalysisWarning(value) for value in payload.get("warnings", [])],
            cached=cached,
        )

    @classmethod
    def from_json(cls, data: bytes | str, *, cached: bool = False) -> "AnalysisResult":
        raw = data.decode("utf-8") if isinstance(data, (bytes, bytearray)) else data
        return cls.from_dict(json.loads(raw), cached=cached)


__all__ = [
    "AnalysisFeature",
    "AnalysisJob",
    "AnalysisOptions",
    "AnalysisResult",
    "AnalysisSource",
    "AnalysisStatus",
    "AnalysisWarning",
    "BlockType",
    "BoundingBox",
    "EngineJobSnapshot",
    "EngineJobState",
    "KeyValuePair",
    "RawBlock",
    "Table",
    "TableCell",
    "TextBlock",
]
