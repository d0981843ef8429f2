"""Tagged outcome for lookups whose misses are part of normal control flow."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

T = TypeVar("T")


class OutcomeKind(str, Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """``Ok(value)``, ``NotFound`` or ``Unavailable(reason)``.

    Cache and metadata lookups return this instead of raising, so callers can
    tell a miss from a backend fault without catching anything.
    """

    kind: OutcomeKind
    value: T | None = None
    reason: str | None = None

    @classmethod
    def ok(cls, value: T) -> "Outcome[T]":
        return cls(OutcomeKind.OK, value=value)

    @classmethod
    def not_found(cls) -> "Outcome[T]":
        return cls(OutcomeKind.NOT_FOUND)

    @classmethod
    def unavailable(cls, reason: str) -> "Outcome[T]":
        return cls(OutcomeKind.UNAVAILABLE, reason=reason)

    @property
    def is_ok(self) -> bool:
        return self.kind is OutcomeKind.OK

    @property
    def is_not_found(self) -> bool:
        return self.kind is OutcomeKind.NOT_FOUND

    @property
    def is_unavailable(self) -> bool:
        return self.kind is OutcomeKind.UNAVAILABLE

    def unwrap_or(self, default: T) -> T:
        return self.value if self.kind is OutcomeKind.OK else default  # type: ignore[return-value]


__all__ = ["Outcome", "OutcomeKind"]
