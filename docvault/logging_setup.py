"""JSON log output and correlation ids.

``configure_logging()`` installs one stdout handler that renders records as a
single JSON object per line and scrubs them with ``SecretRedactFilter``.
The correlation id lives in a ``ContextVar`` so tasks spawned inside
``correlation_context`` inherit it.
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Iterator

from docvault.utils.logging_filter import SecretRedactFilter

correlation_id_var: ContextVar[str | None] = ContextVar("docvault_correlation_id", default=None)

_RESERVED = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    """One JSON object per record; ``extra`` fields are copied to the top level."""

    def format(self, record: logging.LogRecord) -> str:
        body: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        correlation_id = correlation_id_var.get()
        if correlation_id:
            body["correlation_id"] = correlation_id
        body.update(
            (key, value)
            for key, value in vars(record).items()
            if key not in _RESERVED and not key.startswith("_")
        )
        if record.exc_info:
            body["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(body, ensure_ascii=False, default=str)


def _is_docvault_handler(handler: logging.Handler) -> bool:
    return isinstance(handler.formatter, JsonFormatter)


def configure_logging(level: int | str = logging.INFO, force: bool = False) -> logging.Handler:
    """Attach the JSON handler to the root logger once; later calls only adjust the level."""
    root = logging.getLogger()
    root.setLevel(level)
    existing = [h for h in root.handlers if _is_docvault_handler(h)]
    if existing and not force:
        return existing[0]
    for handler in existing:
        root.removeHandler(handler)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    handler.addFilter(SecretRedactFilter())
    root.addHandler(handler)
    return handler


def set_correlation_id(cid: str | None) -> None:
    correlation_id_var.set(cid)


@contextmanager
def correlation_context(cid: str | None = None) -> Iterator[str]:
    token = correlation_id_var.set(cid or uuid.uuid4().hex)
    try:
        yield correlation_id_var.get() or ""
    finally:
        correlation_id_var.reset(token)


__all__ = [
    "JsonFormatter",
    "configure_logging",
    "correlation_context",
    "correlation_id_var",
    "set_correlation_id",
]
