"""Handler filter that runs every record through :mod:`docvault.utils.redact`."""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from typing import Any, Iterable

from docvault.utils import redact

_BUILTIN_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


class SecretRedactFilter(logging.Filter):
    """Scrub the message, its args and any ``extra`` fields in place."""

    def __init__(
        self,
        name: str = "",
        *,
        patterns: Iterable[re.Pattern[str]] | None = None,
        replacement: str = redact.REDACTION_TOKEN,
    ) -> None:
        super().__init__(name)
        self.patterns = tuple(patterns or redact.DEFAULT_PATTERNS)
        self.replacement = replacement

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = self.scrub(record.msg)
        args = record.args
        if isinstance(args, Mapping):
            record.args = {key: self.scrub(value) for key, value in args.items()}
        elif args:
            record.args = tuple(self.scrub(arg) for arg in args)

        extras = [key for key in vars(record) if key not in _BUILTIN_ATTRS and not key.startswith("_")]
        for key in extras:
            if key.lower() in redact.SENSITIVE_KEYS:
                setattr(record, key, self.replacement)
            else:
                setattr(record, key, self.scrub(getattr(record, key)))
        return True

    def scrub(self, value: Any) -> Any:
        return redact.redact_value(value, self.patterns, self.replacement)


__all__ = ["SecretRedactFilter"]
