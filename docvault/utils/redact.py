"""Scrubbing of key material and personal identifiers before anything is logged.

Data keys, wrapped keys and nonces show up as long base64 or hex runs; object
paths are made of lowercase hex tokens and are left readable.
"""

from __future__ import annotations

import re
from typing import Any, Iterable, Mapping

REDACTION_TOKEN = "[REDACTED]"

_B64 = r"[A-Za-z0-9+/_-]"

PATTERNS_BY_KIND: dict[str, re.Pattern[str]] = {
    "pem": re.compile(r"-----BEGIN [A-Z ]+-----[\s\S]*?-----END [A-Z ]+-----"),
    # mixed case with a digit: a lowercase hex path segment never matches
    "base64_key": re.compile(
        rf"(?<!{_B64})(?={_B64}*[0-9])(?={_B64}*[A-Z])(?={_B64}*[a-z]){_B64}{{40,}}={{0,2}}"
    ),
    "hex_key": re.compile(r"\b[0-9a-fA-F]{48,}\b"),
    "email": re.compile(r"\b[\w.%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
    "ssn": re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),
}

DEFAULT_PATTERNS: tuple[re.Pattern[str], ...] = tuple(PATTERNS_BY_KIND.values())

# field names whose values are replaced without inspection
SENSITIVE_KEYS = frozenset(
    {"data_key", "password", "plaintext", "plaintext_key", "secret", "token", "wrapped_key"}
)


def redact_text(
    value: str,
    *,
    patterns: Iterable[re.Pattern[str]] | None = None,
    replacement: str = REDACTION_TOKEN,
) -> str:
    for pattern in patterns or DEFAULT_PATTERNS:
        value = pattern.sub(replacement, value)
    return value


def redact_mapping(
    payload: Mapping[str, Any],
    *,
    patterns: Iterable[re.Pattern[str]] | None = None,
    replacement: str = REDACTION_TOKEN,
) -> dict[str, Any]:
    """Redact values recursively; values under ``SENSITIVE_KEYS`` are replaced outright."""
    compiled = tuple(patterns or DEFAULT_PATTERNS)
    return {
        key: replacement if str(key).lower() in SENSITIVE_KEYS else redact_value(value, compiled, replacement)
        for key, value in payload.items()
    }


def redact_value(
    value: Any,
    patterns: tuple[re.Pattern[str], ...] = DEFAULT_PATTERNS,
    replacement: str = REDACTION_TOKEN,
) -> Any:
    """Redact ``value`` whatever its shape. Raw bytes are reduced to their length."""
    if isinstance(value, str):
        return redact_text(value, patterns=patterns, replacement=replacement)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return f"<{len(value)} bytes>"
    if isinstance(value, Mapping):
        return redact_mapping(value, patterns=patterns, replacement=replacement)
    if isinstance(value, (list, tuple, set, frozenset)):
        scrubbed = (redact_value(item, patterns, replacement) for item in value)
        return list(scrubbed) if isinstance(value, list) else type(value)(scrubbed)
    return value


__all__ = [
    "DEFAULT_PATTERNS",
    "PATTERNS_BY_KIND",
    "REDACTION_TOKEN",
    "SENSITIVE_KEYS",
    "redact_mapping",
    "redact_text",
    "redact_value",
]
