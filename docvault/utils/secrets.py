"""Secret Manager references in configuration values.

A value of the form ``sm://name[:version]`` or
``sm://projects/<p>/secrets/<name>[:version]`` is swapped for the secret
payload the first time it is read; plain values pass through untouched.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Optional

from google.api_core import exceptions as gexc
from google.cloud import secretmanager

SM_PREFIX = "sm://"
LOG = logging.getLogger(__name__)

_resolved: dict[str, str] = {}
_resolved_lock = threading.Lock()


class SecretResolutionError(RuntimeError):
    """A Secret Manager reference could not be turned into a value."""


@dataclass(frozen=True, slots=True)
class SecretRef:
    resource: str
    version: str = "latest"

    @property
    def version_path(self) -> str:
        return f"{self.resource}/versions/{self.version}"

    @classmethod
    def parse(cls, raw: str, project_id: str | None) -> "SecretRef":
        raw = raw.strip()
        if not raw:
            raise SecretResolutionError("Empty secret reference")
        if "/versions/" in raw:
            resource, _, version = raw.partition("/versions/")
            return cls(resource, version or "latest")
        name, _, version = raw.partition(":")
        name = name.strip().rstrip("/")
        version = version.strip() or "latest"
        if name.startswith("projects/"):
            return cls(name, version)
        if not name:
            raise SecretResolutionError("Secret identifier missing in sm:// reference")
        if not project_id:
            raise SecretResolutionError("project_id is required for shorthand sm:// references")
        return cls(f"projects/{project_id}/secrets/{name}", version)


def secret_version_path(raw: str, project_id: str | None) -> str:
    return SecretRef.parse(raw, project_id).version_path


def resolve_secret(
    value: str | None,
    *,
    project_id: str | None = None,
    client: Optional[secretmanager.SecretManagerServiceClient] = None,
) -> str | None:
    if not isinstance(value, str) or not value.strip().startswith(SM_PREFIX):
        return value
    reference = value.strip()
    with _resolved_lock:
        if reference in _resolved:
            return _resolved[reference]

    ref = SecretRef.parse(reference[len(SM_PREFIX):], project_id)
    try:
        response = (client or secretmanager.SecretManagerServiceClient()).access_secret_version(
            name=ref.version_path
        )
    except gexc.GoogleAPICallError as exc:
        raise SecretResolutionError(f"Failed to access secret {ref.version_path}: {exc}") from exc

    payload = getattr(response, "payload", None)
    data = getattr(payload, "data", None)
    if data is None:
        raise SecretResolutionError(f"Secret {ref.version_path} returned no payload data")
    secret = data.decode("utf-8")
    with _resolved_lock:
        _resolved[reference] = secret
    LOG.info("secret_resolved", extra={"secret_ref": ref.resource, "version": ref.version})
    return secret


def clear_secret_cache() -> None:
    with _resolved_lock:
        _resolved.clear()


__all__ = [
    "SM_PREFIX",
    "SecretRef",
    "SecretResolutionError",
    "clear_secret_cache",
    "resolve_secret",
    "secret_version_path",
]
