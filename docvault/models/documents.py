"""Document types, stored object references and encrypted payloads."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping

ISO8601 = "%Y-%m-%dT%H:%M:%S.%fZ"

ALLOWED_EXTENSIONS: frozenset[str] = frozenset(
    {".pdf", ".doc", ".docx", ".jpg", ".jpeg", ".png", ".gif", ".txt", ".xlsx"}
)

# Object metadata keys written next to every ciphertext.
META_WRAPPED_KEY = "docvault-wrapped-key"
META_CHECKSUM = "docvault-content-sha256"
META_UPLOADED_AT = "docvault-uploaded-at"
META_CIPHER = "docvault-cipher"


def _now_utc() -> str:
    return datetime.now(tz=timezone.utc).strftime(ISO8601)


class DocumentType(str, Enum):
    """Document category; the value is the storage path prefix."""

    PASSWORDS = "passwords"
    MEDICAL = "medical"
    INSURANCE = "insurance"
    PERSONAL = "personal"

    @classmethod
    def parse(cls, tag: "str | DocumentType") -> "DocumentType":
        """Accept the enum, its value, or a human tag such as ``"Password"``."""
        if isinstance(tag, DocumentType):
            return tag
        key = str(tag or "").strip().lower().replace("-", "").replace("_", "").replace(" ", "")
        try:
            return _TYPE_ALIASES[key]
        except KeyError:
            raise ValueError(f"unknown document type '{tag}'") from None


_TYPE_ALIASES: dict[str, DocumentType] = {
    "password": DocumentType.PASSWORDS,
    "passwords": DocumentType.PASSWORDS,
    "passwordfiles": DocumentType.PASSWORDS,
    "medical": DocumentType.MEDICAL,
    "insurance": DocumentType.INSURANCE,
    "personal": DocumentType.PERSONAL,
    "personalidentifiers": DocumentType.PERSONAL,
}


@dataclass(frozen=True, slots=True)
class EncryptedBlob:
    """Ciphertext as persisted, with the material needed to open it."""

    ciphertext: bytes
    wrapped_key: bytes
    checksum: str
    content_type: str = "application/octet-stream"

    def __repr__(self) -> str:
        return (
            f"EncryptedBlob(size={len(self.ciphertext)}, checksum={self.checksum!r}, "
            f"content_type={self.content_type!r})"
        )


@dataclass(frozen=True, slots=True)
class StoredObject:
    """Raw object as returned by a storage backend."""

    data: bytes
    metadata: dict[str, str] = field(default_factory=dict)
    content_type: str | None = None
    updated_at: str | None = None
    size: int | None = None


@dataclass(frozen=True, slots=True)
class StoredDocumentRef:
    """Handle returned by an upload; safe to persist and hand to callers."""

    document_id: str
    owner_ref: str
    path: str
    document_type: DocumentType
    content_type: str
    size_bytes: int
    checksum: str
    encrypted_name: str
    created_at: str = field(default_factory=_now_utc)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["document_type"] = self.document_type.value
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "StoredDocumentRef":
        data = dict(payload)
        data["document_type"] = DocumentType(data["document_type"])
        data["size_bytes"] = int(data["size_bytes"])
        return cls(**data)


@dataclass(frozen=True, slots=True)
class DocumentVersion:
    """One stored revision of a document; an upload creates version 1."""

    document_id: str
    path: str
    checksum: str
    version_number: int = 1
    created_at: str = field(default_factory=_now_utc)

    def __post_init__(self) -> None:
        if not self.document_id or not self.path or not self.checksum:
            raise ValueError("document_id, path and checksum are required")
        if self.version_number < 1:
            raise ValueError("version_number starts at 1")


__all__ = [
    "ALLOWED_EXTENSIONS",
    "DocumentType",
    "DocumentVersion",
    "EncryptedBlob",
    "META_CHECKSUM",
    "META_CIPHER",
    "META_UPLOADED_AT",
    "META_WRAPPED_KEY",
    "StoredDocumentRef",
    "StoredObject",
]
