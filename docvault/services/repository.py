"""Document record repository."""

from __future__ import annotations

import logging
import threading
from typing import Dict, List

from docvault.errors import DocumentNotFound
from docvault.models.analysis import AnalysisResult
from docvault.models.documents import DocumentVersion, StoredDocumentRef

from .interfaces import DocumentRepository

LOG = logging.getLogger(__name__)


class InMemoryDocumentRepository(DocumentRepository):
    """Thread-safe in-memory repository used for tests and local development."""

    def __init__(self) -> None:
        self._records: Dict[str, StoredDocumentRef] = {}
        self._versions: Dict[str, List[DocumentVersion]] = {}
        self._analyses: Dict[str, List[AnalysisResult]] = {}
        self._lock = threading.RLock()

    async def add(self, ref: StoredDocumentRef) -> None:
        with self._lock:
            self._records[ref.document_id] = ref
        LOG.debug("document_record_added", extra={"document_id": ref.document_id})

    async def get(self, document_id: str) -> StoredDocumentRef | None:
        with self._lock:
            return self._records.get(document_id)

    async def delete(self, document_id: str) -> bool:
        with self._lock:
            self._versions.pop(document_id, None)
            self._analyses.pop(document_id, None)
            return self._records.pop(document_id, None) is not None

    async def add_version(self, version: DocumentVersion) -> None:
        with self._lock:
            if version.document_id not in self._records:
                raise DocumentNotFound(
                    f"unknown document {version.document_id}", document_id=version.document_id
                )
            history = self._versions.setdefault(version.document_id, [])
            if any(existing.version_number == version.version_number for existing in history):
                raise ValueError(f"version {version.version_number} already recorded")
            history.append(version)
        LOG.debug(
            "document_version_added",
            extra={"document_id": version.document_id, "version": version.version_number},
        )

    async def versions(self, document_id: str) -> list[DocumentVersion]:
        with self._lock:
            return sorted(self._versions.get(document_id, []), key=lambda v: v.version_number)

    async def add_analysis_result(self, document_id: str, result: AnalysisResult) -> None:
        with self._lock:
            if document_id not in self._records:
                raise DocumentNotFound(f"unknown document {document_id}", document_id=document_id)
            self._analyses.setdefault(document_id, []).append(result)

    async def analysis_history(self, document_id: str) -> list[AnalysisResult]:
        with self._lock:
            return list(self._analyses.get(document_id, []))

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


__all__ = ["InMemoryDocumentRepository"]
