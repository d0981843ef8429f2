"""In-process backends for local development and tests.

* ``InMemoryObjectStorage``: dict-backed object store
* ``InMemoryCacheBackend``: dict-backed cache honouring TTLs
* ``LocalKeyManagement``: AES-GCM key wrapping under a process-local master key
* ``LocalTextAnalysisEngine``: line/table/form extraction from staged text files
"""

from __future__ import annotations

import logging
import os
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, Mapping

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from docvault.errors import DecryptionFailed, InvalidInputError
from docvault.models.analysis import (
    AnalysisOptions,
    AnalysisSource,
    BlockType,
    EngineJobSnapshot,
    EngineJobState,
    RawBlock,
)
from docvault.models.documents import StoredObject

LOG = logging.getLogger(__name__)

MEMORY_URI_PREFIX = "memory://"


class InMemoryObjectStorage:
    def __init__(self) -> None:
        self._objects: Dict[str, StoredObject] = {}
        self._lock = threading.RLock()

    async def put(
        self,
        path: str,
        data: bytes,
        *,
        content_type: str,
        metadata: Mapping[str, str],
        kms_key_name: str | None = None,
    ) -> None:
        with self._lock:
            self._objects[path] = StoredObject(
                data=bytes(data),
                metadata=dict(metadata),
                content_type=content_type,
                updated_at=datetime.now(tz=timezone.utc).isoformat(),
                size=len(data),
            )

    async def get(self, path: str) -> StoredObject | None:
        with self._lock:
            return self._objects.get(path)

    async def head(self, path: str) -> StoredObject | None:
        with self._lock:
            stored = self._objects.get(path)
        if stored is None:
            return None
        return StoredObject(
            data=b"",
            metadata=dict(stored.metadata),
            content_type=stored.content_type,
            updated_at=stored.updated_at,
            size=stored.size,
        )

    async def delete(self, path: str) -> bool:
        with self._lock:
            return self._objects.pop(path, None) is not None

    def paths(self) -> list[str]:
        with self._lock:
            return sorted(self._objects)


class InMemoryCacheBackend:
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._entries: Dict[str, tuple[bytes, bool, float]] = {}
        self._lock = threading.RLock()
        self._clock = clock

    async def get(self, key: str) -> tuple[bytes, bool] | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            payload, compressed, expires_at = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return payload, compressed

    async def set(self, key: str, payload: bytes, *, compressed: bool, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = (bytes(payload), compressed, self._clock() + ttl_seconds)

    async def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def raw(self, key: str) -> tuple[bytes, bool] | None:
        with self._lock:
            entry = self._entries.get(key)
            return (entry[0], entry[1]) if entry else None


class LocalKeyManagement:
    """Wraps keys with AES-256-GCM; ``context`` is bound as associated data."""

    def __init__(self, master_key: bytes | None = None) -> None:
        key = master_key or AESGCM.generate_key(bit_length=256)
        if len(key) != 32:
            raise InvalidInputError("master key must be 32 bytes")
        self._master = AESGCM(key)

    async def generate_data_key(self, *, context: str) -> tuple[bytearray, bytes]:
        plaintext = bytearray(os.urandom(32))
        return plaintext, self._wrap(plaintext, context)

    async def encrypt(self, plaintext: bytes, *, context: str) -> bytes:
        return self._wrap(plaintext, context)

    async def decrypt(self, wrapped: bytes, *, context: str) -> bytes:
        if len(wrapped) < 12 + 16:
            raise DecryptionFailed("wrapped payload is truncated")
        try:
            return self._master.decrypt(wrapped[:12], wrapped[12:], context.encode("utf-8"))
        except InvalidTag:
            raise DecryptionFailed("wrapped payload failed authentication") from None

    def _wrap(self, plaintext: bytes, context: str) -> bytes:
        nonce = os.urandom(12)
        return nonce + self._master.encrypt(nonce, plaintext, context.encode("utf-8"))


class LocalTextAnalysisEngine:
    """Analyses staged UTF-8 text.

    Every non-empty line is a LINE block; ``key: value`` lines also yield a
    KEY/VALUE pair and runs of ``|``-separated lines form a table. Jobs report
    IN_PROGRESS for ``polls_until_done`` status checks before completing.
    """

    def __init__(
        self,
        storage: InMemoryObjectStorage,
        *,
        polls_until_done: int = 1,
        confidence: float = 0.99,
    ) -> None:
        self._storage = storage
        self._polls_until_done = polls_until_done
        self._confidence = confidence
        self._jobs: Dict[str, dict] = {}
        self._lock = threading.RLock()

    async def submit_job(self, source: AnalysisSource, options: AnalysisOptions) -> str:
        job_id = f"local-{uuid.uuid4().hex}"
        with self._lock:
            self._jobs[job_id] = {"source": source, "polls": 0, "snapshot": None}
        return job_id

    async def get_job(self, job_id: str) -> EngineJobSnapshot:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return EngineJobSnapshot(job_id, EngineJobState.FAILED, error="unknown job")
            if job["snapshot"] is not None:
                return job["snapshot"]
            job["polls"] += 1
            if job["polls"] <= self._polls_until_done:
                return EngineJobSnapshot(job_id, EngineJobState.IN_PROGRESS)
            source: AnalysisSource = job["source"]
        snapshot = await self._analyse(job_id, source)
        with self._lock:
            job["snapshot"] = snapshot
        return snapshot

    async def _analyse(self, job_id: str, source: AnalysisSource) -> EngineJobSnapshot:
        path = source.uri[len(MEMORY_URI_PREFIX):] if source.uri.startswith(MEMORY_URI_PREFIX) else source.uri
        stored = await self._storage.get(path)
        if stored is None:
            return EngineJobSnapshot(job_id, EngineJobState.FAILED, error="source document not found")
        try:
            text = stored.data.decode("utf-8")
        except UnicodeDecodeError:
            return EngineJobSnapshot(
                job_id, EngineJobState.FAILED, error=f"unsupported document format {source.mime_type}"
            )
        return EngineJobSnapshot(job_id, EngineJobState.SUCCEEDED, blocks=tuple(self._blocks(text)))

    def _blocks(self, text: str) -> list[RawBlock]:
        blocks: list[RawBlock] = []
        table_rows: list[list[str]] = []

        def flush_table() -> None:
            if not table_rows:
                return
            table_id = f"t{len(blocks)}"
            cell_ids: list[str] = []
            for r, row in enumerate(table_rows, start=1):
                for c, value in enumerate(row, start=1):
                    cell_id = f"{table_id}-r{r}-c{c}"
                    cell_ids.append(cell_id)
                    blocks.append(
                        RawBlock(cell_id, BlockType.CELL, self._confidence, text=value, row_index=r, column_index=c)
                    )
            blocks.append(
                RawBlock(table_id, BlockType.TABLE, self._confidence, relationships={"CHILD": tuple(cell_ids)})
            )
            table_rows.clear()

        for index, raw_line in enumerate(text.splitlines()):
            line = raw_line.strip()
            if not line:
                flush_table()
                continue
            blocks.append(RawBlock(f"l{index}", BlockType.LINE, self._confidence, text=line))
            if "|" in line:
                table_rows.append([cell.strip() for cell in line.strip("|").split("|")])
                continue
            flush_table()
            key, sep, value = line.partition(":")
            if sep and key.strip() and value.strip():
                value_id = f"v{index}"
                blocks.append(RawBlock(value_id, BlockType.VALUE, self._confidence, text=value.strip()))
                blocks.append(
                    RawBlock(
                        f"k{index}",
                        BlockType.KEY,
                        self._confidence,
                        text=key.strip(),
                        relationships={"VALUE": (value_id,)},
                    )
                )
        flush_table()
        return blocks


__all__ = [
    "InMemoryCacheBackend",
    "InMemoryObjectStorage",
    "LocalKeyManagement",
    "LocalTextAnalysisEngine",
    "MEMORY_URI_PREFIX",
]
