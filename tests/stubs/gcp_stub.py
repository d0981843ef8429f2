"""Local stand-ins for the Cloud KMS, Document AI, Cloud Storage and Redis clients."""

from __future__ import annotations

import json
from types import SimpleNamespace
from typing import Any, Dict, List


class StubKmsAsyncClient:
    """Async KMS client that XORs payloads, or raises ``error`` when set."""

    def __init__(self, *, error: BaseException | None = None) -> None:
        self.error = error
        self.requests: list[dict] = []

    async def encrypt(self, request: dict) -> SimpleNamespace:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return SimpleNamespace(ciphertext=bytes(b ^ 0x5A for b in request["plaintext"]))

    async def decrypt(self, request: dict) -> SimpleNamespace:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return SimpleNamespace(plaintext=bytes(b ^ 0x5A for b in request["ciphertext"]))


class StubDocumentAiAsyncClient:
    """Async Document AI client returning canned operations."""

    def __init__(self, operations: List[Any], *, submit_error: BaseException | None = None) -> None:
        self.operations = list(operations)
        self.submit_error = submit_error
        self.requests: list[dict] = []
        self.polled: list[str] = []

    async def batch_process_documents(self, request: dict) -> SimpleNamespace:
        if self.submit_error is not None:
            raise self.submit_error
        self.requests.append(request)
        return SimpleNamespace(operation=SimpleNamespace(name="projects/p/locations/us/operations/op-1"))

    async def get_operation(self, request: Any) -> Any:
        self.polled.append(request.name)
        step = self.operations.pop(0) if len(self.operations) > 1 else self.operations[0]
        if isinstance(step, BaseException):
            raise step
        return step


def pending_operation() -> SimpleNamespace:
    return SimpleNamespace(done=False, error=None, metadata=None)


def finished_operation(metadata_bytes: bytes, *, error_code: int = 0, error_message: str = "") -> SimpleNamespace:
    return SimpleNamespace(
        done=True,
        error=SimpleNamespace(code=error_code, message=error_message),
        metadata=SimpleNamespace(value=metadata_bytes),
    )


class _Blob:
    def __init__(self, name: str, payload: Dict[str, Any]) -> None:
        self.name = name
        self._payload = payload

    def download_as_bytes(self) -> bytes:
        return json.dumps(self._payload).encode("utf-8")


class StubStorageClient:
    """Lists canned JSON shards per ``(bucket, prefix)``."""

    def __init__(self, shards: Dict[str, Dict[str, Any]]) -> None:
        self.shards = shards
        self.listed: list[tuple[str, str]] = []

    def list_blobs(self, bucket: str, prefix: str = "") -> list[_Blob]:
        self.listed.append((bucket, prefix))
        return [_Blob(name, payload) for name, payload in self.shards.items() if name.startswith(prefix)]


class _StubPipeline:
    def __init__(self, client: "StubRedis") -> None:
        self._client = client
        self.commands: list[tuple] = []

    async def __aenter__(self) -> "_StubPipeline":
        return self

    async def __aexit__(self, *_exc: object) -> None:
        return None

    def delete(self, name: str) -> None:
        self.commands.append(("delete", name))

    def hset(self, name: str, mapping: Dict[str, bytes]) -> None:
        self.commands.append(("hset", name, dict(mapping)))

    def expire(self, name: str, seconds: int) -> None:
        self.commands.append(("expire", name, seconds))

    async def execute(self) -> list:
        if self._client.error is not None:
            raise self._client.error
        for command in self.commands:
            if command[0] == "delete":
                self._client.hashes.pop(command[1], None)
            elif command[0] == "hset":
                self._client.hashes[command[1]] = command[2]
            else:
                self._client.ttls[command[1]] = command[2]
        self._client.executed.append(list(self.commands))
        return [True] * len(self.commands)


class StubRedis:
    """Subset of ``redis.asyncio.Redis`` used by the cache backend."""

    def __init__(self) -> None:
        self.hashes: Dict[str, Dict[str, bytes]] = {}
        self.ttls: Dict[str, int] = {}
        self.executed: list[list[tuple]] = []
        self.error: BaseException | None = None
        self.closed = False

    async def hmget(self, name: str, keys: list[str]) -> list[bytes | None]:
        if self.error is not None:
            raise self.error
        entry = self.hashes.get(name, {})
        return [entry.get(key) for key in keys]

    def pipeline(self, transaction: bool = True) -> _StubPipeline:
        return _StubPipeline(self)

    async def delete(self, name: str) -> int:
        if self.error is not None:
            raise self.error
        return int(self.hashes.pop(name, None) is not None)

    async def aclose(self) -> None:
        self.closed = True
