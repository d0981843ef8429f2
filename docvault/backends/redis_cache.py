"""Redis cache backend (``redis.asyncio``).

Each entry is a hash with a ``payload`` field and a ``compressed`` flag field,
written and expired in one transaction.
"""

from __future__ import annotations

import logging
from typing import Any

from redis import asyncio as redis
from redis.exceptions import RedisError

from docvault.errors import CacheUnavailable

LOG = logging.getLogger(__name__)

_PAYLOAD = "payload"
_COMPRESSED = "compressed"


class RedisCacheBackend:
    def __init__(self, client: Any, namespace: str = "docvault") -> None:
        self._client = client
        self._ns = (namespace + ":") if namespace else ""

    @classmethod
    def from_url(cls, url: str, namespace: str = "docvault", **kwargs: Any) -> "RedisCacheBackend":
        return cls(redis.from_url(url, decode_responses=False, **kwargs), namespace=namespace)

    def _k(self, key: str) -> str:
        return self._ns + key

    async def get(self, key: str) -> tuple[bytes, bool] | None:
        try:
            payload, compressed = await self._client.hmget(self._k(key), [_PAYLOAD, _COMPRESSED])
        except RedisError as exc:
            raise CacheUnavailable(f"redis get failed: {exc}") from exc
        if payload is None:
            return None
        return bytes(payload), compressed in (b"1", "1")

    async def set(self, key: str, payload: bytes, *, compressed: bool, ttl_seconds: int) -> None:
        name = self._k(key)
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.delete(name)
                pipe.hset(name, mapping={_PAYLOAD: payload, _COMPRESSED: b"1" if compressed else b"0"})
                pipe.expire(name, ttl_seconds)
                await pipe.execute()
        except RedisError as exc:
            raise CacheUnavailable(f"redis set failed: {exc}") from exc

    async def delete(self, key: str) -> None:
        try:
            await self._client.delete(self._k(key))
        except RedisError as exc:
            raise CacheUnavailable(f"redis delete failed: {exc}") from exc

    async def aclose(self) -> None:
        await self._client.aclose()


__all__ = ["RedisCacheBackend"]
