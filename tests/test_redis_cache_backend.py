import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from docvault.backends.redis_cache import RedisCacheBackend
from docvault.errors import CacheUnavailable
from docvault.services.result_cache import ResultCache
from tests.stubs.gcp_stub import StubRedis


@pytest.mark.asyncio
async def test_entries_are_namespaced_hashes_with_flag_and_ttl():
    client = StubRedis()
    backend = RedisCacheBackend(client)
    await backend.set("analysis:doc-1", b"payload", compressed=True, ttl_seconds=86400)

    assert client.hashes["docvault:analysis:doc-1"] == {"payload": b"payload", "compressed": b"1"}
    assert client.ttls["docvault:analysis:doc-1"] == 86400
    assert [c[0] for c in client.executed[0]] == ["delete", "hset", "expire"]
    assert await backend.get("analysis:doc-1") == (b"payload", True)


@pytest.mark.asyncio
async def test_miss_and_delete():
    client = StubRedis()
    backend = RedisCacheBackend(client, namespace="")
    assert await backend.get("metadata:x") is None
    await backend.set("metadata:x", b"{}", compressed=False, ttl_seconds=60)
    assert await backend.get("metadata:x") == (b"{}", False)
    await backend.delete("metadata:x")
    assert await backend.get("metadata:x") is None


@pytest.mark.asyncio
async def test_redis_errors_are_cache_unavailable():
    client = StubRedis()
    client.error = RedisConnectionError("refused")
    backend = RedisCacheBackend(client)
    with pytest.raises(CacheUnavailable):
        await backend.get("k")
    with pytest.raises(CacheUnavailable):
        await backend.set("k", b"v", compressed=False, ttl_seconds=1)
    with pytest.raises(CacheUnavailable):
        await backend.delete("k")

    outcome = await ResultCache(backend).get("k")
    assert outcome.is_unavailable


@pytest.mark.asyncio
async def test_large_results_survive_compression_through_redis():
    client = StubRedis()
    cache = ResultCache(RedisCacheBackend(client), compression_threshold=64)
    payload = b"x" * 10_000
    await cache.set("analysis:big", payload, 60)
    stored = client.hashes["docvault:analysis:big"]
    assert stored["compressed"] == b"1"
    assert len(stored["payload"]) < len(payload)
    assert (await cache.get("analysis:big")).value == payload


@pytest.mark.asyncio
async def test_aclose_closes_client():
    client = StubRedis()
    await RedisCacheBackend(client).aclose()
    assert client.closed
