import gzip

import pytest

from docvault.backends.memory import InMemoryCacheBackend
from docvault.errors import InvalidInputError
from docvault.models.analysis import AnalysisResult, AnalysisStatus, TextBlock
from docvault.services.result_cache import ResultCache, analysis_key, metadata_key
from tests.stubs.backend_stubs import BrokenCacheBackend, SlowCacheBackend
from tests.stubs.clock_stub import FakeClock


@pytest.mark.asyncio
async def test_small_payloads_are_stored_uncompressed():
    backend = InMemoryCacheBackend()
    cache = ResultCache(backend, compression_threshold=1024)
    assert await cache.set("metadata:1", b'{"a":1}', 60)
    assert backend.raw("metadata:1") == (b'{"a":1}', False)
    outcome = await cache.get("metadata:1")
    assert outcome.is_ok and outcome.value == b'{"a":1}'


@pytest.mark.asyncio
async def test_large_payloads_carry_a_compression_flag():
    backend = InMemoryCacheBackend()
    cache = ResultCache(backend, compression_threshold=1024)
    payload = b"row,value\n" * 500
    await cache.set("analysis:doc", payload, 60)

    stored, compressed = backend.raw("analysis:doc")
    assert compressed is True
    assert gzip.decompress(stored) == payload
    assert (await cache.get("analysis:doc")).value == payload


@pytest.mark.asyncio
async def test_miss_and_expiry_are_not_found():
    clock = FakeClock()
    cache = ResultCache(InMemoryCacheBackend(clock=clock))
    assert (await cache.get("analysis:none")).is_not_found
    await cache.set("analysis:soon", b"x", 10)
    clock.advance(10)
    assert (await cache.get("analysis:soon")).is_not_found


@pytest.mark.asyncio
async def test_backend_faults_become_unavailable_and_dropped_writes():
    backend = BrokenCacheBackend()
    cache = ResultCache(backend)
    outcome = await cache.get("analysis:doc")
    assert outcome.is_unavailable
    assert "connection refused" in outcome.reason
    assert await cache.set("analysis:doc", b"x", 60) is False
    assert await cache.remove("analysis:doc") is False
    assert backend.calls == 3


@pytest.mark.asyncio
async def test_slow_backend_is_bounded_by_timeout():
    cache = ResultCache(SlowCacheBackend(delay=1.0), timeout_seconds=0.01)
    assert (await cache.get("metadata:x")).is_unavailable


@pytest.mark.asyncio
async def test_corrupt_compressed_entry_is_evicted():
    backend = InMemoryCacheBackend()
    await backend.set("analysis:bad", b"not gzip", compressed=True, ttl_seconds=60)
    cache = ResultCache(backend)
    assert (await cache.get("analysis:bad")).is_not_found
    assert backend.raw("analysis:bad") is None


@pytest.mark.asyncio
async def test_damaged_deflate_stream_is_a_miss_not_an_error():
    backend = InMemoryCacheBackend()
    cache = ResultCache(backend, compression_threshold=64)
    payload = b"".join(f"block {i} confidence 0.{i % 97:02d};".encode() for i in range(300))
    assert await cache.set("analysis:zz", payload, 60)
    body, compressed = backend.raw("analysis:zz")
    assert compressed is True
    damaged = bytearray(body)
    damaged[len(damaged) // 2] ^= 0xFF
    await backend.set("analysis:zz", bytes(damaged), compressed=True, ttl_seconds=60)

    assert (await cache.get("analysis:zz")).is_not_found
    assert backend.raw("analysis:zz") is None


@pytest.mark.asyncio
async def test_rejects_bad_keys_and_ttls():
    cache = ResultCache(InMemoryCacheBackend())
    with pytest.raises(InvalidInputError):
        await cache.get("")
    with pytest.raises(InvalidInputError):
        await cache.set("metadata:x", b"x", 0)


@pytest.mark.asyncio
async def test_analysis_results_round_trip_and_are_marked_cached():
    backend = InMemoryCacheBackend()
    cache = ResultCache(backend)
    result = AnalysisResult(
        job_id="job-1",
        document_ref="doc-1",
        status=AnalysisStatus.SUCCEEDED,
        text_blocks=[TextBlock(text="Patient: Jane", confidence=0.99)],
        confidence=0.99,
    )
    await cache.set_analysis(result, 120)
    assert backend.raw(analysis_key("doc-1")) is not None

    loaded = await cache.get_analysis("doc-1")
    assert loaded.is_ok
    assert loaded.value.cached is True
    assert loaded.value.text == "Patient: Jane"
    assert loaded.value.confidence == 0.99


@pytest.mark.asyncio
async def test_metadata_helpers_use_their_own_namespace():
    backend = InMemoryCacheBackend()
    cache = ResultCache(backend)
    await cache.set_metadata("doc-1", {"path": "medical/x/y.pdf"})
    assert backend.raw(metadata_key("doc-1")) is not None
    assert (await cache.get_metadata("doc-1")).value == {"path": "medical/x/y.pdf"}
    await cache.remove_metadata("doc-1")
    assert (await cache.get_metadata("doc-1")).is_not_found
