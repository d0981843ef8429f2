import asyncio
import base64

import pytest

from docvault.backends.memory import InMemoryObjectStorage
from docvault.errors import (
    DecryptionFailed,
    DocumentNotFound,
    IntegrityCheckFailed,
    InvalidInputError,
    StorageUnavailable,
)
from docvault.models.analysis import AnalysisSource
from docvault.models.documents import META_CHECKSUM, META_WRAPPED_KEY, DocumentType, StoredDocumentRef
from docvault.services.document_service import DecryptedStagingProvider
from docvault.services.encryption import EncryptionEngine
from docvault.services.key_service import KeyServiceClient
from docvault.services.object_store import ResilientObjectStore, content_checksum, normalise_path
from docvault.services.repository import InMemoryDocumentRepository
from docvault.services.resilience import BreakerState, CircuitBreaker
from tests.stubs.backend_stubs import (
    FAST_RETRY,
    CountingKeyBackend,
    FlakyObjectStorage,
    HangingObjectStorage,
    OverlapTrackingStorage,
)


def _store(backend=None, *, breaker=None, replica=None, timeout_seconds=10.0) -> ResilientObjectStore:
    keys = KeyServiceClient(CountingKeyBackend(), breaker=CircuitBreaker("key_service"), policy=FAST_RETRY)
    return ResilientObjectStore(
        backend if backend is not None else InMemoryObjectStorage(),
        EncryptionEngine(keys),
        breaker=breaker or CircuitBreaker("object_store"),
        policy=FAST_RETRY,
        replica=replica,
        timeout_seconds=timeout_seconds,
    )


@pytest.mark.asyncio
async def test_upload_persists_only_ciphertext_with_integrity_metadata():
    backend = InMemoryObjectStorage()
    store = _store(backend)
    path = await store.upload(b"blood pressure 120/80", "/medical/owner/doc.pdf", "application/pdf")

    assert path == "medical/owner/doc.pdf"
    stored = await backend.get(path)
    assert b"blood pressure" not in stored.data
    assert stored.metadata[META_CHECKSUM] == content_checksum(stored.data)
    assert stored.metadata[META_WRAPPED_KEY]
    assert stored.content_type == "application/pdf"
    assert await store.download(path) == b"blood pressure 120/80"


@pytest.mark.asyncio
async def test_corrupted_ciphertext_fails_integrity_check():
    backend = InMemoryObjectStorage()
    store = _store(backend)
    path = await store.upload(b"policy number 991", "insurance/o/a.pdf")
    stored = await backend.get(path)
    corrupted = bytearray(stored.data)
    corrupted[-1] ^= 0xFF
    await backend.put(path, bytes(corrupted), content_type="application/pdf", metadata=stored.metadata)

    with pytest.raises(IntegrityCheckFailed) as excinfo:
        await store.download(path)
    assert excinfo.value.path == path


@pytest.mark.asyncio
async def test_missing_integrity_metadata_is_an_integrity_failure():
    backend = InMemoryObjectStorage()
    store = _store(backend)
    path = await store.upload(b"abc", "personal/o/a.txt")
    stored = await backend.get(path)
    await backend.put(path, stored.data, content_type="text/plain", metadata={})
    with pytest.raises(IntegrityCheckFailed):
        await store.download(path)


@pytest.mark.asyncio
async def test_download_of_missing_object_raises_not_found():
    with pytest.raises(DocumentNotFound):
        await _store().download("passwords/o/missing.txt")


@pytest.mark.asyncio
async def test_delete_reports_whether_something_was_removed():
    store = _store()
    path = await store.upload(b"x", "passwords/o/x.txt")
    assert await store.exists(path)
    assert await store.delete(path) is True
    assert await store.delete(path) is False
    assert not await store.exists(path)


@pytest.mark.asyncio
async def test_metadata_lookup_distinguishes_missing_from_unavailable():
    backend = FlakyObjectStorage()
    store = _store(backend, breaker=CircuitBreaker("object_store", failure_threshold=50))
    path = await store.upload(b"0123456789", "medical/o/m.pdf", "application/pdf")

    found = await store.get_metadata(path)
    assert found.is_ok
    assert found.value["content_type"] == "application/pdf"
    assert found.value["size_bytes"] == 1 + 12 + 10 + 16
    assert (await store.get_metadata("medical/o/none.pdf")).is_not_found

    backend.down = True
    assert (await store.get_metadata(path)).is_unavailable


@pytest.mark.asyncio
async def test_outage_opens_breaker_and_later_calls_fail_fast():
    backend = FlakyObjectStorage(down=True, error=lambda: ConnectionError("reset"))
    breaker = CircuitBreaker("object_store", failure_threshold=3)
    store = _store(backend, breaker=breaker)

    with pytest.raises(StorageUnavailable):
        await store.download("medical/o/a.pdf")
    assert breaker.state is BreakerState.OPEN
    calls_before = backend.calls

    with pytest.raises(StorageUnavailable):
        await store.delete("medical/o/a.pdf")
    assert backend.calls == calls_before


@pytest.mark.asyncio
async def test_replication_failure_does_not_fail_the_upload():
    replica = FlakyObjectStorage(down=True)
    store = _store(replica=replica)
    path = await store.upload(b"copy me", "personal/o/r.txt")
    await store.drain()
    assert replica.calls == 1
    assert await store.download(path) == b"copy me"


@pytest.mark.asyncio
async def test_replica_receives_identical_ciphertext():
    primary, replica = InMemoryObjectStorage(), InMemoryObjectStorage()
    store = _store(primary, replica=replica)
    path = await store.upload(b"copy me", "personal/o/r.txt")
    await store.drain()
    assert (await replica.get(path)).data == (await primary.get(path)).data


@pytest.mark.asyncio
async def test_altered_checksum_metadata_fails_integrity_check():
    backend = InMemoryObjectStorage()
    store = _store(backend)
    path = await store.upload(b"claim 4471", "insurance/o/c.pdf")
    stored = await backend.get(path)
    checksum = stored.metadata[META_CHECKSUM]
    altered = ("0" if checksum[0] != "0" else "1") + checksum[1:]
    await backend.put(
        path,
        stored.data,
        content_type="application/pdf",
        metadata={**stored.metadata, META_CHECKSUM: altered},
    )

    with pytest.raises(IntegrityCheckFailed):
        await store.download(path)


@pytest.mark.asyncio
async def test_tampered_wrapped_key_fails_decryption():
    backend = InMemoryObjectStorage()
    store = _store(backend)
    path = await store.upload(b"claim 4471", "insurance/o/c.pdf")
    stored = await backend.get(path)
    wrapped = bytearray(base64.b64decode(stored.metadata[META_WRAPPED_KEY]))
    wrapped[-1] ^= 0x01
    await backend.put(
        path,
        stored.data,
        content_type="application/pdf",
        metadata={**stored.metadata, META_WRAPPED_KEY: base64.b64encode(bytes(wrapped)).decode("ascii")},
    )

    with pytest.raises(DecryptionFailed):
        await store.download(path)


@pytest.mark.asyncio
async def test_hanging_replica_is_abandoned_after_the_timeout():
    replica = HangingObjectStorage(hang_put=True)
    breaker = CircuitBreaker("object_store")
    store = _store(replica=replica, breaker=breaker, timeout_seconds=0.05)
    path = await store.upload(b"copy me", "personal/o/h.txt")

    await asyncio.wait_for(store.drain(), 2.0)

    assert replica.started == [f"put:{path}"]
    assert breaker.state is BreakerState.CLOSED
    assert await store.download(path) == b"copy me"


@pytest.mark.asyncio
async def test_same_path_uploads_are_serialised_and_different_paths_overlap():
    backend = OverlapTrackingStorage(write_delay=0.05)
    store = _store(backend)

    await asyncio.gather(
        store.upload(b"first", "medical/o/same.pdf"),
        store.upload(b"second", "medical/o/same.pdf"),
    )
    assert backend.max_same_path == 1
    assert backend.max_in_flight == 1
    assert await store.download("medical/o/same.pdf") in (b"first", b"second")

    await asyncio.gather(
        store.upload(b"left", "medical/o/left.pdf"),
        store.upload(b"right", "medical/o/right.pdf"),
    )
    assert backend.max_same_path == 1
    assert backend.max_in_flight == 2


def _staging_provider(staging, repository=None, store=None):
    return DecryptedStagingProvider(
        store=store or _store(),
        repository=repository or InMemoryDocumentRepository(),
        staging=staging,
        uri_prefix="mem://staging",
        policy=FAST_RETRY,
        timeout_seconds=0.05,
    )


@pytest.mark.asyncio
async def test_hanging_staging_delete_surfaces_as_unavailable():
    staging = HangingObjectStorage(hang_delete=True)
    provider = _staging_provider(staging)
    source = AnalysisSource(document_ref="doc-1", uri="mem://staging/staging/doc-1/a.txt", mime_type="text/plain")

    with pytest.raises(StorageUnavailable):
        await asyncio.wait_for(provider.release(source), 2.0)
    assert staging.started == ["delete:staging/doc-1/a.txt"]


@pytest.mark.asyncio
async def test_hanging_staging_write_surfaces_as_unavailable():
    store = _store()
    repository = InMemoryDocumentRepository()
    path = await store.upload(b"line one", "personal/o/s.txt", "text/plain")
    await repository.add(
        StoredDocumentRef(
            document_id="doc-2",
            owner_ref="o",
            path=path,
            document_type=DocumentType.PERSONAL,
            content_type="text/plain",
            size_bytes=8,
            checksum="c",
            encrypted_name="n",
        )
    )
    staging = HangingObjectStorage(hang_put=True)
    provider = _staging_provider(staging, repository, store)

    with pytest.raises(StorageUnavailable):
        await asyncio.wait_for(provider.stage("doc-2"), 2.0)
    assert len(staging.started) == FAST_RETRY.attempts
    assert staging.paths() == []


@pytest.mark.parametrize("bad", ["", "/", "a/../b.pdf", "a//b.pdf", "folder/"])
def test_normalise_path_rejects_ambiguous_paths(bad):
    with pytest.raises(InvalidInputError):
        normalise_path(bad)
