import pytest
from google.api_core import exceptions as gexc
from google.cloud import documentai_v1 as documentai

from docvault.backends.documentai import DocumentAiBatchEngine, document_to_blocks
from docvault.errors import AnalysisUnavailable, ConfigurationError, InvalidInputError
from docvault.models.analysis import AnalysisOptions, AnalysisSource, BlockType, EngineJobState
from docvault.services.normalizer import normalise_blocks
from tests.stubs.gcp_stub import (
    StubDocumentAiAsyncClient,
    StubStorageClient,
    finished_operation,
    pending_operation,
)

PROCESSOR = "projects/p/locations/us/processors/ocr"

TEXT = "Name: Jane\nDrug Dose\n"


def _anchor(start: int, end: int, confidence: float = 0.9) -> dict:
    return {"textAnchor": {"textSegments": [{"startIndex": str(start), "endIndex": str(end)}]}, "confidence": confidence}


DOCUMENT = {
    "text": TEXT,
    "pages": [
        {
            "pageNumber": 1,
            "lines": [{"layout": _anchor(0, 10, 0.98)}],
            "tables": [
                {
                    "layout": {"confidence": 0.9},
                    "headerRows": [{"cells": [{"layout": _anchor(11, 15)}, {"layout": _anchor(16, 20)}]}],
                    "bodyRows": [],
                }
            ],
            "formFields": [{"fieldName": _anchor(0, 4, 0.95), "fieldValue": _anchor(6, 10, 0.93)}],
        }
    ],
}


def _metadata(state, destination: str = "gs://out/analysis/abc/0", message: str = "") -> bytes:
    meta = documentai.BatchProcessMetadata(
        state=state,
        state_message=message,
        individual_process_statuses=[
            documentai.BatchProcessMetadata.IndividualProcessStatus(
                input_gcs_source="gs://staging/staging/doc/x.pdf",
                output_gcs_destination=destination,
            )
        ],
    )
    return documentai.BatchProcessMetadata.serialize(meta)


def _engine(operations, shards=None, **kwargs) -> tuple[DocumentAiBatchEngine, StubDocumentAiAsyncClient]:
    client = StubDocumentAiAsyncClient(operations, **kwargs)
    engine = DocumentAiBatchEngine(
        processor_name=PROCESSOR,
        output_bucket="out",
        client=client,
        storage_client=StubStorageClient(shards or {}),
    )
    return engine, client


def test_document_is_flattened_into_lines_tables_and_fields():
    blocks = document_to_blocks(DOCUMENT)
    kinds = [b.block_type for b in blocks]
    assert kinds.count(BlockType.LINE) == 1
    assert kinds.count(BlockType.CELL) == 2
    assert kinds.count(BlockType.KEY) == 1

    normalised = normalise_blocks(blocks)
    assert [tb.text for tb in normalised.text_blocks] == ["Name: Jane"]
    assert normalised.tables[0].rows == [["Drug", "Dose"]]
    assert [(kv.key, kv.value) for kv in normalised.key_values] == [("Name", "Jane")]
    assert normalised.confidence == pytest.approx(0.98)


def test_snake_case_documents_are_accepted():
    doc = {
        "text": "hi",
        "pages": [{"page_number": 2, "lines": [{"layout": {"text_anchor": {"text_segments": [{"end_index": 2}]}, "confidence": 0.7}}]}],
    }
    (block,) = document_to_blocks(doc)
    assert block.text == "hi"
    assert block.page == 2


def test_engine_requires_processor_and_bucket():
    with pytest.raises(ConfigurationError):
        DocumentAiBatchEngine(processor_name="", output_bucket="out", client=object(), storage_client=object())


@pytest.mark.asyncio
async def test_submit_builds_batch_request_and_returns_operation_name():
    engine, client = _engine([pending_operation()])
    source = AnalysisSource(document_ref="doc-1", uri="gs://staging/staging/doc-1/x.pdf")
    job_id = await engine.submit_job(source, AnalysisOptions())

    assert job_id == "projects/p/locations/us/operations/op-1"
    request = client.requests[0]
    assert request["name"] == PROCESSOR
    assert request["input_documents"]["gcs_documents"]["documents"][0]["gcs_uri"] == source.uri
    assert request["document_output_config"]["gcs_output_config"]["gcs_uri"].startswith("gs://out/analysis/")


@pytest.mark.asyncio
async def test_submit_error_mapping():
    source = AnalysisSource(document_ref="doc-1", uri="gs://s/x.pdf")
    engine, _ = _engine([pending_operation()], submit_error=gexc.InvalidArgument("bad mime"))
    with pytest.raises(InvalidInputError):
        await engine.submit_job(source, AnalysisOptions())
    engine, _ = _engine([pending_operation()], submit_error=gexc.ServiceUnavailable("down"))
    with pytest.raises(AnalysisUnavailable):
        await engine.submit_job(source, AnalysisOptions())


@pytest.mark.asyncio
async def test_job_progresses_and_reads_output_shards():
    shards = {"analysis/abc/0/doc-0.json": DOCUMENT, "analysis/abc/0/README.txt": {}}
    engine, _ = _engine(
        [pending_operation(), finished_operation(_metadata(documentai.BatchProcessMetadata.State.SUCCEEDED))],
        shards,
    )
    first = await engine.get_job("op-1")
    assert first.state is EngineJobState.IN_PROGRESS

    done = await engine.get_job("op-1")
    assert done.state is EngineJobState.SUCCEEDED
    assert any(b.text == "Name: Jane" for b in done.blocks)


@pytest.mark.asyncio
async def test_wrapped_document_shards_are_unwrapped():
    shards = {"analysis/abc/0/out.json": {"document": DOCUMENT}}
    engine, _ = _engine(
        [finished_operation(_metadata(documentai.BatchProcessMetadata.State.SUCCEEDED))], shards
    )
    snapshot = await engine.get_job("op-1")
    assert snapshot.state is EngineJobState.SUCCEEDED
    assert snapshot.blocks


@pytest.mark.asyncio
async def test_failed_operations_become_failed_snapshots():
    engine, _ = _engine([finished_operation(b"", error_code=3, error_message="document is corrupt")])
    snapshot = await engine.get_job("op-1")
    assert snapshot.state is EngineJobState.FAILED
    assert snapshot.error == "document is corrupt"

    engine, _ = _engine(
        [finished_operation(_metadata(documentai.BatchProcessMetadata.State.FAILED, message="quota"))]
    )
    snapshot = await engine.get_job("op-1")
    assert snapshot.state is EngineJobState.FAILED
    assert snapshot.error == "quota"


@pytest.mark.asyncio
async def test_status_transport_errors_are_unavailable():
    engine, _ = _engine([gexc.ServiceUnavailable("down")])
    with pytest.raises(AnalysisUnavailable):
        await engine.get_job("op-1")
