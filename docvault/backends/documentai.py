"""Document AI batch analysis engine.

``submit_job`` starts a batch process for one staged document and returns the
long-running operation name as the job id. ``get_job`` reads the operation;
once it has succeeded the Document JSON shards written under the operation's
output prefix are collected and flattened into ``RawBlock``s (lines, table
cells, form fields). Output JSON uses camelCase keys, ``MessageToDict`` output
uses snake_case; both are accepted.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any, Dict, List, Mapping

from google.api_core import exceptions as gexc
from google.api_core.client_options import ClientOptions
from google.cloud import documentai_v1 as documentai
from google.cloud import storage  # type: ignore[attr-defined]
from google.longrunning import operations_pb2

from docvault.errors import AnalysisUnavailable, ConfigurationError, InvalidInputError
from docvault.models.analysis import (
    AnalysisOptions,
    AnalysisSource,
    BlockType,
    BoundingBox,
    EngineJobSnapshot,
    EngineJobState,
    RawBlock,
)

_LOG = logging.getLogger("docvault.documentai")

_TRANSIENT = (
    gexc.TooManyRequests,
    gexc.ResourceExhausted,
    gexc.InternalServerError,
    gexc.ServiceUnavailable,
    gexc.DeadlineExceeded,
    gexc.Aborted,
)

_FAILED_STATES = {
    documentai.BatchProcessMetadata.State.FAILED,
    documentai.BatchProcessMetadata.State.CANCELLED,
}


def _get(mapping: Mapping[str, Any], camel: str, snake: str, default: Any = None) -> Any:
    if camel in mapping:
        return mapping[camel]
    return mapping.get(snake, default)


def _split_gcs_uri(gcs_uri: str) -> tuple[str, str]:
    if not gcs_uri.startswith("gs://"):
        raise InvalidInputError(f"expected a gs:// URI, got '{gcs_uri}'")
    bucket, _, prefix = gcs_uri[5:].partition("/")
    if not bucket:
        raise InvalidInputError(f"GCS URI '{gcs_uri}' has no bucket")
    return bucket, prefix


def _layout_text(layout: Mapping[str, Any], text: str) -> str:
    anchor = _get(layout, "textAnchor", "text_anchor") or {}
    pieces: list[str] = []
    for segment in _get(anchor, "textSegments", "text_segments") or []:
        start = int(_get(segment, "startIndex", "start_index", 0) or 0)
        end = int(_get(segment, "endIndex", "end_index", 0) or 0)
        pieces.append(text[start:end])
    return "".join(pieces).strip()


def _bounding_box(layout: Mapping[str, Any]) -> BoundingBox | None:
    poly = _get(layout, "boundingPoly", "bounding_poly") or {}
    vertices = _get(poly, "normalizedVertices", "normalized_vertices") or []
    if not vertices:
        return None
    xs = [float(v.get("x", 0.0)) for v in vertices]
    ys = [float(v.get("y", 0.0)) for v in vertices]
    return BoundingBox(left=min(xs), top=min(ys), width=max(xs) - min(xs), height=max(ys) - min(ys))


def _confidence(layout: Mapping[str, Any]) -> float:
    return float(layout.get("confidence", 0.0) or 0.0)


def document_to_blocks(doc: Mapping[str, Any]) -> List[RawBlock]:
    """Flatten a Document AI ``Document`` dict into raw blocks."""
    text = doc.get("text") or ""
    blocks: List[RawBlock] = []
    for index, page in enumerate(doc.get("pages") or [], start=1):
        page_no = int(_get(page, "pageNumber", "page_number", index) or index)
        for i, line in enumerate(page.get("lines") or []):
            layout = line.get("layout") or {}
            blocks.append(
                RawBlock(
                    f"p{page_no}-l{i}",
                    BlockType.LINE,
                    _confidence(layout),
                    text=_layout_text(layout, text),
                    page=page_no,
                    geometry=_bounding_box(layout),
                )
            )
        for t, table in enumerate(page.get("tables") or []):
            table_id = f"p{page_no}-t{t}"
            rows = list(_get(table, "headerRows", "header_rows") or [])
            rows += list(_get(table, "bodyRows", "body_rows") or [])
            cell_ids: list[str] = []
            for r, row in enumerate(rows, start=1):
                for c, cell in enumerate(row.get("cells") or [], start=1):
                    cell_id = f"{table_id}-r{r}-c{c}"
                    layout = cell.get("layout") or {}
                    cell_ids.append(cell_id)
                    blocks.append(
                        RawBlock(
                            cell_id,
                            BlockType.CELL,
                            _confidence(layout),
                            text=_layout_text(layout, text),
                            page=page_no,
                            geometry=_bounding_box(layout),
                            row_index=r,
                            column_index=c,
                        )
                    )
            table_layout = table.get("layout") or {}
            blocks.append(
                RawBlock(
                    table_id,
                    BlockType.TABLE,
                    _confidence(table_layout),
                    page=page_no,
                    geometry=_bounding_box(table_layout),
                    relationships={"CHILD": tuple(cell_ids)},
                )
            )
        for f, form_field in enumerate(_get(page, "formFields", "form_fields") or []):
            name_layout = _get(form_field, "fieldName", "field_name") or {}
            value_layout = _get(form_field, "fieldValue", "field_value") or {}
            key_id, value_id = f"p{page_no}-f{f}-k", f"p{page_no}-f{f}-v"
            blocks.append(
                RawBlock(
                    value_id,
                    BlockType.VALUE,
                    _confidence(value_layout),
                    text=_layout_text(value_layout, text),
                    page=page_no,
                    geometry=_bounding_box(value_layout),
                )
            )
            blocks.append(
                RawBlock(
                    key_id,
                    BlockType.KEY,
                    _confidence(name_layout),
                    text=_layout_text(name_layout, text),
                    page=page_no,
                    geometry=_bounding_box(name_layout),
                    relationships={"VALUE": (value_id,)},
                )
            )
    return blocks


class DocumentAiBatchEngine:
    def __init__(
        self,
        *,
        processor_name: str,
        output_bucket: str,
        location: str = "us",
        kms_key_name: str | None = None,
        client: Any | None = None,
        storage_client: storage.Client | None = None,
    ) -> None:
        if not processor_name or not output_bucket:
            raise ConfigurationError("processor_name and output_bucket are required")
        self.processor_name = processor_name
        self.output_bucket = output_bucket
        self._kms_key_name = kms_key_name
        self._client = client or documentai.DocumentProcessorServiceAsyncClient(
            client_options=ClientOptions(api_endpoint=f"{location}-documentai.googleapis.com")
        )
        self._storage = storage_client or storage.Client()

    async def submit_job(self, source: AnalysisSource, options: AnalysisOptions) -> str:
        output_prefix = f"gs://{self.output_bucket}/analysis/{uuid.uuid4().hex}/"
        request: Dict[str, Any] = {
            "name": self.processor_name,
            "input_documents": {
                "gcs_documents": {
                    "documents": [{"gcs_uri": source.uri, "mime_type": source.mime_type}]
                }
            },
            "document_output_config": {"gcs_output_config": {"gcs_uri": output_prefix}},
            "skip_human_review": True,
        }
        try:
            operation = await self._client.batch_process_documents(request=request)
        except gexc.InvalidArgument as exc:
            raise InvalidInputError(f"document ai rejected the request: {exc.message}") from exc
        except (gexc.PermissionDenied, gexc.Unauthenticated, gexc.NotFound) as exc:
            raise ConfigurationError(f"document ai processor unusable: {exc.message}") from exc
        except _TRANSIENT as exc:
            raise AnalysisUnavailable(f"document ai submit failed: {exc.message}") from exc
        job_id = operation.operation.name
        _LOG.info(
            "documentai_batch_submitted",
            extra={"job_id": job_id, "output_prefix": output_prefix, "mime_type": source.mime_type},
        )
        return job_id

    async def get_job(self, job_id: str) -> EngineJobSnapshot:
        try:
            operation = await self._client.get_operation(
                request=operations_pb2.GetOperationRequest(name=job_id)
            )
        except gexc.NotFound:
            return EngineJobSnapshot(job_id, EngineJobState.FAILED, error="unknown job")
        except _TRANSIENT as exc:
            raise AnalysisUnavailable(f"document ai status check failed: {exc.message}", job_id=job_id) from exc

        if not operation.done:
            return EngineJobSnapshot(job_id, EngineJobState.IN_PROGRESS)
        error = getattr(operation, "error", None)
        if error is not None and getattr(error, "code", 0):
            return EngineJobSnapshot(job_id, EngineJobState.FAILED, error=error.message or "batch process failed")

        metadata = documentai.BatchProcessMetadata.deserialize(operation.metadata.value)
        if metadata.state in _FAILED_STATES:
            return EngineJobSnapshot(
                job_id, EngineJobState.FAILED, error=metadata.state_message or metadata.state.name
            )
        destinations = [
            status.output_gcs_destination
            for status in metadata.individual_process_statuses
            if status.output_gcs_destination
        ]
        if not destinations:
            return EngineJobSnapshot(job_id, EngineJobState.FAILED, error="batch process produced no output")
        documents = await asyncio.to_thread(self._read_output_documents, destinations, job_id)
        blocks: List[RawBlock] = []
        for doc in documents:
            blocks.extend(document_to_blocks(doc))
        return EngineJobSnapshot(job_id, EngineJobState.SUCCEEDED, blocks=tuple(blocks))

    def _read_output_documents(self, destinations: List[str], job_id: str) -> List[Dict[str, Any]]:
        documents: List[Dict[str, Any]] = []
        for destination in destinations:
            bucket_name, prefix = _split_gcs_uri(destination)
            try:
                blobs = sorted(self._storage.list_blobs(bucket_name, prefix=prefix), key=lambda b: b.name)
                for blob in blobs:
                    if not blob.name.endswith(".json"):
                        continue
                    parsed = json.loads(blob.download_as_bytes().decode("utf-8"))
                    # Shards hold either a Document or a wrapper with 'document'
                    doc = parsed.get("document") if isinstance(parsed, dict) else None
                    documents.append(doc or parsed)
            except (gexc.GoogleAPICallError, ConnectionError) as exc:
                raise AnalysisUnavailable(f"reading batch output failed: {exc}", job_id=job_id) from exc
        return documents


__all__ = ["DocumentAiBatchEngine", "document_to_blocks"]
