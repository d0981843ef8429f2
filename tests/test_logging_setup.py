from __future__ import annotations

import io
import json
import logging
import uuid

import pytest

from docvault.logging_setup import JsonFormatter, configure_logging, correlation_context, set_correlation_id
from docvault.utils.logging_filter import SecretRedactFilter
from docvault.utils.logging_utils import stage_marker, structured_log
from docvault.utils.redact import REDACTION_TOKEN


def _json_logger() -> tuple[logging.Logger, io.StringIO]:
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(JsonFormatter())
    handler.addFilter(SecretRedactFilter())
    logger = logging.getLogger(f"docvault-test-{uuid.uuid4()}")
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    logger.handlers.clear()
    logger.addHandler(handler)
    return logger, stream


def _records(stream: io.StringIO) -> list[dict]:
    return [json.loads(line) for line in stream.getvalue().splitlines() if line.strip()]


def test_json_formatter_includes_correlation_id_and_extras():
    logger, stream = _json_logger()
    with correlation_context("req-42") as cid:
        structured_log(logger, logging.INFO, "object_deleted", path="medical/x/y.pdf", status="deleted")
    assert cid == "req-42"
    (record,) = _records(stream)
    assert record["msg"] == "object_deleted"
    assert record["event"] == "object_deleted"
    assert record["correlation_id"] == "req-42"
    assert record["path"] == "medical/x/y.pdf"
    assert "_structured_log" not in record


def test_correlation_id_is_reset_after_context():
    logger, stream = _json_logger()
    set_correlation_id(None)
    with correlation_context():
        pass
    logger.info("after")
    assert "correlation_id" not in _records(stream)[0]


def test_structured_log_drops_unknown_and_empty_fields():
    logger, stream = _json_logger()
    structured_log(logger, logging.INFO, "cache_miss", plaintext="secret", job_id=None, document_id="d1")
    (record,) = _records(stream)
    assert "plaintext" not in record
    assert "job_id" not in record
    assert record["document_id"] == "d1"


def test_stage_marker_logs_start_and_failure():
    logger, stream = _json_logger()
    with pytest.raises(RuntimeError):
        with stage_marker(logger, stage="object_upload", path="a/b.pdf"):
            raise RuntimeError("boom")
    start, end = _records(stream)
    assert start["status"] == "started"
    assert end["status"] == "failed"
    assert end["error_type"] == "RuntimeError"
    assert end["level"] == "ERROR"
    assert isinstance(end["duration_ms"], int)


@pytest.mark.asyncio
async def test_stage_marker_async_completion_fields():
    logger, stream = _json_logger()
    async with stage_marker(logger, stage="document_upload", document_id="d1") as marker:
        marker.add_completion_fields(bytes=10, unknown="dropped")
    _, end = _records(stream)
    assert end["status"] == "completed"
    assert end["bytes"] == 10
    assert "unknown" not in end


def test_key_material_never_reaches_json_output():
    logger, stream = _json_logger()
    logger.warning(
        "unwrap failed for %s",
        "owner@example.com",
        extra={"wrapped_key": "AbCdEf", "detail": {"ssn": "123-45-6789"}},
    )
    (record,) = _records(stream)
    assert "owner@example.com" not in record["msg"]
    assert record["wrapped_key"] == REDACTION_TOKEN
    assert "123-45-6789" not in json.dumps(record)


def test_configure_logging_installs_a_single_json_handler():
    root = logging.getLogger()
    saved_level, saved_handlers = root.level, list(root.handlers)
    try:
        first = configure_logging("DEBUG")
        second = configure_logging(logging.WARNING)
        assert first is second
        assert isinstance(first.formatter, JsonFormatter)
        assert root.level == logging.WARNING
        assert sum(isinstance(h.formatter, JsonFormatter) for h in root.handlers) == 1
        replaced = configure_logging(force=True)
        assert replaced is not first
        assert first not in root.handlers
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
