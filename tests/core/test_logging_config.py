"""
Unit Tests for the log formatters

Tests cover:
- JSON lines carry the bound execution/tenant and the request id
- extra fields land under "context"
- StandardFormatter appends the trace ids
"""

import json
import logging

import pytest

from hookflow.core.logging_config import (
    JSONFormatter,
    StandardFormatter,
    bind_execution,
    clear_execution,
    clear_request_id,
    set_request_id,
)


def _record(message="Node n1 completed", **extra):
    record = logging.LogRecord("hookflow.core.runner", logging.INFO, __file__, 10, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.fixture(autouse=True)
def clean_context():
    yield
    clear_execution()
    clear_request_id()


@pytest.mark.unit
def test_json_formatter_includes_bound_execution():
    bind_execution("exec-1", "acme")

    line = json.loads(JSONFormatter().format(_record(job_id="job-9")))

    assert line["message"] == "Node n1 completed"
    assert line["level"] == "INFO"
    assert line["execution_id"] == "exec-1"
    assert line["tenant_id"] == "acme"
    assert line["context"] == {"job_id": "job-9"}
    assert "request_id" not in line


@pytest.mark.unit
def test_json_formatter_without_context():
    line = json.loads(JSONFormatter().format(_record()))

    assert "execution_id" not in line
    assert "context" not in line


@pytest.mark.unit
def test_standard_formatter_appends_trace_ids():
    set_request_id("req-1")

    text = StandardFormatter().format(_record())

    assert text.endswith("Node n1 completed (request_id=req-1)")


@pytest.mark.unit
def test_clear_execution():
    bind_execution("exec-1", "acme")
    clear_execution()

    line = json.loads(JSONFormatter().format(_record()))

    assert "execution_id" not in line
    assert "tenant_id" not in line
