"""Tests for logging setup, correlation ids and self-metrics."""

from __future__ import annotations

import json
import logging

import pytest

from resourcegraph_exporter.observability import setup_logging
from resourcegraph_exporter.observability.metrics import SelfMetrics
from resourcegraph_exporter.utils.correlation import get_request_id, set_request_id


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def test_json_logs_include_extra_fields(capsys, restore_root_logger):
    setup_logging("INFO", json_logs=True)
    logging.getLogger("resourcegraph_exporter.test").info(
        "probe.done", extra={"queries": 2, "req_id": "abc"}
    )
    line = capsys.readouterr().err.strip().splitlines()[-1]
    record = json.loads(line)
    assert record["event"] == "probe.done"
    assert record["queries"] == 2
    assert record["req_id"] == "abc"
    assert record["level"] == "info"


def test_text_logs_respect_level(capsys, restore_root_logger):
    setup_logging("WARNING")
    log = logging.getLogger("resourcegraph_exporter.test")
    log.info("hidden")
    log.warning("shown")
    err = capsys.readouterr().err
    assert "shown" in err
    assert "hidden" not in err
    assert logging.getLogger("httpx").level == logging.WARNING


def test_request_id_generated_and_kept():
    generated = set_request_id()
    assert len(generated) == 32
    assert get_request_id() == generated
    assert set_request_id("from-header") == "from-header"
    assert get_request_id() == "from-header"


def test_self_metrics_use_private_registry():
    first, second = SelfMetrics(), SelfMetrics(cache_size=lambda: 7)
    first.probe_requests.labels(result="success").inc()
    first.observe_refresh("q", 0.5, {"value_coercion_error": 2})

    assert first.registry.get_sample_value(
        "resourcegraph_exporter_probe_requests_total", {"result": "success"}
    ) == 1
    assert second.registry.get_sample_value(
        "resourcegraph_exporter_probe_requests_total", {"result": "success"}
    ) is None
    assert first.registry.get_sample_value(
        "resourcegraph_exporter_query_rows_skipped_total",
        {"query": "q", "reason": "value_coercion_error"},
    ) == 2
    assert first.registry.get_sample_value(
        "resourcegraph_exporter_query_duration_seconds_count", {"query": "q"}
    ) == 1
    assert second.registry.get_sample_value("resourcegraph_exporter_cache_entries") == 7
    assert b"resourcegraph_exporter_query_last_success_timestamp_seconds" in first.render()
