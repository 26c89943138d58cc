"""Test HTTP endpoint functionality with an injected exporter context."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from resourcegraph_exporter.adapters.client import RemoteQueryClient
from resourcegraph_exporter.domain.models import SubscriptionScope
from resourcegraph_exporter.errors import RemoteQueryError
from resourcegraph_exporter.server.app import ExporterContext
from resourcegraph_exporter.server.http import create_app
from resourcegraph_exporter.utils.retry import RetryPolicy

from conftest import (
    DISK_QUERY,
    DISK_ROWS,
    SUB_A,
    SUB_B,
    VM_COUNT_QUERY,
    VM_ROWS,
    FakeTransport,
    no_sleep,
)


def _context(settings, config, transport) -> ExporterContext:
    client = RemoteQueryClient(
        transport, RetryPolicy(max_attempts=1, jitter=0), sleep=no_sleep
    )
    return ExporterContext.create(
        settings, config, SubscriptionScope.of([SUB_A, SUB_B]), client
    )


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport({VM_COUNT_QUERY: [VM_ROWS], DISK_QUERY: [DISK_ROWS]})


@pytest.fixture
def client(settings, sample_config, transport):
    """Create a test client for the FastAPI app (lifespan included)."""
    app = create_app(context=_context(settings, sample_config, transport))
    with TestClient(app) as test_client:
        yield test_client


def test_health_and_ready(client):
    assert client.get("/health").json() == {"status": "ok"}
    assert client.get("/healthz").json() == {"status": "ok"}
    response = client.get("/ready")
    assert response.status_code == 200
    assert response.json() == {"status": "ready"}


def test_ready_is_503_before_startup(settings, sample_config, transport):
    app = create_app(context=_context(settings, sample_config, transport))
    # no context manager: lifespan never ran
    response = TestClient(app).get("/ready")
    assert response.status_code == 503
    assert response.json()["detail"]["error_type"] == "http_error"


def test_probe_returns_prometheus_text(client, transport):
    response = client.get("/probe", params={"query": "vm_count"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    body = response.text
    assert 'azure_vm_count{location="westeurope"} 3.0' in body
    assert 'azure_vm_count{location="eastus"} 1.0' in body
    assert 'resourcegraph_probe_query_success{query="vm_count"} 1.0' in body
    assert "azure_disk_size_gb" not in body
    assert transport.count(VM_COUNT_QUERY) == 1
    assert response.headers["x-correlation-id"]


def test_probe_accepts_repeated_and_comma_separated_params(client, transport):
    response = client.get(
        "/probe?query=vm_count,disks&subscription=" + SUB_B
    )
    assert response.status_code == 200
    assert "azure_disk_size_gb" in response.text
    assert {c[1] for c in transport.calls} == {(SUB_B,)}


def test_probe_unknown_subscription_is_400(client, transport):
    response = client.get("/probe", params={"subscription": "not-a-subscription"})
    assert response.status_code == 400
    detail = response.json()["detail"]
    assert detail["error_type"] == "client_scope_error"
    assert set(detail["available_options"]) == {SUB_A, SUB_B}
    assert transport.calls == []


def test_probe_unknown_query_lists_options(client):
    response = client.get("/probe", params={"query": "missing"})
    assert response.status_code == 400
    assert response.json()["detail"]["available_options"] == ["vm_count", "disks"]


def test_probe_all_failed_is_503(settings, sample_config):
    failing = FakeTransport(
        {
            VM_COUNT_QUERY: [RemoteQueryError("down", status_code=500, transient=True)],
            DISK_QUERY: [RemoteQueryError("down", status_code=500, transient=True)],
        }
    )
    app = create_app(context=_context(settings, sample_config, failing))
    with TestClient(app) as test_client:
        response = test_client.get("/probe")
    assert response.status_code == 503
    detail = response.json()["detail"]
    assert detail["error_type"] == "probe_failed"
    assert {q["query"] for q in detail["queries"]} == {"disks", "vm_count"}
    assert all(q["error_type"] == "server_error" for q in detail["queries"])


def test_probe_requires_token_when_configured(settings, sample_config, transport):
    secured = settings.model_copy(update={"http_token": "s3cret"})
    app = create_app(context=_context(secured, sample_config, transport))
    with TestClient(app) as test_client:
        assert test_client.get("/probe").status_code == 401
        assert (
            test_client.get(
                "/probe", headers={"Authorization": "Bearer wrong"}
            ).status_code
            == 403
        )
        ok = test_client.get(
            "/probe",
            params={"query": "vm_count"},
            headers={"Authorization": "Bearer s3cret"},
        )
        assert ok.status_code == 200
        # health stays open
        assert test_client.get("/health").status_code == 200


def test_scrape_timeout_header_is_accepted(client):
    response = client.get(
        "/probe",
        params={"query": "vm_count"},
        headers={"X-Prometheus-Scrape-Timeout-Seconds": "10"},
    )
    assert response.status_code == 200


def test_self_metrics_reflect_probes(client):
    client.get("/probe", params={"query": "vm_count"})
    client.get("/probe", params={"query": "vm_count"})
    body = client.get("/metrics").text

    assert 'resourcegraph_exporter_cache_misses_total{query="vm_count"} 1.0' in body
    assert 'resourcegraph_exporter_cache_hits_total{query="vm_count"} 1.0' in body
    assert 'resourcegraph_exporter_probe_requests_total{result="success"} 2.0' in body
    assert "resourcegraph_exporter_cache_entries 1.0" in body
