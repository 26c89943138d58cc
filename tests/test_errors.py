"""Tests for the error hierarchy and classification."""

from __future__ import annotations

import pytest

from resourcegraph_exporter.errors import (
    CacheComputeError,
    ClientScopeError,
    DuplicateSeriesError,
    ExporterError,
    RemoteQueryError,
    classify_error,
)


@pytest.mark.parametrize(
    "exc, expected",
    [
        (RemoteQueryError("x", code="Timeout", transient=True), "timeout"),
        (RemoteQueryError("x", code="ConnectionError", transient=True), "connection_error"),
        (RemoteQueryError("x", status_code=200, code="InvalidResponse"), "invalid_response"),
        (RemoteQueryError("x", code="InvalidResponse"), "invalid_response"),
        (RemoteQueryError("x", code="TooManyPages"), "query_error"),
        (RemoteQueryError("x", status_code=429), "rate_limit"),
        (RemoteQueryError("x", status_code=502), "server_error"),
        (RemoteQueryError("x", status_code=401), "auth_error"),
        (RemoteQueryError("x", status_code=400), "query_error"),
        (DuplicateSeriesError("q", "m", {"a": "1"}), "duplicate_series"),
        (TimeoutError(), "timeout"),
        (KeyError("x"), "unknown_error"),
    ],
)
def test_classify_error(exc, expected):
    assert classify_error(exc) == expected


def test_cache_compute_error_classified_by_cause():
    wrapped = CacheComputeError(("q", "fp"), RemoteQueryError("x", status_code=403))
    assert classify_error(wrapped) == "auth_error"
    assert wrapped.details == {"stale_available": False}


def test_to_dict_is_serializable():
    err = ClientScopeError("unknown query", available_options=["a", "b"])
    data = err.to_dict()
    assert data["error_type"] == "client_scope_error"
    assert data["details"]["available_options"] == ["a", "b"]
    assert isinstance(err, ExporterError)


def test_duplicate_series_names_the_series():
    err = DuplicateSeriesError("vm_count", "azure_vm_count", {"location": "eu"})
    assert 'azure_vm_count{location="eu"}' in str(err)
