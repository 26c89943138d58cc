"""Tests for name validation and cell coercion utilities."""

import math

import pytest

from resourcegraph_exporter.domain.models import MetricSample, SubscriptionScope
from resourcegraph_exporter.domain.utils.validation import (
    coerce_value,
    format_label_value,
    is_valid_label_name,
    is_valid_metric_name,
    sanitize_metric_name,
)


@pytest.mark.parametrize(
    "name, valid",
    [("azure_vm_count", True), ("ns:metric", True), ("1st", False), ("a-b", False)],
)
def test_metric_names(name, valid):
    assert is_valid_metric_name(name) is valid


@pytest.mark.parametrize(
    "name, valid",
    [("location", True), ("_x", True), ("__name__", False), ("a:b", False)],
)
def test_label_names(name, valid):
    assert is_valid_label_name(name) is valid


def test_sanitize_metric_name():
    assert sanitize_metric_name("azure_microsoft.compute/disks") == "azure_microsoft_compute_disks"
    assert sanitize_metric_name("9lives") == "_9lives"
    assert sanitize_metric_name("a -- b") == "a_b"
    assert sanitize_metric_name("///") is None


@pytest.mark.parametrize(
    "cell, expected",
    [
        (None, ""),
        (True, "true"),
        (False, "false"),
        (7, "7"),
        (2.0, "2"),
        (2.5, "2.5"),
        ("westeurope", "westeurope"),
        ([1, "a"], '[1,"a"]'),
    ],
)
def test_format_label_value(cell, expected):
    assert format_label_value(cell) == expected


def test_coerce_value():
    assert coerce_value(3) == 3.0
    assert coerce_value(" 4.5 ") == 4.5
    assert coerce_value(True) == 1.0
    assert coerce_value("false") == 0.0
    assert math.isnan(coerce_value("NaN"))
    assert coerce_value("+Inf") == math.inf
    assert coerce_value(None) is None
    assert coerce_value("eastus") is None
    assert coerce_value({"a": 1}) is None


def test_subscription_scope_fingerprint_is_order_sensitive_and_stable():
    ab = SubscriptionScope.of(["A", "b", "a"])
    assert ab.subscription_ids == ("a", "b")
    assert ab.fingerprint() == SubscriptionScope.of(["a", "b"]).fingerprint()
    assert ab.fingerprint() != SubscriptionScope.of(["b", "a"]).fingerprint()
    assert "A" in ab
    assert ab.restrict(["c"]) is None
    assert ab.restrict(["B"]).subscription_ids == ("b",)


def test_subscription_scope_rejects_empty():
    with pytest.raises(ValueError):
        SubscriptionScope.of([])


def test_series_key_ignores_label_order():
    one = MetricSample.create("m", {"a": "1", "b": "2"}, 1)
    two = MetricSample.create("m", {"b": "2", "a": "1"}, 5)
    assert one.series_key() == two.series_key()
