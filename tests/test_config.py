"""Tests for query config loading and process settings."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from resourcegraph_exporter.config.models import AppConfig, EnvSettings, interpolate
from resourcegraph_exporter.errors import ConfigError

from conftest import SAMPLE_CONFIG

YAML_CONFIG = """
queries:
  - name: vm_count
    query: Resources | where subscriptionId == "${SUB}" | summarize count = count() by location
    metric:
      name: azure_vm_count
      labels:
        location: location
      value: count
    cacheTTL: 300
  - name: info
    module: inventory
    query: Resources | project id
    metric: azure_resource_info
"""


def test_load_yaml_with_interpolation(tmp_path: Path):
    path = tmp_path / "queries.yaml"
    path.write_text(YAML_CONFIG, encoding="utf-8")

    cfg = AppConfig.load(path, environ={"SUB": "abc"})

    assert cfg.names() == ["vm_count", "info"]
    assert 'subscriptionId == "abc"' in cfg.get("vm_count").query
    assert cfg.get("vm_count").effective_ttl(120) == 300
    assert cfg.get("info").effective_ttl(120) == 120
    assert cfg.get("info").metric.name == "azure_resource_info"
    assert cfg.modules() == ["inventory"]


def test_load_json(tmp_path: Path):
    path = tmp_path / "queries.json"
    path.write_text(json.dumps(SAMPLE_CONFIG), encoding="utf-8")
    cfg = AppConfig.load(path, environ={})
    assert cfg.names() == ["vm_count", "disks"]
    assert cfg.get("disks").metric.labels["resource_id"].filters == ["tolower"]


def test_scalar_label_literals_become_strings(tmp_path: Path):
    path = tmp_path / "queries.yaml"
    path.write_text(
        """
queries:
  - name: tiers
    query: Resources | project tier
    metric:
      name: azure_tier
      labels:
        tier: {column: tier, default: 0}
        generation: {value: 2}
        managed: {value: true}
        ratio: {value: 1.5}
      value: 1
""",
        encoding="utf-8",
    )
    labels = AppConfig.load(path, environ={}).get("tiers").metric.labels
    assert labels["tier"].default == "0"
    assert labels["generation"].value == "2"
    assert labels["managed"].value == "true"
    assert labels["ratio"].value == "1.5"


def test_missing_placeholder_is_config_error(tmp_path: Path):
    path = tmp_path / "queries.yaml"
    path.write_text(YAML_CONFIG, encoding="utf-8")
    with pytest.raises(ConfigError, match="SUB"):
        AppConfig.load(path, environ={})


def test_interpolate_leaves_kql_dollar_syntax_alone():
    text = "a | join kind=inner (b) on $left.id == $right.id | where x == '${X}'"
    assert interpolate(text, {"X": "1"}).endswith("where x == '1'")
    assert "$left.id" in interpolate(text, {"X": "1"})


def test_from_dict_does_not_mutate_input():
    data = {"queries": [{"name": "q", "query": "${Q}", "metric": "m"}]}
    AppConfig.from_dict(data, environ={"Q": "Resources"})
    assert data["queries"][0]["query"] == "${Q}"


@pytest.mark.parametrize(
    "entry",
    [
        {"name": "q", "query": "Resources", "metric": {}},
        {"name": "q", "query": "Resources", "metric": {"name": "1bad"}},
        {"name": "q", "query": "Resources", "metric": {"name": "m", "labels": {"__x": "c"}}},
        {"name": "q", "query": "   ", "metric": "m"},
        {"name": "q", "query": "Resources", "metric": "m", "cacheTTL": 0},
        {"name": "q", "query": "Resources", "metric": "m", "unknown": 1},
        {
            "name": "q",
            "query": "Resources",
            "metric": {"name": "m", "labels": {"a": {"column": "c", "value": "v"}}},
        },
        {
            "name": "q",
            "query": "Resources",
            "metric": {"name": "m", "labels": {"a": {"column": "c", "filters": ["reverse"]}}},
        },
    ],
)
def test_invalid_definitions_rejected(entry):
    with pytest.raises(ConfigError):
        AppConfig.from_dict({"queries": [entry]}, environ={})


def test_duplicate_names_rejected():
    entry = {"name": "q", "query": "Resources", "metric": "m"}
    with pytest.raises(ConfigError):
        AppConfig.from_dict({"queries": [entry, dict(entry)]}, environ={})


def test_unreadable_file_is_config_error(tmp_path: Path):
    with pytest.raises(ConfigError):
        AppConfig.load(tmp_path / "missing.yaml")
    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")
    with pytest.raises(ConfigError):
        AppConfig.load(broken)


def test_referenced_columns_cover_template():
    cfg = AppConfig.from_dict(SAMPLE_CONFIG, environ={})
    assert cfg.get("vm_count").metric.referenced_columns() == ["location", "count"]


def test_env_settings_prefix(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("RESOURCEGRAPH_EXPORTER_SUBSCRIPTIONS", "a, b,,c")
    monkeypatch.setenv("RESOURCEGRAPH_EXPORTER_DEFAULT_CACHE_TTL", "60")
    settings = EnvSettings(_env_file=None)
    assert settings.subscription_ids() == ["a", "b", "c"]
    assert settings.default_cache_ttl == 60
    assert settings.cache_sweep_interval == 60
