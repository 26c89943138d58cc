"""Config models and loader.

This module defines Pydantic models for the query definition file and for
environment-based process settings. The query file may be JSON or YAML
(selected by file suffix); both are validated into the same immutable
:class:`AppConfig` snapshot, which is loaded once at startup and never
reloaded.
"""

from __future__ import annotations

import json as _json
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Pattern, Union

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..domain.utils.validation import (
    format_label_value,
    is_valid_label_name,
    is_valid_metric_name,
)
from ..errors import ConfigError

_PLACEHOLDER_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_SUFFIX_RE = re.compile(r"^[a-zA-Z0-9_:]+$")

LABEL_FILTERS = ("tolower", "toupper", "trim")


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")


class RegexpFilter(_Frozen):
    """Regular expression replacement applied to a label value.

    Attributes
    ----------
    regexp: Pattern[str]
        Pattern to search for.
    replacement: str
        Replacement string (``re.sub`` syntax, e.g. ``\\1``).
    """

    regexp: Pattern[str]
    replacement: str = ""


LabelFilter = Union[str, RegexpFilter]


def _value_shorthand(value: Any) -> Any:
    if isinstance(value, str):
        return {"column": value}
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return {"default": value}
    return value


class LabelSource(_Frozen):
    """Where a label value comes from.

    Exactly one of ``column`` (a row column) or ``value`` (a literal) must be
    set. ``default`` replaces a null or absent column value; without it a
    null renders as the empty string and an absent column fails the row.
    """

    column: Optional[str] = None
    value: Optional[str] = None
    default: Optional[str] = None
    filters: List[LabelFilter] = Field(default_factory=list)

    @field_validator("value", "default", mode="before")
    @classmethod
    def _render_literal(cls, literal: Any) -> Any:
        # YAML reads `value: 1` or `default: true` as numbers and booleans
        if isinstance(literal, (bool, int, float)):
            return format_label_value(literal)
        return literal

    @field_validator("filters")
    @classmethod
    def _known_filters(cls, filters: List[LabelFilter]) -> List[LabelFilter]:
        for item in filters:
            if isinstance(item, str) and item.lower() not in LABEL_FILTERS:
                raise ValueError(
                    f"unknown label filter {item!r}; expected one of "
                    f"{', '.join(LABEL_FILTERS)} or a regexp object"
                )
        return filters

    @model_validator(mode="after")
    def _column_or_literal(self) -> "LabelSource":
        if (self.column is None) == (self.value is None):
            raise ValueError("label needs exactly one of 'column' or 'value'")
        return self


class ValueSource(_Frozen):
    """Where a sample value comes from.

    ``column`` names the row column to read; ``default`` is used when that
    column is absent, null or not numeric. A source with only a default is a
    constant.
    """

    column: Optional[str] = None
    default: Optional[float] = None

    @model_validator(mode="after")
    def _column_or_default(self) -> "ValueSource":
        if self.column is None and self.default is None:
            raise ValueError("value needs a 'column', a 'default', or both")
        return self


class MetricTemplate(_Frozen):
    """How one result row turns into metric samples.

    Attributes
    ----------
    name: Optional[str]
        Literal base metric name.
    name_column: Optional[str]
        Column providing a dynamic metric name. Combined with ``name`` as
        ``<name>_<column value>`` when both are set.
    labels: Dict[str, LabelSource]
        Label name to source. A plain string is shorthand for a column.
    value: Optional[ValueSource]
        Primary sample value. When omitted (and ``values`` is empty) each
        row produces the constant 1.
    values: Dict[str, ValueSource]
        Additional samples per row, named ``<metric>_<suffix>``.
    """

    name: Optional[str] = None
    name_column: Optional[str] = Field(None, alias="nameColumn")
    labels: Dict[str, LabelSource] = Field(default_factory=dict)
    value: Optional[ValueSource] = None
    values: Dict[str, ValueSource] = Field(default_factory=dict)

    @field_validator("labels", mode="before")
    @classmethod
    def _expand_label_shorthand(cls, labels: Any) -> Any:
        if isinstance(labels, Mapping):
            return {
                k: ({"column": v} if isinstance(v, str) else v)
                for k, v in labels.items()
            }
        return labels

    @field_validator("value", mode="before")
    @classmethod
    def _expand_value_shorthand(cls, value: Any) -> Any:
        return _value_shorthand(value)

    @field_validator("values", mode="before")
    @classmethod
    def _expand_values_shorthand(cls, values: Any) -> Any:
        if isinstance(values, Mapping):
            return {
                k: _value_shorthand(v) for k, v in values.items()
            }
        return values

    @field_validator("labels")
    @classmethod
    def _valid_label_names(
        cls, labels: Dict[str, LabelSource]
    ) -> Dict[str, LabelSource]:
        for label in labels:
            if not is_valid_label_name(label):
                raise ValueError(f"invalid label name {label!r}")
        return labels

    @field_validator("values")
    @classmethod
    def _valid_suffixes(cls, values: Dict[str, ValueSource]) -> Dict[str, ValueSource]:
        for suffix in values:
            if not _SUFFIX_RE.match(suffix):
                raise ValueError(f"invalid metric suffix {suffix!r}")
        return values

    @model_validator(mode="after")
    def _resolvable_name(self) -> "MetricTemplate":
        if not self.name and not self.name_column:
            raise ValueError("metric template needs 'name', 'nameColumn', or both")
        if self.name and not is_valid_metric_name(self.name):
            raise ValueError(f"invalid metric name {self.name!r}")
        return self

    def value_sources(self) -> Dict[str, ValueSource]:
        """Return suffix -> source for every sample a row produces.

        The primary value uses the empty suffix.
        """
        sources: Dict[str, ValueSource] = {}
        if self.value is not None:
            sources[""] = self.value
        elif not self.values:
            sources[""] = ValueSource(default=1.0)
        sources.update(self.values)
        return sources

    def referenced_columns(self) -> List[str]:
        """Return every column the template reads, in declaration order."""
        columns: List[str] = []
        if self.name_column:
            columns.append(self.name_column)
        columns.extend(src.column for src in self.labels.values() if src.column)
        columns.extend(
            src.column for src in self.value_sources().values() if src.column
        )
        return list(dict.fromkeys(columns))


class QueryDefinition(_Frozen):
    """A named Resource Graph query and its metric template.

    Attributes
    ----------
    name: str
        Unique identifier used in cache keys, logs and self-metrics.
    query: str
        KQL statement. ``${VAR}`` placeholders are resolved from the
        environment when the file is loaded.
    metric: MetricTemplate
        Row-to-sample template. A plain string is shorthand for a literal
        metric name with no labels.
    cache_ttl: Optional[float]
        Cache lifetime in seconds; falls back to the process default.
    module: Optional[str]
        Group name selectable with ``/probe?module=``.
    subscriptions: Optional[List[str]]
        Restrict this query to these subscriptions.
    """

    name: str = Field(..., min_length=1)
    query: str = Field(..., min_length=1)
    metric: MetricTemplate
    cache_ttl: Optional[float] = Field(None, alias="cacheTTL", gt=0)
    module: Optional[str] = None
    subscriptions: Optional[List[str]] = None

    @field_validator("metric", mode="before")
    @classmethod
    def _expand_metric_shorthand(cls, metric: Any) -> Any:
        if isinstance(metric, str):
            return {"name": metric}
        return metric

    @field_validator("query")
    @classmethod
    def _non_blank_query(cls, query: str) -> str:
        if not query.strip():
            raise ValueError("query must not be blank")
        return query

    def effective_ttl(self, default_ttl: float) -> float:
        """Return this query's TTL, or ``default_ttl`` when unset."""
        return self.cache_ttl if self.cache_ttl is not None else default_ttl


class AppConfig(_Frozen):
    """Top-level query definition store.

    Attributes
    ----------
    queries: List[QueryDefinition]
        Declared queries, in file order. Names are unique.
    """

    queries: List[QueryDefinition] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_names(self) -> "AppConfig":
        seen: Dict[str, int] = {}
        for idx, q in enumerate(self.queries):
            if q.name in seen:
                raise ValueError(
                    f"duplicate query name {q.name!r} "
                    f"(entries {seen[q.name]} and {idx})"
                )
            seen[q.name] = idx
        return self

    def names(self) -> List[str]:
        """Return the declared query names in file order."""
        return [q.name for q in self.queries]

    def modules(self) -> List[str]:
        """Return the distinct module names, sorted."""
        return sorted({q.module for q in self.queries if q.module})

    def get(self, name: str) -> QueryDefinition:
        """Return the query called ``name`` (raises KeyError)."""
        for q in self.queries:
            if q.name == name:
                return q
        raise KeyError(name)

    @staticmethod
    def load(path: Path, environ: Optional[Mapping[str, str]] = None) -> "AppConfig":
        """Load the query definition store from a JSON or YAML file.

        Files ending in ``.yaml``/``.yml`` are parsed with PyYAML
        (``safe_load``); anything else is parsed as JSON. Every failure is
        raised as :class:`ConfigError` so the process refuses to start.
        """
        env = os.environ if environ is None else environ
        try:
            raw = path.read_text(encoding="utf-8")
            if path.suffix.lower() in (".yaml", ".yml"):
                data = yaml.safe_load(raw) or {}
            else:
                data = _json.loads(raw)
        except (OSError, ValueError, yaml.YAMLError) as exc:
            raise ConfigError(f"cannot read query config {path}", cause=exc) from exc
        return AppConfig.from_dict(data, env)

    @staticmethod
    def from_dict(
        data: Any, environ: Optional[Mapping[str, str]] = None
    ) -> "AppConfig":
        """Validate an already parsed document into an :class:`AppConfig`."""
        env = os.environ if environ is None else environ
        if not isinstance(data, dict):
            raise ConfigError("query config must be a mapping with a 'queries' list")
        queries = data.get("queries") or []
        if isinstance(queries, list):
            data = {
                **data,
                "queries": [
                    (
                        {**entry, "query": interpolate(entry["query"], env)}
                        if isinstance(entry, dict)
                        and isinstance(entry.get("query"), str)
                        else entry
                    )
                    for entry in queries
                ],
            }
        try:
            return AppConfig.model_validate(data)
        except ValidationError as exc:
            raise ConfigError("invalid query config", cause=exc) from exc


def interpolate(text: str, environ: Mapping[str, str]) -> str:
    """Replace ``${VAR}`` placeholders with values from ``environ``.

    Only the braced form is recognised so KQL's ``$left``/``$right`` stay
    untouched. A missing variable raises :class:`ConfigError`.
    """

    def _sub(match: "re.Match[str]") -> str:
        var = match.group(1)
        if var not in environ:
            raise ConfigError(f"query placeholder ${{{var}}} is not set")
        return environ[var]

    return _PLACEHOLDER_RE.sub(_sub, text)


class EnvSettings(BaseSettings):
    """Environment-driven settings and .env support.

    Attributes
    ----------
    log_level: str
        Logging level name (e.g., "DEBUG", "INFO"). Defaults to "INFO".
    log_json: bool
        Emit JSON log lines instead of plain text.
    config_path: Optional[str]
        Path of the query definition file (JSON or YAML).
    azure_environment: str
        Azure cloud name (``AzurePublicCloud``, ``AzureChinaCloud``,
        ``AzureUSGovernmentCloud``).
    subscriptions: str
        Comma-separated subscription ids; empty means auto discovery.
    default_cache_ttl: float
        Cache lifetime for queries without their own ``cacheTTL``.
    cache_sweep_interval: float
        Seconds between background sweeps of long-expired cache entries.
    request_timeout: float
        Per-attempt HTTP timeout towards Resource Graph.
    total_timeout: float
        Upper bound for one query execution including retries and pages.
    max_retries: int
        Retries after the first attempt for transient failures.
    probe_timeout: float
        Default probe deadline when Prometheus sends no scrape timeout.
    """

    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="RESOURCEGRAPH_EXPORTER_", extra="ignore"
    )

    log_level: str = Field("INFO")
    log_json: bool = Field(False)
    config_path: Optional[str] = Field(None, description="Query definition file")

    azure_environment: str = Field("AzurePublicCloud")
    subscriptions: str = Field(
        "", description="Comma-separated subscription ids (empty: auto discovery)"
    )
    azure_tenant_id: Optional[str] = None
    azure_client_id: Optional[str] = None
    azure_client_secret: Optional[str] = None

    default_cache_ttl: float = Field(120.0, gt=0)
    cache_sweep_interval: float = Field(60.0, gt=0)
    cache_grace: float = Field(
        300.0, ge=0, description="Keep expired entries this long for stale-serve"
    )
    cache_max_entries: int = Field(4096, ge=1)

    request_timeout: float = Field(30.0, gt=0, description="Per-attempt timeout")
    total_timeout: float = Field(120.0, gt=0, description="Timeout incl. retries")
    max_retries: int = Field(3, ge=0, description="Number of retry attempts")
    backoff_initial_ms: int = Field(
        500, ge=0, description="Initial backoff in milliseconds"
    )
    backoff_multiplier: float = Field(
        2.0, ge=1.0, description="Backoff multiplier per attempt"
    )
    backoff_max_seconds: float = Field(30.0, gt=0)
    backoff_jitter: float = Field(0.2, ge=0.0, le=1.0)
    page_size: int = Field(1000, ge=1, le=1000)

    probe_timeout: float = Field(30.0, gt=0)
    scrape_timeout_offset: float = Field(0.5, ge=0)

    host: str = Field("0.0.0.0")
    port: int = Field(8080, ge=1, le=65535)
    http_token: Optional[str] = Field(
        None, description="Bearer token required on /probe when set"
    )

    def subscription_ids(self) -> List[str]:
        """Return the configured subscription ids as a list."""
        return [s.strip() for s in self.subscriptions.split(",") if s.strip()]
