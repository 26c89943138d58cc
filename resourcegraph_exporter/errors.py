"""Exception hierarchy for the exporter.

Hierarchy
---------
ExporterError (base)
├── ConfigError              query definitions or settings are malformed
├── RemoteQueryError         Resource Graph transport/auth/query failure
├── MappingError             a single result row could not be mapped
│   ├── TemplateResolutionError
│   └── ValueCoercionError
├── DuplicateSeriesError     two rows of one query produced the same series
├── CacheComputeError        a cache refresh failed (wraps the cause)
├── ClientScopeError         a probe names unknown queries/subscriptions
└── ProbeFailedError         every selected query of a probe failed

Row-level errors (``MappingError``) are collected by the mapper and never
abort a batch. Every other error is surfaced to the caller that can decide
whether to recover (omit one query) or fail.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence


class ExporterError(Exception):
    """Base class for all exporter errors.

    Attributes
    ----------
    message: str
        Human-readable error message.
    cause: Optional[Exception]
        Underlying exception, if any.
    details: Dict[str, Any]
        Extra structured context for logs and HTTP error payloads.
    """

    error_type = "exporter_error"

    def __init__(
        self,
        message: str,
        cause: Optional[BaseException] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.details = details or {}

    def __str__(self) -> str:
        if self.cause is not None:
            return f"{self.message}: {self.cause}"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        """Return the error as a JSON-serializable dictionary."""
        return {
            "error_type": self.error_type,
            "message": self.message,
            "cause": str(self.cause) if self.cause is not None else None,
            "details": self.details,
        }


class ConfigError(ExporterError):
    """Malformed configuration; fatal at load time."""

    error_type = "config_error"


class RemoteQueryError(ExporterError):
    """Failure reported by (or while talking to) the Resource Graph API.

    Parameters
    ----------
    message: str
        Description of the failure.
    status_code: Optional[int]
        HTTP status code, when the failure came from an HTTP response.
    code: Optional[str]
        Azure error code (e.g. ``BadRequest``, ``RateLimiting``).
    transient: bool
        Whether a retry might succeed.
    retry_after: Optional[float]
        Server-provided retry delay in seconds (``Retry-After``).
    """

    error_type = "remote_query_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        transient: bool = False,
        retry_after: Optional[float] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(
            message,
            cause=cause,
            details={"status_code": status_code, "code": code, "transient": transient},
        )
        self.status_code = status_code
        self.code = code
        self.transient = transient
        self.retry_after = retry_after


class MappingError(ExporterError):
    """Row-level mapping failure. The row is skipped, the batch continues."""

    error_type = "mapping_error"

    def __init__(self, message: str, *, row_index: int, column: str | None = None):
        super().__init__(message, details={"row_index": row_index, "column": column})
        self.row_index = row_index
        self.column = column


class TemplateResolutionError(MappingError):
    """A column referenced by the metric template is missing from a row."""

    error_type = "template_resolution_error"


class ValueCoercionError(MappingError):
    """A value cell is not numeric and the template declares no default."""

    error_type = "value_coercion_error"


class DuplicateSeriesError(ExporterError):
    """Two rows of one query mapped to an identical (metric, labels) series."""

    error_type = "duplicate_series"

    def __init__(
        self, query_name: str, metric_name: str, labels: Dict[str, str]
    ) -> None:
        rendered = ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))
        super().__init__(
            f"query {query_name!r} produced duplicate series {metric_name}{{{rendered}}}",
            details={"query": query_name, "metric": metric_name, "labels": labels},
        )
        self.query_name = query_name
        self.metric_name = metric_name
        self.labels = labels


class CacheComputeError(ExporterError):
    """A cache refresh failed; ``stale`` holds the last good value, if any."""

    error_type = "cache_compute_error"

    def __init__(
        self,
        key: Any,
        cause: BaseException,
        stale: Optional[Sequence[Any]] = None,
    ) -> None:
        super().__init__(
            f"computing cache entry {key!r} failed",
            cause=cause,
            details={"stale_available": stale is not None},
        )
        self.key = key
        self.stale = stale


class ClientScopeError(ExporterError):
    """A probe request restricts to unknown query names or subscriptions."""

    error_type = "client_scope_error"

    def __init__(
        self, message: str, available_options: Optional[List[str]] = None
    ) -> None:
        super().__init__(message, details={"available_options": available_options})
        self.available_options = available_options or []


class ProbeFailedError(ExporterError):
    """Every selected query failed; the probe has nothing to serve."""

    error_type = "probe_failed"

    def __init__(self, statuses: Sequence[Any]) -> None:
        failed = [getattr(s, "query", str(s)) for s in statuses]
        super().__init__(
            f"all {len(failed)} selected queries failed",
            details={"queries": failed},
        )
        self.statuses = list(statuses)


_CODE_ERROR_TYPES = {
    "Timeout": "timeout",
    "ConnectionError": "connection_error",
    "InvalidResponse": "invalid_response",
}


def classify_error(exc: BaseException) -> str:
    """Return a short machine-readable error type for logs and metrics."""
    if isinstance(exc, CacheComputeError) and exc.cause is not None:
        return classify_error(exc.cause)
    if isinstance(exc, RemoteQueryError):
        if exc.code in _CODE_ERROR_TYPES:
            return _CODE_ERROR_TYPES[exc.code]
        status = exc.status_code
        if status is None:
            return "query_error"
        if status == 429:
            return "rate_limit"
        if status >= 500:
            return "server_error"
        if status in (401, 403):
            return "auth_error"
        return "query_error"
    if isinstance(exc, ExporterError):
        return exc.error_type
    if isinstance(exc, TimeoutError):
        return "timeout"
    return "unknown_error"
