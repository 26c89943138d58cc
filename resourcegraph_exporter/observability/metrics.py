"""Exporter self-metrics.

Every :class:`SelfMetrics` instance owns a private
:class:`prometheus_client.CollectorRegistry`, so probe output never mixes with
the exporter's own counters and tests can build as many instances as they
like without "duplicated timeseries" errors from the global registry.
"""

from __future__ import annotations

import time
from typing import Callable, Dict, Optional, Tuple

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram
from prometheus_client import generate_latest

PREFIX = "resourcegraph_exporter"

_DURATION_BUCKETS = (0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0)
_API_BUCKETS = (0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)


class SelfMetrics:
    """Counters, histograms and gauges describing exporter behaviour.

    Parameters
    ----------
    registry: Optional[CollectorRegistry]
        Registry to register into; a fresh one is created when omitted.
    cache_size: Optional[Callable[[], int]]
        Callback returning the current number of cache entries, read at
        scrape time.
    """

    def __init__(
        self,
        registry: Optional[CollectorRegistry] = None,
        cache_size: Optional[Callable[[], int]] = None,
    ) -> None:
        self.registry = registry or CollectorRegistry(auto_describe=True)
        self.query_requests = Counter(
            f"{PREFIX}_query_requests",
            "Per-query probe outcomes",
            ["query", "status"],
            registry=self.registry,
        )
        self.query_errors = Counter(
            f"{PREFIX}_query_errors",
            "Failed query executions by error type",
            ["query", "error_type"],
            registry=self.registry,
        )
        self.query_duration = Histogram(
            f"{PREFIX}_query_duration_seconds",
            "Remote execution plus mapping time of cache refreshes",
            ["query"],
            buckets=_DURATION_BUCKETS,
            registry=self.registry,
        )
        self.rows_skipped = Counter(
            f"{PREFIX}_query_rows_skipped",
            "Result rows that produced no samples",
            ["query", "reason"],
            registry=self.registry,
        )
        self.cache_hits = Counter(
            f"{PREFIX}_cache_hits",
            "Probe lookups served from a fresh cache entry",
            ["query"],
            registry=self.registry,
        )
        self.cache_misses = Counter(
            f"{PREFIX}_cache_misses",
            "Probe lookups that needed a refresh",
            ["query"],
            registry=self.registry,
        )
        self.last_success = Gauge(
            f"{PREFIX}_query_last_success_timestamp_seconds",
            "Unix time of the last successful refresh",
            ["query"],
            registry=self.registry,
        )
        self.probe_requests = Counter(
            f"{PREFIX}_probe_requests",
            "Probe requests by result",
            ["result"],
            registry=self.registry,
        )
        self.cache_entries = Gauge(
            f"{PREFIX}_cache_entries",
            "Entries currently held by the metric cache",
            registry=self.registry,
        )
        self.azure_api_requests = Histogram(
            f"{PREFIX}_azure_api_request_duration_seconds",
            "Latency of Azure Resource Manager requests",
            ["method", "status_code", "provider", "subscription"],
            buckets=_API_BUCKETS,
            registry=self.registry,
        )
        self.azure_api_ratelimit = Gauge(
            f"{PREFIX}_azure_api_ratelimit_remaining",
            "Remaining Azure request quota reported by the last response",
            ["subscription", "scope", "type"],
            registry=self.registry,
        )
        if cache_size is not None:
            self.bind_cache_size(cache_size)

    def bind_cache_size(self, cache_size: Callable[[], int]) -> None:
        """Read the cache entry gauge from ``cache_size`` at scrape time."""
        self.cache_entries.set_function(lambda: float(cache_size()))

    def observe_refresh(
        self, query: str, seconds: float, skipped: Optional[dict] = None
    ) -> None:
        """Record a successful cache refresh of ``query``."""
        self.query_duration.labels(query=query).observe(seconds)
        self.last_success.labels(query=query).set(time.time())
        for reason, count in (skipped or {}).items():
            self.rows_skipped.labels(query=query, reason=reason).inc(count)

    def observe_azure_request(
        self,
        method: str,
        status_code: int,
        provider: str,
        subscription: str,
        seconds: float,
        ratelimits: Optional[Dict[Tuple[str, str], float]] = None,
    ) -> None:
        """Record one Azure API response and the quota headers it carried.

        ``ratelimits`` maps ``(scope, type)`` such as
        ``("subscription", "reads")`` to the remaining request count.
        """
        self.azure_api_requests.labels(
            method=method,
            status_code=str(status_code),
            provider=provider,
            subscription=subscription,
        ).observe(seconds)
        for (scope, kind), remaining in (ratelimits or {}).items():
            self.azure_api_ratelimit.labels(
                subscription=subscription, scope=scope, type=kind
            ).set(remaining)

    def render(self) -> bytes:
        """Return the registry in Prometheus text exposition format."""
        return generate_latest(self.registry)
