"""Probe orchestration.

A probe selects queries and a subscription scope, looks every selected query
up in the metric cache concurrently (refreshing through the remote client
and the mapper on a miss), and assembles whatever succeeded into one
sample set. One failing query never fails the probe; only a probe in which
every query failed with nothing stale to fall back on does.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from ..adapters.client import RemoteQueryClient
from ..config.models import AppConfig, QueryDefinition
from ..domain.mapping import map_rows
from ..domain.models import MetricSample, SubscriptionScope
from ..errors import (
    CacheComputeError,
    ClientScopeError,
    DuplicateSeriesError,
    MappingError,
    ProbeFailedError,
    classify_error,
)
from ..observability.metrics import SelfMetrics
from ..utils.cache import MetricCache
from ..utils.correlation import get_request_id

logger = logging.getLogger(__name__)

Samples = Tuple[MetricSample, ...]
CacheKey = Tuple[str, str]


class QueryState(str, Enum):
    """Lifecycle of one query within one probe."""

    PENDING = "pending"
    CACHE_HIT = "cache_hit"
    FETCHING = "fetching"
    MAPPED = "mapped"
    REMOTE_FAILED = "remote_failed"
    MAP_FAILED = "map_failed"

    @property
    def failed(self) -> bool:
        return self in (QueryState.REMOTE_FAILED, QueryState.MAP_FAILED)


@dataclass(frozen=True)
class ProbeSelection:
    """What a single scrape asks for.

    Attributes
    ----------
    queries: Tuple[str, ...]
        Query names; empty selects every query (or every query of ``module``).
    subscriptions: Tuple[str, ...]
        Subscription ids; empty means the full discovered scope.
    module: Optional[str]
        Restrict to queries of this module.
    timeout: Optional[float]
        Seconds the probe may wait for results; None uses the default.
    """

    queries: Tuple[str, ...] = ()
    subscriptions: Tuple[str, ...] = ()
    module: Optional[str] = None
    timeout: Optional[float] = None


@dataclass
class QueryStatus:
    """Per-query outcome of one probe."""

    query: str
    state: QueryState = QueryState.PENDING
    samples: Samples = ()
    error: Optional[str] = None
    error_type: Optional[str] = None
    stale: bool = False

    @property
    def failed(self) -> bool:
        return self.state.failed


@dataclass
class ProbeResult:
    """Samples to expose plus the per-query statuses that produced them.

    Attributes
    ----------
    statuses: List[QueryStatus]
        One status per executed query, sorted by query name.
    samples: List[MetricSample]
        Samples in output order with cross-query duplicates removed.
    collisions: int
        Number of samples dropped because an earlier query produced the
        same series.
    duration: float
        Wall-clock seconds the probe took.
    """

    statuses: List[QueryStatus] = field(default_factory=list)
    samples: List[MetricSample] = field(default_factory=list)
    collisions: int = 0
    duration: float = 0.0

    @property
    def failures(self) -> List[QueryStatus]:
        return [s for s in self.statuses if s.failed]

    @property
    def outcome(self) -> str:
        """Return ``success`` or ``partial`` (failed probes raise instead)."""
        return "partial" if self.failures else "success"


class ProbeOrchestrator:
    """Run probes against a shared cache.

    Parameters
    ----------
    config: AppConfig
        Query definition store.
    scope: SubscriptionScope
        Discovered default subscription scope; probes may only narrow it.
    client: RemoteQueryClient
        Paginating, retrying Resource Graph client.
    cache: MetricCache
        Shared cache keyed by ``(query name, scope fingerprint)``.
    metrics: SelfMetrics
        Self-metrics updated for every outcome.
    default_ttl: float
        TTL for queries without ``cacheTTL``.
    default_timeout: float
        Probe deadline when the selection does not carry one.
    """

    def __init__(
        self,
        config: AppConfig,
        scope: SubscriptionScope,
        client: RemoteQueryClient,
        cache: "MetricCache[CacheKey, Samples]",
        metrics: SelfMetrics,
        *,
        default_ttl: float = 120.0,
        default_timeout: float = 30.0,
    ) -> None:
        self._config = config
        self._scope = scope
        self._client = client
        self._cache = cache
        self._metrics = metrics
        self._default_ttl = default_ttl
        self._default_timeout = default_timeout

    @property
    def scope(self) -> SubscriptionScope:
        return self._scope

    def resolve(
        self, selection: ProbeSelection
    ) -> Tuple[List[QueryDefinition], SubscriptionScope]:
        """Validate ``selection`` and return the queries and scope to run.

        Raises
        ------
        ClientScopeError
            For unknown query names, an unknown module, or subscription ids
            outside the discovered scope.
        """
        known = self._config.names()
        unknown = [n for n in selection.queries if n not in known]
        if unknown:
            raise ClientScopeError(
                f"unknown query name(s): {', '.join(unknown)}",
                available_options=known,
            )
        if selection.module and selection.module not in self._config.modules():
            raise ClientScopeError(
                f"unknown module {selection.module!r}",
                available_options=self._config.modules(),
            )
        outside = [s for s in selection.subscriptions if s not in self._scope]
        if outside:
            raise ClientScopeError(
                f"subscription(s) not in the discovered scope: {', '.join(outside)}",
                available_options=list(self._scope),
            )

        definitions = list(self._config.queries)
        if selection.queries:
            wanted = set(selection.queries)
            definitions = [d for d in definitions if d.name in wanted]
        if selection.module:
            definitions = [d for d in definitions if d.module == selection.module]
            if not definitions:
                raise ClientScopeError(
                    f"none of the selected queries belongs to module "
                    f"{selection.module!r}",
                    available_options=[
                        q.name for q in self._config.queries
                        if q.module == selection.module
                    ],
                )

        scope = self._scope
        if selection.subscriptions:
            # every id was checked above, so the restriction is never empty
            scope = self._scope.restrict(selection.subscriptions) or self._scope
        return sorted(definitions, key=lambda d: d.name), scope

    async def probe(self, selection: ProbeSelection) -> ProbeResult:
        """Execute one probe.

        Returns
        -------
        ProbeResult
            Samples of every query that succeeded (or had stale data), plus
            statuses for all of them.

        Raises
        ------
        ClientScopeError
            If the selection is invalid; nothing is executed.
        ProbeFailedError
            If every executed query failed and none had stale samples.
        """
        started = time.perf_counter()
        try:
            definitions, scope = self.resolve(selection)
        except ClientScopeError:
            self._metrics.probe_requests.labels(result="rejected").inc()
            raise
        timeout = selection.timeout or self._default_timeout

        jobs: List[Tuple[QueryStatus, "asyncio.Task[None]"]] = []
        for definition in definitions:
            query_scope = scope
            if definition.subscriptions:
                restricted = scope.restrict(definition.subscriptions)
                if restricted is None:
                    logger.debug(
                        "probe.query.out_of_scope",
                        extra={"req_id": get_request_id(), "query": definition.name},
                    )
                    continue
                query_scope = restricted
            status = QueryStatus(query=definition.name)
            task = asyncio.create_task(
                self._run_query(definition, query_scope, status, timeout)
            )
            jobs.append((status, task))

        await asyncio.gather(*(task for _, task in jobs))
        result = self._assemble([status for status, _ in jobs])
        result.duration = time.perf_counter() - started

        if result.statuses and all(
            s.failed and not s.samples for s in result.statuses
        ):
            self._metrics.probe_requests.labels(result="failed").inc()
            logger.error(
                "probe.failed",
                extra={
                    "req_id": get_request_id(),
                    "queries": [s.query for s in result.statuses],
                    "errors": {s.query: s.error_type for s in result.statuses},
                },
            )
            raise ProbeFailedError(result.statuses)

        self._metrics.probe_requests.labels(result=result.outcome).inc()
        logger.info(
            "probe.done",
            extra={
                "req_id": get_request_id(),
                "queries": len(result.statuses),
                "failed": len(result.failures),
                "samples": len(result.samples),
                "subscriptions": len(scope),
                "duration_ms": int(result.duration * 1000),
            },
        )
        return result

    async def _run_query(
        self,
        definition: QueryDefinition,
        scope: SubscriptionScope,
        status: QueryStatus,
        timeout: float,
    ) -> None:
        key: CacheKey = (definition.name, scope.fingerprint())
        ttl = definition.effective_ttl(self._default_ttl)

        async def compute() -> Samples:
            status.state = QueryState.FETCHING
            t0 = time.perf_counter()
            rows = await self._client.execute(definition.query, scope)
            mapped = map_rows(rows, definition.metric, definition.name)
            self._metrics.observe_refresh(
                definition.name, time.perf_counter() - t0, mapped.errors_by_type()
            )
            return tuple(mapped.samples)

        try:
            lookup = await asyncio.wait_for(
                self._cache.get_or_compute(key, ttl, compute), timeout=timeout
            )
        except asyncio.TimeoutError:
            self._fail(
                status,
                QueryState.REMOTE_FAILED,
                "timeout",
                f"no result within {timeout:g}s",
                self._cache.stale_value(key),
            )
            return
        except CacheComputeError as exc:
            cause = exc.cause
            state = (
                QueryState.MAP_FAILED
                if isinstance(cause, (DuplicateSeriesError, MappingError))
                else QueryState.REMOTE_FAILED
            )
            self._fail(status, state, classify_error(exc), str(cause), exc.stale)
            return

        status.samples = lookup.value
        status.state = QueryState.CACHE_HIT if lookup.hit else QueryState.MAPPED
        counter = self._metrics.cache_hits if lookup.hit else self._metrics.cache_misses
        counter.labels(query=definition.name).inc()
        self._metrics.query_requests.labels(
            query=definition.name, status=status.state.value
        ).inc()

    def _fail(
        self,
        status: QueryStatus,
        state: QueryState,
        error_type: str,
        message: str,
        stale: Optional[Sequence[MetricSample]],
    ) -> None:
        status.state = state
        status.error_type = error_type
        status.error = message
        if stale is not None:
            status.samples = tuple(stale)
            status.stale = True
        self._metrics.cache_misses.labels(query=status.query).inc()
        self._metrics.query_requests.labels(query=status.query, status=state.value).inc()
        self._metrics.query_errors.labels(query=status.query, error_type=error_type).inc()
        log = logger.error if error_type == DuplicateSeriesError.error_type else logger.warning
        log(
            "probe.query.failed",
            extra={
                "req_id": get_request_id(),
                "query": status.query,
                "state": state.value,
                "error_type": error_type,
                "error": message,
                "stale": status.stale,
            },
        )

    def _assemble(self, statuses: List[QueryStatus]) -> ProbeResult:
        result = ProbeResult(statuses=sorted(statuses, key=lambda s: s.query))
        owners: Dict[Tuple[str, frozenset], str] = {}
        for status in result.statuses:
            for sample in status.samples:
                key = sample.series_key()
                owner = owners.get(key)
                if owner is not None:
                    result.collisions += 1
                    self._metrics.rows_skipped.labels(
                        query=status.query, reason="series_collision"
                    ).inc()
                    logger.warning(
                        "probe.series.collision",
                        extra={
                            "req_id": get_request_id(),
                            "metric": sample.name,
                            "labels": sample.label_dict(),
                            "kept": owner,
                            "dropped": status.query,
                        },
                    )
                    continue
                owners[key] = status.query
                result.samples.append(sample)
        return result
