"""Exporter process context and lifecycle.

:class:`ExporterContext` bundles everything a probe needs (configuration,
discovered scope, remote client, cache, self-metrics) and is passed
explicitly to the HTTP layer. :class:`ExporterServer` owns the lifecycle of
the pieces that hold resources: the HTTP client, the Azure credential and
the background cache sweeper.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from ..adapters.client import RemoteQueryClient
from ..adapters.resourcegraph import (
    ResourceGraphTransport,
    build_credential,
    build_http_client,
    discover_subscriptions,
    get_cloud,
)
from ..config.models import AppConfig, EnvSettings
from ..domain.models import SubscriptionScope
from ..errors import ConfigError
from ..observability.metrics import SelfMetrics
from ..utils.cache import MetricCache
from ..utils.retry import RetryPolicy
from .orchestrator import ProbeOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class ExporterContext:
    """Shared state of a running exporter.

    Attributes
    ----------
    settings: EnvSettings
        Process settings.
    config: AppConfig
        Immutable query definition store.
    scope: SubscriptionScope
        Discovered default subscription scope.
    client: RemoteQueryClient
        Paginating, retrying Resource Graph client.
    cache: MetricCache
        The only shared mutable structure.
    metrics: SelfMetrics
        Exporter self-metrics.
    orchestrator: ProbeOrchestrator
        Built from the fields above.
    http_client: Optional[Any]
        ``httpx.AsyncClient`` to close on shutdown, if owned.
    credential: Optional[Any]
        Async Azure credential to close on shutdown, if owned.
    """

    settings: EnvSettings
    config: AppConfig
    scope: SubscriptionScope
    client: RemoteQueryClient
    cache: MetricCache
    metrics: SelfMetrics
    orchestrator: ProbeOrchestrator = field(init=False)
    http_client: Optional[Any] = None
    credential: Optional[Any] = None
    _closed: bool = field(default=False, repr=False)

    def __post_init__(self) -> None:
        self.orchestrator = ProbeOrchestrator(
            self.config,
            self.scope,
            self.client,
            self.cache,
            self.metrics,
            default_ttl=self.settings.default_cache_ttl,
            default_timeout=self.settings.probe_timeout,
        )

    @classmethod
    def create(
        cls,
        settings: EnvSettings,
        config: AppConfig,
        scope: SubscriptionScope,
        client: RemoteQueryClient,
        metrics: Optional[SelfMetrics] = None,
        **kwargs: Any,
    ) -> "ExporterContext":
        """Build a context with a fresh cache.

        ``metrics`` is created when omitted; pass the instance the HTTP
        client already reports Azure API calls to.
        """
        cache: MetricCache = MetricCache(
            settings.cache_max_entries, grace=settings.cache_grace
        )
        metrics = metrics or SelfMetrics()
        metrics.bind_cache_size(cache.__len__)
        return cls(settings, config, scope, client, cache, metrics, **kwargs)

    async def aclose(self) -> None:
        """Close owned network resources. Idempotent."""
        if self._closed:
            return
        self._closed = True
        if self.http_client is not None:
            await self.http_client.aclose()
        if self.credential is not None:
            await self.credential.close()


async def build_context(settings: EnvSettings) -> ExporterContext:
    """Load configuration, authenticate and discover the subscription scope.

    Raises
    ------
    ConfigError
        If no query file is configured, it is invalid, the Azure environment
        is unknown, or no subscription can be found.
    RemoteQueryError
        If a configured subscription cannot be looked up.
    """
    if not settings.config_path:
        raise ConfigError(
            "no query config given (--config or RESOURCEGRAPH_EXPORTER_CONFIG_PATH)"
        )
    config = AppConfig.load(Path(settings.config_path))
    logger.info(
        "config.loaded",
        extra={
            "path": settings.config_path,
            "queries": config.names(),
            "modules": config.modules(),
        },
    )
    cloud = get_cloud(settings.azure_environment)
    credential = build_credential(
        cloud,
        settings.azure_tenant_id,
        settings.azure_client_id,
        settings.azure_client_secret,
    )
    metrics = SelfMetrics()
    http_client = build_http_client(settings.request_timeout, metrics)
    try:
        ids = await discover_subscriptions(
            http_client, credential, cloud, settings.subscription_ids()
        )
        scope = SubscriptionScope.of(ids)
    except Exception:
        await http_client.aclose()
        await credential.close()
        raise

    transport = ResourceGraphTransport(
        http_client, credential, cloud, page_size=settings.page_size
    )
    client = RemoteQueryClient(
        transport,
        RetryPolicy.from_settings(
            settings.max_retries,
            settings.backoff_initial_ms,
            settings.backoff_multiplier,
            settings.backoff_max_seconds,
            settings.backoff_jitter,
        ),
        total_timeout=settings.total_timeout,
    )
    return ExporterContext.create(
        settings,
        config,
        scope,
        client,
        metrics,
        http_client=http_client,
        credential=credential,
    )


class ExporterServer:
    """Owns the background work of an :class:`ExporterContext`.

    Responsibilities
    ----------------
    - Start and cancel the cache sweeper task.
    - Close the context's network resources on stop.
    - Report readiness.
    """

    def __init__(self, context: ExporterContext) -> None:
        """Create a new server instance with stopped state."""
        self.context = context
        self._sweeper: Optional["asyncio.Task[None]"] = None
        self._started: bool = False

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        """Start the sweeper. Idempotent."""
        if self._started:
            logger.debug("server.start no-op: already started")
            return
        interval = self.context.settings.cache_sweep_interval
        self._sweeper = asyncio.create_task(self.context.cache.run_sweeper(interval))
        self._started = True
        logger.info(
            "server.started",
            extra={
                "queries": len(self.context.config.queries),
                "subscriptions": len(self.context.scope),
                "sweep_interval": interval,
            },
        )

    async def stop(self) -> None:
        """Cancel the sweeper and close owned resources. Idempotent."""
        if not self._started:
            logger.debug("server.stop no-op: not started")
            return
        self._started = False
        if self._sweeper is not None:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None
        await self.context.aclose()
        logger.info("server.stopped")
