"""FastAPI application exposing the probe, self-metrics and health endpoints.

Endpoints
---------
- ``GET /probe``: run the selected queries and return Prometheus text.
- ``GET /metrics``: exporter self-metrics.
- ``GET /health`` (alias ``/healthz``): liveness (static).
- ``GET /ready``: readiness (context built and sweeper running).

The HTTP layer stays thin: it parses the request into a
:class:`~resourcegraph_exporter.server.orchestrator.ProbeSelection`, hands it
to the orchestrator and renders the result. Errors are returned as
structured :class:`~resourcegraph_exporter.server.models.ErrorResponse`
payloads.
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import List, Optional

import psutil
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from ..__version__ import __version__
from ..config.models import EnvSettings
from ..errors import ClientScopeError, ProbeFailedError
from ..observability import setup_logging
from ..utils.correlation import set_request_id
from .app import ExporterContext, ExporterServer, build_context
from .exposition import render_probe
from .models import ErrorResponse, HealthResponse, QueryStatusModel
from .orchestrator import ProbeSelection

logger = logging.getLogger(__name__)

SCRAPE_TIMEOUT_HEADER = "X-Prometheus-Scrape-Timeout-Seconds"


class CorrelationIdMiddleware(BaseHTTPMiddleware):  # pylint: disable=too-few-public-methods
    """Assign a correlation id to every request and log its completion."""

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        req_id = set_request_id(request.headers.get("x-correlation-id"))
        response = await call_next(request)
        response.headers["x-correlation-id"] = req_id
        logger.debug(
            "http.request",
            extra={
                "req_id": req_id,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "duration_ms": int((time.time() - start_time) * 1000),
            },
        )
        return response


def _error(status_code: int, err: ErrorResponse) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"detail": err.model_dump(exclude_none=True)},
    )


def _make_auth_dependency(expected: Optional[str]):
    """Return a dependency function that enforces optional bearer token."""

    def _auth_dependency(authorization: str | None = Header(default=None)) -> None:
        if expected is None:
            return
        if not authorization or not authorization.startswith("Bearer "):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)
        token = authorization.split(" ", 1)[1]
        if token != expected:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN)

    return _auth_dependency


def _split_params(values: List[str]) -> tuple[str, ...]:
    """Flatten repeated and comma-separated query parameters."""
    out: List[str] = []
    for value in values:
        out.extend(v.strip() for v in value.split(",") if v.strip())
    return tuple(dict.fromkeys(out))


def _probe_timeout(header_value: Optional[float], offset: float) -> Optional[float]:
    """Derive the probe deadline from Prometheus' scrape timeout header."""
    if header_value is None or header_value <= 0:
        return None
    return header_value - offset if header_value > offset else header_value


def _get_server(request: Request) -> ExporterServer:
    server: Optional[ExporterServer] = getattr(request.app.state, "server", None)
    if server is None or not server.started:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="exporter is not ready",
        )
    return server


def _log_startup_memory() -> None:
    """Log process memory and the container memory limit when detectable."""
    mem_info = psutil.Process().memory_info()
    logger.info(
        "http.startup.memory",
        extra={
            "rss_mb": round(mem_info.rss / 1024 / 1024, 1),
            "vms_mb": round(mem_info.vms / 1024 / 1024, 1),
        },
    )
    # cgroups v1, then v2
    for path in (
        "/sys/fs/cgroup/memory/memory.limit_in_bytes",
        "/sys/fs/cgroup/memory.max",
    ):
        try:
            with open(path, encoding="utf-8") as f:
                raw = f.read().strip()
        except OSError:
            continue
        if raw == "max":
            return
        try:
            limit = int(raw)
        except ValueError:
            return
        if limit < (1 << 60):  # larger values mean unlimited
            logger.info(
                "http.startup.container_memory_limit",
                extra={"limit_mb": round(limit / 1024 / 1024, 1)},
            )
        return


def _register_health(app: FastAPI) -> None:
    """Register health and readiness endpoints."""

    @app.get("/healthz", response_model=HealthResponse, include_in_schema=False)
    @app.get("/health", response_model=HealthResponse, summary="Liveness probe")
    async def health() -> HealthResponse:
        return HealthResponse(status="ok")

    @app.get("/ready", response_model=HealthResponse, summary="Readiness probe")
    async def ready(request: Request) -> HealthResponse:
        _get_server(request)
        return HealthResponse(status="ready")


def _register_metrics(app: FastAPI, settings: EnvSettings) -> None:
    """Register the probe and self-metrics endpoints."""
    auth_dep = _make_auth_dependency(settings.http_token)

    @app.get(
        "/probe",
        summary="Run Resource Graph queries and return Prometheus metrics",
        dependencies=[Depends(auth_dep)],
        response_class=Response,
    )
    async def probe(
        request: Request,
        query: List[str] = Query(default=[]),
        subscription: List[str] = Query(default=[]),
        module: Optional[str] = Query(default=None),
        scrape_timeout: Optional[float] = Header(
            default=None, alias=SCRAPE_TIMEOUT_HEADER
        ),
    ) -> Response:
        server = _get_server(request)
        selection = ProbeSelection(
            queries=_split_params(query),
            subscriptions=_split_params(subscription),
            module=module or None,
            timeout=_probe_timeout(scrape_timeout, settings.scrape_timeout_offset),
        )
        result = await server.context.orchestrator.probe(selection)
        return Response(content=render_probe(result), media_type=CONTENT_TYPE_LATEST)

    @app.get("/metrics", summary="Exporter self-metrics", response_class=Response)
    async def metrics(request: Request) -> Response:
        server = _get_server(request)
        return Response(
            content=server.context.metrics.render(), media_type=CONTENT_TYPE_LATEST
        )


def _register_error_handlers(app: FastAPI) -> None:
    """Register structured exception handlers."""

    @app.exception_handler(ClientScopeError)
    async def client_scope_handler(_request: Request, exc: ClientScopeError):
        return _error(
            status.HTTP_400_BAD_REQUEST,
            ErrorResponse(
                detail=exc.message,
                error_type=exc.error_type,
                available_options=exc.available_options,
            ),
        )

    @app.exception_handler(ProbeFailedError)
    async def probe_failed_handler(_request: Request, exc: ProbeFailedError):
        return _error(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            ErrorResponse(
                detail=exc.message,
                error_type=exc.error_type,
                queries=[
                    QueryStatusModel(
                        query=s.query,
                        state=s.state.value,
                        error_type=s.error_type,
                        error=s.error,
                    )
                    for s in exc.statuses
                ],
            ),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(_request: Request, exc: Exception):
        return _error(
            status.HTTP_400_BAD_REQUEST,
            ErrorResponse(detail=str(exc), error_type="validation_error"),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(_request: Request, exc: StarletteHTTPException):
        return _error(
            exc.status_code,
            ErrorResponse(detail=str(exc.detail) or "HTTP error", error_type="http_error"),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(_request: Request, exc: Exception):
        # Avoid leaking internals; log server-side, return generic error
        logger.error("http.unhandled_exception", exc_info=exc)
        return _error(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            ErrorResponse(
                detail="Internal error. See server logs for request id.",
                error_type="internal_server_error",
            ),
        )

    # Mark handlers as intentionally used (registered via decorators)
    _ = (
        client_scope_handler,
        probe_failed_handler,
        validation_exception_handler,
        http_exception_handler,
        unhandled_exception_handler,
    )


def create_app(
    context: Optional[ExporterContext] = None,
    settings: Optional[EnvSettings] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    context: Optional[ExporterContext]
        Prebuilt context (tests, embedding). When omitted the lifespan builds
        one from ``settings``: loads the query file, authenticates and
        discovers subscriptions.
    settings: Optional[EnvSettings]
        Process settings; defaults to the context's or the environment's.
    """
    if settings is None:
        settings = context.settings if context is not None else EnvSettings()
    # Respect prior logging configuration from CLI; otherwise use env setting
    if not logging.getLogger().hasHandlers():
        setup_logging(settings.log_level, settings.log_json)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("http.startup", extra={"version": __version__})
        try:
            _log_startup_memory()
        except (psutil.Error, RuntimeError) as exc:  # pragma: no cover
            logger.debug("http.startup.memory_unavailable", extra={"error": str(exc)})
        ctx = context if context is not None else await build_context(settings)
        server = ExporterServer(ctx)
        await server.start()
        app.state.server = server
        try:
            yield
        finally:
            logger.info("http.shutdown")
            app.state.server = None
            await server.stop()

    app = FastAPI(
        title="Azure Resource Graph Exporter", version=__version__, lifespan=lifespan
    )
    app.state.server = None
    app.add_middleware(CorrelationIdMiddleware)
    _register_error_handlers(app)
    _register_health(app)
    _register_metrics(app, settings)
    return app
