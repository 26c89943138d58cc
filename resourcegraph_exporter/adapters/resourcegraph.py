"""Azure Resource Graph adapter.

This adapter implements the :class:`~resourcegraph_exporter.adapters.QueryTransport`
callable against the Resource Graph REST API. It encapsulates transport
concerns (cloud endpoints, bearer tokens from ``azure-identity``, timeouts,
the ``table`` result format) and translates every failure into a
:class:`~resourcegraph_exporter.errors.RemoteQueryError` that says whether a
retry may help. Subscription discovery for the default probe scope lives
here as well since it shares the same client and credential.

Notes
-----
- Retries and pagination are owned by
  :class:`~resourcegraph_exporter.adapters.client.RemoteQueryClient`; each
  call here is exactly one HTTP request.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import httpx
from azure.core.credentials_async import AsyncTokenCredential
from azure.core.exceptions import ClientAuthenticationError
from azure.identity.aio import ClientSecretCredential, DefaultAzureCredential

from ..__version__ import USER_AGENT
from ..errors import ConfigError, RemoteQueryError
from ..observability.metrics import SelfMetrics
from ..utils.correlation import get_request_id
from ..utils.retry import TRANSIENT_STATUS_CODES, parse_retry_after
from . import QueryPage, rows_from_table

logger = logging.getLogger(__name__)

RESOURCE_GRAPH_PATH = "/providers/Microsoft.ResourceGraph/resources"
RESOURCE_GRAPH_API_VERSION = "2021-03-01"
SUBSCRIPTIONS_API_VERSION = "2022-12-01"

_RATELIMIT_PREFIX = "x-ms-ratelimit-remaining-"
_USER_QUOTA_HEADER = "x-ms-user-quota-remaining"
_STARTED_EXTENSION = "resourcegraph_exporter.started"
_SUBSCRIPTION_RE = re.compile(r"/subscriptions/([^/]+)", re.IGNORECASE)
_PROVIDER_RE = re.compile(r"/providers/([^/]+)", re.IGNORECASE)


@dataclass(frozen=True)
class AzureCloud:
    """Endpoints of one Azure cloud.

    Attributes
    ----------
    name: str
        Cloud name as used in configuration.
    resource_manager: str
        Azure Resource Manager base URL.
    authority_host: str
        Microsoft Entra authority host for token requests.
    """

    name: str
    resource_manager: str
    authority_host: str

    @property
    def token_scope(self) -> str:
        """Return the OAuth scope for Resource Manager tokens."""
        return f"{self.resource_manager}/.default"


AZURE_CLOUDS: Dict[str, AzureCloud] = {
    cloud.name.lower(): cloud
    for cloud in (
        AzureCloud(
            "AzurePublicCloud",
            "https://management.azure.com",
            "login.microsoftonline.com",
        ),
        AzureCloud(
            "AzureChinaCloud",
            "https://management.chinacloudapi.cn",
            "login.chinacloudapi.cn",
        ),
        AzureCloud(
            "AzureUSGovernmentCloud",
            "https://management.usgovcloudapi.net",
            "login.microsoftonline.us",
        ),
    )
}


def get_cloud(name: str) -> AzureCloud:
    """Look up a cloud by (case-insensitive) name."""
    try:
        return AZURE_CLOUDS[name.lower()]
    except KeyError:
        raise ConfigError(
            f"unknown Azure environment {name!r}",
            details={"available": [c.name for c in AZURE_CLOUDS.values()]},
        ) from None


def build_credential(
    cloud: AzureCloud,
    tenant_id: Optional[str] = None,
    client_id: Optional[str] = None,
    client_secret: Optional[str] = None,
) -> AsyncTokenCredential:
    """Create the async credential used for Resource Manager tokens.

    Explicit service-principal settings select ``ClientSecretCredential``;
    otherwise ``DefaultAzureCredential`` walks its usual chain (environment,
    workload identity, managed identity, Azure CLI).
    """
    if tenant_id and client_id and client_secret:
        logger.info("azure.credential", extra={"type": "client_secret"})
        return ClientSecretCredential(
            tenant_id=tenant_id,
            client_id=client_id,
            client_secret=client_secret,
            authority=cloud.authority_host,
        )
    logger.info("azure.credential", extra={"type": "default"})
    return DefaultAzureCredential(authority=cloud.authority_host)


def build_http_client(
    request_timeout: float,
    metrics: Optional[SelfMetrics] = None,
    **kwargs: Any,
) -> httpx.AsyncClient:
    """Create the shared async HTTP client (per-attempt timeout).

    With ``metrics`` every response is recorded through
    :meth:`SelfMetrics.observe_azure_request`. Extra keyword arguments go to
    :class:`httpx.AsyncClient` (e.g. ``transport``).
    """
    if metrics is not None:
        kwargs["event_hooks"] = _metric_hooks(metrics)
    return httpx.AsyncClient(
        timeout=httpx.Timeout(request_timeout),
        headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
        **kwargs,
    )


def request_labels(url: httpx.URL) -> Tuple[str, str]:
    """Return the ``(provider, subscription)`` an ARM request URL targets.

    Either part is empty when the path does not name one; Resource Graph
    queries carry their subscriptions in the body, not the URL.

    Examples
    --------
    >>> request_labels(httpx.URL("https://management.azure.com/subscriptions/ABC"))
    ('', 'abc')
    """
    provider = _PROVIDER_RE.search(url.path)
    subscription = _SUBSCRIPTION_RE.search(url.path)
    return (
        provider.group(1).lower() if provider else "",
        subscription.group(1).lower() if subscription else "",
    )


def parse_ratelimit_headers(headers: httpx.Headers) -> Dict[Tuple[str, str], float]:
    """Extract remaining-quota headers as ``{(scope, type): remaining}``.

    ``x-ms-ratelimit-remaining-subscription-reads`` becomes
    ``("subscription", "reads")``; Resource Graph's per-user
    ``x-ms-user-quota-remaining`` becomes ``("user", "quota")``.
    """
    limits: Dict[Tuple[str, str], float] = {}
    for name, value in headers.items():
        name = name.lower()
        if name.startswith(_RATELIMIT_PREFIX):
            scope, _, kind = name[len(_RATELIMIT_PREFIX):].partition("-")
            key = (scope, kind or "requests")
        elif name == _USER_QUOTA_HEADER:
            key = ("user", "quota")
        else:
            continue
        try:
            limits[key] = float(value)
        except ValueError:
            logger.debug("azure.ratelimit.unparsable", extra={"header": name, "value": value})
    return limits


def _metric_hooks(
    metrics: SelfMetrics,
) -> Dict[str, List[Callable[[Any], Awaitable[None]]]]:
    async def on_request(request: httpx.Request) -> None:
        request.extensions[_STARTED_EXTENSION] = time.perf_counter()

    async def on_response(response: httpx.Response) -> None:
        request = response.request
        started = request.extensions.get(_STARTED_EXTENSION)
        elapsed = time.perf_counter() - started if started is not None else 0.0
        provider, subscription = request_labels(request.url)
        metrics.observe_azure_request(
            request.method,
            response.status_code,
            provider,
            subscription,
            elapsed,
            parse_ratelimit_headers(response.headers),
        )

    return {"request": [on_request], "response": [on_response]}


async def _bearer_headers(
    credential: AsyncTokenCredential, cloud: AzureCloud
) -> Dict[str, str]:
    try:
        token = await credential.get_token(cloud.token_scope)
    except ClientAuthenticationError as exc:
        raise RemoteQueryError(
            "acquiring an Azure access token failed",
            status_code=401,
            code="AuthenticationFailed",
            cause=exc,
        ) from exc
    return {"Authorization": f"Bearer {token.token}"}


def _error_from_response(resp: httpx.Response) -> RemoteQueryError:
    """Translate a non-2xx ARM response into a RemoteQueryError."""
    code: Optional[str] = None
    message = resp.reason_phrase or "request failed"
    try:
        body = resp.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        err = body["error"]
        code = err.get("code")
        message = err.get("message") or message
        details = err.get("details") or []
        # Resource Graph nests the useful parser message one level down
        if details and isinstance(details[0], dict) and details[0].get("message"):
            message = f"{message} ({details[0]['message']})"
    return RemoteQueryError(
        f"Resource Graph returned HTTP {resp.status_code}: {message}",
        status_code=resp.status_code,
        code=code,
        transient=resp.status_code in TRANSIENT_STATUS_CODES,
        retry_after=parse_retry_after(resp.headers),
    )


async def _send(
    client: httpx.AsyncClient, method: str, url: str, **kwargs: Any
) -> httpx.Response:
    try:
        resp = await client.request(method, url, **kwargs)
    except httpx.TimeoutException as exc:
        raise RemoteQueryError(
            f"request to {url} timed out",
            code="Timeout",
            transient=True,
            cause=exc,
        ) from exc
    except httpx.TransportError as exc:
        raise RemoteQueryError(
            f"request to {url} failed",
            code="ConnectionError",
            transient=True,
            cause=exc,
        ) from exc
    if resp.status_code >= 400:
        raise _error_from_response(resp)
    return resp


class ResourceGraphTransport:
    """Execute one Resource Graph page per call.

    Parameters
    ----------
    client: httpx.AsyncClient
        Shared async client; its timeout is the per-attempt timeout.
    credential: AsyncTokenCredential
        Credential for Resource Manager bearer tokens.
    cloud: AzureCloud
        Target cloud endpoints.
    page_size: int
        Rows requested per page (``$top``, at most 1000).
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        credential: AsyncTokenCredential,
        cloud: AzureCloud,
        *,
        page_size: int = 1000,
    ) -> None:
        self._client = client
        self._credential = credential
        self._cloud = cloud
        self._page_size = page_size
        self._url = f"{cloud.resource_manager}{RESOURCE_GRAPH_PATH}"

    async def __call__(
        self,
        query: str,
        subscriptions: Sequence[str],
        skip_token: Optional[str] = None,
    ) -> QueryPage:
        options: Dict[str, Any] = {"resultFormat": "table", "$top": self._page_size}
        if skip_token:
            options["$skipToken"] = skip_token
        payload = {
            "subscriptions": list(subscriptions),
            "query": query,
            "options": options,
        }
        headers = await _bearer_headers(self._credential, self._cloud)
        logger.debug(
            "resourcegraph.http.post",
            extra={
                "req_id": get_request_id(),
                "subscriptions": len(subscriptions),
                "continuation": bool(skip_token),
            },
        )
        resp = await _send(
            self._client,
            "POST",
            self._url,
            params={"api-version": RESOURCE_GRAPH_API_VERSION},
            json=payload,
            headers=headers,
        )
        try:
            body = resp.json()
        except ValueError as exc:
            raise RemoteQueryError(
                "Resource Graph returned a non-JSON body",
                status_code=resp.status_code,
                code="InvalidResponse",
                cause=exc,
            ) from exc
        return self._parse_page(body)

    @staticmethod
    def _parse_page(body: Dict[str, Any]) -> QueryPage:
        data = body.get("data")
        if isinstance(data, dict):
            rows = rows_from_table(data.get("columns") or [], data.get("rows") or [])
        elif isinstance(data, list):
            rows = [dict(r) for r in data if isinstance(r, dict)]
        else:
            raise RemoteQueryError(
                "Resource Graph response has no 'data' table",
                code="InvalidResponse",
            )
        skip_token = body.get("$skipToken") or None
        truncated = str(body.get("resultTruncated", "false")).lower() == "true"
        if truncated and not skip_token:
            logger.warning(
                "resourcegraph.result_truncated",
                extra={
                    "req_id": get_request_id(),
                    "total_records": body.get("totalRecords"),
                    "hint": "project an 'id' column to enable paging",
                },
            )
        return QueryPage(
            rows=rows,
            skip_token=skip_token,
            total_records=body.get("totalRecords"),
        )


async def discover_subscriptions(
    client: httpx.AsyncClient,
    credential: AsyncTokenCredential,
    cloud: AzureCloud,
    explicit_ids: Sequence[str] = (),
) -> List[str]:
    """Resolve the default subscription scope.

    With ``explicit_ids`` each id is looked up (failing fast on typos or
    missing permissions); otherwise every subscription visible to the
    credential is listed, following ``nextLink`` pages.

    Raises
    ------
    RemoteQueryError
        If a lookup fails.
    ConfigError
        If auto discovery finds no subscription at all.
    """
    headers = await _bearer_headers(credential, cloud)
    params = {"api-version": SUBSCRIPTIONS_API_VERSION}
    found: List[Dict[str, Any]] = []
    if explicit_ids:
        for sid in explicit_ids:
            resp = await _send(
                client,
                "GET",
                f"{cloud.resource_manager}/subscriptions/{sid}",
                params=params,
                headers=headers,
            )
            found.append(resp.json())
    else:
        url: Optional[str] = f"{cloud.resource_manager}/subscriptions"
        while url:
            resp = await _send(
                client,
                "GET",
                url,
                params=params if "api-version" not in url else None,
                headers=headers,
            )
            body = resp.json()
            found.extend(body.get("value") or [])
            url = body.get("nextLink")
        if not found:
            raise ConfigError(
                "no Azure subscriptions found via auto detection, does this "
                "identity have read permissions on any subscription?"
            )
    ids = [str(s["subscriptionId"]).lower() for s in found if s.get("subscriptionId")]
    logger.info(
        "azure.subscriptions.resolved",
        extra={
            "count": len(ids),
            "mode": "explicit" if explicit_ids else "auto",
            "subscriptions": [
                {"id": s.get("subscriptionId"), "name": s.get("displayName")}
                for s in found
            ],
        },
    )
    return ids
