"""Remote query client: pagination and retry over a query transport.

The client executes one query against one subscription scope in a single
logical call. It follows continuation tokens until the last page, retries
each page on transient failures according to a :class:`RetryPolicy`, and
either returns every row in page order or raises; partial page sets are
never returned.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, List, Optional

from ..domain.models import ResultRow, SubscriptionScope
from ..errors import RemoteQueryError
from ..utils.correlation import get_request_id
from ..utils.retry import RetryPolicy
from . import QueryPage, QueryTransport

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class RemoteQueryClient:
    """Paginating, retrying client around a :class:`QueryTransport`.

    Parameters
    ----------
    transport: QueryTransport
        Page-level executor (Resource Graph adapter or a test fake).
    retry_policy: RetryPolicy
        Retry decisions and backoff delays.
    total_timeout: Optional[float]
        Upper bound in seconds for one ``execute`` call, including every
        page and retry. None disables the bound.
    max_pages: int
        Safety limit on followed continuation tokens.
    sleep: Sleep
        Awaitable sleep, injectable for tests.
    """

    def __init__(
        self,
        transport: QueryTransport,
        retry_policy: Optional[RetryPolicy] = None,
        *,
        total_timeout: Optional[float] = None,
        max_pages: int = 1000,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._transport = transport
        self._policy = retry_policy or RetryPolicy()
        self._total_timeout = total_timeout
        self._max_pages = max_pages
        self._sleep = sleep

    @property
    def retry_policy(self) -> RetryPolicy:
        """Return the active retry policy."""
        return self._policy

    async def execute(self, query: str, scope: SubscriptionScope) -> List[ResultRow]:
        """Run ``query`` against ``scope`` and return all rows in page order.

        Raises
        ------
        ValueError
            If ``query`` is blank or ``scope`` is empty.
        RemoteQueryError
            If any page fails permanently, retries are exhausted, or the
            total timeout elapses.
        """
        if not query or not query.strip():
            raise ValueError("query text must not be empty")
        if not scope:
            raise ValueError("subscription scope must not be empty")
        if self._total_timeout is None:
            return await self._execute_pages(query, scope)
        try:
            return await asyncio.wait_for(
                self._execute_pages(query, scope), timeout=self._total_timeout
            )
        except asyncio.TimeoutError as exc:
            raise RemoteQueryError(
                f"query did not complete within {self._total_timeout}s",
                code="Timeout",
                transient=True,
                cause=exc,
            ) from exc

    async def _execute_pages(
        self, query: str, scope: SubscriptionScope
    ) -> List[ResultRow]:
        rows: List[ResultRow] = []
        skip_token: Optional[str] = None
        pages = 0
        started = time.monotonic()
        while True:
            page = await self._fetch_page(query, scope, skip_token, pages + 1)
            rows.extend(page.rows)
            pages += 1
            skip_token = page.skip_token
            if not skip_token:
                break
            if pages >= self._max_pages:
                raise RemoteQueryError(
                    f"query exceeded {self._max_pages} result pages",
                    code="TooManyPages",
                )
        logger.debug(
            "query.execute.done",
            extra={
                "req_id": get_request_id(),
                "pages": pages,
                "rows": len(rows),
                "subscriptions": len(scope),
                "duration_ms": int((time.monotonic() - started) * 1000),
            },
        )
        return rows

    async def _fetch_page(
        self,
        query: str,
        scope: SubscriptionScope,
        skip_token: Optional[str],
        page_no: int,
    ) -> QueryPage:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._transport(
                    query, list(scope.subscription_ids), skip_token
                )
            except RemoteQueryError as exc:
                if not self._policy.should_retry(attempt, exc):
                    logger.warning(
                        "query.page.failed",
                        extra={
                            "req_id": get_request_id(),
                            "page": page_no,
                            "attempt": attempt,
                            "status": exc.status_code,
                            "code": exc.code,
                            "transient": exc.transient,
                        },
                    )
                    raise
                delay = self._policy.delay(attempt, exc.retry_after)
                logger.info(
                    "query.page.retry",
                    extra={
                        "req_id": get_request_id(),
                        "page": page_no,
                        "attempt": attempt,
                        "max_attempts": self._policy.max_attempts,
                        "status": exc.status_code,
                        "delay_s": round(delay, 3),
                    },
                )
                await self._sleep(delay)
