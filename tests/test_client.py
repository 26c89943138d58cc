"""Tests for the paginating, retrying remote query client."""

from __future__ import annotations

import asyncio
from typing import List

import pytest

from resourcegraph_exporter.adapters import QueryPage
from resourcegraph_exporter.adapters.client import RemoteQueryClient
from resourcegraph_exporter.domain.models import SubscriptionScope
from resourcegraph_exporter.errors import RemoteQueryError
from resourcegraph_exporter.utils.retry import RetryPolicy

from conftest import SUB_A, SUB_B, FakeTransport

QUERY = "Resources | project id"
SCOPE = SubscriptionScope.of([SUB_A, SUB_B])
NO_JITTER = RetryPolicy(max_attempts=3, base_delay=0.5, jitter=0)


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.mark.asyncio
async def test_pages_are_concatenated_in_order():
    transport = FakeTransport(
        {
            QUERY: [
                QueryPage(rows=[{"id": 1}, {"id": 2}], skip_token="t1"),
                QueryPage(rows=[{"id": 3}], skip_token="t2"),
                QueryPage(rows=[{"id": 4}]),
            ]
        }
    )
    client = RemoteQueryClient(transport, NO_JITTER)
    rows = await client.execute(QUERY, SCOPE)

    assert [r["id"] for r in rows] == [1, 2, 3, 4]
    assert [c[2] for c in transport.calls] == [None, "t1", "t2"]
    assert transport.calls[0][1] == (SUB_A, SUB_B)


@pytest.mark.asyncio
async def test_transient_failure_is_retried_with_backoff():
    sleep = RecordingSleep()
    transport = FakeTransport(
        {
            QUERY: [
                RemoteQueryError("busy", status_code=503, transient=True),
                RemoteQueryError("throttled", status_code=429, transient=True, retry_after=2),
                [{"id": 1}],
            ]
        }
    )
    client = RemoteQueryClient(transport, NO_JITTER, sleep=sleep)
    rows = await client.execute(QUERY, SCOPE)

    assert rows == [{"id": 1}]
    assert len(transport.calls) == 3
    assert sleep.delays == [0.5, 2]


@pytest.mark.asyncio
async def test_non_transient_failure_propagates_immediately():
    sleep = RecordingSleep()
    transport = FakeTransport(
        {QUERY: [RemoteQueryError("bad query", status_code=400, code="BadRequest")]}
    )
    client = RemoteQueryClient(transport, NO_JITTER, sleep=sleep)

    with pytest.raises(RemoteQueryError) as excinfo:
        await client.execute(QUERY, SCOPE)
    assert excinfo.value.code == "BadRequest"
    assert len(transport.calls) == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_retries_exhausted_raises_last_error():
    transport = FakeTransport(
        {QUERY: [RemoteQueryError("down", status_code=500, transient=True)]}
    )
    client = RemoteQueryClient(transport, NO_JITTER, sleep=RecordingSleep())

    with pytest.raises(RemoteQueryError):
        await client.execute(QUERY, SCOPE)
    assert len(transport.calls) == NO_JITTER.max_attempts


@pytest.mark.asyncio
async def test_failed_later_page_returns_no_partial_rows():
    transport = FakeTransport(
        {
            QUERY: [
                QueryPage(rows=[{"id": 1}], skip_token="t1"),
                RemoteQueryError("forbidden", status_code=403),
            ]
        }
    )
    client = RemoteQueryClient(transport, NO_JITTER, sleep=RecordingSleep())
    with pytest.raises(RemoteQueryError) as excinfo:
        await client.execute(QUERY, SCOPE)
    assert excinfo.value.status_code == 403


@pytest.mark.asyncio
async def test_total_timeout_bounds_execution():
    async def hanging(query, subscriptions, skip_token=None):
        await asyncio.sleep(10)
        return QueryPage()

    client = RemoteQueryClient(hanging, NO_JITTER, total_timeout=0.05)
    with pytest.raises(RemoteQueryError) as excinfo:
        await client.execute(QUERY, SCOPE)
    assert excinfo.value.code == "Timeout"
    assert excinfo.value.transient


@pytest.mark.asyncio
async def test_page_limit():
    transport = FakeTransport({QUERY: [QueryPage(rows=[{"id": 1}], skip_token="again")]})
    client = RemoteQueryClient(transport, NO_JITTER, max_pages=3)
    with pytest.raises(RemoteQueryError) as excinfo:
        await client.execute(QUERY, SCOPE)
    assert excinfo.value.code == "TooManyPages"
    assert len(transport.calls) == 3


@pytest.mark.asyncio
async def test_blank_query_rejected():
    client = RemoteQueryClient(FakeTransport(), NO_JITTER)
    with pytest.raises(ValueError):
        await client.execute("   ", SCOPE)
