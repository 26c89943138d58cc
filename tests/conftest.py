"""Pytest configuration for test suite.

Ensures the project root is on ``sys.path`` so imports like
``import resourcegraph_exporter`` resolve regardless of the working
directory pytest chooses, and provides in-memory fakes for the remote
query transport and the clock.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pytest


def _ensure_project_root_on_syspath() -> None:
    project_root = Path(__file__).resolve().parents[1]
    project_root_str = str(project_root)
    if project_root_str not in sys.path:
        # Prepend to prefer local sources over site-packages
        sys.path.insert(0, project_root_str)


_ensure_project_root_on_syspath()

from resourcegraph_exporter.adapters import QueryPage  # noqa: E402
from resourcegraph_exporter.config.models import AppConfig, EnvSettings  # noqa: E402

SUB_A = "00000000-0000-0000-0000-00000000000a"
SUB_B = "00000000-0000-0000-0000-00000000000b"


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTransport:
    """Scripted :class:`QueryTransport`.

    ``responses`` maps a query text to a list of outcomes consumed in order;
    each outcome is a ``QueryPage``, a list of rows (single page) or an
    exception to raise. The last outcome repeats once the list is exhausted.
    """

    def __init__(self, responses: Optional[Dict[str, List[Any]]] = None) -> None:
        self.responses: Dict[str, List[Any]] = responses or {}
        self.calls: List[Tuple[str, Tuple[str, ...], Optional[str]]] = []

    async def __call__(
        self,
        query: str,
        subscriptions: Sequence[str],
        skip_token: Optional[str] = None,
    ) -> QueryPage:
        self.calls.append((query, tuple(subscriptions), skip_token))
        script = self.responses.get(query)
        if not script:
            raise AssertionError(f"unexpected query {query!r}")
        outcome = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, QueryPage):
            return outcome
        return QueryPage(rows=list(outcome))

    def count(self, query: str) -> int:
        return sum(1 for q, _, _ in self.calls if q == query)


async def no_sleep(_seconds: float) -> None:
    return None


VM_COUNT_QUERY = "Resources | summarize count = count() by location"
DISK_QUERY = "Resources | where type =~ 'microsoft.compute/disks' | project id, sizeGb"

SAMPLE_CONFIG: Dict[str, Any] = {
    "queries": [
        {
            "name": "vm_count",
            "query": VM_COUNT_QUERY,
            "metric": {
                "name": "azure_vm_count",
                "labels": {"location": "location"},
                "value": "count",
            },
            "cacheTTL": 120,
        },
        {
            "name": "disks",
            "module": "storage",
            "query": DISK_QUERY,
            "metric": {
                "name": "azure_disk_size_gb",
                "labels": {"resource_id": {"column": "id", "filters": ["tolower"]}},
                "value": {"column": "sizeGb", "default": 0},
            },
        },
    ]
}

VM_ROWS = [
    {"location": "westeurope", "count": 3},
    {"location": "eastus", "count": 1},
]
DISK_ROWS = [
    {"id": "/SUBSCRIPTIONS/A/DISKS/D1", "sizeGb": 128},
    {"id": "/SUBSCRIPTIONS/A/DISKS/D2", "sizeGb": None},
]


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock(1000.0)


@pytest.fixture
def sample_config() -> AppConfig:
    return AppConfig.from_dict(SAMPLE_CONFIG, environ={})


@pytest.fixture
def settings() -> EnvSettings:
    return EnvSettings(
        _env_file=None,
        default_cache_ttl=120,
        probe_timeout=5,
        subscriptions=f"{SUB_A},{SUB_B}",
    )


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport({VM_COUNT_QUERY: [VM_ROWS], DISK_QUERY: [DISK_ROWS]})
