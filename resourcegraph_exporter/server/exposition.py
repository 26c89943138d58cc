"""Prometheus text rendering of probe results.

Each probe renders into a throwaway :class:`CollectorRegistry` holding one
custom collector, so the payload only ever contains the samples of that
probe plus a few ``resourcegraph_probe_*`` series describing it.
"""

from __future__ import annotations

from typing import Dict, Iterable, Iterator, List

from prometheus_client import CollectorRegistry, generate_latest
from prometheus_client.core import GaugeMetricFamily, Metric

from ..domain.models import MetricSample
from .orchestrator import ProbeResult

PROBE_SUCCESS = "resourcegraph_probe_query_success"
PROBE_STALE = "resourcegraph_probe_query_stale"
PROBE_DURATION = "resourcegraph_probe_duration_seconds"


def group_samples(samples: Iterable[MetricSample]) -> List[GaugeMetricFamily]:
    """Group samples into gauge families, keeping first-seen name order."""
    families: Dict[str, GaugeMetricFamily] = {}
    for sample in samples:
        family = families.get(sample.name)
        if family is None:
            family = GaugeMetricFamily(sample.name, f"Resource Graph metric {sample.name}")
            families[sample.name] = family
        family.add_sample(sample.name, sample.label_dict(), sample.value)
    return list(families.values())


class ProbeCollector:
    """Custom collector yielding the families of one :class:`ProbeResult`."""

    def __init__(self, result: ProbeResult) -> None:
        self._result = result

    def collect(self) -> Iterator[Metric]:
        yield from group_samples(self._result.samples)

        success = GaugeMetricFamily(
            PROBE_SUCCESS, "Whether the query was refreshed or served fresh", labels=["query"]
        )
        stale = GaugeMetricFamily(
            PROBE_STALE, "Whether the query was served from a stale cache entry", labels=["query"]
        )
        for status in self._result.statuses:
            success.add_metric([status.query], 0.0 if status.failed else 1.0)
            stale.add_metric([status.query], 1.0 if status.stale else 0.0)
        yield success
        yield stale
        yield GaugeMetricFamily(
            PROBE_DURATION, "Seconds the probe took", value=self._result.duration
        )


def render_probe(result: ProbeResult) -> bytes:
    """Return ``result`` in Prometheus text exposition format."""
    registry = CollectorRegistry(auto_describe=False)
    registry.register(ProbeCollector(result))
    return generate_latest(registry)
