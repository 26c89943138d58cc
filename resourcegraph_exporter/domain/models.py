"""Canonical data model shared by the query client, mapper and cache.

These types are deliberately small: a result row is a plain ordered dict, a
subscription scope is an ordered tuple of ids with a stable fingerprint, and
a metric sample is an immutable (name, labels, value) triple that can be
hashed and compared.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Tuple

ResultRow = Dict[str, Any]
"""One Resource Graph result row: column name to typed cell, in column order."""


@dataclass(frozen=True)
class SubscriptionScope:
    """Non-empty ordered set of subscription ids a query runs against.

    Attributes
    ----------
    subscription_ids: Tuple[str, ...]
        Subscription identifiers, de-duplicated with first-seen order kept.
    """

    subscription_ids: Tuple[str, ...]

    def __post_init__(self) -> None:
        if not self.subscription_ids:
            raise ValueError("subscription scope must not be empty")

    @classmethod
    def of(cls, ids: Iterable[str]) -> "SubscriptionScope":
        """Build a scope from any iterable, dropping duplicates."""
        seen: Dict[str, None] = {}
        for sid in ids:
            seen.setdefault(sid.strip().lower(), None)
        return cls(tuple(s for s in seen if s))

    def fingerprint(self) -> str:
        """Return a stable hash of the ordered id set."""
        joined = ",".join(self.subscription_ids)
        return hashlib.sha256(joined.encode("utf-8")).hexdigest()

    def restrict(self, ids: Iterable[str]) -> "SubscriptionScope | None":
        """Return the part of this scope that is also in ``ids``, or None."""
        wanted = {sid.strip().lower() for sid in ids}
        kept = tuple(sid for sid in self.subscription_ids if sid in wanted)
        return SubscriptionScope(kept) if kept else None

    def __contains__(self, subscription_id: object) -> bool:
        if not isinstance(subscription_id, str):
            return False
        return subscription_id.strip().lower() in self.subscription_ids

    def __len__(self) -> int:
        return len(self.subscription_ids)

    def __iter__(self):
        return iter(self.subscription_ids)


@dataclass(frozen=True)
class MetricSample:
    """Single exposed time-series point.

    Attributes
    ----------
    name: str
        Prometheus metric name.
    labels: Tuple[Tuple[str, str], ...]
        Label pairs in template order.
    value: float
        Sample value.
    """

    name: str
    labels: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)
    value: float = 0.0

    @classmethod
    def create(
        cls, name: str, labels: Dict[str, str] | None = None, value: float = 0.0
    ) -> "MetricSample":
        """Build a sample from a label mapping."""
        return cls(name, tuple((labels or {}).items()), float(value))

    def label_dict(self) -> Dict[str, str]:
        """Return the labels as a dict."""
        return dict(self.labels)

    def series_key(self) -> Tuple[str, frozenset]:
        """Identity of the series: metric name plus unordered label set."""
        return self.name, frozenset(self.labels)

