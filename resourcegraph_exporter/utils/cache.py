"""Single-flight TTL cache for computed metric samples.

This module wraps :class:`cachetools.LRUCache` with the get-or-compute
contract the probe path needs:

- a fresh entry is served without recomputation;
- at most one computation runs per key; concurrent callers await it;
- a failed computation never evicts the last good value (stale-serve);
- expired entries are reclaimed by an explicit, cancellable sweeper task.

Keys are independent: each has its own :class:`asyncio.Lock`, so slow
queries never block unrelated ones.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Hashable
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Generic, Optional, Tuple, TypeVar

from cachetools import LRUCache  # type: ignore[import-untyped]

from ..errors import CacheComputeError

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


@dataclass(frozen=True)
class CacheEntry(Generic[V]):
    """Last successful value for one key.

    Attributes
    ----------
    value: V
        Cached value (replaced whole, never mutated).
    created_at: float
        Clock time the value was stored.
    expires_at: float
        Clock time from which the value is considered expired.
    """

    value: V
    created_at: float
    expires_at: float

    def is_fresh(self, now: float) -> bool:
        """Return True while ``now`` is before the expiry time."""
        return now < self.expires_at


@dataclass(frozen=True)
class CacheLookup(Generic[V]):
    """Outcome of :meth:`MetricCache.get_or_compute`.

    Attributes
    ----------
    value: V
        Fresh or freshly computed value.
    hit: bool
        True when served from cache without computing.
    shared: bool
        True when this caller awaited another caller's computation.
    """

    value: V
    hit: bool
    shared: bool = False


class MetricCache(Generic[K, V]):
    """Per-key single-flight cache with TTL and stale retention.

    Parameters
    ----------
    maxsize: int
        Maximum number of entries to retain. When the cache is full, the
        least-recently-used entry is discarded.
    grace: float
        Seconds an expired entry is kept for stale-serve before the sweeper
        may drop it.
    clock: Callable[[], float]
        Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        maxsize: int = 4096,
        *,
        grace: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._entries: LRUCache[K, CacheEntry[V]] = LRUCache(maxsize=maxsize)
        self._inflight: Dict[K, "asyncio.Task[V]"] = {}
        self._locks: Dict[K, asyncio.Lock] = {}
        self._grace = grace
        self._clock = clock

    def __len__(self) -> int:
        return len(self._entries)

    def peek(self, key: K) -> Optional[CacheEntry[V]]:
        """Return the stored entry for ``key`` (fresh or not) without side effects."""
        return self._entries.get(key)

    def stale_value(self, key: K) -> Optional[V]:
        """Return the last good value for ``key`` regardless of expiry."""
        entry = self._entries.get(key)
        return entry.value if entry is not None else None

    def in_flight(self, key: K) -> bool:
        """Return True while a computation for ``key`` is running."""
        task = self._inflight.get(key)
        return task is not None and not task.done()

    async def get_or_compute(
        self,
        key: K,
        ttl: float,
        compute: Callable[[], Awaitable[V]],
    ) -> CacheLookup[V]:
        """Return the cached value for ``key`` or compute and store it.

        Parameters
        ----------
        key: K
            Cache key.
        ttl: float
            Lifetime in seconds of a newly computed value.
        compute: Callable[[], Awaitable[V]]
            Zero-argument coroutine factory producing the value.

        Returns
        -------
        CacheLookup[V]
            Value plus hit/shared flags.

        Raises
        ------
        CacheComputeError
            If the computation fails. The previous entry is kept and exposed
            as ``stale``.
        """
        entry = self._entries.get(key)
        if entry is not None and entry.is_fresh(self._clock()):
            return CacheLookup(entry.value, hit=True)

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            entry = self._entries.get(key)
            if entry is not None and entry.is_fresh(self._clock()):
                return CacheLookup(entry.value, hit=True)
            task = self._inflight.get(key)
            shared = task is not None
            if task is None:
                task = asyncio.create_task(self._run(key, ttl, compute))
                task.add_done_callback(_consume_result)
                self._inflight[key] = task

        # shield: a caller's deadline must not cancel the shared computation
        try:
            value = await asyncio.shield(task)
        except Exception as exc:
            raise CacheComputeError(key, exc, stale=self.stale_value(key)) from exc
        return CacheLookup(value, hit=False, shared=shared)

    async def _run(
        self, key: K, ttl: float, compute: Callable[[], Awaitable[V]]
    ) -> V:
        try:
            value = await compute()
            now = self._clock()
            self._entries[key] = CacheEntry(value, created_at=now, expires_at=now + ttl)
            return value
        except Exception as exc:
            logger.warning(
                "cache.compute.failed",
                extra={
                    "key": str(key),
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                    "stale_available": key in self._entries,
                },
            )
            raise
        finally:
            self._inflight.pop(key, None)

    def sweep(self, now: Optional[float] = None) -> int:
        """Drop entries expired for longer than the grace period.

        Returns the number of removed entries.
        """
        current = self._clock() if now is None else now
        doomed = [
            key
            for key, entry in list(self._entries.items())
            if current >= entry.expires_at + self._grace and not self.in_flight(key)
        ]
        for key in doomed:
            self._entries.pop(key, None)
        for key, lock in list(self._locks.items()):
            if key not in self._entries and not lock.locked():
                self._locks.pop(key, None)
        if doomed:
            logger.debug("cache.sweep", extra={"removed": len(doomed)})
        return len(doomed)

    async def run_sweeper(self, interval: float) -> None:
        """Sweep every ``interval`` seconds until cancelled."""
        while True:
            await asyncio.sleep(interval)
            self.sweep()

    def keys(self) -> Tuple[K, ...]:
        """Return the currently stored keys."""
        return tuple(self._entries.keys())


def _consume_result(task: "asyncio.Task[object]") -> None:
    # every waiter may have timed out; retrieve the exception so asyncio
    # does not report it as never retrieved
    if not task.cancelled():
        task.exception()
