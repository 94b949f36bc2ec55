"""Keyed work queue for reconciliation workers.

Semantics follow the usual controller work queue:

* a key waiting in the queue is never queued a second time;
* a key is never handed to two workers at once; if it is added while being
  processed it is queued again once ``done`` is called;
* ``add_after`` delays an add, ``add_rate_limited`` delays it with per-key
  exponential backoff that ``forget`` resets.
"""

from __future__ import annotations

import asyncio
from collections.abc import Hashable
from typing import Generic, TypeVar

K = TypeVar("K", bound=Hashable)

_BASE_DELAY = 0.005
_MAX_DELAY = 1000.0
# 2**attempts stops growing here; max_delay clamps the result
_MAX_EXPONENT = 32


class WorkQueue(Generic[K]):
    """asyncio work queue with deduplication and delayed re-adds."""

    def __init__(self, base_delay: float = _BASE_DELAY, max_delay: float = _MAX_DELAY) -> None:
        self._ready: asyncio.Queue[K] = asyncio.Queue()
        self._dirty: set[K] = set()
        self._processing: set[K] = set()
        self._timers: dict[K, tuple[float, asyncio.TimerHandle]] = {}
        self._failures: dict[K, int] = {}
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._shutting_down = False

    def add(self, key: K) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key not in self._processing:
            self._ready.put_nowait(key)

    def add_after(self, key: K, delay: float) -> None:
        """Add *key* after *delay* seconds; an earlier pending re-add wins."""
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return
        loop = asyncio.get_running_loop()
        due = loop.time() + delay
        existing = self._timers.get(key)
        if existing is not None:
            if existing[0] <= due:
                return
            existing[1].cancel()
        self._timers[key] = (due, loop.call_at(due, self._fire, key))

    def _fire(self, key: K) -> None:
        self._timers.pop(key, None)
        self.add(key)

    def add_rate_limited(self, key: K) -> float:
        """Re-add *key* after its backoff delay and return that delay."""
        delay = self.backoff(key)
        self.add_after(key, delay)
        return delay

    def backoff(self, key: K) -> float:
        """Count a failure of *key* and return the delay before its next try."""
        attempts = self._failures.get(key, 0)
        self._failures[key] = attempts + 1
        return min(self._base_delay * 2.0 ** min(attempts, _MAX_EXPONENT), self._max_delay)

    def forget(self, key: K) -> None:
        self._failures.pop(key, None)

    def num_requeues(self, key: K) -> int:
        return self._failures.get(key, 0)

    async def get(self) -> K:
        """Wait for the next key and mark it as being processed."""
        key = await self._ready.get()
        self._dirty.discard(key)
        self._processing.add(key)
        return key

    def done(self, key: K) -> None:
        self._processing.discard(key)
        if key in self._dirty:
            self._ready.put_nowait(key)

    def shutdown(self) -> None:
        """Drop pending timers and refuse further adds."""
        self._shutting_down = True
        for _, handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

    def __len__(self) -> int:
        return self._ready.qsize()
