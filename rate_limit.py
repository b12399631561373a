"""Fixed-window request limiting.

Counts live behind a small store interface so the in-process dict can be
swapped for a shared cache without touching request handlers.
"""
from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Protocol, Tuple


class WindowStore(Protocol):
    def hit(self, key: str, window: int) -> int:
        """Record one request for key in window (an index); return the count so far."""
        ...


class InMemoryWindowStore:
    def __init__(self) -> None:
        self._counts: Dict[str, Tuple[int, int]] = {}
        self._lock = threading.Lock()

    def hit(self, key: str, window: int) -> int:
        with self._lock:
            start, count = self._counts.get(key, (window, 0))
            if start != window:
                start, count = window, 0
            count += 1
            self._counts[key] = (start, count)
            if len(self._counts) > 10_000:
                self._evict(window)
            return count

    def _evict(self, window: int) -> None:
        stale = [k for k, (s, _) in self._counts.items() if s != window]
        for k in stale:
            del self._counts[k]

    def __len__(self) -> int:
        return len(self._counts)


class FixedWindowRateLimiter:
    def __init__(
        self,
        store: WindowStore,
        limit: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if limit <= 0 or window_seconds <= 0:
            raise ValueError("limit and window_seconds must be positive")
        self.store = store
        self.limit = limit
        self.window_seconds = window_seconds
        self.clock = clock

    def allow(self, key: str) -> bool:
        window = int(self.clock() // self.window_seconds)
        return self.store.hit(key, window) <= self.limit
