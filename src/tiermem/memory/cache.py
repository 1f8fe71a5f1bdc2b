"""
TTL cache and sliding-window counters

Injectable services replacing process-global state: the importance score
cache and the per-user counters behind the consolidation and thought
triggers. Both take a ``clock`` so tests can move time.
"""

from __future__ import annotations

import threading
import time
from collections import defaultdict, deque
from collections.abc import Callable
from typing import Any


class TTLCache:
    """Key/value cache with per-entry expiry and an optional size bound."""

    def __init__(
        self,
        ttl: float,
        max_entries: int = 10_000,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl = ttl
        self.max_entries = max_entries
        self._clock = clock
        self._data: dict[str, tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            item = self._data.get(key)
            if item is None:
                return None
            expires_at, value = item
            if expires_at <= self._clock():
                del self._data[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        with self._lock:
            if len(self._data) >= self.max_entries:
                self._evict()
            self._data[key] = (self._clock() + (self.ttl if ttl is None else ttl), value)

    def _evict(self) -> None:
        now = self._clock()
        expired = [k for k, (exp, _) in self._data.items() if exp <= now]
        for k in expired:
            del self._data[k]
        # still full: drop the entries closest to expiry
        if len(self._data) >= self.max_entries:
            for k, _ in sorted(self._data.items(), key=lambda kv: kv[1][0])[
                : max(1, self.max_entries // 10)
            ]:
                del self._data[k]

    def __len__(self) -> int:
        return len(self._data)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


class WindowCounter:
    """Per-key event counter over a sliding time window.

    ``hit(key)`` records one event and returns how many events the key has
    seen inside the window (including this one).
    """

    def __init__(self, window: float, clock: Callable[[], float] = time.time):
        self.window = window
        self._clock = clock
        self._events: dict[str, deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()

    def _trim(self, key: str, now: float) -> deque[float]:
        events = self._events[key]
        while events and events[0] <= now - self.window:
            events.popleft()
        return events

    def hit(self, key: str) -> int:
        with self._lock:
            now = self._clock()
            events = self._trim(key, now)
            events.append(now)
            return len(events)

    def count(self, key: str) -> int:
        with self._lock:
            return len(self._trim(key, self._clock()))

    def reset(self, key: str) -> None:
        with self._lock:
            self._events.pop(key, None)
