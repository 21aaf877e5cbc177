"""Sliding-window rate limiter for the ingestion endpoint.

The limiter is owned by the app and injected where needed. Eviction:
each ``allow()`` drops timestamps older than the window for its key, and
once more than ``prune_threshold`` keys are tracked it also evicts every
key whose window has fully expired (``prune()`` does the same on
demand). ``reset()`` clears all state. Nothing in the relay core depends
on this state surviving a restart.
"""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Dict


@dataclass
class RateLimiter:
    max_calls: int
    window_seconds: int
    prune_threshold: int = 1024
    _store: Dict[str, list[float]] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def allow(self, key: str) -> bool:
        now = time.time()
        window_start = now - self.window_seconds
        with self._lock:
            if len(self._store) > self.prune_threshold:
                self._evict(window_start)
            calls = [t for t in self._store.get(key, []) if t >= window_start]
            if len(calls) >= self.max_calls:
                self._store[key] = calls
                return False
            calls.append(now)
            self._store[key] = calls
            return True

    def _evict(self, window_start: float) -> int:
        stale = [k for k, calls in self._store.items() if not calls or calls[-1] < window_start]
        for key in stale:
            del self._store[key]
        return len(stale)

    def prune(self) -> int:
        """Evict keys with no calls inside the window. Returns the count evicted."""
        with self._lock:
            return self._evict(time.time() - self.window_seconds)

    def reset(self) -> None:
        with self._lock:
            self._store.clear()

    def tracked_keys(self) -> int:
        return len(self._store)
