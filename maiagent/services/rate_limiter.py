from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable


@dataclass(frozen=True)
class WindowCount:
    count: int
    reset_at: float


class CounterStore(ABC):
    """Fixed-window hit counters keyed by an opaque string."""

    @abstractmethod
    def increment(self, key: str, window_seconds: int, now: float) -> WindowCount:
        raise NotImplementedError

    @abstractmethod
    def peek(self, key: str, now: float) -> WindowCount | None:
        raise NotImplementedError


class InMemoryCounterStore(CounterStore):
    """Process-local counters. Advisory only when several workers run."""

    def __init__(self, sweep_every: int = 100) -> None:
        self._windows: dict[str, WindowCount] = {}
        self._lock = threading.Lock()
        self._sweep_every = max(1, sweep_every)
        self._ops = 0

    def increment(self, key: str, window_seconds: int, now: float) -> WindowCount:
        with self._lock:
            self._ops += 1
            if self._ops % self._sweep_every == 0:
                self._sweep(now)
            current = self._windows.get(key)
            if current is None or current.reset_at <= now:
                current = WindowCount(count=1, reset_at=now + window_seconds)
            else:
                current = WindowCount(count=current.count + 1, reset_at=current.reset_at)
            self._windows[key] = current
            return current

    def peek(self, key: str, now: float) -> WindowCount | None:
        current = self._windows.get(key)
        if current is None or current.reset_at <= now:
            return None
        return current

    def _sweep(self, now: float) -> None:
        for key in [k for k, v in self._windows.items() if v.reset_at <= now]:
            del self._windows[key]


class RateLimiter:
    def __init__(
        self,
        store: CounterStore,
        limit: int,
        window_seconds: int,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.store = store
        self.limit = max(1, int(limit))
        self.window_seconds = max(1, int(window_seconds))
        self._clock = clock or time.time

    def allow(self, key: str) -> bool:
        current = self.store.increment(key, self.window_seconds, self._clock())
        return current.count <= self.limit

    def retry_after_seconds(self, key: str) -> int:
        current = self.store.peek(key, self._clock())
        if current is None:
            return 0
        return max(0, int(current.reset_at - self._clock()))
