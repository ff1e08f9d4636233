from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable


@dataclass
class Window:
    count: int
    reset_at: float


class CounterStore(ABC):
    @abstractmethod
    def get(self, key: str) -> Window | None:
        pass

    @abstractmethod
    def set(self, key: str, window: Window) -> None:
        pass

    @abstractmethod
    def prune(self, now: float) -> None:
        """Drop windows that ended before now."""


class MemoryCounterStore(CounterStore):
    def __init__(self):
        self._windows: dict[str, Window] = {}

    def get(self, key: str) -> Window | None:
        return self._windows.get(key)

    def set(self, key: str, window: Window) -> None:
        self._windows[key] = window

    def prune(self, now: float) -> None:
        for key in [k for k, w in self._windows.items() if now > w.reset_at]:
            del self._windows[key]

    def __len__(self) -> int:
        return len(self._windows)


class RateLimiter:
    """Fixed-window request limiter keyed by client identity.

    The first request from a client opens a window of `window_seconds`; up to
    `max_requests` requests are allowed until it ends, then a new window opens.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        store: CounterStore | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.store = store if store is not None else MemoryCounterStore()
        self.clock = clock
        self._hits_since_prune = 0

    def hit(self, client_id: str) -> bool:
        """Count a request. Returns False if the client is over its limit."""
        now = self.clock()
        self._maybe_prune(now)
        window = self.store.get(client_id)
        if window is None or now > window.reset_at:
            self.store.set(client_id, Window(count=1, reset_at=now + self.window_seconds))
            return True
        window.count += 1
        self.store.set(client_id, window)
        return window.count <= self.max_requests

    def _maybe_prune(self, now: float) -> None:
        self._hits_since_prune += 1
        if self._hits_since_prune >= 1000:
            self._hits_since_prune = 0
            self.store.prune(now)
