"""
Sliding-window rate limiting keyed by data variable name.
"""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable


class SlidingWindowRateLimiter:
    """Allow at most ``max_events`` per key within any ``window_seconds`` span.

    ``allow`` only checks; a slot is consumed by ``record`` once the guarded
    work has actually run.
    """

    def __init__(
        self,
        max_events: int = 100,
        window_seconds: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_events = max_events
        self.window_seconds = window_seconds
        self._clock = clock
        self._events: dict[str, deque[float]] = {}

    def _prune(self, key: str) -> deque[float]:
        events = self._events.setdefault(key, deque())
        cutoff = self._clock() - self.window_seconds
        while events and events[0] <= cutoff:
            events.popleft()
        return events

    def allow(self, key: str) -> bool:
        return len(self._prune(key)) < self.max_events

    def record(self, key: str) -> None:
        self._prune(key).append(self._clock())

    def remaining(self, key: str) -> int:
        return max(0, self.max_events - len(self._prune(key)))

    def reset(self, key: str | None = None) -> None:
        if key is None:
            self._events.clear()
        else:
            self._events.pop(key, None)
