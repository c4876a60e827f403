"""Sliding time window of failure timestamps."""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable


class FailureWindow:
    """Ordered failure timestamps bounded by `duration_seconds`.

    Not thread-safe on its own; the owning breaker serializes access.
    """

    def __init__(self, duration_seconds: float, timestamps: Iterable[float] = ()) -> None:
        self.duration_seconds = duration_seconds
        self._timestamps: deque[float] = deque(sorted(timestamps))

    def __len__(self) -> int:
        return len(self._timestamps)

    def record(self, now: float) -> int:
        """Append a failure at `now`, prune, and return the in-window count."""

        # keep order even if a clock steps backwards
        if self._timestamps and now < self._timestamps[-1]:
            now = self._timestamps[-1]
        self._timestamps.append(now)
        return self.prune(now)

    def prune(self, now: float) -> int:
        """Drop entries strictly older than `now - duration_seconds`."""

        cutoff = now - self.duration_seconds
        while self._timestamps and self._timestamps[0] < cutoff:
            self._timestamps.popleft()
        return len(self._timestamps)

    def clear(self) -> None:
        self._timestamps.clear()

    def timestamps(self) -> tuple[float, ...]:
        return tuple(self._timestamps)
