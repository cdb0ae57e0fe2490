"""RollingCounter — detections seen within the last hour.

Timestamps are appended in non-decreasing order, so pruning only ever
drops from the front of the deque.
"""

from __future__ import annotations

from collections import deque
from datetime import datetime, timedelta

from birdtiles.foundation.clock import utc_now


class RollingCounter:
    """Sliding-window count of live detections."""

    def __init__(self, window: timedelta = timedelta(hours=1)) -> None:
        self._window = window
        self._stamps: deque[datetime] = deque()

    def record(self, now: datetime | None = None) -> None:
        now = now or utc_now()
        self._stamps.append(now)
        self._prune(now)

    def count(self, now: datetime | None = None) -> int:
        """Number of recorded timestamps in ``(now - window, now]``."""
        now = now or utc_now()
        self._prune(now)
        return sum(1 for ts in self._stamps if ts <= now)

    def _prune(self, now: datetime) -> None:
        cutoff = now - self._window
        while self._stamps and self._stamps[0] <= cutoff:
            self._stamps.popleft()
