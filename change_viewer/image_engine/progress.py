"""Byte-level progress accounting for streaming loads."""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable
from typing import NamedTuple

# (percent, eta_seconds | None, bytes_per_second, total_bytes)
ProgressCallback = Callable[[int, "float | None", float, int], None]

HISTORY_LIMIT = 10
SPEED_WINDOW = 3
ETA_WINDOW = 5
EMIT_INTERVAL = 0.1


class ProgressSample(NamedTuple):
    timestamp: float
    loaded: int


def calculate_speed(history: list[ProgressSample]) -> float:
    """Bytes per second over the last few samples (0 when unknown)."""
    if len(history) < 2:
        return 0.0
    recent = history[-SPEED_WINDOW:]
    span = recent[-1].timestamp - recent[0].timestamp
    if span <= 0:
        return 0.0
    return (recent[-1].loaded - recent[0].loaded) / span


def calculate_eta(history: list[ProgressSample], total: int, loaded: int) -> float | None:
    """Seconds remaining, or None when there is not enough signal."""
    if len(history) < 2:
        return None
    recent = history[-ETA_WINDOW:]
    span = recent[-1].timestamp - recent[0].timestamp
    moved = recent[-1].loaded - recent[0].loaded
    if span <= 0 or moved <= 0:
        return None
    return max(0.0, (total - loaded) / (moved / span))


class ProgressTracker:
    """Accumulates streamed bytes and throttles progress callbacks."""

    def __init__(
        self,
        total: int,
        on_progress: ProgressCallback | None = None,
        clock: Callable[[], float] = time.monotonic,
        interval: float = EMIT_INTERVAL,
    ) -> None:
        self.total = max(0, int(total))
        self.loaded = 0
        self._on_progress = on_progress
        self._clock = clock
        self._interval = interval
        self._last_emit = clock()
        self.history: deque[ProgressSample] = deque(maxlen=HISTORY_LIMIT)

    def feed(self, nbytes: int) -> None:
        self.loaded += nbytes
        if self.total <= 0:
            return
        now = self._clock()
        if now - self._last_emit < self._interval:
            return
        self.history.append(ProgressSample(now, self.loaded))
        samples = list(self.history)
        percent = round(self.loaded / self.total * 100)
        eta = calculate_eta(samples, self.total, self.loaded)
        speed = calculate_speed(samples)
        self._last_emit = now
        if self._on_progress is not None:
            self._on_progress(percent, eta, speed, self.total)

    def discard(self) -> None:
        self.history.clear()
