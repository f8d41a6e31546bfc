"""Resource governor: memory pressure, network quality and cache counters.

The governor is a passive observer. Loader and preloader feed it load
timings; the cache store reports its memory estimate after every mutation.
A periodic check publishes memory pressure to registered handlers (the
engine subscribes its aggressive shrink).
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
from collections.abc import Callable
from dataclasses import dataclass

import psutil

from change_viewer.logger import get_logger

_logger = get_logger("governor")

MB = 1024 * 1024

CACHE_PRESSURE_RATIO = 0.8
HEAP_PRESSURE_RATIO = 0.9
MAX_RETRY_DELAY = 8.0
RETRY_GROWTH = 1.5


class NetworkQuality(str, enum.Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"


def quality_for_load_time(load_time: float) -> NetworkQuality:
    """Classify a load duration in seconds."""
    if load_time < 1.0:
        return NetworkQuality.EXCELLENT
    if load_time < 3.0:
        return NetworkQuality.GOOD
    if load_time < 8.0:
        return NetworkQuality.FAIR
    return NetworkQuality.POOR


def platform_memory() -> tuple[int, int]:
    """(used, limit) bytes for this process against physical memory."""
    rss = psutil.Process().memory_info().rss
    total = psutil.virtual_memory().total
    return int(rss), int(total)


@dataclass(frozen=True)
class PerformanceSnapshot:
    hits: int
    misses: int
    total_load_time: float
    average_load_time: float
    network_quality: NetworkQuality
    total_memory_used: int

    @property
    def total_requests(self) -> int:
        return self.hits + self.misses

    @property
    def hit_rate(self) -> float:
        """Percentage of lookups served from the cache."""
        if self.total_requests == 0:
            return 0.0
        return self.hits / self.total_requests * 100


MemoryPressureHandler = Callable[[], None]


class ResourceGovernor:
    def __init__(
        self,
        max_memory_mb: int = 500,
        check_interval: float = 30.0,
        report_interval: float = 60.0,
        heap_probe: Callable[[], tuple[int, int]] | None = platform_memory,
    ) -> None:
        self.max_memory_mb = max_memory_mb
        self.check_interval = check_interval
        self.report_interval = report_interval
        self._heap_probe = heap_probe
        self._network_quality = NetworkQuality.GOOD
        self._hits = 0
        self._misses = 0
        self._total_load_time = 0.0
        self._average_load_time = 0.0
        self._memory_used = 0
        self._handlers: list[MemoryPressureHandler] = []
        self._tasks: list[asyncio.Task] = []

    # ---- memory ------------------------------------------------------
    @property
    def memory_budget(self) -> int:
        return int(self.max_memory_mb * MB)

    @property
    def memory_used(self) -> int:
        return self._memory_used

    def update_memory_metrics(self, total_bytes: int) -> None:
        self._memory_used = int(total_bytes)

    def over_budget(self) -> bool:
        return self._memory_used >= self.memory_budget

    def on_memory_pressure(self, handler: MemoryPressureHandler) -> None:
        self._handlers.append(handler)

    def check_memory(self) -> bool:
        """Publish memory pressure if needed. Returns True when published."""
        pressure = False
        used_mb = self._memory_used / MB
        if used_mb > self.max_memory_mb * CACHE_PRESSURE_RATIO:
            _logger.warning("high cache memory usage: %.1fMB of %dMB", used_mb, self.max_memory_mb)
            pressure = True
        elif self._heap_probe is not None:
            try:
                used, limit = self._heap_probe()
            except (OSError, psutil.Error) as e:
                _logger.debug("heap probe failed: %s", e)
            else:
                if limit > 0 and used > limit * HEAP_PRESSURE_RATIO:
                    _logger.warning("process memory limit approaching: %d of %d bytes", used, limit)
                    pressure = True
        if pressure:
            self._emit_pressure()
        return pressure

    def _emit_pressure(self) -> None:
        for handler in list(self._handlers):
            try:
                handler()
            except Exception:
                _logger.exception("memory pressure handler failed")

    # ---- network quality ---------------------------------------------
    @property
    def network_quality(self) -> NetworkQuality:
        return self._network_quality

    def update_network_quality(self, load_time: float) -> NetworkQuality:
        self._network_quality = quality_for_load_time(load_time)
        return self._network_quality

    def retry_delay(self, attempt: int) -> float:
        """Backoff in seconds before retry `attempt` (1-based)."""
        if self._network_quality is NetworkQuality.POOR:
            base = 2.0
        elif self._network_quality is NetworkQuality.FAIR:
            base = 1.0
        else:
            base = 0.5
        return min(base * RETRY_GROWTH ** (max(1, attempt) - 1), MAX_RETRY_DELAY)

    def max_retry_attempts(self) -> int:
        return 5 if self._network_quality is NetworkQuality.POOR else 3

    # ---- counters ----------------------------------------------------
    def record_cache_hit(self) -> None:
        self._hits += 1

    def record_cache_miss(self) -> None:
        self._misses += 1

    def record_load_time(self, load_time: float) -> None:
        self._total_load_time += load_time
        if self._misses > 0:
            self._average_load_time = self._total_load_time / self._misses

    def snapshot(self) -> PerformanceSnapshot:
        return PerformanceSnapshot(
            hits=self._hits,
            misses=self._misses,
            total_load_time=self._total_load_time,
            average_load_time=self._average_load_time,
            network_quality=self._network_quality,
            total_memory_used=self._memory_used,
        )

    def reset(self) -> None:
        self._hits = 0
        self._misses = 0
        self._total_load_time = 0.0
        self._average_load_time = 0.0
        self._network_quality = NetworkQuality.GOOD

    def log_report(self) -> None:
        snap = self.snapshot()
        if snap.total_requests == 0:
            return
        _logger.info(
            "performance: hit_rate=%.1f%% requests=%d avg_load=%.0fms memory=%.1fMB/%dMB network=%s",
            snap.hit_rate,
            snap.total_requests,
            snap.average_load_time * 1000,
            snap.total_memory_used / MB,
            self.max_memory_mb,
            snap.network_quality.value,
        )

    # ---- lifecycle ---------------------------------------------------
    def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._every(self.check_interval, self.check_memory), name="governor-memory"),
            asyncio.create_task(self._every(self.report_interval, self.log_report), name="governor-report"),
        ]
        _logger.debug("governor started: budget=%dMB check=%ss", self.max_memory_mb, self.check_interval)

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    @staticmethod
    async def _every(interval: float, fn: Callable[[], object]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                fn()
            except Exception:
                _logger.exception("periodic governor task failed")
