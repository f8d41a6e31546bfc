from __future__ import annotations

import asyncio

import pytest

from change_viewer.image_engine.governor import (
    MB,
    NetworkQuality,
    ResourceGovernor,
    quality_for_load_time,
)


@pytest.mark.parametrize(
    ("seconds", "quality"),
    [
        (0.2, NetworkQuality.EXCELLENT),
        (1.0, NetworkQuality.GOOD),
        (2.9, NetworkQuality.GOOD),
        (3.0, NetworkQuality.FAIR),
        (7.9, NetworkQuality.FAIR),
        (8.0, NetworkQuality.POOR),
        (30.0, NetworkQuality.POOR),
    ],
)
def test_quality_thresholds(seconds: float, quality: NetworkQuality) -> None:
    assert quality_for_load_time(seconds) is quality


def test_poor_network_backoff_is_bounded_and_non_decreasing() -> None:
    gov = ResourceGovernor(heap_probe=None)
    gov.update_network_quality(12.0)

    assert gov.max_retry_attempts() == 5
    delays = [gov.retry_delay(n) for n in range(1, gov.max_retry_attempts() + 1)]
    assert delays[0] == 2.0
    assert all(a <= b for a, b in zip(delays, delays[1:]))
    assert all(d <= 8.0 for d in delays)
    assert delays[-1] == 8.0


def test_good_network_uses_short_delays_and_three_attempts() -> None:
    gov = ResourceGovernor(heap_probe=None)
    gov.update_network_quality(0.1)

    assert gov.max_retry_attempts() == 3
    assert gov.retry_delay(1) == 0.5
    assert gov.retry_delay(2) == 0.75


def test_fair_network_base_delay() -> None:
    gov = ResourceGovernor(heap_probe=None)
    gov.update_network_quality(4.0)
    assert gov.retry_delay(1) == 1.0
    assert gov.max_retry_attempts() == 3


def test_counters_and_snapshot() -> None:
    gov = ResourceGovernor(heap_probe=None)
    gov.record_cache_hit()
    gov.record_cache_miss()
    gov.record_load_time(0.4)
    gov.record_cache_miss()
    gov.record_load_time(0.2)
    gov.update_memory_metrics(3 * MB)

    snap = gov.snapshot()
    assert snap.total_requests == 3
    assert snap.hit_rate == pytest.approx(100 / 3)
    assert snap.total_load_time == pytest.approx(0.6)
    assert snap.average_load_time == pytest.approx(0.3)
    assert snap.total_memory_used == 3 * MB

    gov.reset()
    snap = gov.snapshot()
    assert snap.total_requests == 0
    assert snap.hit_rate == 0.0
    assert snap.network_quality is NetworkQuality.GOOD
    assert snap.total_memory_used == 3 * MB


def test_reset_keeps_memory_in_use() -> None:
    gov = ResourceGovernor(max_memory_mb=1, heap_probe=None)
    calls: list[int] = []
    gov.on_memory_pressure(lambda: calls.append(1))
    gov.update_memory_metrics(MB)

    gov.reset()

    assert gov.memory_used == MB
    assert gov.over_budget()
    assert gov.check_memory() is True
    assert calls == [1]


def test_over_budget_is_inclusive() -> None:
    gov = ResourceGovernor(max_memory_mb=1, heap_probe=None)
    gov.update_memory_metrics(MB - 1)
    assert not gov.over_budget()
    gov.update_memory_metrics(MB)
    assert gov.over_budget()


def test_cache_pressure_is_published() -> None:
    gov = ResourceGovernor(max_memory_mb=10, heap_probe=None)
    calls: list[str] = []
    gov.on_memory_pressure(lambda: calls.append("shrink"))

    gov.update_memory_metrics(8 * MB)
    assert gov.check_memory() is False
    gov.update_memory_metrics(9 * MB)
    assert gov.check_memory() is True
    assert calls == ["shrink"]


def test_heap_pressure_is_published() -> None:
    gov = ResourceGovernor(max_memory_mb=10, heap_probe=lambda: (95, 100))
    calls: list[int] = []
    gov.on_memory_pressure(lambda: calls.append(1))

    assert gov.check_memory() is True
    assert calls == [1]


def test_failing_heap_probe_is_ignored() -> None:
    def probe() -> tuple[int, int]:
        raise OSError("no /proc")

    gov = ResourceGovernor(heap_probe=probe)
    assert gov.check_memory() is False


def test_failing_handler_does_not_block_others() -> None:
    gov = ResourceGovernor(max_memory_mb=1, heap_probe=None)
    calls: list[int] = []

    def boom() -> None:
        raise RuntimeError("boom")

    gov.on_memory_pressure(boom)
    gov.on_memory_pressure(lambda: calls.append(1))
    gov.update_memory_metrics(MB)

    assert gov.check_memory() is True
    assert calls == [1]


@pytest.mark.asyncio
async def test_periodic_check_runs_until_stopped() -> None:
    gov = ResourceGovernor(max_memory_mb=1, check_interval=0.01, report_interval=10, heap_probe=None)
    calls: list[int] = []
    gov.on_memory_pressure(lambda: calls.append(1))
    gov.update_memory_metrics(MB)

    gov.start()
    gov.start()
    assert gov.running
    await asyncio.sleep(0.05)
    await gov.stop()

    assert not gov.running
    assert len(calls) >= 1
    seen = len(calls)
    await asyncio.sleep(0.03)
    assert len(calls) == seen
