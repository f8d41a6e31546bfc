"""Bounded in-memory cache of decoded images.

Eviction is FIFO by insertion: reads update access metadata but never move a
key. Re-inserting a key moves it to the back. The store is the only place
that releases the handles of the images it holds.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field

from change_viewer.logger import get_logger

from .resource import BlobHandle, DecodedImage

_logger = get_logger("cache")

DEFAULT_PRIORITY = 10


@dataclass
class CacheEntry:
    key: str
    image: DecodedImage
    priority: int = DEFAULT_PRIORITY
    context: str = "unknown"
    load_time: float = 0.0
    image_size: int = 0
    source_url: str = ""
    added_at: float = field(default_factory=time.time)
    last_accessed: float = field(default_factory=time.time)
    access_count: int = 0
    estimated_size: int = 0

    @property
    def handle(self) -> BlobHandle:
        return self.image.handle


class CacheStore:
    """Key -> CacheEntry mapping with a bounded, insertion-ordered eviction queue."""

    def __init__(
        self,
        max_size: int = 8,
        on_memory_changed: Callable[[int], None] | None = None,
    ) -> None:
        if max_size < 1:
            raise ValueError(f"max_size must be >= 1, got {max_size}")
        self._max_size = int(max_size)
        # Insertion order is the eviction order.
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._on_memory_changed = on_memory_changed

    # ---- read side -----------------------------------------------------
    @property
    def max_size(self) -> int:
        return self._max_size

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._entries))

    def has(self, key: str) -> bool:
        return key in self._entries

    def keys(self) -> list[str]:
        """Live keys, oldest first."""
        return list(self._entries)

    def is_full(self) -> bool:
        return len(self._entries) >= self._max_size

    def get(self, key: str) -> CacheEntry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        entry.last_accessed = time.time()
        entry.access_count += 1
        return entry

    def peek(self, key: str) -> CacheEntry | None:
        """Lookup without touching access metadata."""
        return self._entries.get(key)

    def estimate_memory(self) -> int:
        return sum(entry.estimated_size for entry in self._entries.values())

    # ---- write side ----------------------------------------------------
    def insert(
        self,
        key: str,
        image: DecodedImage,
        *,
        priority: int = DEFAULT_PRIORITY,
        context: str = "unknown",
        load_time: float = 0.0,
        image_size: int = 0,
        source_url: str = "",
    ) -> CacheEntry:
        previous = self._entries.pop(key, None)
        if previous is not None:
            # Last writer wins; the loser's handle must not leak.
            if previous.image.handle is not image.handle:
                previous.image.release()
            _logger.debug("replacing entry: %s", key)

        while len(self._entries) >= self._max_size:
            self._evict_oldest()

        now = time.time()
        entry = CacheEntry(
            key=key,
            image=image,
            priority=priority,
            context=context,
            load_time=load_time,
            image_size=image_size or image.handle.size,
            source_url=source_url or image.source_url,
            added_at=now,
            last_accessed=now,
            estimated_size=image.estimated_size(),
        )
        self._entries[key] = entry
        _logger.debug("insert: key=%s context=%s priority=%s size=%d/%d", key, context, priority, len(self), self._max_size)
        self._report_memory()
        return entry

    def delete(self, key: str) -> bool:
        entry = self._entries.pop(key, None)
        if entry is None:
            return False
        entry.image.release()
        self._report_memory()
        return True

    def resize(self, new_max: int) -> int:
        """Set a new bound, evicting the oldest entries that no longer fit."""
        if new_max < 1:
            raise ValueError(f"max_size must be >= 1, got {new_max}")
        evicted = self.shrink_to(new_max)
        self._max_size = int(new_max)
        _logger.debug("cache size updated: %d (evicted %d)", self._max_size, evicted)
        return evicted

    def shrink_to(self, target: int) -> int:
        evicted = 0
        while len(self._entries) > max(0, target):
            self._evict_oldest(report=False)
            evicted += 1
        if evicted:
            self._report_memory()
        return evicted

    def aggressive_shrink(self) -> int:
        """Evict down to half the bound. Preload cancellation is the engine's job."""
        target = self._max_size // 2
        evicted = self.shrink_to(target)
        _logger.info("aggressive cleanup completed: size=%d evicted=%d", len(self), evicted)
        return evicted

    def clear(self) -> None:
        entries = list(self._entries.values())
        self._entries.clear()
        for entry in entries:
            entry.image.release()
        self._report_memory()
        _logger.debug("cache cleared: released %d entries", len(entries))

    def _evict_oldest(self, report: bool = True) -> None:
        key, entry = self._entries.popitem(last=False)
        _logger.debug("evicting: %s", key)
        entry.image.release()
        if report:
            self._report_memory()

    def _report_memory(self) -> None:
        if self._on_memory_changed is not None:
            self._on_memory_changed(self.estimate_memory())
