"""Image Engine - composition root for the caching subsystem.

This module provides ImageEngine, which builds and wires the cache store,
loader, preloader and resource governor. Collaborators receive these
instances explicitly; nothing in the engine is a module-level singleton.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass

import httpx

from change_viewer.logger import get_logger

from .cache import CacheStore
from .decoder import Decoder
from .governor import ResourceGovernor, platform_memory
from .loader import DECODE_TIMEOUT, HandleFactory, Loader
from .preloader import MAX_CONCURRENT_PRELOADS, Preloader
from .resource import BlobHandle

_logger = get_logger("engine")


@dataclass
class EngineConfig:
    base_url: str = "http://localhost:3000"
    max_cache_size: int = 8
    max_memory_mb: int = 500
    decode_timeout: float = DECODE_TIMEOUT
    max_concurrent_preloads: int = MAX_CONCURRENT_PRELOADS
    memory_check_interval: float = 30.0
    report_interval: float = 60.0
    request_timeout: float = 30.0


class ImageEngine:
    """Single entry point for cache lookups, loads and preloads.

    Usage:
        async with ImageEngine(EngineConfig(base_url=...)) as engine:
            entry = await engine.loader.load(url, key)
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        decoder: Decoder | None = None,
        handle_factory: HandleFactory = BlobHandle,
        heap_probe: Callable[[], tuple[int, int]] | None = platform_memory,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or EngineConfig()
        self._owns_client = client is None
        if client is None:
            client = httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=self.config.request_timeout,
                follow_redirects=True,
            )
        self.client = client
        self.decoder = decoder or Decoder()

        self.governor = ResourceGovernor(
            max_memory_mb=self.config.max_memory_mb,
            check_interval=self.config.memory_check_interval,
            report_interval=self.config.report_interval,
            heap_probe=heap_probe,
        )
        self.store = CacheStore(self.config.max_cache_size, on_memory_changed=self.governor.update_memory_metrics)
        self.loader = Loader(
            self.client,
            self.store,
            self.governor,
            self.decoder,
            decode_timeout=self.config.decode_timeout,
            handle_factory=handle_factory,
            clock=clock,
        )
        self.preloader = Preloader(
            self.client,
            self.store,
            self.governor,
            self.decoder,
            max_concurrent=self.config.max_concurrent_preloads,
            decode_timeout=self.config.decode_timeout,
            handle_factory=handle_factory,
            clock=clock,
        )
        self.governor.on_memory_pressure(self.aggressive_shrink)
        _logger.debug(
            "ImageEngine initialized: base_url=%s cache=%d budget=%dMB",
            self.config.base_url,
            self.config.max_cache_size,
            self.config.max_memory_mb,
        )

    def aggressive_shrink(self) -> int:
        """Cancel every preload, then halve the cache."""
        cancelled = self.preloader.cancel_all()
        evicted = self.store.aggressive_shrink()
        _logger.info("memory pressure: cancelled %d preloads, evicted %d images", cancelled, evicted)
        return evicted

    def start(self) -> None:
        self.governor.start()

    async def cleanup(self) -> None:
        self.loader.cancel()
        await self.preloader.aclose()
        await self.governor.stop()
        self.store.clear()
        self.decoder.shutdown()
        if self._owns_client:
            await self.client.aclose()
        _logger.debug("ImageEngine cleanup completed")

    async def __aenter__(self) -> ImageEngine:
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.cleanup()
