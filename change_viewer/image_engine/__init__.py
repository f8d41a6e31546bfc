"""Image Engine - client-side image cache and prefetching.

This package provides the core loading and caching functionality:
- Bounded FIFO cache of decoded images (cache)
- Streaming loads with progress (loader, progress)
- Speculative preloads (preloader)
- Memory and network governance (governor)

Usage:
    from change_viewer.image_engine import EngineConfig, ImageEngine

    async with ImageEngine(EngineConfig(base_url="http://localhost:3000")) as engine:
        entry = await engine.loader.load(url, key, on_progress)
"""

from .engine import EngineConfig, ImageEngine
from .keys import derive_key, resolve_variant_url

__all__ = ["EngineConfig", "ImageEngine", "derive_key", "resolve_variant_url"]
