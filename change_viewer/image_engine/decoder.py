"""Image decoder using pyvips.

Decodes fetched image bytes into RGB numpy arrays. Decoding runs on a worker
thread so the event loop keeps streaming other images meanwhile.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import numpy as np

from change_viewer.logger import get_logger

from .resource import BlobHandle, DecodedImage

_logger = get_logger("decoder")

RGB_CHANNELS = 3

_pyvips: Any | None = None


def _get_pyvips_module() -> Any:
    global _pyvips
    if _pyvips is None:
        import pyvips  # type: ignore

        _pyvips = pyvips
    return _pyvips


def decode_bytes(data: bytes) -> np.ndarray:
    """Decode arbitrary image bytes into an RGB numpy array using pyvips."""
    pyvips = _get_pyvips_module()
    # Configure pyvips caches to avoid memory growth
    with contextlib.suppress(Exception):
        pyvips.cache_set_max(0)
        pyvips.cache_set_max_mem(0)

    image = pyvips.Image.new_from_buffer(data, "", access="sequential")
    with contextlib.suppress(Exception):
        image = image.colourspace("srgb")
    if image.hasalpha():
        image = image.flatten(background=[0, 0, 0])
    if image.bands > RGB_CHANNELS:
        image = image.extract_band(0, n=RGB_CHANNELS)
    elif image.bands < RGB_CHANNELS:
        image = pyvips.Image.bandjoin([image] * RGB_CHANNELS)
    if image.format != "uchar":
        image = image.cast("uchar")

    mem = image.write_to_memory()
    array = np.frombuffer(mem, dtype=np.uint8).reshape(image.height, image.width, image.bands)
    if array.shape[2] != RGB_CHANNELS:
        raise RuntimeError(f"Unsupported band count after conversion: {array.shape[2]}")
    return array.copy()


class Decoder:
    """Runs a blocking decode function off the event loop.

    The decode_fn must be of the form (bytes) -> numpy array and raise on
    malformed input.
    """

    def __init__(
        self,
        decode_fn: Callable[[bytes], np.ndarray] = decode_bytes,
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        self._decode_fn = decode_fn
        self._owns_executor = executor is None
        if executor is None:
            max_workers = max(2, min(4, (os.cpu_count() or 2)))
            executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="decode")
        self._executor = executor

    async def decode(self, handle: BlobHandle, source_url: str = "") -> DecodedImage:
        loop = asyncio.get_running_loop()
        pixels = await loop.run_in_executor(self._executor, self._decode_fn, handle.data)
        _logger.debug("decoded %s shape=%s", source_url or handle.url, getattr(pixels, "shape", None))
        return DecodedImage(handle=handle, pixels=pixels, source_url=source_url)

    def shutdown(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)
