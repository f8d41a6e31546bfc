"""Streaming image loader with progress, bounded decode and cache install.

Only one "current" load exists at a time: starting a new one cancels the
previous token. Speculative loads go through the Preloader instead.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable

import httpx

from change_viewer.logger import get_logger

from .cache import CacheEntry, CacheStore
from .cancel import CancellationToken
from .decoder import Decoder
from .errors import DecodeError, DecodeTimeoutError, NetworkError
from .governor import ResourceGovernor
from .progress import ProgressCallback, ProgressTracker
from .resource import BlobHandle, DecodedImage

_logger = get_logger("loader")

DECODE_TIMEOUT = 15.0
MAIN_LOAD_PRIORITY = 1
MAIN_LOAD_CONTEXT = "main-load"

HandleFactory = Callable[[bytes, "str | None"], BlobHandle]


async def fetch_bytes(
    client: httpx.AsyncClient,
    url: str,
    tracker: ProgressTracker | None = None,
    headers: dict[str, str] | None = None,
) -> tuple[bytes, str | None]:
    """Stream `url` into memory, feeding `tracker` as chunks arrive.

    Raises NetworkError for transport failures and non-2xx responses.
    """
    chunks: list[bytes] = []
    try:
        async with client.stream("GET", url, headers=headers) as response:
            if response.status_code >= 400:
                raise NetworkError(
                    f"HTTP {response.status_code}: {response.reason_phrase}",
                    url=url,
                    status_code=response.status_code,
                )
            content_type = response.headers.get("content-type")
            if tracker is not None:
                length = response.headers.get("content-length")
                if length and length.isdigit():
                    tracker.total = int(length)
            async for chunk in response.aiter_bytes():
                chunks.append(chunk)
                if tracker is not None:
                    tracker.feed(len(chunk))
    except httpx.HTTPError as e:
        raise NetworkError(f"fetch failed: {e}", url=url) from e
    return b"".join(chunks), content_type


async def decode_handle(
    decoder: Decoder,
    handle: BlobHandle,
    url: str,
    timeout: float,
) -> DecodedImage:
    """Decode within `timeout`; the handle is revoked on every failure path."""
    try:
        return await asyncio.wait_for(decoder.decode(handle, url), timeout)
    except asyncio.TimeoutError:
        handle.revoke()
        raise DecodeTimeoutError(f"image decode timed out after {timeout:.1f}s", url=url) from None
    except asyncio.CancelledError:
        handle.revoke()
        raise
    except Exception as e:
        handle.revoke()
        raise DecodeError(f"failed to decode image: {e}", url=url) from e


class Loader:
    def __init__(
        self,
        client: httpx.AsyncClient,
        store: CacheStore,
        governor: ResourceGovernor,
        decoder: Decoder,
        decode_timeout: float = DECODE_TIMEOUT,
        handle_factory: HandleFactory = BlobHandle,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._store = store
        self._governor = governor
        self._decoder = decoder
        self.decode_timeout = decode_timeout
        self._handle_factory = handle_factory
        self._clock = clock
        self._current: CancellationToken | None = None
        _logger.debug("Loader init: decode_timeout=%ss", decode_timeout)

    @property
    def is_loading(self) -> bool:
        return self._current is not None

    def cancel(self) -> bool:
        token = self._current
        if token is None:
            return False
        _logger.debug("cancel current load: %s", token.label)
        return token.cancel()

    async def load(self, url: str, key: str, on_progress: ProgressCallback | None = None) -> CacheEntry:
        """Fetch, decode and cache `url` under `key` as the current load."""
        self.cancel()
        token = CancellationToken(url)
        self._current = token
        try:
            return await token.run(self._load(url, key, on_progress))
        finally:
            if self._current is token:
                self._current = None

    async def _load(self, url: str, key: str, on_progress: ProgressCallback | None) -> CacheEntry:
        started = self._clock()
        tracker = ProgressTracker(0, on_progress, clock=self._clock)
        try:
            data, content_type = await fetch_bytes(self._client, url, tracker)
        finally:
            tracker.discard()
        _logger.debug("fetched %s: %d bytes", url, len(data))

        handle = self._handle_factory(data, content_type)
        image = await decode_handle(self._decoder, handle, url, self.decode_timeout)
        try:
            load_time = self._clock() - started
            self._governor.update_network_quality(load_time)
            self._governor.record_load_time(load_time)
            entry = self._store.insert(
                key,
                image,
                priority=MAIN_LOAD_PRIORITY,
                context=MAIN_LOAD_CONTEXT,
                load_time=load_time,
                image_size=tracker.total or len(data),
                source_url=url,
            )
        except BaseException:
            image.release()
            raise
        _logger.debug("loaded %s in %.0fms (network=%s)", url, load_time * 1000, self._governor.network_quality.value)
        return entry
