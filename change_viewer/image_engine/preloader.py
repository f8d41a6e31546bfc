"""Speculative background loads for likely-next images.

Preloads are best-effort: they never raise to the caller, are admitted only
when the cache has room and memory is within budget, and are each cancellable
through their own token registered under the image URL.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Callable
from dataclasses import dataclass, field

import httpx

from change_viewer.logger import get_logger

from .cache import CacheStore
from .cancel import CancellationToken
from .decoder import Decoder
from .errors import ImageEngineError, LoadCancelledError
from .governor import ResourceGovernor
from .loader import DECODE_TIMEOUT, HandleFactory, decode_handle, fetch_bytes
from .resource import BlobHandle

_logger = get_logger("preloader")

MAX_CONCURRENT_PRELOADS = 5


@dataclass
class PreloadTask:
    url: str
    key: str
    priority: int
    context: str
    token: CancellationToken
    done: asyncio.Event = field(default_factory=asyncio.Event)


class Preloader:
    def __init__(
        self,
        client: httpx.AsyncClient,
        store: CacheStore,
        governor: ResourceGovernor,
        decoder: Decoder,
        max_concurrent: int = MAX_CONCURRENT_PRELOADS,
        decode_timeout: float = DECODE_TIMEOUT,
        handle_factory: HandleFactory = BlobHandle,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._store = store
        self._governor = governor
        self._decoder = decoder
        self.max_concurrent = max_concurrent
        self.decode_timeout = decode_timeout
        self._handle_factory = handle_factory
        self._clock = clock
        self._tasks: dict[str, PreloadTask] = {}
        self._background: set[asyncio.Task] = set()

    # ---- queries -------------------------------------------------------
    @property
    def active_count(self) -> int:
        return len(self._tasks)

    def in_flight(self, url: str) -> bool:
        return url in self._tasks

    def tokens(self) -> list[CancellationToken]:
        return [task.token for task in self._tasks.values()]

    async def wait_for(self, url: str) -> bool:
        """Wait for the in-flight preload of `url`. False if none was running."""
        task = self._tasks.get(url)
        if task is None:
            return False
        await task.done.wait()
        return True

    # ---- admission -----------------------------------------------------
    def admission_error(self, url: str, key: str) -> str | None:
        """Why a preload would be rejected right now, or None to admit it."""
        if self._store.has(key):
            return "resident"
        if url in self._tasks:
            return "in-flight"
        if self._governor.over_budget():
            return "memory"
        if self._store.is_full():
            return "cache-full"
        if len(self._tasks) >= self.max_concurrent:
            return "concurrency"
        return None

    # ---- operations ----------------------------------------------------
    def schedule(self, url: str, key: str, priority: int, context: str) -> asyncio.Task | None:
        """Fire-and-forget variant of `preload`; returns the task if admitted."""
        reason = self.admission_error(url, key)
        if reason is not None:
            _logger.debug("preload skipped (%s): %s", reason, url)
            return None
        task = self._register(url, key, priority, context)
        bg = asyncio.create_task(self._run(task), name=f"preload:{context}")
        self._background.add(bg)
        bg.add_done_callback(self._background.discard)
        return bg

    async def preload(self, url: str, key: str, priority: int, context: str) -> bool:
        """Load `url` into the cache speculatively. Returns True if cached."""
        reason = self.admission_error(url, key)
        if reason is not None:
            _logger.debug("preload skipped (%s): %s", reason, url)
            return False
        return await self._run(self._register(url, key, priority, context))

    def cancel(self, url: str) -> bool:
        task = self._tasks.pop(url, None)
        if task is None:
            return False
        task.token.cancel()
        task.done.set()
        return True

    def cancel_all(self) -> int:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.token.cancel()
            task.done.set()
        if tasks:
            _logger.debug("cancelled %d preloads", len(tasks))
        return len(tasks)

    async def aclose(self) -> None:
        self.cancel_all()
        pending = list(self._background)
        for bg in pending:
            bg.cancel()
        for bg in pending:
            with contextlib.suppress(asyncio.CancelledError):
                await bg

    # ---- internals -----------------------------------------------------
    def _register(self, url: str, key: str, priority: int, context: str) -> PreloadTask:
        task = PreloadTask(url=url, key=key, priority=priority, context=context, token=CancellationToken(url))
        self._tasks[url] = task
        _logger.debug("preload start: url=%s priority=%s context=%s active=%d", url, priority, context, len(self._tasks))
        return task

    def _unregister(self, task: PreloadTask) -> None:
        # A cancelled task may already have been replaced by a newer one.
        if self._tasks.get(task.url) is task:
            del self._tasks[task.url]
        task.done.set()

    async def _run(self, task: PreloadTask) -> bool:
        try:
            await task.token.run(self._fetch_and_insert(task))
            return True
        except LoadCancelledError:
            _logger.debug("preload aborted: %s", task.url)
        except ImageEngineError as e:
            _logger.warning("preload failed for %s (%s): %s", task.url, task.context, e)
        except Exception:
            _logger.exception("preload crashed for %s (%s)", task.url, task.context)
        finally:
            self._unregister(task)
        return False

    async def _fetch_and_insert(self, task: PreloadTask) -> None:
        started = self._clock()
        data, content_type = await fetch_bytes(self._client, task.url)
        handle = self._handle_factory(data, content_type)
        image = await decode_handle(self._decoder, handle, task.url, self.decode_timeout)
        if task.token.cancelled:
            image.release()
            task.token.raise_if_cancelled()
        load_time = self._clock() - started
        if self._store.has(task.key):
            # A main load got there first; keep its entry and drop ours.
            image.release()
            _logger.debug("preload discarded, key already resident: %s", task.key)
            return
        self._governor.update_network_quality(load_time)
        self._store.insert(
            task.key,
            image,
            priority=task.priority,
            context=task.context,
            load_time=load_time,
            image_size=len(data),
            source_url=task.url,
        )
        _logger.debug("preloaded %s in %.0fms", task.url, load_time * 1000)
