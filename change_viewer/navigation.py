"""Navigation over datasets and image variants.

The controller is the only place that decides what the user sees: it looks
up the cache, delegates misses to the loader, adopts in-flight preloads,
retries failures with network-aware backoff and fires the preload batch
after every successful display.

Every request carries an explicit `ViewSelection`; results of a request that
has been superseded by a newer one are dropped.
"""

from __future__ import annotations

import asyncio
import enum
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, replace

from change_viewer.datasets import Dataset, DatasetClient
from change_viewer.image_engine.cache import CacheEntry
from change_viewer.image_engine.engine import ImageEngine
from change_viewer.image_engine.errors import (
    RETRYABLE_ERRORS,
    AuthenticationRequired,
    CacheInvalidError,
    LoadCancelledError,
    NetworkError,
)
from change_viewer.image_engine.governor import PerformanceSnapshot
from change_viewer.image_engine.keys import VARIANTS, derive_key, resolve_variant_url
from change_viewer.logger import get_logger

_logger = get_logger("navigation")

SETTLE_DELAY = 0.1


class NavState(str, enum.Enum):
    NO_DATASET = "no-dataset-loaded"
    IDLE = "idle-displaying"
    LOADING = "loading"
    ERROR_RETRYING = "error-retrying"


@dataclass(frozen=True)
class ViewSelection:
    index: int = 0
    variant: str = "pre"
    full_resolution: bool = False
    veg_filter: bool = False


@dataclass(frozen=True)
class PerformanceStatus:
    snapshot: PerformanceSnapshot
    cache_size: int
    max_cache_size: int
    active_preloads: int
    is_loading: bool
    full_resolution: bool
    veg_filter: bool
    veg_filter_available: bool


class ViewerListener:
    """Receives status updates from the controller. All hooks are optional."""

    def on_status(self, text: str) -> None:
        pass

    def on_loading(self, visible: bool) -> None:
        pass

    def on_progress(self, percent: int, eta: float | None, speed: float, total: int) -> None:
        pass

    def on_display(self, entry: CacheEntry, url: str, hit_rate: float) -> None:
        pass

    def on_position(self, index: int, total: int) -> None:
        pass

    def on_highlight(self, number: int) -> None:
        pass

    def on_performance(self, status: PerformanceStatus) -> None:
        pass

    def on_retry_available(self, url: str) -> None:
        pass

    def on_fit_to_view(self) -> None:
        pass


@dataclass(frozen=True)
class _Request:
    selection: ViewSelection
    url: str
    key: str
    generation: int


class NavigationController:
    def __init__(
        self,
        engine: ImageEngine,
        listener: ViewerListener | None = None,
        dataset_client: DatasetClient | None = None,
        settle_delay: float = SETTLE_DELAY,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self.engine = engine
        self.listener = listener or ViewerListener()
        self.dataset_client = dataset_client or DatasetClient(engine.client)
        self.settle_delay = settle_delay
        self._sleep = sleep
        self.datasets: list[Dataset] = []
        self.selection = ViewSelection()
        self.state = NavState.NO_DATASET
        self._generation = 0
        self._failed: _Request | None = None

    # ---- read-only views -------------------------------------------------
    @property
    def retry_available(self) -> bool:
        return self._failed is not None

    @property
    def current_dataset(self) -> Dataset | None:
        if not self.datasets:
            return None
        return self.datasets[self.selection.index]

    @property
    def veg_filter_available(self) -> bool:
        dataset = self.current_dataset
        return dataset is not None and dataset.vegetation_filter_available

    def resolve(self, selection: ViewSelection, dataset: Dataset | None = None) -> tuple[str, str] | None:
        """(url, key) for `selection`, or None when the variant has no image."""
        dataset = dataset or self.datasets[selection.index]
        url = resolve_variant_url(dataset.urls_for(selection.variant), selection.full_resolution, selection.veg_filter)
        if not url:
            return None
        key = derive_key(url, selection.full_resolution, selection.veg_filter, dataset.vegetation_filter_available)
        return url, key

    # ---- dataset list ----------------------------------------------------
    async def load_datasets(self, project: str = "analysis") -> bool:
        self.listener.on_status("Loading datasets...")
        try:
            datasets = await self.dataset_client.fetch(project)
        except AuthenticationRequired:
            _logger.info("authentication required for project %s", project)
            self.listener.on_status("Authentication required - please log in")
            return False
        except (NetworkError, ValueError) as e:
            _logger.error("error loading datasets: %s", e)
            self.listener.on_status("Error loading datasets")
            return False
        await self.set_datasets(datasets)
        return bool(datasets)

    async def set_datasets(self, datasets: Sequence[Dataset]) -> CacheEntry | None:
        self.datasets = list(datasets)
        self._failed = None
        if not self.datasets:
            self._generation += 1
            self.engine.loader.cancel()
            self.selection = replace(self.selection, index=0)
            self.state = NavState.NO_DATASET
            self.listener.on_status("No datasets found")
            return None
        self.state = NavState.IDLE
        return await self.show(replace(self.selection, index=0))

    # ---- navigation ------------------------------------------------------
    async def next_dataset(self) -> CacheEntry | None:
        if self.selection.index >= len(self.datasets) - 1:
            return None
        return await self.show(replace(self.selection, index=self.selection.index + 1))

    async def previous_dataset(self) -> CacheEntry | None:
        if self.selection.index <= 0:
            return None
        return await self.show(replace(self.selection, index=self.selection.index - 1))

    async def select_dataset(self, index: int) -> CacheEntry | None:
        return await self.show(replace(self.selection, index=index))

    async def select_by_id(self, number: int) -> CacheEntry | None:
        """Jump to the dataset whose numeric id is `number` (panorama click)."""
        for index, dataset in enumerate(self.datasets):
            if dataset.number == number:
                if index == self.selection.index:
                    _logger.debug("already viewing image pair %s", number)
                    return None
                return await self.show(replace(self.selection, index=index))
        _logger.warning("image pair %s not found in datasets", number)
        return None

    async def set_image_type(self, variant: str) -> CacheEntry | None:
        if variant not in VARIANTS:
            raise ValueError(f"unknown image type: {variant!r}")
        return await self.show(replace(self.selection, variant=variant))

    async def set_full_resolution(self, flag: bool) -> CacheEntry | None:
        return await self.show(replace(self.selection, full_resolution=bool(flag)))

    async def set_vegetation_filter(self, flag: bool) -> CacheEntry | None:
        return await self.show(replace(self.selection, veg_filter=bool(flag)))

    async def retry(self) -> CacheEntry | None:
        """Manual retry after automatic retries were exhausted."""
        failed = self._failed
        if failed is None:
            return None
        self._failed = None
        request = self._new_request(failed.selection, failed.url, failed.key)
        return await self._load_with_retry(request)

    async def report_display_error(self) -> CacheEntry | None:
        """The UI failed to render the current image: drop it and reload once."""
        resolved = self.resolve(self.selection) if self.datasets else None
        if resolved is None:
            return None
        url, key = resolved
        _logger.info("display error, reloading: %s", url)
        self.engine.store.delete(key)
        return await self._load_with_retry(self._new_request(self.selection, url, key))

    # ---- core path -------------------------------------------------------
    async def show(self, selection: ViewSelection) -> CacheEntry | None:
        """Display `selection`, from the cache when possible."""
        if not self.datasets:
            self.state = NavState.NO_DATASET
            return None
        if not 0 <= selection.index < len(self.datasets):
            raise IndexError(f"dataset index out of range: {selection.index}")

        dataset = self.datasets[selection.index]
        if selection.veg_filter and not dataset.vegetation_filter_available:
            selection = replace(selection, veg_filter=False)
        self.selection = selection
        self._failed = None

        resolved = self.resolve(selection, dataset)
        if resolved is None:
            _logger.warning("no image URL for dataset=%s type=%s", dataset.id, selection.variant)
            self._generation += 1
            self.engine.loader.cancel()
            self.state = NavState.IDLE
            self.listener.on_status("No image available for current selection")
            return None
        url, key = resolved
        _logger.debug("show: dataset=%d type=%s url=%s", selection.index, selection.variant, url)

        self.engine.loader.cancel()
        request = self._new_request(selection, url, key)

        entry = self.engine.store.get(key)
        if entry is not None:
            self.engine.governor.record_cache_hit()
            try:
                self._validate(entry, url)
            except CacheInvalidError as e:
                _logger.warning("%s; reloading", e)
                self.engine.store.delete(key)
            else:
                _logger.debug("cache hit: %s", key)
                await self._display(request, entry)
                return entry

        self.engine.governor.record_cache_miss()
        return await self._load_with_retry(request)

    def _new_request(self, selection: ViewSelection, url: str, key: str) -> _Request:
        self._generation += 1
        return _Request(selection=selection, url=url, key=key, generation=self._generation)

    def _is_current(self, request: _Request) -> bool:
        return request.generation == self._generation

    @staticmethod
    def _validate(entry: CacheEntry, url: str) -> None:
        if not entry.image.is_valid():
            raise CacheInvalidError(f"cached image resource was revoked: {url}", url=url)

    async def _load_once(self, request: _Request) -> CacheEntry | None:
        engine = self.engine
        self.state = NavState.LOADING
        self.listener.on_status("Loading image...")
        self.listener.on_loading(True)
        try:
            if engine.preloader.in_flight(request.url):
                _logger.debug("adopting in-flight preload: %s", request.url)
                await engine.preloader.wait_for(request.url)
                if not self._is_current(request):
                    return None
                entry = engine.store.get(request.key)
                if entry is not None and entry.image.is_valid():
                    return entry
            entry = await engine.loader.load(request.url, request.key, self.listener.on_progress)
        finally:
            if self._is_current(request):
                self.listener.on_loading(False)
        if not self._is_current(request):
            return None
        return entry

    async def _load_with_retry(self, request: _Request) -> CacheEntry | None:
        governor = self.engine.governor
        attempt = 0
        while True:
            try:
                entry = await self._load_once(request)
            except LoadCancelledError:
                # Superseded by a newer request: say nothing.
                if self._is_current(request):
                    self.state = NavState.IDLE
                    self.listener.on_status("Loading cancelled")
                _logger.debug("load cancelled: %s", request.url)
                return None
            except RETRYABLE_ERRORS as e:
                if not self._is_current(request):
                    return None
                _logger.error("image loading error for %s: %s", request.url, e)
                attempt += 1
                max_attempts = governor.max_retry_attempts()
                if attempt > max_attempts:
                    self.state = NavState.IDLE
                    self._failed = request
                    self.listener.on_status(f"Failed to load image after {max_attempts} attempts")
                    self.listener.on_retry_available(request.url)
                    return None
                self.state = NavState.ERROR_RETRYING
                self.listener.on_status(
                    f"Retry attempt {attempt}/{max_attempts}... ({governor.network_quality.value} network)"
                )
                await self._sleep(governor.retry_delay(attempt))
                if not self._is_current(request):
                    return None
                continue

            if entry is None:
                return None
            await self._display(request, entry)
            return entry

    async def _display(self, request: _Request, entry: CacheEntry) -> None:
        engine = self.engine
        selection = request.selection
        if not self._is_current(request) or selection.index >= len(self.datasets):
            return
        dataset = self.datasets[selection.index]

        self.state = NavState.IDLE
        self.listener.on_display(entry, request.url, engine.governor.snapshot().hit_rate)
        self.listener.on_position(selection.index, len(self.datasets))
        number = dataset.number
        if number is not None:
            self.listener.on_highlight(number)
        self.schedule_preloads(selection)
        self.listener.on_performance(self.performance_status())

        await self._sleep(self.settle_delay)
        if self._is_current(request):
            self.listener.on_fit_to_view()

    def performance_status(self) -> PerformanceStatus:
        engine = self.engine
        return PerformanceStatus(
            snapshot=engine.governor.snapshot(),
            cache_size=len(engine.store),
            max_cache_size=engine.store.max_size,
            active_preloads=engine.preloader.active_count,
            is_loading=engine.loader.is_loading,
            full_resolution=self.selection.full_resolution,
            veg_filter=self.selection.veg_filter,
            veg_filter_available=self.veg_filter_available,
        )

    def schedule_preloads(self, selection: ViewSelection) -> list[asyncio.Task]:
        """Fire the best-effort preload batch around `selection`."""
        preloader = self.engine.preloader
        index = selection.index
        batch: list[tuple[int, ViewSelection, str]] = []

        others = [v for v in VARIANTS if v != selection.variant]
        for priority, variant in enumerate(others, start=2):
            batch.append((priority, replace(selection, variant=variant), f"current-{variant}"))
        if index + 1 < len(self.datasets):
            batch.append((4, replace(selection, index=index + 1), "next-current"))
        if index > 0:
            batch.append((5, replace(selection, index=index - 1), "prev-current"))

        tasks: list[asyncio.Task] = []
        for priority, target, context in batch:
            resolved = self.resolve(target)
            if resolved is None:
                continue
            url, key = resolved
            task = preloader.schedule(url, key, priority, context)
            if task is not None:
                tasks.append(task)
        return tasks
