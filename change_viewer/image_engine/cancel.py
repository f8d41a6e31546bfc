"""Cooperative cancellation tokens for in-flight loads."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from typing import TypeVar

from .errors import LoadCancelledError

T = TypeVar("T")


class CancellationToken:
    """One-shot cancellation signal shared between a requester and a load.

    `run()` executes a coroutine as a child task that is cancelled as soon as
    the token is; the caller then sees `LoadCancelledError` instead of a bare
    `asyncio.CancelledError`.
    """

    def __init__(self, label: str = "") -> None:
        self.label = label
        self._cancelled = False
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> bool:
        """Trigger the token. Returns False if it was already cancelled."""
        if self._cancelled:
            return False
        self._cancelled = True
        callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            with contextlib.suppress(Exception):
                cb()
        return True

    def add_callback(self, cb: Callable[[], None]) -> None:
        if self._cancelled:
            cb()
            return
        self._callbacks.append(cb)

    def remove_callback(self, cb: Callable[[], None]) -> None:
        with contextlib.suppress(ValueError):
            self._callbacks.remove(cb)

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise LoadCancelledError(f"load cancelled: {self.label}", url=self.label or None)

    async def run(self, aw: Awaitable[T]) -> T:
        self.raise_if_cancelled()
        task = asyncio.ensure_future(aw)
        self.add_callback(task.cancel)
        try:
            return await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            # Our own caller being cancelled takes precedence over the token.
            if self._cancelled and (current is None or not current.cancelling()):
                raise LoadCancelledError(f"load cancelled: {self.label}", url=self.label or None) from None
            raise
        finally:
            self.remove_callback(task.cancel)
