"""Error taxonomy for image loading.

Loader and Preloader translate low-level failures (httpx, pyvips, asyncio)
into these types. Only the navigation layer decides what the user sees.
"""

from __future__ import annotations


class ImageEngineError(Exception):
    """Base class for all image engine failures."""

    def __init__(self, message: str, *, url: str | None = None) -> None:
        super().__init__(message)
        self.url = url


class NetworkError(ImageEngineError):
    """Fetch or body-stream failure."""

    def __init__(self, message: str, *, url: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message, url=url)
        self.status_code = status_code


class DecodeTimeoutError(ImageEngineError):
    """Decode did not complete within the configured bound."""


class DecodeError(ImageEngineError):
    """Malformed or corrupt image bytes."""


class LoadCancelledError(ImageEngineError):
    """The load's cancellation token was triggered.

    Not a failure for retry bookkeeping.
    """


class CacheInvalidError(ImageEngineError):
    """A cached entry's resource was found revoked or stale on read."""


class AuthenticationRequired(ImageEngineError):
    """The dataset listing endpoint asked for a login."""


RETRYABLE_ERRORS: tuple[type[ImageEngineError], ...] = (NetworkError, DecodeTimeoutError, DecodeError)
