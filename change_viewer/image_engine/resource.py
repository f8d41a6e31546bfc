"""Revocable byte handles and decoded images.

A `BlobHandle` owns the raw bytes of a fetched image until it is revoked.
A `DecodedImage` keeps a reference to the handle it was decoded from and
reports zero natural dimensions once that handle is gone, which is how the
navigation layer detects a stale cache entry.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field

import numpy as np

from change_viewer.logger import get_logger

_logger = get_logger("resource")

# Fallback dimensions for memory estimates when the size is unknown.
DEFAULT_DIMENSION = 1000
BYTES_PER_PIXEL = 4

_handle_ids = itertools.count(1)


class BlobHandle:
    """Transient, revocable reference to fetched image bytes."""

    def __init__(self, data: bytes, content_type: str | None = None) -> None:
        self._data: bytes | None = data
        self.size = len(data)
        self.content_type = content_type
        self.url = f"blob:{next(_handle_ids)}"
        self.revoke_count = 0

    @property
    def revoked(self) -> bool:
        return self._data is None

    @property
    def data(self) -> bytes:
        if self._data is None:
            raise ValueError(f"{self.url} has been revoked")
        return self._data

    def revoke(self) -> bool:
        """Release the bytes. Safe to call more than once; returns True only
        for the call that actually released them."""
        if self._data is None:
            return False
        self._data = None
        self.revoke_count += 1
        _logger.debug("revoked %s (%d bytes)", self.url, self.size)
        return True

    def __repr__(self) -> str:
        state = "revoked" if self.revoked else f"{self.size}B"
        return f"BlobHandle({self.url}, {state})"


@dataclass
class DecodedImage:
    """RGB pixels decoded from a `BlobHandle`."""

    handle: BlobHandle
    pixels: np.ndarray | None = None
    complete: bool = True
    source_url: str = ""
    _shape: tuple[int, int] = field(default=(0, 0), init=False, repr=False)

    def __post_init__(self) -> None:
        if self.pixels is not None and self.pixels.ndim >= 2:
            self._shape = (int(self.pixels.shape[1]), int(self.pixels.shape[0]))

    @property
    def natural_width(self) -> int:
        return 0 if self.handle.revoked else self._shape[0]

    @property
    def natural_height(self) -> int:
        return 0 if self.handle.revoked else self._shape[1]

    def is_valid(self) -> bool:
        """False for a completed image whose natural size collapsed to zero."""
        if not self.complete:
            return True
        return self.natural_width > 0 and self.natural_height > 0

    def estimated_size(self) -> int:
        width = self._shape[0] or DEFAULT_DIMENSION
        height = self._shape[1] or DEFAULT_DIMENSION
        return width * height * BYTES_PER_PIXEL

    def release(self) -> bool:
        released = self.handle.revoke()
        self.pixels = None
        return released
