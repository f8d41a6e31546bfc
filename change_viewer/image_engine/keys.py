"""Cache key derivation and variant URL resolution.

Both functions are pure; the navigation layer and the tests call them
directly.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

# Variant name -> dataset record property
VARIANT_PROPERTIES: dict[str, str] = {
    "pre": "preEvent",
    "post": "postEvent",
    "change": "changeDetection",
}
VARIANTS: tuple[str, ...] = tuple(VARIANT_PROPERTIES)


def derive_key(url: str, full_resolution: bool, veg_filter: bool, veg_filter_available: bool) -> str:
    """Return the cache key for one logical image variant.

    The filter segment reads "veg" when the vegetation-suppressed rendering is
    shown, i.e. the filter toggle is off and the dataset offers one.
    """
    resolution = "full" if full_resolution else "down"
    filtering = "veg" if (not veg_filter and veg_filter_available) else "norm"
    return f"{resolution}-{filtering}-{url}"


def image_property(variant: str) -> str:
    """Map a variant name ("pre", "post", "change") to its record property."""
    return VARIANT_PROPERTIES.get(variant, "preEvent")


def resolve_variant_url(urls: Any, full_resolution: bool, veg_filter: bool) -> str | None:
    """Resolve a variant's URL-or-structure to exactly one concrete URL.

    Accepts a plain string (returned as-is) or a mapping
    ``{full, downsampled, vegFilter?}`` where ``vegFilter`` is itself a string
    or a ``{full, downsampled}`` mapping. The vegetation branch wins only when
    the filter toggle is off and a ``vegFilter`` value is present.
    """
    if isinstance(urls, str):
        return urls
    if not isinstance(urls, Mapping):
        return None

    veg = urls.get("vegFilter")
    if not veg_filter and veg:
        if isinstance(veg, str):
            return veg
        if isinstance(veg, Mapping):
            return veg.get("full") if full_resolution else veg.get("downsampled")

    full = urls.get("full")
    down = urls.get("downsampled")
    if full and down:
        return full if full_resolution else down
    return None


def has_vegetation_filter_structure(urls: Any) -> bool:
    return isinstance(urls, Mapping) and isinstance(urls.get("vegFilter"), Mapping)
