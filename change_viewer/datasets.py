"""Dataset listing: records of before/after/change imagery per location."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import httpx

from change_viewer.image_engine.errors import AuthenticationRequired, NetworkError
from change_viewer.image_engine.keys import VARIANT_PROPERTIES, has_vegetation_filter_structure, image_property
from change_viewer.logger import get_logger

_logger = get_logger("datasets")


@dataclass(frozen=True)
class Dataset:
    id: str
    variants: Mapping[str, Any] = field(default_factory=dict)
    has_vegetation_filter: bool = False

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> Dataset:
        variants = {prop: record.get(prop) for prop in VARIANT_PROPERTIES.values()}
        return cls(
            id=str(record.get("id", "")),
            variants=variants,
            has_vegetation_filter=bool(record.get("hasVegetationFilter", False)),
        )

    def urls_for(self, variant: str) -> Any:
        return self.variants.get(image_property(variant))

    @property
    def number(self) -> int | None:
        """Numeric id used to key the panorama highlight."""
        try:
            return int(self.id)
        except (TypeError, ValueError):
            return None

    @property
    def vegetation_filter_available(self) -> bool:
        if self.has_vegetation_filter:
            return True
        return any(has_vegetation_filter_structure(urls) for urls in self.variants.values())


def parse_datasets(payload: Any) -> list[Dataset]:
    if not isinstance(payload, list):
        raise ValueError(f"dataset listing must be a JSON list, got {type(payload).__name__}")
    return [Dataset.from_record(r) for r in payload if isinstance(r, Mapping)]


class DatasetClient:
    """Fetches `/api/datasets/<project>` from the image server."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def fetch(self, project: str = "analysis") -> list[Dataset]:
        url = f"/api/datasets/{project}"
        try:
            response = await self._client.get(url)
        except httpx.HTTPError as e:
            raise NetworkError(f"dataset listing failed: {e}", url=url) from e

        if response.status_code in (401, 403):
            raise AuthenticationRequired("authentication required", url=url)
        if response.status_code >= 400:
            raise NetworkError(
                f"HTTP {response.status_code}: {response.reason_phrase}",
                url=url,
                status_code=response.status_code,
            )
        # A login redirect lands on an HTML page instead of JSON.
        if "text/html" in response.headers.get("content-type", ""):
            raise AuthenticationRequired("login page returned instead of datasets", url=url)

        datasets = parse_datasets(response.json())
        _logger.debug("datasets loaded: project=%s count=%d", project, len(datasets))
        return datasets
