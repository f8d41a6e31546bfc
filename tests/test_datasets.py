from __future__ import annotations

import httpx
import pytest

from change_viewer.datasets import Dataset, DatasetClient, parse_datasets
from change_viewer.image_engine.errors import AuthenticationRequired, NetworkError
from tests.helpers.fakes import BASE_URL


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=BASE_URL)


def test_from_record_reads_variants_and_flags() -> None:
    dataset = Dataset.from_record(
        {
            "id": 12,
            "preEvent": "/pre.jpg",
            "postEvent": {"full": "/post-full.jpg", "downsampled": "/post-down.jpg"},
            "hasVegetationFilter": False,
        }
    )

    assert dataset.id == "12"
    assert dataset.number == 12
    assert dataset.urls_for("pre") == "/pre.jpg"
    assert dataset.urls_for("post")["full"] == "/post-full.jpg"
    assert dataset.urls_for("change") is None
    assert not dataset.vegetation_filter_available


def test_vegetation_structure_implies_availability() -> None:
    dataset = Dataset.from_record(
        {
            "id": "north-7",
            "changeDetection": {
                "full": "/f.jpg",
                "downsampled": "/d.jpg",
                "vegFilter": {"full": "/vf.jpg", "downsampled": "/vd.jpg"},
            },
        }
    )

    assert dataset.number is None
    assert dataset.vegetation_filter_available


def test_parse_datasets_requires_list() -> None:
    with pytest.raises(ValueError):
        parse_datasets({"datasets": []})
    assert [d.id for d in parse_datasets([{"id": 1}, "junk", {"id": 2}])] == ["1", "2"]


@pytest.mark.asyncio
async def test_fetch_returns_datasets() -> None:
    seen: list[str] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        return httpx.Response(200, json=[{"id": 1, "preEvent": "/a.jpg"}])

    async with _client(handler) as client:
        datasets = await DatasetClient(client).fetch("coastal")

    assert seen == ["/api/datasets/coastal"]
    assert [d.id for d in datasets] == ["1"]


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [401, 403])
async def test_fetch_auth_status(status: int) -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status)

    async with _client(handler) as client:
        with pytest.raises(AuthenticationRequired):
            await DatasetClient(client).fetch()


@pytest.mark.asyncio
async def test_fetch_login_page_means_auth_required() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, html="<html><body>Login</body></html>")

    async with _client(handler) as client:
        with pytest.raises(AuthenticationRequired):
            await DatasetClient(client).fetch()


@pytest.mark.asyncio
async def test_fetch_server_error() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503)

    async with _client(handler) as client:
        with pytest.raises(NetworkError) as exc:
            await DatasetClient(client).fetch()

    assert exc.value.status_code == 503


@pytest.mark.asyncio
async def test_fetch_transport_error() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    async with _client(handler) as client:
        with pytest.raises(NetworkError):
            await DatasetClient(client).fetch()
