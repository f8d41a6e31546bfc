from __future__ import annotations

import asyncio

import pytest

from tests.helpers.fakes import CountingHandles, FakeDecoder, make_engine, make_image, wait_until


@pytest.mark.asyncio
async def test_preload_inserts_with_priority_and_context(server) -> None:
    url = server.add_image("/img/next.jpg")

    async with make_engine(server) as engine:
        ok = await engine.preloader.preload(url, "down-norm-/img/next.jpg", 4, "next-current")

        assert ok is True
        entry = engine.store.peek("down-norm-/img/next.jpg")
        assert entry is not None
        assert entry.priority == 4
        assert entry.context == "next-current"
        assert entry.source_url == url
        assert engine.preloader.active_count == 0


@pytest.mark.asyncio
async def test_resident_key_is_not_preloaded(server) -> None:
    url = server.add_image("/img/a.jpg")
    other = server.add_image("/img/other.jpg")
    server.gates[other] = asyncio.Event()

    async with make_engine(server) as engine:
        engine.store.insert("k", make_image())
        main = asyncio.create_task(engine.loader.load(other, "other"))
        await wait_until(lambda: server.count(other) == 1)
        assert engine.loader.is_loading

        assert engine.preloader.admission_error(url, "k") == "resident"
        assert await engine.preloader.preload(url, "k", 2, "current-post") is False
        assert engine.preloader.schedule(url, "k", 2, "current-post") is None
        assert server.count(url) == 0
        assert engine.preloader.active_count == 0

        server.gates[other].set()
        entry = await main
        assert entry.key == "other"
        assert engine.store.keys() == ["k", "other"]


@pytest.mark.asyncio
async def test_duplicate_in_flight_url_is_rejected(server) -> None:
    url = server.add_image("/img/a.jpg")
    server.gates[url] = asyncio.Event()

    async with make_engine(server) as engine:
        assert engine.preloader.schedule(url, "k", 2, "current-post") is not None
        assert engine.preloader.in_flight(url)

        assert engine.preloader.schedule(url, "k", 2, "current-post") is None
        assert engine.preloader.admission_error(url, "k") == "in-flight"
        server.gates[url].set()
        await engine.preloader.wait_for(url)

    assert server.count(url) == 1


@pytest.mark.asyncio
async def test_over_budget_memory_rejects(server) -> None:
    url = server.add_image("/img/a.jpg")

    async with make_engine(server, max_memory_mb=1) as engine:
        engine.governor.update_memory_metrics(engine.governor.memory_budget)

        assert engine.preloader.admission_error(url, "k") == "memory"
        assert await engine.preloader.preload(url, "k", 2, "current-post") is False


@pytest.mark.asyncio
async def test_counter_reset_does_not_reopen_admission(server) -> None:
    url = server.add_image("/img/a.jpg")

    async with make_engine(server, max_memory_mb=1, max_cache_size=4) as engine:
        engine.store.insert("big", make_image(width=1000, height=1000))
        engine.governor.reset()

        assert engine.preloader.admission_error(url, "k") == "memory"
        assert server.count(url) == 0


@pytest.mark.asyncio
async def test_full_cache_rejects(server) -> None:
    url = server.add_image("/img/a.jpg")

    async with make_engine(server, max_cache_size=2) as engine:
        engine.store.insert("x", make_image())
        engine.store.insert("y", make_image())

        assert engine.preloader.admission_error(url, "k") == "cache-full"
        assert await engine.preloader.preload(url, "k", 2, "current-post") is False
        assert engine.store.keys() == ["x", "y"]


@pytest.mark.asyncio
async def test_concurrency_limit(server) -> None:
    urls = [server.add_image(f"/img/{i}.jpg") for i in range(3)]
    for url in urls:
        server.gates[url] = asyncio.Event()

    async with make_engine(server, max_concurrent_preloads=2) as engine:
        assert engine.preloader.schedule(urls[0], "k0", 2, "a") is not None
        assert engine.preloader.schedule(urls[1], "k1", 3, "b") is not None

        assert engine.preloader.admission_error(urls[2], "k2") == "concurrency"
        assert engine.preloader.schedule(urls[2], "k2", 4, "c") is None
        assert engine.preloader.active_count == 2


@pytest.mark.asyncio
async def test_failed_preload_is_swallowed(server) -> None:
    bad = server.add_image("/img/bad.jpg", b"BAD bytes")

    async with make_engine(server) as engine:
        assert await engine.preloader.preload("/img/missing.jpg", "m", 2, "a") is False
        assert await engine.preloader.preload(bad, "b", 3, "b") is False
        assert len(engine.store) == 0
        assert engine.preloader.active_count == 0


@pytest.mark.asyncio
async def test_cancel_during_fetch(server) -> None:
    url = server.add_image("/img/a.jpg")
    server.gates[url] = asyncio.Event()

    async with make_engine(server) as engine:
        task = engine.preloader.schedule(url, "k", 2, "current-post")
        await wait_until(lambda: server.count(url) == 1)

        assert engine.preloader.cancel(url) is True
        assert engine.preloader.cancel(url) is False
        assert await task is False
        assert len(engine.store) == 0


@pytest.mark.asyncio
async def test_cancel_during_decode_releases_handle(server) -> None:
    url = server.add_image("/img/a.jpg")
    decoder = FakeDecoder()
    decoder.gate = asyncio.Event()
    handles = CountingHandles()

    async with make_engine(server, decoder=decoder, handle_factory=handles) as engine:
        task = engine.preloader.schedule(url, "k", 2, "current-post")
        await wait_until(lambda: bool(decoder.calls))

        assert engine.preloader.cancel_all() == 1
        assert await task is False
        assert handles.created[0].revoke_count == 1
        assert len(engine.store) == 0


@pytest.mark.asyncio
async def test_preload_yields_to_resident_entry(server) -> None:
    url = server.add_image("/img/a.jpg")
    decoder = FakeDecoder()
    decoder.gate = asyncio.Event()
    handles = CountingHandles()

    async with make_engine(server, decoder=decoder, handle_factory=handles) as engine:
        task = engine.preloader.schedule(url, "k", 3, "current-change")
        await wait_until(lambda: bool(decoder.calls))
        main = make_image()
        engine.store.insert("k", main, context="main-load")
        decoder.gate.set()
        await task

        assert engine.store.peek("k").image is main
        assert not main.handle.revoked
        assert handles.created[0].revoke_count == 1


@pytest.mark.asyncio
async def test_wait_for_unknown_url(server) -> None:
    async with make_engine(server) as engine:
        assert await engine.preloader.wait_for("/img/none.jpg") is False


@pytest.mark.asyncio
async def test_aclose_cancels_background_tasks(server) -> None:
    url = server.add_image("/img/a.jpg")
    server.gates[url] = asyncio.Event()
    engine = make_engine(server)

    task = engine.preloader.schedule(url, "k", 2, "a")
    await wait_until(lambda: server.count(url) == 1)
    await engine.preloader.aclose()

    assert task.done()
    assert engine.preloader.active_count == 0
    await engine.cleanup()
