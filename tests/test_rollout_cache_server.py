"""
Tests for rollout cache server (aiohttp server).
"""

import json

import httpx
import pytest
import pytest_asyncio

from rollout_dev.sdk.rollout.cache_server import CacheServer
from rollout_dev.sdk.rollout.cache_store import CacheStore
from rollout_dev.sdk.rollout.chunks import split_into_chunks


@pytest_asyncio.fixture
async def server():
    server = CacheServer(port=0)
    await server.start()
    yield server
    await server.stop()


SPANS = {
    "0:root.llm": {
        "name": "llm_call",
        "input": {"prompt": "test"},
        "output": "response 1",
        "attributes": {"model": "gpt-4"},
    },
    "1:root.llm": {
        "name": "llm_call",
        "input": {"prompt": "test2"},
        "output": "response 2",
        "attributes": {"model": "gpt-4"},
    },
}


@pytest.mark.asyncio
async def test_cache_server_lifecycle():
    """Test cache server start and stop."""
    server = CacheServer(port=0)

    port = await server.start()
    assert port > 0
    assert server.actual_port == port
    assert server.get_url() == f"http://127.0.0.1:{port}"

    async with httpx.AsyncClient() as client:
        response = await client.get(f"{server.get_url()}/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    await server.stop()


def test_cache_server_get_url_before_start():
    """Test that get_url() raises error before server is started."""
    server = CacheServer(port=0)

    with pytest.raises(RuntimeError, match="Server not started yet"):
        server.get_url()


def test_cache_server_registers_each_route_once():
    server = CacheServer()

    routes = sorted(
        (route.method, route.resource.canonical)
        for route in server.app.router.routes()
        if route.method != "HEAD"
    )

    assert routes == [
        ("GET", "/health"),
        ("GET", "/metadata"),
        ("GET", "/overrides"),
        ("GET", "/path_to_count"),
        ("POST", "/cached"),
        ("POST", "/clear"),
        ("POST", "/metadata"),
        ("POST", "/overrides"),
        ("POST", "/path_to_count"),
        ("POST", "/spans"),
        ("POST", "/spans/chunk"),
    ]


@pytest.mark.asyncio
async def test_cached_hit_returns_span_and_metadata(server):
    """A hit returns the span together with both halves of the metadata."""
    server.store.set_all(SPANS)
    server.store.set_metadata({"root.llm": 2}, {"root.llm": {"system": "be brief"}})

    async with httpx.AsyncClient() as client:
        response = await client.post(
            f"{server.get_url()}/cached", json={"path": "root.llm", "index": 1}
        )

    assert response.status_code == 200
    assert response.json() == {
        "span": SPANS["1:root.llm"],
        "pathToCount": {"root.llm": 2},
        "overrides": {"root.llm": {"system": "be brief"}},
    }


@pytest.mark.asyncio
async def test_cached_miss_is_404(server):
    async with httpx.AsyncClient() as client:
        response = await client.post(
            f"{server.get_url()}/cached", json={"path": "root.llm", "index": 0}
        )

    assert response.status_code == 404
    assert response.json() == {"error": "Cache miss"}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        {"index": 0},
        {"path": "", "index": 0},
        {"path": "root.llm"},
        {"path": "root.llm", "index": -1},
        {"path": "root.llm", "index": "0"},
        {"path": "root.llm", "index": True},
        ["root.llm", 0],
    ],
)
async def test_cached_invalid_body_is_400(server, body):
    async with httpx.AsyncClient() as client:
        response = await client.post(f"{server.get_url()}/cached", json=body)

    assert response.status_code == 400
    assert "error" in response.json()


@pytest.mark.asyncio
async def test_cached_malformed_json_is_400(server):
    async with httpx.AsyncClient() as client:
        response = await client.post(
            f"{server.get_url()}/cached",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_update_and_get_path_to_count(server):
    """Test updating and retrieving path_to_count mapping."""
    path_to_count = {"root.llm_call": 2, "root.other": 1}

    async with httpx.AsyncClient() as client:
        response = await client.post(
            f"{server.get_url()}/path_to_count", json=path_to_count
        )
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "count": 2}

        response = await client.get(f"{server.get_url()}/path_to_count")
        assert response.status_code == 200
        assert response.json() == path_to_count


@pytest.mark.asyncio
async def test_update_and_get_overrides(server):
    """Test updating and retrieving overrides."""
    overrides = {
        "root.llm": {"system": "test prompt", "tools": []},
        "root.other": {"system": "another prompt"},
    }

    async with httpx.AsyncClient() as client:
        response = await client.post(f"{server.get_url()}/overrides", json=overrides)
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

        response = await client.get(f"{server.get_url()}/overrides")
        assert response.json() == overrides


@pytest.mark.asyncio
async def test_update_and_get_metadata(server):
    metadata = {"pathToCount": {"root.llm": 3}, "overrides": {"root.llm": {"system": "x"}}}

    async with httpx.AsyncClient() as client:
        response = await client.post(f"{server.get_url()}/metadata", json=metadata)
        assert response.status_code == 200

        response = await client.get(f"{server.get_url()}/metadata")
        assert response.json() == metadata


@pytest.mark.asyncio
async def test_bulk_spans_then_clear(server):
    async with httpx.AsyncClient() as client:
        response = await client.post(f"{server.get_url()}/spans", json=SPANS)
        assert response.json() == {"status": "ok", "count": 2}
        assert len(server.store) == 2

        response = await client.post(f"{server.get_url()}/clear")
        assert response.status_code == 200

        response = await client.post(
            f"{server.get_url()}/cached", json={"path": "root.llm", "index": 0}
        )
        assert response.status_code == 404


@pytest.mark.asyncio
async def test_chunked_spans_loaded_when_batch_completes(server):
    """Chunks of a /spans body are buffered until the last one arrives."""
    chunks = split_into_chunks(json.dumps(SPANS), "batch-1", chunk_size=40)
    assert len(chunks) > 2

    async with httpx.AsyncClient() as client:
        for chunk in chunks[:-1]:
            response = await client.post(f"{server.get_url()}/spans/chunk", json=chunk)
            assert response.json() == {"status": "pending"}
            assert len(server.store) == 0

        response = await client.post(
            f"{server.get_url()}/spans/chunk", json=chunks[-1]
        )

    assert response.json() == {"status": "ok", "count": 2}
    assert server.store.get("root.llm", 1) == SPANS["1:root.llm"]
    assert "batch-1" not in server.reassembler


@pytest.mark.asyncio
async def test_invalid_chunk_is_400(server):
    async with httpx.AsyncClient() as client:
        response = await client.post(
            f"{server.get_url()}/spans/chunk",
            json={"batchId": "b", "chunkIndex": 3, "totalChunks": 2, "data": "x"},
        )

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_server_shares_store_with_owner():
    """Writes made directly to the store are visible over HTTP."""
    store = CacheStore()
    server = CacheServer(store=store, port=0)
    await server.start()
    try:
        store.set_all(SPANS)
        async with httpx.AsyncClient() as client:
            response = await client.post(
                f"{server.get_url()}/cached", json={"path": "root.llm", "index": 0}
            )
        assert response.status_code == 200
    finally:
        await server.stop()
