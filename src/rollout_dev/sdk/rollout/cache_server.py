"""
Loopback HTTP server exposing the record/replay store to worker processes.

Endpoints:
- GET  /health
- POST /cached         {"path": ..., "index": ...} -> span + metadata, or 404
- GET|POST /metadata   pathToCount and overrides together
- GET|POST /path_to_count
- GET|POST /overrides
- POST /spans          bulk-load entries keyed "{index}:{path}"
- POST /spans/chunk    one chunk of a /spans body too large for one request
- POST /clear          drop entries and metadata
"""

import json
from typing import Any

from aiohttp import web

from rollout_dev.sdk.log import get_default_logger
from rollout_dev.sdk.rollout.cache_store import CacheStore
from rollout_dev.sdk.rollout.chunks import ChunkReassembler

logger = get_default_logger(__name__)


class CacheServer:
    """
    HTTP server over a CacheStore.

    The server binds to 127.0.0.1. With port 0 the OS picks a free port,
    which is available from `actual_port` after `start()`.
    """

    def __init__(self, store: CacheStore | None = None, port: int = 0):
        self.store = store if store is not None else CacheStore()
        self.port = port
        self.actual_port: int | None = None
        self.app = web.Application()
        self.runner: web.AppRunner | None = None
        self.site: web.TCPSite | None = None
        self.reassembler = ChunkReassembler()

        self._setup_routes()

    def _setup_routes(self) -> None:
        self.app.router.add_get("/health", self._health_handler)
        self.app.router.add_post("/cached", self._get_cached_handler)
        self.app.router.add_get("/metadata", self._get_metadata_handler)
        self.app.router.add_post("/metadata", self._update_metadata_handler)
        self.app.router.add_get("/path_to_count", self._get_path_to_count_handler)
        self.app.router.add_post("/path_to_count", self._update_path_to_count_handler)
        self.app.router.add_get("/overrides", self._get_overrides_handler)
        self.app.router.add_post("/overrides", self._update_overrides_handler)
        self.app.router.add_post("/spans", self._update_spans_handler)
        self.app.router.add_post("/spans/chunk", self._update_spans_chunk_handler)
        self.app.router.add_post("/clear", self._clear_handler)

    async def start(self) -> int:
        """
        Start the cache server.

        Returns:
            int: The port the server is listening on
        """
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()

        self.site = web.TCPSite(self.runner, "127.0.0.1", self.port)
        await self.site.start()

        # port 0 is resolved by the OS; read back what we actually got
        if self.site._server and self.site._server.sockets:
            self.actual_port = self.site._server.sockets[0].getsockname()[1]
        else:
            self.actual_port = self.port

        logger.debug(f"Cache server started on {self.get_url()}")
        return self.actual_port

    async def stop(self) -> None:
        if self.runner:
            await self.runner.cleanup()
            self.runner = None
            self.site = None
        logger.debug("Cache server stopped")

    def get_url(self) -> str:
        if self.actual_port is None:
            raise RuntimeError("Server not started yet")
        return f"http://127.0.0.1:{self.actual_port}"

    # Handlers

    async def _read_json(self, request: web.Request) -> Any:
        try:
            return await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise web.HTTPBadRequest(
                text=json.dumps({"error": f"Invalid JSON body: {e}"}),
                content_type="application/json",
            )

    @staticmethod
    def _bad_request(message: str) -> web.Response:
        return web.json_response({"error": message}, status=400)

    async def _health_handler(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "ok"})

    async def _get_cached_handler(self, request: web.Request) -> web.Response:
        """
        Fetch a cached span by path and index.

        Request body: {"path": "root.llm_call", "index": 0}
        Response: {"span": {...}, "pathToCount": {...}, "overrides": {...}}
        """
        data = await self._read_json(request)
        if not isinstance(data, dict):
            return self._bad_request("Body must be a JSON object")

        path = data.get("path")
        index = data.get("index")
        if not isinstance(path, str) or not path:
            return self._bad_request("'path' must be a non-empty string")
        if not isinstance(index, int) or isinstance(index, bool) or index < 0:
            return self._bad_request("'index' must be a non-negative integer")

        # one snapshot of both halves so the response is consistent
        span = self.store.get(path, index)
        metadata = self.store.metadata

        if span is None:
            logger.debug(f"Cache miss for {index}:{path}")
            return web.json_response({"error": "Cache miss"}, status=404)

        return web.json_response(
            {
                "span": span,
                "pathToCount": metadata["pathToCount"],
                "overrides": metadata.get("overrides"),
            }
        )

    async def _get_metadata_handler(self, request: web.Request) -> web.Response:
        return web.json_response(self.store.metadata)

    async def _update_metadata_handler(self, request: web.Request) -> web.Response:
        data = await self._read_json(request)
        if not isinstance(data, dict) or not isinstance(
            data.get("pathToCount", {}), dict
        ):
            return self._bad_request("Body must be {pathToCount, overrides}")

        self.store.set_metadata(data.get("pathToCount", {}), data.get("overrides"))
        return web.json_response({"status": "ok"})

    async def _get_path_to_count_handler(self, request: web.Request) -> web.Response:
        return web.json_response(self.store.metadata["pathToCount"])

    async def _update_path_to_count_handler(
        self, request: web.Request
    ) -> web.Response:
        data = await self._read_json(request)
        if not isinstance(data, dict):
            return self._bad_request("Body must be a JSON object")

        self.store.set_path_to_count(data)
        logger.debug(f"Updated path_to_count with {len(data)} entries")
        return web.json_response({"status": "ok", "count": len(data)})

    async def _get_overrides_handler(self, request: web.Request) -> web.Response:
        return web.json_response(self.store.metadata.get("overrides") or {})

    async def _update_overrides_handler(self, request: web.Request) -> web.Response:
        data = await self._read_json(request)
        if data is not None and not isinstance(data, dict):
            return self._bad_request("Body must be a JSON object or null")

        self.store.set_overrides(data)
        return web.json_response({"status": "ok", "count": len(data or {})})

    async def _update_spans_handler(self, request: web.Request) -> web.Response:
        """Request body: {"0:root.llm_call": {...}, "1:root.llm_call": {...}}"""
        data = await self._read_json(request)
        if not isinstance(data, dict):
            return self._bad_request("Body must be a JSON object")

        self.store.update(data)
        logger.debug(f"Updated {len(data)} cached spans")
        return web.json_response({"status": "ok", "count": len(data)})

    async def _update_spans_chunk_handler(self, request: web.Request) -> web.Response:
        """
        Request body: {"batchId": ..., "chunkIndex": ..., "totalChunks": ..., "data": ...}

        The chunks' data joined in index order is a /spans body. Entries are
        loaded when the last chunk of the batch arrives.
        """
        chunk = await self._read_json(request)
        if not isinstance(chunk, dict):
            return self._bad_request("Body must be a JSON object")
        if not isinstance(chunk.get("batchId"), str) or not isinstance(
            chunk.get("data"), str
        ):
            return self._bad_request("'batchId' and 'data' must be strings")
        for field in ("chunkIndex", "totalChunks"):
            if not isinstance(chunk.get(field), int) or isinstance(chunk[field], bool):
                return self._bad_request(f"'{field}' must be an integer")

        try:
            full_data = self.reassembler.add(chunk)
        except ValueError as e:
            return self._bad_request(str(e))

        if full_data is None:
            return web.json_response({"status": "pending"})

        try:
            entries = json.loads(full_data)
        except json.JSONDecodeError as e:
            return self._bad_request(f"Reassembled spans are not valid JSON: {e}")
        if not isinstance(entries, dict):
            return self._bad_request("Reassembled spans must be a JSON object")

        self.store.update(entries)
        logger.debug(f"Updated {len(entries)} cached spans from batch {chunk['batchId']}")
        return web.json_response({"status": "ok", "count": len(entries)})

    async def _clear_handler(self, request: web.Request) -> web.Response:
        self.reassembler.clear()
        self.store.clear()
        return web.json_response({"status": "ok"})
