"""
HTTP client used inside the worker to read the orchestrator's cache server.

Every failure degrades to a cache miss: a run must still go live when the
cache server is unreachable.
"""

from typing import Any

import httpx

from rollout_dev.sdk.log import get_default_logger
from rollout_dev.sdk.rollout.types import (
    CacheMetadata,
    CacheServerResponse,
    CachedSpan,
    RolloutPathOverride,
)

logger = get_default_logger(__name__)


class CacheClient:
    """
    Client for the rollout cache server.

    Metadata (pathToCount and overrides) is fetched once and memoised until
    `invalidate_cache()` is called.
    """

    def __init__(self, cache_server_url: str, timeout: float = 5.0):
        """
        Args:
            cache_server_url: Base URL of the cache server (e.g., "http://127.0.0.1:12345")
            timeout: Request timeout in seconds (default: 5.0)
        """
        self.base_url = cache_server_url.rstrip("/")
        self.timeout = timeout
        self._client: httpx.Client | None = None
        self._path_to_count_cache: dict[str, int] | None = None
        self._overrides_cache: dict[str, RolloutPathOverride] | None = None

    @classmethod
    def from_address(cls, address: str, **kwargs: Any) -> "CacheClient":
        """Build a client from `host:port` or a full URL."""
        if not address.startswith(("http://", "https://")):
            address = f"http://{address}"
        return cls(address, **kwargs)

    def _get_client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self.timeout)
        return self._client

    def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def get_cached_span(self, path: str, index: int) -> CachedSpan | None:
        """
        Fetch a cached span by path and index.

        Args:
            path: Span path (e.g., "root.llm_call")
            index: Call index for this path (e.g., 0, 1, 2)

        Returns:
            CachedSpan | None: Cached span data if found, None otherwise
        """
        try:
            response = self._get_client().post(
                f"{self.base_url}/cached",
                json={"path": path, "index": index},
            )
        except httpx.TimeoutException:
            logger.warning(f"Timeout fetching cached span {index}:{path}")
            return None
        except httpx.HTTPError as e:
            logger.warning(f"Error fetching cached span {index}:{path}: {e}")
            return None

        if response.status_code == 404:
            logger.debug(f"Cache miss for {index}:{path}")
            return None
        if response.status_code != 200:
            logger.warning(
                f"Cache server returned status {response.status_code} "
                f"for {index}:{path}"
            )
            return None

        data: CacheServerResponse = response.json()
        if "pathToCount" in data:
            self._path_to_count_cache = data["pathToCount"] or {}
        if "overrides" in data:
            self._overrides_cache = data["overrides"] or {}

        logger.debug(f"Cache hit for {index}:{path}")
        return data.get("span")

    def _fetch_metadata(self) -> CacheMetadata | None:
        try:
            response = self._get_client().get(f"{self.base_url}/metadata")
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Error fetching cache metadata: {e}")
            return None

        metadata: CacheMetadata = response.json()
        self._path_to_count_cache = metadata.get("pathToCount") or {}
        # None means "not fetched yet", so a null from the server is stored as {}
        self._overrides_cache = metadata.get("overrides") or {}
        return metadata

    def get_path_to_count(self) -> dict[str, int]:
        """
        Returns:
            dict[str, int]: How many recorded calls to replay per span path.
                Empty when the server cannot be reached.
        """
        if self._path_to_count_cache is None and self._fetch_metadata() is None:
            return {}
        return self._path_to_count_cache or {}

    def get_overrides(self) -> dict[str, RolloutPathOverride]:
        if self._overrides_cache is None:
            self._fetch_metadata()
        return self._overrides_cache or {}

    def should_use_cache(self, path: str, current_index: int) -> bool:
        return current_index < self.get_path_to_count().get(path, 0)

    def invalidate_cache(self) -> None:
        self._path_to_count_cache = None
        self._overrides_cache = None
        logger.debug("Cache metadata invalidated")
