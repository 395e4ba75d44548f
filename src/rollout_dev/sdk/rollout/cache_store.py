"""
In-memory record/replay store shared by the orchestrator and the cache server.

Entries are keyed "{index}:{path}" where index is the 0-based occurrence of
the path within one recorded trace. Every write replaces a whole dict, so a
reader that grabbed a reference keeps a consistent snapshot.
"""

from collections import defaultdict
from typing import Any, Iterable, Mapping

from rollout_dev.sdk.log import get_default_logger
from rollout_dev.sdk.rollout.types import (
    CachedSpan,
    CacheMetadata,
    RolloutPathOverride,
)
from rollout_dev.sdk.utils import json_dumps, try_parse_json

logger = get_default_logger(__name__)


def cache_key(path: str, index: int) -> str:
    return f"{index}:{path}"


def _cached_span(span: Mapping[str, Any]) -> CachedSpan:
    # output stays a JSON string; replay decodes it
    output = span.get("output", "")
    if not isinstance(output, str):
        output = json_dumps(output)
    attributes = try_parse_json(span.get("attributes"))
    return {
        "name": span.get("name", ""),
        "input": try_parse_json(span.get("input", "")),
        "output": output,
        "attributes": attributes if isinstance(attributes, dict) else {},
    }


def build_cache_entries(
    spans: Iterable[Mapping[str, Any]],
    path_to_count: Mapping[str, int],
) -> dict[str, CachedSpan]:
    """
    Group recorded spans by path and keep the first N of each path.

    SQL returns input and attributes as JSON text; both are decoded here.

    Args:
        spans: Rows with name, input, output, attributes and path, already
            ordered by start time
        path_to_count: How many leading occurrences of each path to keep

    Returns:
        dict[str, CachedSpan]: Entries keyed "{index}:{path}"
    """
    by_path: dict[str, list[Mapping[str, Any]]] = defaultdict(list)
    for span in spans:
        path = span.get("path")
        if path:
            by_path[path].append(span)

    entries: dict[str, CachedSpan] = {}
    for path, count in path_to_count.items():
        for index, span in enumerate(by_path.get(path, [])[:count]):
            entries[cache_key(path, index)] = _cached_span(span)
    return entries


class CacheStore:
    def __init__(self):
        self._entries: dict[str, CachedSpan] = {}
        self._metadata: CacheMetadata = {"pathToCount": {}, "overrides": None}

    def get(self, path: str, index: int) -> CachedSpan | None:
        return self._entries.get(cache_key(path, index))

    def entries(self) -> dict[str, CachedSpan]:
        return self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def set_all(self, entries: Mapping[str, CachedSpan]) -> None:
        self._entries = dict(entries)
        logger.debug(f"Loaded {len(self._entries)} cached spans")

    def update(self, entries: Mapping[str, CachedSpan]) -> None:
        merged = dict(self._entries)
        merged.update(entries)
        self._entries = merged

    def clear(self) -> None:
        self._entries = {}
        self._metadata = {"pathToCount": {}, "overrides": None}

    @property
    def metadata(self) -> CacheMetadata:
        return self._metadata

    def set_metadata(
        self,
        path_to_count: Mapping[str, int],
        overrides: Mapping[str, RolloutPathOverride] | None = None,
    ) -> None:
        self._metadata = {
            "pathToCount": dict(path_to_count),
            "overrides": dict(overrides) if overrides is not None else None,
        }

    def set_path_to_count(self, path_to_count: Mapping[str, int]) -> None:
        self.set_metadata(path_to_count, self._metadata.get("overrides"))

    def set_overrides(
        self, overrides: Mapping[str, RolloutPathOverride] | None
    ) -> None:
        self.set_metadata(self._metadata["pathToCount"], overrides)
