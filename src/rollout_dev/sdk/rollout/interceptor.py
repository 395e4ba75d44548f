"""
Interceptors consulted by `observe(span_type="LLM")` before the wrapped call.

An interceptor may answer a call with a Replay, in which case the wrapped
function is not invoked at all. The first interceptor to answer wins.
"""

import abc
import dataclasses
import threading
from collections import defaultdict
from typing import Any

from rollout_dev.sdk.log import get_default_logger
from rollout_dev.sdk.rollout.cache_client import CacheClient
from rollout_dev.sdk.rollout.types import RolloutPathOverride
from rollout_dev.sdk.utils import try_parse_json

logger = get_default_logger(__name__)


@dataclasses.dataclass
class LLMCall:
    name: str
    path: str
    args: tuple
    kwargs: dict[str, Any]


@dataclasses.dataclass
class Replay:
    output: Any
    index: int


class Interceptor(abc.ABC):
    @abc.abstractmethod
    def intercept(self, call: LLMCall) -> Replay | None:
        """Return a Replay to short-circuit the call, or None to let it run."""


_interceptors: list[Interceptor] = []
_interceptors_lock = threading.Lock()


def register_interceptor(interceptor: Interceptor) -> None:
    with _interceptors_lock:
        if interceptor not in _interceptors:
            _interceptors.append(interceptor)


def unregister_interceptor(interceptor: Interceptor) -> None:
    with _interceptors_lock:
        if interceptor in _interceptors:
            _interceptors.remove(interceptor)


def clear_interceptors() -> None:
    with _interceptors_lock:
        _interceptors.clear()


def get_interceptors() -> list[Interceptor]:
    with _interceptors_lock:
        return list(_interceptors)


def run_interceptors(call: LLMCall) -> Replay | None:
    for interceptor in get_interceptors():
        replay = interceptor.intercept(call)
        if replay is not None:
            return replay
    return None


class CacheReplayInterceptor(Interceptor):
    """
    Replays recorded outputs for the first N calls at each span path.

    N comes from the cache server's pathToCount. Calls are counted per path
    in call order; once the count is reached, or a recorded span is missing,
    the call goes live.
    """

    def __init__(self, client: CacheClient):
        self.client = client
        self._indices: dict[str, int] = defaultdict(int)
        self._lock = threading.Lock()

    def next_index(self, path: str) -> int:
        with self._lock:
            index = self._indices[path]
            self._indices[path] = index + 1
            return index

    def reset(self) -> None:
        with self._lock:
            self._indices.clear()
        self.client.invalidate_cache()

    def intercept(self, call: LLMCall) -> Replay | None:
        index = self.next_index(call.path)
        if not self.client.should_use_cache(call.path, index):
            return None

        span = self.client.get_cached_span(call.path, index)
        if span is None:
            logger.debug(f"No recorded output for {index}:{call.path}, calling live")
            return None

        logger.debug(f"Replaying recorded output for {index}:{call.path}")
        return Replay(output=try_parse_json(span.get("output")), index=index)

    def overrides_for(self, path: str) -> RolloutPathOverride | None:
        return self.client.get_overrides().get(path)
