from typing import Generator

import pytest

from rollout_dev.sdk import tracing
from rollout_dev.sdk.rollout.interceptor import clear_interceptors

pytest_plugins = ("pytest_asyncio",)


@pytest.fixture(autouse=True)
def reset_worker_state() -> Generator[None, None, None]:
    """Interceptors and the tracer provider are process-wide; isolate tests."""
    clear_interceptors()
    yield
    clear_interceptors()
    tracing.shutdown()


@pytest.fixture
def write_module(tmp_path):
    """Write a Python source file into tmp_path and return its path."""

    def _write(source: str, name: str = "agent.py") -> str:
        path = tmp_path / name
        path.write_text(source)
        return str(path)

    return _write
