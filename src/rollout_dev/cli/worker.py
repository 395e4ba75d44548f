"""
Worker entry point for rollout execution.

Invoked by the dev loop as:
    python -m rollout_dev.cli worker

Reads one WorkerConfig line from stdin, runs the rollout function, and
reports back on stdout with `__LMNR_WORKER__:` frames.
"""

import asyncio
import dataclasses
import inspect
import os
import signal
import sys
import typing
from typing import Any, Callable

import pydantic

from rollout_dev.cli.discover import extract_function_metadata
from rollout_dev.sdk import tracing
from rollout_dev.sdk.registry import EntrypointRegistry
from rollout_dev.sdk.rollout.cache_client import CacheClient
from rollout_dev.sdk.rollout.interceptor import (
    CacheReplayInterceptor,
    register_interceptor,
)
from rollout_dev.sdk.rollout.protocol import send_error, send_log, send_result
from rollout_dev.sdk.rollout.types import RolloutParam, WorkerConfig
from rollout_dev.sdk.utils import from_env

SESSION_ID_ENV = "LMNR_ROLLOUT_SESSION_ID"
STATE_SERVER_ENV = "LMNR_ROLLOUT_STATE_SERVER_ADDRESS"


def _coerce_nested(func: Callable, name: str, value: dict[str, Any]) -> Any:
    try:
        annotation = typing.get_type_hints(inspect.unwrap(func)).get(name)
    except Exception:
        return value
    if isinstance(annotation, type):
        if issubclass(annotation, pydantic.BaseModel):
            return annotation.model_validate(value)
        if dataclasses.is_dataclass(annotation):
            return annotation(**value)
    return value


def prepare_function_args(
    func: Callable,
    raw_args: dict[str, Any] | list[Any],
    params: list[RolloutParam] | None = None,
) -> tuple[list[Any], dict[str, Any]]:
    """
    Map raw run arguments onto the function's parameters.

    Args can come as:
    - Dict mapping param names to values. Missing names are left out so
      Python defaults apply. A nested parameter missing from the dict is
      rebuilt from its children's names.
    - List of positional values

    Values arrive already decoded by the dev loop and are passed through
    unchanged, so a JSON string like "42" stays a string.

    Returns:
        tuple[list[Any], dict[str, Any]]: positional and keyword arguments
    """
    if params is None:
        params = extract_function_metadata(func)["params"]

    if isinstance(raw_args, list):
        return list(raw_args), {}

    if not isinstance(raw_args, dict):
        return [], {}

    kwargs: dict[str, Any] = {}
    for param in params:
        name = param["name"]
        if name in raw_args:
            kwargs[name] = raw_args[name]
            continue

        children = [child["name"] for child in param.get("nested") or []]
        present = {child: raw_args[child] for child in children if child in raw_args}
        if present:
            kwargs[name] = _coerce_nested(func, name, present)
    return [], kwargs


async def resolve_result(result: Any) -> Any:
    """Await coroutines and drain generators so the result can be serialized."""
    if inspect.isawaitable(result):
        result = await result
    if inspect.isasyncgen(result):
        return [item async for item in result]
    if inspect.isgenerator(result):
        return list(result)
    return result


def _setup_tracing(config: WorkerConfig) -> None:
    project_api_key = config.project_api_key or from_env("LMNR_PROJECT_API_KEY")
    session_id = os.environ.get(SESSION_ID_ENV)

    if tracing.init_tracing(
        project_api_key=project_api_key,
        base_url=config.base_url,
        http_port=config.http_port,
        grpc_port=config.grpc_port,
        force_http=bool(from_env("LMNR_FORCE_HTTP")),
        association_properties=(
            {"rollout_session_id": session_id} if session_id else None
        ),
    ):
        send_log("debug", "Tracing initialized")

    address = os.environ.get(STATE_SERVER_ENV) or f"127.0.0.1:{config.cache_server_port}"
    register_interceptor(CacheReplayInterceptor(CacheClient.from_address(address)))


async def run_worker(config: WorkerConfig) -> Any:
    """
    Load the target, run the selected entrypoint, and return its result.
    """
    for key, value in config.env.items():
        os.environ[key] = value

    registry = EntrypointRegistry()
    if config.file_path:
        send_log("debug", f"Loading module from file: {config.file_path}")
        registry.load_file(config.file_path)
    elif config.module_path:
        send_log("debug", f"Loading module: {config.module_path}")
        registry.load_module(config.module_path)
    else:
        raise ValueError("Config must contain either 'filePath' or 'modulePath'")

    entrypoint = registry.select(config.function_name)
    send_log("debug", f"Selected function: {entrypoint.name}")

    _setup_tracing(config)

    metadata = extract_function_metadata(
        entrypoint.func, entrypoint.name, entrypoint.export_name
    )
    func_args, func_kwargs = prepare_function_args(
        entrypoint.func, config.args, metadata["params"]
    )

    send_log("info", f"Calling function {entrypoint.name}")
    result = await resolve_result(entrypoint.func(*func_args, **func_kwargs))
    send_log("info", "Rollout function completed successfully")
    return result


def _flush_telemetry() -> None:
    try:
        tracing.flush()
    except Exception as e:
        print(f"Failed to flush traces: {e}", file=sys.stderr, flush=True)


def _handle_termination(signum, frame) -> None:
    _flush_telemetry()
    sys.stdout.flush()
    sys.stderr.flush()
    os._exit(128 + signum)


def main() -> None:
    """Read the configuration from stdin and run the worker."""
    # stream frames to the parent as they are written
    if sys.stdout is not None:
        sys.stdout.reconfigure(line_buffering=True)
    if sys.stderr is not None:
        sys.stderr.reconfigure(line_buffering=True)

    signal.signal(signal.SIGTERM, _handle_termination)
    signal.signal(signal.SIGINT, _handle_termination)

    config_line = sys.stdin.readline()
    if not config_line:
        send_error("No configuration received on stdin")
        sys.exit(1)

    try:
        config = WorkerConfig.from_json(config_line)
    except ValueError as e:
        # orjson and pydantic errors are both ValueErrors
        send_error(f"Failed to parse config: {e}")
        sys.exit(1)

    try:
        result = asyncio.run(run_worker(config))
    except Exception as e:
        send_error(e)
        _flush_telemetry()
        sys.exit(1)

    send_result(result)
    _flush_telemetry()
    sys.exit(0)


if __name__ == "__main__":
    main()
