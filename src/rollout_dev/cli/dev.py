"""
CLI command for running rollout development sessions.

This module provides the `rollout-dev dev` command: it serves one rollout
entrypoint to the backend over a control channel, runs it in a worker
process on request, and replays recorded LLM outputs from a local cache.
"""

import asyncio
import os
import signal
import time
import uuid
from argparse import Namespace
from typing import Any

from watchdog.observers import Observer

from rollout_dev.cli.hot_reload import ReloadScheduler, start_watcher, stop_watcher
from rollout_dev.cli.metadata import (
    DiscoveryOptions,
    DiscoveryTarget,
    discover_function_metadata,
    supports_discovery,
)
from rollout_dev.cli.worker import SESSION_ID_ENV, STATE_SERVER_ENV
from rollout_dev.cli.worker_registry import WorkerCommand, get_worker_command
from rollout_dev.sdk.client.async_client import AsyncRolloutClient
from rollout_dev.sdk.log import get_default_logger
from rollout_dev.sdk.rollout.cache_server import CacheServer
from rollout_dev.sdk.rollout.cache_store import CacheStore, build_cache_entries
from rollout_dev.sdk.rollout.errors import (
    CleanupError,
    DiscoveryError,
    WorkerError,
)
from rollout_dev.sdk.rollout.executor import SubprocessManager
from rollout_dev.sdk.rollout.sse_client import SSEClient
from rollout_dev.sdk.rollout.types import (
    DiscoveredMetadata,
    RolloutRunEventData,
    SessionStatus,
    WorkerConfig,
)
from rollout_dev.sdk.utils import (
    DEFAULT_BASE_URL,
    DEFAULT_GRPC_PORT,
    DEFAULT_HTTP_PORT,
    from_env,
    get_frontend_url,
    split_base_url_port,
    try_parse_json,
)

logger = get_default_logger(__name__)
info_logger = get_default_logger(__name__ + ".user", verbose=False)

SPANS_QUERY = """
    SELECT name, input, output, attributes, path
    FROM spans
    WHERE trace_id = {traceId:UUID}
      AND path IN {paths:String[]}
    ORDER BY start_time ASC
"""


class DevCommandHandler:
    """
    Handler for the dev command, orchestrating all rollout components.

    At most one run is in flight: a `run` event that arrives while another
    run is active is dropped, not queued.
    """

    def __init__(
        self,
        file_path: str | None,
        function_name: str | None,
        project_api_key: str | None,
        base_url: str,
        module_path: str | None = None,
        http_port: int | None = None,
        grpc_port: int | None = None,
        frontend_port: int | None = None,
        command: str | None = None,
        command_args: list[str] | str | None = None,
        discover_command: str | None = None,
        external_packages: list[str] | None = None,
        dynamic_imports_to_skip: list[str] | None = None,
        client: AsyncRolloutClient | None = None,
        executor: SubprocessManager | None = None,
        cache_store: CacheStore | None = None,
    ):
        self.file_path = os.path.abspath(file_path) if file_path else None
        self.module_path = module_path
        self.function_name = function_name
        self.project_api_key = project_api_key
        self.base_url = base_url
        self.http_port = http_port or DEFAULT_HTTP_PORT
        self.grpc_port = grpc_port or DEFAULT_GRPC_PORT
        self.frontend_port = frontend_port
        self.external_packages = external_packages
        self.dynamic_imports_to_skip = dynamic_imports_to_skip

        self.target = DiscoveryTarget(file_path=self.file_path, module_path=module_path)
        self.discovery_options = DiscoveryOptions(
            function_name=function_name,
            discover_command=discover_command,
            external_packages=external_packages,
            dynamic_imports_to_skip=dynamic_imports_to_skip,
        )
        self.worker_command: WorkerCommand = get_worker_command(
            file_path=self.file_path,
            module_path=module_path,
            command=command,
            command_args=command_args,
        )

        # Components
        self.client = client
        self.executor = executor or SubprocessManager()
        self.cache_store = cache_store or CacheStore()
        self.cache_server: CacheServer | None = None
        self.sse_client: SSEClient | None = None
        self.scheduler: ReloadScheduler | None = None
        self.file_observer: Observer | None = None
        self.session_id: str | None = None

        # State
        self.metadata: DiscoveredMetadata | None = None
        self.current_task: asyncio.Task | None = None
        self._run_in_progress = False
        self._session_url_logged = False
        self._shutdown_event: asyncio.Event | None = None

    @property
    def cache_server_port(self) -> int:
        if self.cache_server is None or self.cache_server.actual_port is None:
            raise RuntimeError("Cache server is not running")
        return self.cache_server.actual_port

    async def discover(self) -> DiscoveredMetadata:
        """
        Discover the entrypoint's name and parameters.

        Raises:
            DiscoveryError: If the target cannot be described
        """
        metadata = await discover_function_metadata(self.target, self.discovery_options)
        logger.debug(
            f"Discovered {metadata['function_name']} with "
            f"{len(metadata['params'])} parameters: "
            f"{[p['name'] for p in metadata['params']]}"
        )
        self.metadata = metadata
        return metadata

    async def start(self) -> None:
        """Bring up every component. Errors here are fatal to the session."""
        metadata = await self.discover()
        info_logger.info(
            f"Serving function: {metadata['function_name']} in {self.target.display_name}"
        )

        self.cache_server = CacheServer(store=self.cache_store, port=0)
        await self.cache_server.start()
        logger.debug(f"Cache server: {self.cache_server.get_url()}")

        self.session_id = str(uuid.uuid4())
        if self.client is None:
            self.client = AsyncRolloutClient(
                base_url=self.base_url,
                project_api_key=self.project_api_key,
                port=self.http_port,
            )

        self.sse_client = SSEClient(
            rollout_session_id=self.session_id,
            function_name=metadata["function_name"],
            params=metadata["params"],
            client=self.client,
        )
        self._register_sse_handlers()

        loop = asyncio.get_running_loop()
        self.scheduler = ReloadScheduler(loop, on_kill=self.executor.kill)
        watch_dir = (
            os.path.dirname(self.file_path) if self.file_path else os.getcwd()
        )
        self.file_observer = start_watcher(self.scheduler, watch_dir)

    async def run(self) -> int:
        """
        Run the session until SIGINT/SIGTERM.

        Returns:
            int: Process exit code
        """
        loop = asyncio.get_running_loop()
        self._shutdown_event = asyncio.Event()

        try:
            await self.start()
        except (DiscoveryError, ValueError, OSError) as e:
            logger.error(str(e))
            await self.shutdown()
            return 1

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._shutdown_event.set)

        listen_task = loop.create_task(self.sse_client.connect_and_listen())
        shutdown_wait = loop.create_task(self._shutdown_event.wait())
        logger.debug("Waiting for execution requests...")
        try:
            await asyncio.wait(
                {listen_task, shutdown_wait}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
            shutdown_wait.cancel()

        info_logger.info("\nShutting down...")
        exit_code = await self.shutdown()
        await asyncio.wait({listen_task})
        if not listen_task.cancelled() and listen_task.exception() is not None:
            logger.error(f"Control channel failed: {listen_task.exception()}")
            exit_code = 1
        return exit_code

    def _register_sse_handlers(self) -> None:
        """Register event handlers for SSE client."""
        self.sse_client.on("handshake", self._handle_handshake)
        self.sse_client.on("run", self._handle_run)
        self.sse_client.on("stop", self._handle_stop)
        self.sse_client.on("heartbeat", lambda _: None)
        self.sse_client.on("heartbeat_timeout", self._handle_heartbeat_timeout)
        self.sse_client.on("reconnecting", self._handle_reconnecting)
        self.sse_client.on("error", self._handle_error)

    def _handle_handshake(self, data: dict[str, Any]) -> None:
        logger.debug("Handshake received")
        if self._session_url_logged:
            return
        self._session_url_logged = True
        project_id = data.get("project_id", "")
        frontend_url = get_frontend_url(self.base_url, self.frontend_port)
        info_logger.info(
            f"View session: {frontend_url}/project/{project_id}"
            f"/rollout-sessions/{self.session_id}"
        )

    def _handle_heartbeat_timeout(self, data: dict[str, Any]) -> None:
        logger.warning("Control channel heartbeat timed out")

    def _handle_reconnecting(self, data: dict[str, Any]) -> None:
        logger.debug(f"Reconnecting in {data.get('delay', 0)}s")

    def _handle_error(self, data: dict[str, Any]) -> None:
        logger.debug(f"Control channel error event: {data.get('message')}")

    def _handle_run(self, data: RolloutRunEventData) -> asyncio.Task | None:
        """Handle run event - start the function in the background."""
        # check and set with no await in between
        if self._run_in_progress or self.executor.is_running():
            logger.warning("A run is already in progress, ignoring run request")
            return None
        self._run_in_progress = True
        self.current_task = asyncio.get_running_loop().create_task(
            self._execute_run(data)
        )
        return self.current_task

    def _handle_stop(self, data: dict[str, Any]) -> None:
        """Handle stop event - terminate the current worker."""
        if self.executor.kill():
            info_logger.info("Stopping execution...")
        else:
            logger.debug("Stop requested but no worker is running")

    async def _execute_run(self, data: RolloutRunEventData) -> None:
        """Execute the rollout function (runs as background task)."""
        start_time = time.monotonic()
        try:
            if self.scheduler is not None and self.scheduler.consume_reload():
                await self._reload_metadata()

            args = data.get("args", {})
            info_logger.info(f"Executing with args: {args}")
            await self._prepare_cache(data)
            config = self._build_worker_config(args)

            await self._report_status("RUNNING")
            if self.scheduler is not None and self.scheduler.pending:
                # the parameter order may have changed under this run
                info_logger.warning("Files changed while preparing the run, run aborted")
                return
            start_time = time.monotonic()
            await self.executor.execute(
                self.worker_command.command, self.worker_command.args, config
            )
            info_logger.info(f"  Completed in {time.monotonic() - start_time:.1f}s")
        except WorkerError as e:
            info_logger.error(f"  Failed in {time.monotonic() - start_time:.1f}s")
            info_logger.error(f"  Error: {e}")
            if e.stack:
                logger.debug(e.stack)
        except DiscoveryError as e:
            logger.error(f"Reload failed, run aborted: {e}")
        except Exception as e:
            logger.error(f"Error executing run: {e}", exc_info=True)
        finally:
            await self._report_status("FINISHED")
            self._run_in_progress = False
            self.current_task = None

    async def _reload_metadata(self) -> None:
        if not supports_discovery(self.target):
            return
        info_logger.info("Reloading entrypoint...")
        metadata = await self.discover()
        if self.sse_client is not None:
            self.sse_client.update_metadata(
                metadata["params"], metadata["function_name"]
            )

    async def _prepare_cache(self, data: RolloutRunEventData) -> None:
        """
        Reset the cache for a new run and seed it from a previous trace.

        Args:
            data: The run event; `trace_id` and `path_to_count` select which
                recorded spans to replay
        """
        trace_id = data.get("trace_id") or ""
        path_to_count = data.get("path_to_count") or {}
        overrides = data.get("overrides") or {}

        self.cache_store.clear()
        self.cache_store.set_metadata({}, overrides)

        if not trace_id.strip() or not path_to_count:
            info_logger.info("No spans to cache, starting fresh")
            return

        try:
            logger.debug(f"Querying spans from trace {trace_id}...")
            spans = await self.client.sql.query(
                SPANS_QUERY,
                {"traceId": trace_id, "paths": list(path_to_count.keys())},
            )
        except Exception as e:
            logger.warning(f"Failed to fetch spans for caching: {e}")
            return
        logger.debug(f"Received {len(spans)} spans from backend")

        entries = build_cache_entries(spans, path_to_count)
        self.cache_store.set_all(entries)
        self.cache_store.set_metadata(path_to_count, overrides)
        if entries:
            info_logger.info(f"Cached {len(entries)} spans")

    def _build_worker_config(self, args: dict[str, Any] | list[Any]) -> WorkerConfig:
        if isinstance(args, dict):
            parsed_args: dict[str, Any] | list[Any] = {
                key: try_parse_json(value) for key, value in args.items()
            }
        elif isinstance(args, list):
            parsed_args = [try_parse_json(value) for value in args]
        else:
            parsed_args = {}

        function_name = self.function_name
        if function_name is None and self.metadata is not None:
            function_name = self.metadata["function_name"]

        return WorkerConfig(
            file_path=self.file_path,
            module_path=self.module_path,
            function_name=function_name,
            args=parsed_args,
            env={
                SESSION_ID_ENV: self.session_id or "",
                STATE_SERVER_ENV: self.cache_server.get_url(),
            },
            cache_server_port=self.cache_server_port,
            base_url=self.base_url,
            project_api_key=self.project_api_key,
            http_port=self.http_port,
            grpc_port=self.grpc_port,
            external_packages=self.external_packages,
            dynamic_imports_to_skip=self.dynamic_imports_to_skip,
        )

    async def _report_status(self, status: SessionStatus) -> None:
        try:
            await self.client.rollout.update_status(str(self.session_id), status)
        except Exception as e:
            logger.warning(f"Failed to update session status to {status}: {e}")

    async def _delete_session(self) -> None:
        try:
            await self.client.rollout.delete_session(str(self.session_id))
        except Exception as e:
            raise CleanupError(f"Failed to delete session {self.session_id}: {e}") from e

    async def shutdown(self) -> int:
        """
        Release every component in order.

        Returns:
            int: 0 if the session was cleaned up, 1 if deleting it failed
        """
        exit_code = 0

        if self.scheduler is not None:
            self.scheduler.cancel()
        stop_watcher(self.file_observer)
        self.file_observer = None

        self.executor.kill()
        task = self.current_task
        if task is not None and not task.done():
            await asyncio.wait({task}, timeout=self.executor.kill_timeout + 1)

        if self.client is not None and self.session_id is not None:
            try:
                await self._delete_session()
            except CleanupError as e:
                logger.error(str(e))
                exit_code = 1

        if self.sse_client is not None:
            self.sse_client.shutdown()

        if self.cache_server is not None:
            await self.cache_server.stop()

        if self.client is not None:
            await self.client.close()

        logger.debug("Cleanup complete")
        return exit_code


def resolve_ports(
    base_url: str, port: int | None, grpc_port: int | None
) -> tuple[int, int]:
    _, port_in_url = split_base_url_port(base_url)
    return port or port_in_url or DEFAULT_HTTP_PORT, grpc_port or DEFAULT_GRPC_PORT


async def run_dev(args: Namespace) -> int:
    """
    Main entry point for the dev command.

    Args:
        args: Command line arguments from argparse

    Returns:
        int: Process exit code
    """
    file_path = getattr(args, "file", None)
    module_path = getattr(args, "python_module", None)
    project_api_key = args.project_api_key or from_env("LMNR_PROJECT_API_KEY")
    base_url = args.base_url or from_env("LMNR_BASE_URL") or DEFAULT_BASE_URL
    http_port, grpc_port = resolve_ports(base_url, args.port, args.grpc_port)

    if not project_api_key:
        logger.error(
            "Project API key is required. "
            "Set LMNR_PROJECT_API_KEY or use --project-api-key"
        )
        return 1

    if bool(file_path) == bool(module_path):
        logger.error("Provide exactly one of a file path or --python-module")
        return 1

    if file_path and not os.path.exists(file_path):
        logger.error(f"File not found: {file_path}")
        return 1

    try:
        handler = DevCommandHandler(
            file_path=file_path,
            module_path=module_path,
            function_name=getattr(args, "function", None),
            project_api_key=project_api_key,
            base_url=base_url,
            http_port=http_port,
            grpc_port=grpc_port,
            frontend_port=getattr(args, "frontend_port", None),
            command=getattr(args, "command", None),
            command_args=getattr(args, "command_args", None),
            discover_command=getattr(args, "discover_command", None),
            external_packages=getattr(args, "external_packages", None),
            dynamic_imports_to_skip=getattr(args, "dynamic_imports_to_skip", None),
        )
    except ValueError as e:
        logger.error(str(e))
        return 1

    return await handler.run()
