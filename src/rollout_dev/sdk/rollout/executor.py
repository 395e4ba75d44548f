"""
Subprocess manager for running rollout functions in isolation.

Each run spawns a fresh worker process, which allows:
- Cancellation at any point (SIGTERM, then SIGKILL)
- A clean module state after source edits
- Workers written in other languages, as long as they speak the line protocol
"""

import asyncio
import sys
from typing import Any, Sequence

from rollout_dev.sdk.log import get_default_logger
from rollout_dev.sdk.rollout.errors import (
    ProtocolError,
    WorkerBusyError,
    WorkerError,
)
from rollout_dev.sdk.rollout.protocol import log_level_for, parse_frame
from rollout_dev.sdk.rollout.types import WorkerConfig

logger = get_default_logger(__name__)
worker_logger = get_default_logger("rollout_dev.worker", verbose=False)

KILL_TIMEOUT = 5.0
# result frames carry the whole return value on one line
STREAM_LIMIT = 64 * 1024 * 1024


class SubprocessManager:
    """
    Runs one worker process at a time.

    `execute` is the only place a run completes; `kill` just signals the
    process and lets `execute` observe the exit.
    """

    def __init__(self, kill_timeout: float = KILL_TIMEOUT):
        self.kill_timeout = kill_timeout
        self._process: asyncio.subprocess.Process | None = None
        self._force_kill_handle: asyncio.TimerHandle | None = None
        self._terminating = False

    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def execute(
        self,
        command: str,
        args: Sequence[str],
        config: WorkerConfig,
    ) -> Any:
        """
        Run a worker to completion.

        Args:
            command: Executable to spawn
            args: Arguments for the executable
            config: Sent as a single JSON line on the worker's stdin

        Returns:
            Any: The `data` of the worker's result frame

        Raises:
            WorkerBusyError: If a worker is already running
            WorkerError: If the worker reported an error, exited non-zero,
                was killed, or could not be spawned
            ProtocolError: If the worker exited cleanly without a result
        """
        if self._process is not None:
            raise WorkerBusyError("A worker process is already running")

        try:
            process = await asyncio.create_subprocess_exec(
                command,
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            raise WorkerError(f"Failed to start worker '{command}': {e}") from e

        self._process = process
        self._terminating = False
        result: dict[str, Any] = {}
        error: dict[str, Any] = {}

        async def write_config():
            try:
                process.stdin.write((config.to_json() + "\n").encode("utf-8"))
                await process.stdin.drain()
                process.stdin.close()
            except (BrokenPipeError, ConnectionResetError):
                # worker died before reading; the exit status tells the story
                logger.debug("Worker closed stdin before receiving config")

        async def stream_stdout():
            async for raw in process.stdout:
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                try:
                    frame = parse_frame(line)
                except ValueError as e:
                    logger.warning(f"Malformed worker frame: {e}")
                    print(line, flush=True)
                    continue

                if frame is None:
                    print(line, flush=True)
                elif frame["type"] == "log":
                    worker_logger.log(
                        log_level_for(frame.get("level", "info")),
                        frame.get("message", ""),
                    )
                elif frame["type"] == "result":
                    result["data"] = frame.get("data")
                elif frame["type"] == "error":
                    error["message"] = frame.get("error") or "Unknown worker error"
                    error["stack"] = frame.get("stack")

        async def stream_stderr():
            async for raw in process.stderr:
                print(
                    raw.decode("utf-8", errors="replace").rstrip("\r\n"),
                    file=sys.stderr,
                    flush=True,
                )

        try:
            await asyncio.gather(write_config(), stream_stdout(), stream_stderr())
            returncode = await process.wait()
        except BaseException:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise
        finally:
            if self._force_kill_handle is not None:
                self._force_kill_handle.cancel()
                self._force_kill_handle = None
            self._process = None
            self._terminating = False

        if error:
            raise WorkerError(error["message"], error.get("stack"), returncode)
        if returncode < 0:
            raise WorkerError(
                f"Worker terminated by signal {-returncode}", exit_code=returncode
            )
        if returncode != 0:
            raise WorkerError("Worker exited with an error", exit_code=returncode)
        if "data" not in result:
            raise ProtocolError(
                "Worker exited without sending a result", exit_code=returncode
            )
        return result["data"]

    def kill(self) -> bool:
        """
        Ask the running worker to stop: SIGTERM now, SIGKILL after
        `kill_timeout` seconds if it is still alive. Does not wait.

        Returns:
            bool: True if a process was signalled by this call
        """
        process = self._process
        if process is None or process.returncode is not None or self._terminating:
            return False

        self._terminating = True
        try:
            process.terminate()
        except ProcessLookupError:
            return False

        logger.debug(f"Sent SIGTERM to worker {process.pid}")
        loop = asyncio.get_running_loop()
        self._force_kill_handle = loop.call_later(
            self.kill_timeout, self._force_kill, process
        )
        return True

    def _force_kill(self, process: asyncio.subprocess.Process) -> None:
        self._force_kill_handle = None
        if process.returncode is not None:
            return
        logger.debug(f"Worker {process.pid} ignored SIGTERM, sending SIGKILL")
        try:
            process.kill()
        except ProcessLookupError:
            pass
