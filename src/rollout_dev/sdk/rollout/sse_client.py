"""
SSE (Server-Sent Events) client for the rollout control channel.

The backend pushes these events over a long-lived POST:
- 'handshake': session registered, carries project_id and session_id
- 'run': execute the rollout function with the provided arguments
- 'stop': cancel the run in flight
- 'heartbeat': keep-alive, expected every few seconds

The client itself emits 'connected', 'error', 'reconnecting' and
'heartbeat_timeout' to the same handlers.
"""

import asyncio
import dataclasses
import inspect
import json
from typing import Any, Callable

import httpx

from rollout_dev.sdk.client.async_client import AsyncRolloutClient
from rollout_dev.sdk.log import get_default_logger
from rollout_dev.sdk.rollout.errors import ConnectivityError
from rollout_dev.sdk.rollout.types import RolloutParam

logger = get_default_logger(__name__)

RECONNECT_DELAY = 1.0
HEARTBEAT_CHECK_INTERVAL = 5.0
HEARTBEAT_TIMEOUT = 15.0


@dataclasses.dataclass
class SSEEvent:
    event: str
    data: str


class SSEParser:
    """Incremental parser for the text/event-stream format, one line at a time."""

    def __init__(self):
        self._event_type: str | None = None
        self._data_lines: list[str] = []

    def feed_line(self, line: str) -> SSEEvent | None:
        line = line.rstrip("\r\n")

        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None

        field, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]

        if field == "event":
            self._event_type = value
        elif field == "data":
            self._data_lines.append(value)
        # "id" and "retry" are not used by the control channel
        return None

    def _dispatch(self) -> SSEEvent | None:
        if not self._data_lines and self._event_type is None:
            return None
        event = SSEEvent(
            event=self._event_type or "message",
            data="\n".join(self._data_lines),
        )
        self._event_type = None
        self._data_lines = []
        return event


class SSEClient:
    """
    Keeps the control channel open and dispatches its events to handlers.

    Connection errors and stream ends are retried after RECONNECT_DELAY;
    a connection that goes HEARTBEAT_TIMEOUT seconds without a heartbeat
    is torn down and reopened.
    """

    def __init__(
        self,
        rollout_session_id: str,
        function_name: str,
        params: list[RolloutParam],
        client: AsyncRolloutClient,
        event_handlers: dict[str, Callable] | None = None,
        reconnect_delay: float = RECONNECT_DELAY,
        heartbeat_check_interval: float = HEARTBEAT_CHECK_INTERVAL,
        heartbeat_timeout: float = HEARTBEAT_TIMEOUT,
    ):
        """
        Args:
            rollout_session_id: UUID of the rollout session
            function_name: Name of the function being rolled out
            params: Parameter metadata for the function
            client: Backend client used to open the stream
            event_handlers: Optional mapping of event types to handlers
        """
        self.session_id = rollout_session_id
        self.function_name = function_name
        self.params = params
        self.client = client
        self.event_handlers = event_handlers or {}
        self.reconnect_delay = reconnect_delay
        self.heartbeat_check_interval = heartbeat_check_interval
        self.heartbeat_timeout = heartbeat_timeout

        self.running = False
        self.connected = False
        self._last_heartbeat: float | None = None
        self._listen_task: asyncio.Task | None = None
        self._heartbeat_task: asyncio.Task | None = None
        self._reconnect_reason: str | None = None

    def on(self, event_type: str, handler: Callable) -> None:
        """
        Register a handler for an event type. Handlers may be sync or
        coroutine functions and receive the event's parsed data.
        """
        self.event_handlers[event_type] = handler

    def update_metadata(
        self, params: list[RolloutParam], name: str | None = None
    ) -> None:
        """Replace the advertised function signature and reconnect to publish it."""
        self.params = params
        if name:
            self.function_name = name
        if self.running:
            self._force_reconnect("metadata_updated")

    async def connect_and_listen(self) -> None:
        """
        Hold the control channel open until `shutdown()` is called.
        """
        self.running = True
        loop = asyncio.get_running_loop()
        self._heartbeat_task = loop.create_task(self._monitor_heartbeat())

        try:
            while self.running:
                task = loop.create_task(self._listen())
                self._listen_task = task
                try:
                    await asyncio.wait({task})
                except asyncio.CancelledError:
                    task.cancel()
                    raise
                finally:
                    self._listen_task = None
                    self.connected = False

                if not self.running:
                    break

                delay = self.reconnect_delay
                if task.cancelled():
                    reason, self._reconnect_reason = self._reconnect_reason, None
                    logger.debug(f"Reconnecting control channel ({reason})")
                    if reason == "metadata_updated":
                        delay = 0
                elif (error := task.exception()) is not None:
                    message = str(error) or type(error).__name__
                    logger.error(f"Control channel error: {message}")
                    await self._emit("error", {"message": message})
                else:
                    logger.debug("Control channel stream ended")

                await self._emit("reconnecting", {"delay": delay})
                if delay:
                    await asyncio.sleep(delay)
        finally:
            self.running = False
            if self._heartbeat_task is not None:
                self._heartbeat_task.cancel()
                self._heartbeat_task = None

    async def _listen(self) -> None:
        logger.debug(f"Connecting to rollout session: {self.session_id}")
        parser = SSEParser()

        try:
            async with self.client.rollout.connect(
                session_id=self.session_id,
                function_name=self.function_name,
                params=self.params,
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    response.raise_for_status()

                self.connected = True
                self._last_heartbeat = asyncio.get_running_loop().time()
                logger.debug("Control channel connected")
                await self._emit("connected", {})

                async for line in response.aiter_lines():
                    event = parser.feed_line(line)
                    if event is not None:
                        await self._handle_event(event)
        except httpx.HTTPError as e:
            raise ConnectivityError(f"{type(e).__name__}: {e}") from e

    async def _handle_event(self, event: SSEEvent) -> None:
        logger.debug(f"Received SSE event: type={event.event}")

        if event.event == "heartbeat":
            self._last_heartbeat = asyncio.get_running_loop().time()

        try:
            data = json.loads(event.data) if event.data else {}
        except json.JSONDecodeError:
            logger.warning(f"Failed to parse event data as JSON: {event.data}")
            data = {"raw": event.data}

        await self._emit(event.event, data)

    async def _emit(self, event_type: str, data: Any) -> None:
        handler = self.event_handlers.get(event_type)
        if handler is None:
            logger.debug(f"No handler registered for event type: {event_type}")
            return
        try:
            result = handler(data)
            # tasks a handler starts keep running in the background
            if inspect.iscoroutine(result):
                await result
        except Exception as e:
            logger.error(
                f"Error in handler for event '{event_type}': {e}", exc_info=True
            )

    async def _monitor_heartbeat(self) -> None:
        loop = asyncio.get_running_loop()
        while self.running:
            await asyncio.sleep(self.heartbeat_check_interval)
            if not self.connected or self._last_heartbeat is None:
                continue
            elapsed = loop.time() - self._last_heartbeat
            if elapsed > self.heartbeat_timeout:
                logger.warning(
                    f"No heartbeat for {elapsed:.1f}s "
                    f"(limit {self.heartbeat_timeout:.0f}s), reconnecting"
                )
                self._last_heartbeat = None
                await self._emit("heartbeat_timeout", {"elapsed": elapsed})
                self._force_reconnect("heartbeat_timeout")

    def _force_reconnect(self, reason: str) -> None:
        if self._listen_task is not None and not self._listen_task.done():
            self._reconnect_reason = reason
            self._listen_task.cancel()

    def shutdown(self) -> None:
        """Stop reconnecting and abort the live stream."""
        logger.debug("Shutting down control channel")
        self.running = False
        if self._listen_task is not None and not self._listen_task.done():
            self._listen_task.cancel()
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
