"""Rollout session management resource."""

from typing import AsyncContextManager

import httpx

from rollout_dev.sdk.client.resources.base import BaseAsyncResource
from rollout_dev.sdk.log import get_default_logger
from rollout_dev.sdk.rollout.types import RolloutParam, SessionStatus

logger = get_default_logger(__name__)


class AsyncRollout(BaseAsyncResource):
    """
    Rollout session lifecycle: the event-stream connection, status
    reporting, and deletion.
    """

    def connect(
        self,
        session_id: str,
        function_name: str,
        params: list[RolloutParam] | None = None,
    ) -> AsyncContextManager[httpx.Response]:
        """
        Open the session's event stream.

        The POST registers (or refreshes) the session with the function's
        signature; the response body is a Server-Sent Events stream.

        Args:
            session_id: UUID of the rollout session
            function_name: Name of the function being rolled out
            params: Parameter metadata for the function

        Returns:
            AsyncContextManager[httpx.Response]: Streaming response; use with
                `async with`

        Raises:
            httpx.HTTPStatusError: If the request fails
        """
        headers = self._headers()
        headers["Accept"] = "text/event-stream"

        return self._client.stream(
            "POST",
            f"{self._base_url}/v1/rollouts/{session_id}",
            headers=headers,
            json={"name": function_name, "params": params or []},
            # the stream is long-lived; only heartbeats bound it
            timeout=httpx.Timeout(30.0, read=None),
        )

    async def update_status(self, session_id: str, status: SessionStatus) -> None:
        """
        Raises:
            httpx.HTTPStatusError: If the request fails
        """
        response = await self._client.patch(
            f"{self._base_url}/v1/rollouts/{session_id}/status",
            headers=self._headers(),
            json={"status": status},
        )
        response.raise_for_status()

    async def delete_session(self, session_id: str) -> None:
        """
        Raises:
            httpx.HTTPStatusError: If the request fails
        """
        response = await self._client.delete(
            f"{self._base_url}/v1/rollouts/{session_id}",
            headers=self._headers(),
        )
        response.raise_for_status()
        logger.debug(f"Deleted rollout session {session_id}")
