"""
Backend HTTP client used by the dev orchestrator.
"""

import httpx
from typing import TypeVar
from types import TracebackType

from rollout_dev.sdk.client.resources import AsyncRollout, AsyncSql
from rollout_dev.sdk.utils import (
    DEFAULT_BASE_URL,
    DEFAULT_HTTP_PORT,
    from_env,
    split_base_url_port,
)

_T = TypeVar("_T", bound="AsyncRolloutClient")


class AsyncRolloutClient:
    __base_url: str
    __project_api_key: str
    __client: httpx.AsyncClient = None

    def __init__(
        self,
        base_url: str | None = None,
        project_api_key: str | None = None,
        port: int | None = None,
        timeout: int = 3600,
    ):
        """Initializer for the backend HTTP client.

        Args:
            base_url (str | None): base URL of the API. If not provided, the
                LMNR_BASE_URL environment variable is used or we default to
                "https://api.lmnr.ai".
            project_api_key (str | None): project API key. If not provided,
                the LMNR_PROJECT_API_KEY environment variable is used.
            port (int | None, optional): HTTP port of the API. Overrides any
                port in the base URL. Defaults to 443.
            timeout (int, optional): global timeout seconds for the HTTP client.
                Defaults to 3600.
        """
        base_url = base_url or from_env("LMNR_BASE_URL") or DEFAULT_BASE_URL
        base_url, port_in_url = split_base_url_port(base_url)
        if port is None:
            port = port_in_url

        self.__base_url = f"{base_url}:{port or DEFAULT_HTTP_PORT}"
        self.__project_api_key = project_api_key or from_env("LMNR_PROJECT_API_KEY")
        if not self.__project_api_key:
            raise ValueError(
                "Project API key is not set. Please set the LMNR_PROJECT_API_KEY environment "
                "variable or pass project_api_key to the initializer."
            )

        self.__client = httpx.AsyncClient(headers=self._headers(), timeout=timeout)

        self.__rollout = AsyncRollout(
            self.__client, self.__base_url, self.__project_api_key
        )
        self.__sql = AsyncSql(self.__client, self.__base_url, self.__project_api_key)

    @property
    def base_url(self) -> str:
        return self.__base_url

    @property
    def rollout(self) -> AsyncRollout:
        """Get the Rollout resource.

        Returns:
            AsyncRollout: The Rollout resource instance.
        """
        return self.__rollout

    @property
    def sql(self) -> AsyncSql:
        """Get the SQL resource.

        Returns:
            AsyncSql: The SQL resource instance.
        """
        return self.__sql

    @property
    def is_closed(self) -> bool:
        return self.__client.is_closed

    async def close(self) -> None:
        """Close the underlying HTTPX client.

        The client will *not* be usable after this.
        """
        if not self.__client.is_closed:
            await self.__client.aclose()

    async def __aenter__(self: _T) -> _T:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    def _headers(self) -> dict[str, str]:
        assert self.__project_api_key is not None, "Project API key is not set"
        return {
            "Authorization": "Bearer " + self.__project_api_key,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
