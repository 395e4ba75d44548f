"""SQL query resource."""

from typing import Any

from rollout_dev.sdk.client.resources.base import BaseAsyncResource


class AsyncSql(BaseAsyncResource):
    """Runs parameterised SQL queries against the backend."""

    async def query(
        self,
        sql: str,
        parameters: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """
        Execute a SQL query.

        Args:
            sql: SQL query string with `{name:Type}` placeholders
            parameters: Values for the placeholders

        Returns:
            list[dict[str, Any]]: Result rows

        Raises:
            httpx.HTTPStatusError: If the request fails
        """
        response = await self._client.post(
            f"{self._base_url}/v1/sql/query",
            headers=self._headers(),
            json={"query": sql, "parameters": parameters or {}},
        )
        response.raise_for_status()
        return response.json().get("data", [])
