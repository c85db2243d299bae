import logging
from typing import Any, Dict, List, Optional

import httpx

from remindsync.errors import RemoteStoreError

logger = logging.getLogger(__name__)

# Statuses worth retrying later; everything else in 4xx is a permanent rejection
RETRYABLE_STATUSES = {408, 425, 429}


class RemoteStoreClient:
    """Class to interact with a row-oriented REST remote store (PostgREST style)."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: Project URL, the REST API lives under ``/rest/v1``
            api_key: Service key sent as ``apikey`` and bearer token
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport, e.g. ``httpx.MockTransport`` in tests
        """
        self.base_url = f"{base_url.rstrip('/')}/rest/v1"
        self.timeout = timeout
        self.transport = transport
        self.headers = {
            "Content-Type": "application/json",
            "Prefer": "return=representation",
        }
        if api_key:
            self.headers["apikey"] = api_key
            self.headers["Authorization"] = f"Bearer {api_key}"

    async def _request(
        self,
        method: str,
        table: str,
        params: Optional[Dict[str, str]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        url = f"{self.base_url}/{table}"
        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
                response = await client.request(method, url, headers=self.headers, params=params, json=json)
        except httpx.HTTPError as e:
            logger.warning(f"Remote store {method} {table} failed: {str(e)}")
            raise RemoteStoreError(f"Remote store unreachable: {e}", retryable=True) from e

        if response.status_code >= 400:
            error_message = response.text
            try:
                error_json = response.json()
                if isinstance(error_json, dict) and error_json.get("message"):
                    error_message = error_json["message"]
            except ValueError:
                pass
            retryable = response.status_code >= 500 or response.status_code in RETRYABLE_STATUSES
            logger.error(f"Error from remote store: {response.status_code} - {error_message}")
            raise RemoteStoreError(
                f"Remote store returned {response.status_code}: {error_message}",
                status_code=response.status_code,
                retryable=retryable,
            )

        if not response.content:
            return []
        data = response.json()
        if isinstance(data, dict):
            return [data]
        return data

    async def fetch(self, table: str, remote_id: str) -> Optional[Dict[str, Any]]:
        """
        Fetch one row by its remote id.

        Returns:
            The row, or None if it does not exist
        """
        rows = await self._request("GET", table, params={"id": f"eq.{remote_id}", "select": "*"})
        return rows[0] if rows else None

    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a row and return it as stored, including its remote id."""
        rows = await self._request("POST", table, json=row)
        if not rows or not rows[0].get("id"):
            raise RemoteStoreError(f"Insert into {table} returned no row id", retryable=True)
        logger.info(f"Inserted remote row {rows[0]['id']} into {table}")
        return rows[0]

    async def update(self, table: str, remote_id: str, row: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Update a row by remote id.

        Returns:
            The updated row, or None if no row had that id
        """
        values = {key: value for key, value in row.items() if key != "id"}
        rows = await self._request("PATCH", table, params={"id": f"eq.{remote_id}"}, json=values)
        return rows[0] if rows else None

    async def delete(self, table: str, remote_id: str) -> bool:
        """Delete a row by remote id. Returns False if it did not exist."""
        rows = await self._request("DELETE", table, params={"id": f"eq.{remote_id}"})
        return bool(rows)

    async def is_reachable(self, table: str = "reminders") -> bool:
        try:
            await self._request("GET", table, params={"select": "id", "limit": "1"})
            return True
        except RemoteStoreError as e:
            logger.info(f"Remote store not reachable: {str(e)}")
            return False
