"""
ClickUp API client for importing tasks.

Documentation: https://clickup.com/api/

Covers the OAuth code exchange and the workspace -> space -> list -> task
pickers used to import ClickUp tasks as billable tasks.
"""

import logging
from decimal import Decimal
from typing import Any, Optional

import httpx

from state_machine.models import TaskCreate

logger = logging.getLogger(__name__)


class ClickUpClientError(Exception):
    """Error communicating with ClickUp API."""

    def __init__(self, message: str, status_code: Optional[int] = None, response: Optional[dict] = None):
        self.status_code = status_code
        self.response = response
        super().__init__(message)


def to_task_create(
    clickup_task: dict[str, Any],
    default_rate: Decimal,
    list_name: Optional[str] = None,
) -> TaskCreate:
    """Turn a ClickUp task into a task payload billed at the default rate."""
    return TaskCreate(
        name=clickup_task["name"],
        rate=default_rate,
        description=f"Imported from ClickUp List: {list_name or 'Unknown'}",
    )


class ClickUpClient:
    """
    Client for ClickUp API v2.

    Features:
    - OAuth authorization code exchange
    - List workspaces (teams), spaces, lists and tasks
    - Async HTTP calls
    """

    BASE_URL = "https://api.clickup.com/api/v2"

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        access_token: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize ClickUp client.

        Args:
            client_id: OAuth app client id.
            client_secret: OAuth app client secret.
            access_token: Token obtained from exchange_code.
            base_url: Override of the API base URL.
            timeout: HTTP request timeout in seconds.
            transport: Custom httpx transport (tests use MockTransport).
        """
        self.client_id = client_id
        self.client_secret = client_secret
        self.access_token = access_token
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.timeout = timeout
        self._transport = transport

        self._client: Optional[httpx.AsyncClient] = None

    @property
    def is_configured(self) -> bool:
        """Check if the OAuth app credentials are present."""
        return bool(self.client_id and self.client_secret)

    @property
    def is_connected(self) -> bool:
        return bool(self.access_token)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def exchange_code(self, code: str) -> str:
        """
        Exchange an OAuth authorization code for an access token.

        The token is kept on the client for subsequent calls.

        Raises:
            ClickUpClientError: Not configured, rejected, or no token returned.
        """
        if not self.is_configured:
            raise ClickUpClientError("ClickUp client id/secret not configured")

        data = await self._make_request(
            "POST",
            "/oauth/token",
            params={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "code": code,
            },
            authorized=False,
        )

        token = data.get("access_token")
        if not token:
            raise ClickUpClientError(
                f"Connection failed: {data.get('err', 'No access token returned')}",
                response=data,
            )

        self.access_token = token
        logger.info("ClickUp connection established")
        return token

    async def list_workspaces(self) -> list[dict[str, Any]]:
        """Workspaces (ClickUp "teams") visible to the token."""
        data = await self._make_request("GET", "/team")
        return data.get("teams", [])

    async def list_spaces(self, team_id: str) -> list[dict[str, Any]]:
        data = await self._make_request("GET", f"/team/{team_id}/space", params={"archived": "false"})
        return data.get("spaces", [])

    async def list_lists(self, space_id: str) -> list[dict[str, Any]]:
        data = await self._make_request("GET", f"/space/{space_id}/list", params={"archived": "false"})
        return data.get("lists", [])

    async def list_tasks(self, list_id: str) -> list[dict[str, Any]]:
        data = await self._make_request("GET", f"/list/{list_id}/task", params={"archived": "false"})
        return data.get("tasks", [])

    async def _make_request(
        self,
        method: str,
        url: str,
        authorized: bool = True,
        **kwargs: Any,
    ) -> dict[str, Any]:
        """Make HTTP request to ClickUp API."""
        if authorized:
            if not self.access_token:
                raise ClickUpClientError("Not connected to ClickUp")
            kwargs["headers"] = {"Authorization": self.access_token}

        client = await self._get_client()

        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise ClickUpClientError(f"Request timeout: {e}") from e
        except httpx.RequestError as e:
            raise ClickUpClientError(f"Request error: {e}") from e

        if response.status_code >= 400:
            try:
                error_data = response.json()
            except ValueError:
                error_data = {"err": response.text}
            raise ClickUpClientError(
                f"ClickUp API error: {error_data.get('err', 'Unknown error')}",
                status_code=response.status_code,
                response=error_data,
            )

        return response.json()
