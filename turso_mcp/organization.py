"""
Client for the organization-level platform API.

Everything here authenticates with the organization credential. That covers
database management (list/create/delete/describe) and, most importantly,
minting database tokens, which is the only thing the TokenIssuer needs.

Errors are mapped onto the taxonomy in errors.py and never retried here;
retry policy belongs to whoever called.
"""

import logging
from typing import Any

import httpx

from turso_mcp.errors import RemoteServiceError, error_for_status
from turso_mcp.tokens import OrganizationCredential, Permission

logger = logging.getLogger("turso-mcp.organization")


class OrganizationClient:
    """
    Async client for https://api.turso.tech/v1/organizations/{org}/...

    The underlying httpx.AsyncClient is created lazily with connection pooling
    and the configured timeout, or injected (tests pass one backed by
    httpx.MockTransport).
    """

    def __init__(
        self,
        credential: OrganizationCredential,
        base_url: str = "https://api.turso.tech/v1",
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.credential = credential
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if this object created it."""
        if self._owns_client and self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def _url(self, *parts: str) -> str:
        path = "/".join(("organizations", self.credential.organization) + parts)
        return f"{self.base_url}/{path}"

    async def _request(
        self,
        method: str,
        url: str,
        action: str,
        json: dict[str, Any] | None = None,
        database_name: str | None = None,
        permission: Permission | None = None,
    ) -> httpx.Response:
        """
        Send one authenticated request and map failures onto TursoError.

        Args:
            action: Short description used in error messages,
                    e.g. "list databases"
        """
        perm = permission.value if permission else None
        try:
            response = await self._get_client().request(
                method,
                url,
                json=json,
                headers=self.credential.auth_header(),
            )
        except httpx.HTTPError as e:
            raise RemoteServiceError(
                f"Failed to {action}: {type(e).__name__}: {e}",
                database_name=database_name,
                permission=perm,
            ) from e

        if response.is_error:
            raise error_for_status(
                response.status_code,
                f"Failed to {action}: {_error_detail(response)}",
                database_name=database_name,
                permission=perm,
            )
        return response

    @staticmethod
    def _json(response: httpx.Response, action: str) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError as e:
            raise RemoteServiceError(f"Failed to {action}: response is not JSON") from e
        if not isinstance(data, dict):
            raise RemoteServiceError(f"Failed to {action}: unexpected response body")
        return data

    # ==================== Databases ====================

    async def list_databases(self) -> list[dict[str, Any]]:
        action = "list databases"
        response = await self._request("GET", self._url("databases"), action)
        return self._json(response, action).get("databases", [])

    async def get_database(self, name: str) -> dict[str, Any]:
        action = f"get database details for {name}"
        response = await self._request(
            "GET", self._url("databases", name), action, database_name=name
        )
        data = self._json(response, action)
        return data.get("database", data)

    async def create_database(
        self,
        name: str,
        group: str | None = None,
        regions: list[str] | None = None,
    ) -> dict[str, Any]:
        """
        Create a database in the organization.

        Args:
            name: New database name
            group: Placement group; the platform's "default" when omitted
            regions: Optional list of region codes to replicate to
        """
        action = f"create database {name}"
        body: dict[str, Any] = {"name": name, "group": group or "default"}
        if regions:
            body["regions"] = regions
        response = await self._request(
            "POST", self._url("databases"), action, json=body, database_name=name
        )
        data = self._json(response, action)
        logger.info("Database created", extra={"log_data": {"database": name}})
        return data.get("database", data)

    async def delete_database(self, name: str) -> None:
        await self._request(
            "DELETE",
            self._url("databases", name),
            f"delete database {name}",
            database_name=name,
        )
        logger.info("Database deleted", extra={"log_data": {"database": name}})

    # ==================== Tokens ====================

    async def create_database_token(
        self, name: str, permission: Permission, expiration: str
    ) -> str:
        """
        Mint a database token and return the raw JWT string.

        Args:
            name: Database the token is for
            permission: Permission level to request
            expiration: Requested lifetime in the platform's duration syntax
        """
        action = f"generate token for database {name}"
        response = await self._request(
            "POST",
            self._url("databases", name, "auth", "tokens"),
            action,
            json={"expiration": expiration, "permission": permission.value},
            database_name=name,
            permission=permission,
        )
        token = self._json(response, action).get("jwt")
        if not isinstance(token, str) or not token:
            raise RemoteServiceError(
                f"Failed to {action}: response carries no token",
                database_name=name,
                permission=permission.value,
            )
        return token


def _error_detail(response: httpx.Response) -> str:
    """Best description of a failed response: its `error` field or the reason."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return response.reason_phrase or f"HTTP {response.status_code}"
