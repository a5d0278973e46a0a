"""Keycloak Admin API client.

Wraps the parts of the Keycloak Admin REST API the organization sync reads:
- Users and their group memberships
- Groups, subgroups and group members
- Server info (to pick the group hierarchy strategy)
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any

import httpx
from cachetools import TTLCache

from orgsync.keycloak.models.provider import ProviderConfig

logger = logging.getLogger(__name__)

# Keycloak 23 introduced the paginated /groups/{id}/children endpoint and
# stopped returning full subgroup trees from /groups.
SUBGROUP_ENDPOINT_MIN_VERSION = 23


class KeycloakError(Exception):
    """Base exception for Keycloak API errors."""

    def __init__(
        self, message: str, status_code: int | None = None, response: dict | None = None
    ):
        super().__init__(message)
        self.status_code = status_code
        self.response = response


class KeycloakAuthError(KeycloakError):
    """Authentication failed."""

    pass


class KeycloakNotFoundError(KeycloakError):
    """Resource not found."""

    pass


class KeycloakConflictError(KeycloakError):
    """Resource already exists."""

    pass


@dataclass
class TokenInfo:
    """OAuth token information."""

    access_token: str
    expires_at: float
    refresh_token: str | None = None

    def is_valid(self, leeway: int = 30) -> bool:
        """Check if token is still valid."""
        return time.time() < (self.expires_at - leeway)


class KeycloakAdminClient:
    """Async client for the Keycloak Admin REST API, scoped to one realm."""

    def __init__(
        self,
        config: ProviderConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._config = config
        self._transport = transport
        self._token: TokenInfo | None = None
        self._client: httpx.AsyncClient | None = None
        self._server_info: TTLCache[str, int] = TTLCache(maxsize=1, ttl=3600)

    async def __aenter__(self) -> "KeycloakAdminClient":
        """Async context manager entry."""
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()

    async def open(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._config.timeout, transport=self._transport
            )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
        self._token = None

    @property
    def config(self) -> ProviderConfig:
        return self._config

    @property
    def realm(self) -> str:
        return self._config.realm

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("Keycloak admin client is not open")
        return self._client

    # -------------------------------------------------------------------------
    # Authentication
    # -------------------------------------------------------------------------

    async def authenticate(self) -> None:
        """Authenticate and obtain access token.

        Uses client credentials when configured, falls back to the admin user
        password grant against the admin-cli client.
        """
        if self._config.has_client_credentials:
            data = {
                "grant_type": "client_credentials",
                "client_id": self._config.client_id,
                "client_secret": self._config.client_secret,
            }
            principal = f"client {self._config.client_id}"
        elif self._config.has_user_credentials:
            data = {
                "grant_type": "password",
                "client_id": "admin-cli",
                "username": self._config.username,
                "password": self._config.password,
            }
            principal = f"user {self._config.username}"
        else:
            raise KeycloakAuthError(
                "No credentials configured. Set clientId/clientSecret or username/password"
            )

        logger.debug("Authenticating against %s as %s", self._config.login_realm, principal)

        response = await self._http().post(self._config.token_url, data=data)

        if response.status_code != 200:
            raise KeycloakAuthError(
                f"Authentication as {principal} failed with status {response.status_code}",
                status_code=response.status_code,
            )

        payload = response.json()
        self._token = TokenInfo(
            access_token=payload["access_token"],
            expires_at=time.time() + float(payload.get("expires_in", 300)),
            refresh_token=payload.get("refresh_token"),
        )
        logger.info("Authenticated to Keycloak realm %s as %s", self._config.login_realm, principal)

    async def ensure_token_valid(self) -> str:
        """Ensure we have a valid token, re-authenticating when it is about to expire."""
        if not self._token or not self._token.is_valid():
            await self.authenticate()
        return self._token.access_token

    async def _headers(self) -> dict[str, str]:
        """Get request headers with auth token."""
        token = await self.ensure_token_valid()
        return {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }

    # -------------------------------------------------------------------------
    # HTTP helpers
    # -------------------------------------------------------------------------

    async def _request(
        self, url: str, params: dict[str, Any] | None = None
    ) -> httpx.Response:
        """GET with one re-authentication and retry on 401."""
        response = await self._http().get(url, headers=await self._headers(), params=params)
        if response.status_code == 401:
            logger.debug("Token rejected for %s, re-authenticating", url)
            self._token = None
            response = await self._http().get(
                url, headers=await self._headers(), params=params
            )
        return response

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """Make GET request to the realm admin API."""
        response = await self._request(f"{self._config.admin_url}{path}", params=params)
        return self._handle_response(response)

    async def _get_optional(self, path: str) -> dict[str, Any] | None:
        try:
            return await self._get(path)
        except KeycloakNotFoundError:
            return None

    def _page_params(self, first: int, max_results: int) -> dict[str, Any]:
        return {
            "first": first,
            "max": max_results,
            "briefRepresentation": str(self._config.brief_representation).lower(),
        }

    def _handle_response(
        self,
        response: httpx.Response,
        expected_status: list[int] | None = None,
    ) -> Any:
        """Handle API response."""
        expected = expected_status or [200]

        if response.status_code == 404:
            raise KeycloakNotFoundError(
                f"Resource not found: {response.request.url}",
                status_code=404,
            )

        if response.status_code == 409:
            raise KeycloakConflictError(
                f"Resource already exists: {response.text}",
                status_code=409,
            )

        if response.status_code == 401:
            raise KeycloakAuthError(
                "Authentication expired or invalid",
                status_code=401,
            )

        if response.status_code not in expected:
            raise KeycloakError(
                f"Unexpected response {response.status_code}: {response.text}",
                status_code=response.status_code,
            )

        if response.status_code == 204 or not response.content:
            return None

        return response.json()

    # -------------------------------------------------------------------------
    # Server info
    # -------------------------------------------------------------------------

    async def get_server_version(self) -> int:
        """Get the major version of the Keycloak server."""
        cached = self._server_info.get("major")
        if cached is not None:
            return cached

        url = f"{self._config.base_url.rstrip('/')}/admin/serverinfo"
        info = self._handle_response(await self._request(url))
        version = (info or {}).get("systemInfo", {}).get("version", "")
        try:
            major = int(str(version).split(".")[0])
        except ValueError as e:
            raise KeycloakError(f"Unparseable Keycloak server version: {version!r}") from e

        self._server_info["major"] = major
        logger.debug("Keycloak server major version: %d", major)
        return major

    async def supports_subgroup_endpoint(self) -> bool:
        return await self.get_server_version() >= SUBGROUP_ENDPOINT_MIN_VERSION

    # -------------------------------------------------------------------------
    # Users
    # -------------------------------------------------------------------------

    async def count_users(self) -> int:
        """Count users in the realm."""
        return int(await self._get("/users/count"))

    async def list_users(self, first: int, max_results: int) -> list[dict[str, Any]]:
        """List one page of users."""
        return await self._get("/users", params=self._page_params(first, max_results)) or []

    async def get_user(self, user_id: str) -> dict[str, Any] | None:
        """Get a user by ID, None if it does not exist."""
        return await self._get_optional(f"/users/{user_id}")

    async def list_user_groups(
        self, user_id: str, first: int, max_results: int
    ) -> list[dict[str, Any]]:
        """List one page of the groups a user belongs to."""
        return await self._get(
            f"/users/{user_id}/groups", params=self._page_params(first, max_results)
        ) or []

    # -------------------------------------------------------------------------
    # Groups
    # -------------------------------------------------------------------------

    async def count_groups(self, top: bool = True) -> int:
        """Count groups in the realm (top-level only by default)."""
        result = await self._get("/groups/count", params={"top": str(top).lower()})
        if isinstance(result, dict):
            return int(result.get("count", 0))
        return int(result)

    async def list_groups(self, first: int, max_results: int) -> list[dict[str, Any]]:
        """List one page of top-level groups."""
        return await self._get("/groups", params=self._page_params(first, max_results)) or []

    async def get_group(self, group_id: str) -> dict[str, Any] | None:
        """Get a group by ID, None if it does not exist."""
        return await self._get_optional(f"/groups/{group_id}")

    async def list_sub_groups(
        self, parent_id: str, first: int, max_results: int
    ) -> list[dict[str, Any]]:
        """List one page of direct subgroups (Keycloak 23+)."""
        return await self._get(
            f"/groups/{parent_id}/children", params=self._page_params(first, max_results)
        ) or []

    async def list_group_members(
        self, group_id: str, first: int, max_results: int
    ) -> list[dict[str, Any]]:
        """List one page of a group's direct members."""
        return await self._get(
            f"/groups/{group_id}/members", params=self._page_params(first, max_results)
        ) or []
