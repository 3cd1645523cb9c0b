"""Async HTTP client for the logistics API with bearer token refresh."""

import logging
from dataclasses import dataclass
from typing import Any, Callable

import httpx

from fieldsync import __version__
from fieldsync.exceptions import ApiError, NetworkError
from fieldsync.store.models import AuthToken
from fieldsync.sync.single_flight import SingleFlight

logger = logging.getLogger(__name__)

# Requests to these never trigger a token refresh
AUTH_ENDPOINTS = ("/auth/login", "/auth/refresh", "/auth/context", "/auth/reset-password")


@dataclass
class ApiContext:
    """Request state shared by every call of one client session.

    Passed to ApiClient explicitly so tests can build or reset it per case.
    """

    platform_id: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None

    @classmethod
    def from_auth_token(cls, token: AuthToken, platform_id: str | None = None) -> "ApiContext":
        return cls(
            platform_id=platform_id,
            access_token=token.access_token,
            refresh_token=token.refresh_token,
        )

    def set_tokens(self, access_token: str, refresh_token: str) -> None:
        self.access_token = access_token
        self.refresh_token = refresh_token

    def clear_tokens(self) -> None:
        self.access_token = None
        self.refresh_token = None

    def reset(self) -> None:
        """Forget platform and credentials (sign-out, test teardown)."""
        self.platform_id = None
        self.clear_tokens()


class ApiClient:
    """JSON API client built on httpx.AsyncClient.

    Injects the platform and authorization headers from the ApiContext. A 401
    response triggers one token refresh shared by all concurrent callers,
    after which the original request is replayed once.

    Raises NetworkError when the server cannot be reached and ApiError for
    any non-2xx response.
    """

    def __init__(
        self,
        base_url: str,
        context: ApiContext | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        on_tokens_refreshed: Callable[[str, str], None] | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: API root (e.g., http://localhost:6001/api)
            context: Shared request state; a fresh one is created if omitted
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
            on_tokens_refreshed: Called with (access, refresh) after a refresh
        """
        self.base_url = base_url.rstrip("/")
        self.context = context or ApiContext()
        self._on_tokens_refreshed = on_tokens_refreshed
        self._refresh = SingleFlight[str]()

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout),
            headers={
                "User-Agent": f"fieldsync/{__version__}",
                "Content-Type": "application/json",
            },
            transport=transport,
        )

    def _headers(self) -> dict[str, str]:
        headers = {}
        if self.context.platform_id:
            headers["x-platform"] = self.context.platform_id
        if self.context.access_token:
            headers["Authorization"] = f"Bearer {self.context.access_token}"
        return headers

    async def _send(self, method: str, endpoint: str, payload: Any = None) -> httpx.Response:
        try:
            return await self._client.request(
                method, endpoint, json=payload, headers=self._headers()
            )
        except httpx.ConnectError as e:
            raise NetworkError(f"Connection error: {e}") from e
        except httpx.TimeoutException as e:
            raise NetworkError(f"Timeout: {e}") from e
        except httpx.HTTPError as e:
            raise NetworkError(f"HTTP error: {e}") from e

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        if 200 <= response.status_code < 300:
            if not response.content:
                return None
            try:
                return response.json()
            except ValueError:
                return None

        kind = "Client" if 400 <= response.status_code < 500 else "Server"
        raise ApiError(
            f"{kind} error: {response.status_code} - {response.text[:200]}",
            status_code=response.status_code,
        )

    async def request(self, method: str, endpoint: str, payload: Any = None) -> Any:
        """Send a request and return the decoded JSON body (None if empty)."""
        response = await self._send(method, endpoint, payload)

        if response.status_code == 401 and not endpoint.startswith(AUTH_ENDPOINTS):
            await self._refresh.run(self._refresh_tokens)
            response = await self._send(method, endpoint, payload)

        return self._decode(response)

    async def post(self, endpoint: str, payload: Any = None) -> Any:
        return await self.request("POST", endpoint, payload)

    async def _refresh_tokens(self) -> str:
        """Exchange the refresh token for a new token pair."""
        refresh_token = self.context.refresh_token
        if not refresh_token:
            self.context.clear_tokens()
            raise ApiError("Session expired: no refresh token", status_code=401)

        response = await self._send("POST", "/auth/refresh", {"refresh_token": refresh_token})
        if response.status_code != 200:
            self.context.clear_tokens()
            raise ApiError(
                f"Token refresh failed: {response.status_code}", status_code=401
            )

        body = response.json()
        tokens = body.get("data", body)
        access_token = tokens["access_token"]
        new_refresh_token = tokens.get("refresh_token", refresh_token)

        self.context.set_tokens(access_token, new_refresh_token)
        if self._on_tokens_refreshed:
            self._on_tokens_refreshed(access_token, new_refresh_token)

        logger.info("Access token refreshed")
        return access_token

    async def check_health(self, timeout: float = 5.0) -> bool:
        """Check if the API is reachable.

        Returns:
            True if the health endpoint answers 200, False otherwise
        """
        try:
            response = await self._client.get("/health", timeout=httpx.Timeout(timeout))
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    async def close(self) -> None:
        """Close the HTTP client and release resources."""
        await self._client.aclose()

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
