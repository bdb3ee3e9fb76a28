"""Authenticated HTTP transport with a single-flight token refresh.

Every request to the sync server goes through :class:`RequestGuard`. When a
request is rejected with 401 the guard refreshes the access token, and all
requests that fail while that refresh is running wait for the same refresh
instead of starting their own.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx

logger = logging.getLogger(__name__)

REFRESH_PATH = "/auth/refresh"


class SessionState(Enum):
    """Authentication state of a device session."""

    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"
    UNAUTHENTICATED = "unauthenticated"


class SessionExpiredError(Exception):
    """The session could not be refreshed and the user must sign in again."""

    def __init__(self, message: str = "session expired"):
        super().__init__(message)


@dataclass
class Credentials:
    """Bearer credentials for the sync server."""

    access_token: str
    refresh_token: str | None = None


class RequestGuard:
    """Wraps an ``httpx.AsyncClient`` and owns the token refresh flow."""

    def __init__(
        self,
        base_url: str,
        credentials: Credentials | None,
        device_id: str = "default",
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        on_sign_out: Callable[[], Awaitable[None] | None] | None = None,
        on_credentials_changed: Callable[[Credentials], None] | None = None,
    ):
        """Initialize the guard.

        Args:
            base_url: Base URL of the sync server (e.g., "http://server:8080").
            credentials: Current credentials, or None if signed out.
            device_id: Sent as ``X-Device-Id`` on every request.
            client: Optional preconfigured HTTP client (tests inject one).
            timeout: Request timeout in seconds when creating a client.
            on_sign_out: Called once when a refresh is definitively rejected.
            on_credentials_changed: Called with new credentials after refresh.
        """
        self.base_url = base_url.rstrip("/")
        self.device_id = device_id
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None
        self._credentials = credentials
        self._state = (
            SessionState.AUTHENTICATED if credentials else SessionState.UNAUTHENTICATED
        )
        self._refresh_future: asyncio.Future[Credentials] | None = None
        self._on_sign_out = on_sign_out
        self._on_credentials_changed = on_credentials_changed
        self.refresh_count = 0

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def credentials(self) -> Credentials | None:
        return self._credentials

    def set_credentials(self, credentials: Credentials) -> None:
        """Install credentials after a fresh sign-in."""
        self._credentials = credentials
        self._state = SessionState.AUTHENTICATED
        logger.info("Credentials installed, session authenticated")

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if the guard created it."""
        if self._client and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _headers(self, credentials: Credentials, extra: dict[str, str] | None) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {credentials.access_token}",
            "X-Device-Id": self.device_id,
        }
        if extra:
            headers.update(extra)
        return headers

    async def request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Send an authenticated request, refreshing the token on 401.

        Args:
            method: HTTP method.
            path: Path relative to the base URL.
            **kwargs: Passed through to ``httpx.AsyncClient.request``.

        Returns:
            The response. Non-401 error statuses are returned, not raised.

        Raises:
            SessionExpiredError: If the session is or becomes unauthenticated.
            httpx.TransportError: If the server cannot be reached.
        """
        if self._state == SessionState.UNAUTHENTICATED or self._credentials is None:
            raise SessionExpiredError()

        client = await self._get_client()
        extra_headers = kwargs.pop("headers", None)

        sent_with = self._credentials
        response = await client.request(
            method, path, headers=self._headers(sent_with, extra_headers), **kwargs
        )
        if response.status_code != 401:
            return response

        logger.debug(f"{method} {path} returned 401, refreshing credentials")
        fresh = await self._refresh(sent_with)

        retry = await client.request(
            method, path, headers=self._headers(fresh, extra_headers), **kwargs
        )
        if retry.status_code == 401:
            logger.warning(f"{method} {path} still unauthorized after refresh")
            await self._expire()
            raise SessionExpiredError()
        return retry

    async def get(self, path: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", path, **kwargs)

    async def _refresh(self, stale: Credentials) -> Credentials:
        """Return fresh credentials, joining an in-flight refresh if any.

        The check-and-create below runs without awaiting, so within one
        event loop only the first caller ever creates the shared future.
        """
        if self._state == SessionState.UNAUTHENTICATED:
            raise SessionExpiredError()

        if self._state == SessionState.REFRESHING and self._refresh_future is not None:
            return await asyncio.shield(self._refresh_future)

        # A refresh finished between sending this request and seeing its 401
        if self._credentials is not None and self._credentials is not stale:
            return self._credentials

        loop = asyncio.get_running_loop()
        future: asyncio.Future[Credentials] = loop.create_future()
        self._refresh_future = future
        self._state = SessionState.REFRESHING

        try:
            fresh = await self._call_refresh(stale)
        except asyncio.CancelledError:
            self._state = SessionState.AUTHENTICATED
            future.cancel()
            raise
        except SessionExpiredError as e:
            future.set_exception(e)
            await self._expire()
        except Exception as e:
            # Network trouble is not an auth verdict: keep the session
            logger.warning(f"Token refresh failed to complete: {e}")
            self._state = SessionState.AUTHENTICATED
            future.set_exception(e)
        else:
            self._credentials = fresh
            self._state = SessionState.AUTHENTICATED
            future.set_result(fresh)
            if self._on_credentials_changed:
                self._on_credentials_changed(fresh)
            logger.info("Access token refreshed")
        finally:
            self._refresh_future = None
            # Joiners retrieve the outcome; mark it seen for the originator too
            if future.done() and not future.cancelled():
                future.exception()

        return await future

    async def _call_refresh(self, stale: Credentials) -> Credentials:
        """Exchange the refresh token for new credentials.

        Raises:
            SessionExpiredError: If the server rejects the refresh.
            httpx.TransportError: If the server cannot be reached.
        """
        client = await self._get_client()
        self.refresh_count += 1

        body = {"refresh_token": stale.refresh_token} if stale.refresh_token else {}
        response = await client.post(
            REFRESH_PATH,
            json=body,
            headers={
                "Authorization": f"Bearer {stale.access_token}",
                "X-Device-Id": self.device_id,
            },
        )

        if response.status_code != 200:
            logger.warning(f"Token refresh rejected: HTTP {response.status_code}")
            raise SessionExpiredError()

        try:
            data = response.json()
            return Credentials(
                access_token=data["access_token"],
                refresh_token=data.get("refresh_token", stale.refresh_token),
            )
        except (ValueError, KeyError) as e:
            logger.error(f"Malformed refresh response: {e}")
            raise SessionExpiredError() from e

    async def _expire(self) -> None:
        """Move to UNAUTHENTICATED and trigger sign-out once."""
        if self._state == SessionState.UNAUTHENTICATED:
            return

        self._state = SessionState.UNAUTHENTICATED
        self._credentials = None
        logger.warning("Session expired, signing out")

        if self._on_sign_out:
            result = self._on_sign_out()
            if asyncio.iscoroutine(result):
                await result
