"""Tests for the authenticated request guard and its single-flight refresh."""

import asyncio
import json

import httpx
import pytest
from unittest.mock import MagicMock

from babysync.auth import Credentials, RequestGuard, SessionExpiredError, SessionState


class FakeAuthServer:
    """httpx mock handler with a rotating access token."""

    def __init__(self, refresh_status=200, refresh_delay=0.05, valid_token="new"):
        self.refresh_status = refresh_status
        self.refresh_delay = refresh_delay
        self.valid_token = valid_token
        self.refresh_calls = 0
        self.refresh_bodies = []
        self.authorized_calls = 0
        self.refresh_error: Exception | None = None

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/auth/refresh":
            self.refresh_calls += 1
            self.refresh_bodies.append(json.loads(request.content or b"{}"))
            await asyncio.sleep(self.refresh_delay)
            if self.refresh_error is not None:
                raise self.refresh_error
            if self.refresh_status != 200:
                return httpx.Response(self.refresh_status, json={"detail": "rejected"})
            return httpx.Response(
                200,
                json={"access_token": "new", "refresh_token": "r2", "expires_in": 3600},
            )

        await asyncio.sleep(0)
        if request.headers.get("Authorization") != f"Bearer {self.valid_token}":
            return httpx.Response(401, json={"detail": "expired"})

        self.authorized_calls += 1
        return httpx.Response(
            200, json={"device": request.headers.get("X-Device-Id")}
        )


def make_guard(server, credentials=None, **kwargs):
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(server), base_url="http://sync.test"
    )
    return RequestGuard(
        "http://sync.test",
        credentials or Credentials("old", "r1"),
        device_id="phone",
        client=client,
        **kwargs,
    )


class TestRequestGuard:
    """Tests for plain authenticated requests."""

    @pytest.mark.asyncio
    async def test_sends_bearer_and_device_headers(self):
        server = FakeAuthServer(valid_token="old")
        guard = make_guard(server)

        response = await guard.get("/sync/status")

        assert response.status_code == 200
        assert response.json() == {"device": "phone"}
        assert server.refresh_calls == 0

    @pytest.mark.asyncio
    async def test_non_auth_errors_are_returned(self):
        async def handler(request):
            return httpx.Response(503)

        guard = make_guard(handler)
        response = await guard.get("/sync/pull")

        assert response.status_code == 503
        assert guard.state == SessionState.AUTHENTICATED

    @pytest.mark.asyncio
    async def test_signed_out_fails_fast(self):
        server = FakeAuthServer()
        client = httpx.AsyncClient(transport=httpx.MockTransport(server), base_url="http://sync.test")
        guard = RequestGuard("http://sync.test", None, client=client)

        with pytest.raises(SessionExpiredError):
            await guard.get("/sync/status")

    @pytest.mark.asyncio
    async def test_set_credentials_signs_back_in(self):
        server = FakeAuthServer(valid_token="fresh")
        client = httpx.AsyncClient(transport=httpx.MockTransport(server), base_url="http://sync.test")
        guard = RequestGuard("http://sync.test", None, client=client)

        guard.set_credentials(Credentials("fresh"))
        response = await guard.get("/sync/status")

        assert response.status_code == 200
        assert guard.state == SessionState.AUTHENTICATED


class TestRefresh:
    """Tests for the 401 refresh flow."""

    @pytest.mark.asyncio
    async def test_refresh_and_retry(self):
        server = FakeAuthServer()
        changed = MagicMock()
        guard = make_guard(server, on_credentials_changed=changed)

        response = await guard.get("/sync/status")

        assert response.status_code == 200
        assert server.refresh_calls == 1
        assert server.refresh_bodies == [{"refresh_token": "r1"}]
        assert guard.credentials == Credentials("new", "r2")
        assert guard.state == SessionState.AUTHENTICATED
        changed.assert_called_once_with(Credentials("new", "r2"))

    @pytest.mark.asyncio
    async def test_concurrent_401s_share_one_refresh(self):
        """Test that 10 concurrent 401s cause exactly one refresh and 10 retries."""
        server = FakeAuthServer()
        guard = make_guard(server)

        responses = await asyncio.gather(*[guard.get("/sync/status") for _ in range(10)])

        assert all(r.status_code == 200 for r in responses)
        assert server.refresh_calls == 1
        assert guard.refresh_count == 1
        assert server.authorized_calls == 10

    @pytest.mark.asyncio
    async def test_late_401_uses_already_refreshed_token(self):
        """Test that a 401 for an old token after a finished refresh does not refresh again."""
        server = FakeAuthServer()
        guard = make_guard(server)
        stale = guard.credentials

        await guard.get("/sync/status")
        fresh = await guard._refresh(stale)

        assert fresh == Credentials("new", "r2")
        assert server.refresh_calls == 1

    @pytest.mark.asyncio
    async def test_rejected_refresh_signs_out_once(self):
        server = FakeAuthServer(refresh_status=401)
        sign_out = MagicMock()
        guard = make_guard(server, on_sign_out=sign_out)

        results = await asyncio.gather(
            *[guard.get("/sync/status") for _ in range(10)], return_exceptions=True
        )

        assert all(isinstance(r, SessionExpiredError) for r in results)
        assert server.refresh_calls == 1
        sign_out.assert_called_once()
        assert guard.state == SessionState.UNAUTHENTICATED
        assert guard.credentials is None

        with pytest.raises(SessionExpiredError):
            await guard.get("/sync/status")
        assert server.refresh_calls == 1

    @pytest.mark.asyncio
    async def test_async_sign_out_callback(self):
        server = FakeAuthServer(refresh_status=403)
        calls = []

        async def on_sign_out():
            calls.append("signed out")

        guard = make_guard(server, on_sign_out=on_sign_out)

        with pytest.raises(SessionExpiredError):
            await guard.get("/sync/status")
        assert calls == ["signed out"]

    @pytest.mark.asyncio
    async def test_refresh_transport_error_keeps_session(self):
        server = FakeAuthServer()
        server.refresh_error = httpx.ConnectError("unreachable")
        sign_out = MagicMock()
        guard = make_guard(server, on_sign_out=sign_out)

        results = await asyncio.gather(
            *[guard.get("/sync/status") for _ in range(3)], return_exceptions=True
        )

        assert all(isinstance(r, httpx.ConnectError) for r in results)
        assert server.refresh_calls == 1
        assert guard.state == SessionState.AUTHENTICATED
        assert guard.credentials == Credentials("old", "r1")
        sign_out.assert_not_called()

    @pytest.mark.asyncio
    async def test_401_after_refresh_expires_session(self):
        server = FakeAuthServer(valid_token="never")
        sign_out = MagicMock()
        guard = make_guard(server, on_sign_out=sign_out)

        with pytest.raises(SessionExpiredError):
            await guard.get("/sync/status")

        assert server.refresh_calls == 1
        assert guard.state == SessionState.UNAUTHENTICATED
        sign_out.assert_called_once()

    @pytest.mark.asyncio
    async def test_missing_refresh_token_is_rejected(self):
        async def handler(request):
            if request.url.path == "/auth/refresh":
                body = json.loads(request.content or b"{}")
                status = 200 if body.get("refresh_token") else 401
                return httpx.Response(status, json={"access_token": "new"})
            return httpx.Response(401)

        guard = make_guard(handler, credentials=Credentials("old"))

        with pytest.raises(SessionExpiredError):
            await guard.get("/sync/status")
        assert guard.state == SessionState.UNAUTHENTICATED

    @pytest.mark.asyncio
    async def test_malformed_refresh_response(self):
        async def handler(request):
            if request.url.path == "/auth/refresh":
                return httpx.Response(200, json={"unexpected": True})
            return httpx.Response(401)

        guard = make_guard(handler)

        with pytest.raises(SessionExpiredError):
            await guard.get("/sync/status")
