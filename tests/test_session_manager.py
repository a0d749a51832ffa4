"""Tests for the client-side session manager.

Covers:
- Bearer attachment
- Single-flight refresh across concurrently failing requests
- Retry-once per request
- Session end on rejected refresh
- Login, logout and restore against the real app
"""

import asyncio
import gc
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from client.session import LoginFailed, RefreshUnavailable, SessionEnded, SessionManager
from client.storage import FileCredentialStorage, MemoryCredentialStorage, StoredCredentials
from main import app
from models.helpers import CredentialKind
from security.tokens import get_credential_encoder
from services.user_store import get_user_store


class FakeApi:
    """Minimal stand-in for the API: one valid access token at a time."""

    def __init__(self, refresh_status=200):
        self.generation = 1
        self.refresh_status = refresh_status
        self.refresh_calls = 0
        self.refresh_bodies = []
        self.seen = []

    @property
    def valid_access(self):
        return f"access-{self.generation}"

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path

        if path.endswith("/users/refresh-token"):
            self.refresh_calls += 1
            self.refresh_bodies.append(json.loads(request.content) if request.content else None)
            await asyncio.sleep(0.01)
            if self.refresh_status != 200:
                return httpx.Response(
                    self.refresh_status, json={"detail": "Refresh token has expired or been used."}
                )
            self.generation += 1
            return httpx.Response(
                200,
                json={
                    "accessToken": self.valid_access,
                    "refreshToken": f"refresh-{self.generation}",
                    "tokenType": "Bearer",
                    "expiresIn": 60,
                },
            )

        auth = request.headers.get("Authorization")
        self.seen.append((path, auth))
        if auth != f"Bearer {self.valid_access}":
            return httpx.Response(401, json={"detail": "Credential has expired"})
        return httpx.Response(200, json={"path": path})


def _manager(api, storage=None):
    client = httpx.AsyncClient(transport=httpx.MockTransport(api), base_url="http://api.test")
    manager = SessionManager("http://api.test", storage=storage, client=client)
    manager.state.access_token = "access-expired"
    manager.state.refresh_token = "refresh-1"
    return manager


class TestSingleFlightRefresh:
    async def test_concurrent_failures_share_one_refresh(self):
        api = FakeApi()
        manager = _manager(api)

        responses = await asyncio.gather(
            *(manager.get(f"/api/v1/videos/{i}") for i in range(3))
        )

        assert [r.status_code for r in responses] == [200, 200, 200]
        assert api.refresh_calls == 1
        assert manager.state.access_token == "access-2"
        assert manager.state.refresh_token == "refresh-2"
        assert manager.state.refresh_in_flight is None
        retried = [auth for _, auth in api.seen if auth == "Bearer access-2"]
        assert len(retried) == 3

    async def test_refresh_sends_stored_refresh_token(self):
        api = FakeApi()
        manager = _manager(api)

        await manager.get("/api/v1/videos/1")

        assert api.refresh_bodies == [{"refreshToken": "refresh-1"}]

    async def test_valid_token_needs_no_refresh(self):
        api = FakeApi()
        manager = _manager(api)
        manager.state.access_token = "access-1"

        response = await manager.get("/api/v1/videos/1")

        assert response.status_code == 200
        assert api.refresh_calls == 0

    async def test_request_retried_only_once(self):
        api = FakeApi()

        async def always_reject(request):
            response = await api(request)
            if not request.url.path.endswith("/users/refresh-token"):
                return httpx.Response(401, json={"detail": "Credential has expired"})
            return response

        client = httpx.AsyncClient(transport=httpx.MockTransport(always_reject), base_url="http://api.test")
        manager = SessionManager("http://api.test", client=client)
        manager.state.access_token = "access-expired"
        manager.state.refresh_token = "refresh-1"

        response = await manager.get("/api/v1/videos/1")

        assert response.status_code == 401
        assert api.refresh_calls == 1
        assert len(api.seen) == 2

    async def test_request_sent_with_superseded_token_retries_without_refresh(self):
        api = FakeApi()
        api.generation = 2
        manager = _manager(api)

        async def refreshed_elsewhere(request):
            # Simulate a refresh completing while this request was in flight
            manager.state.access_token = "access-2"
            return await api(request)

        manager.client = httpx.AsyncClient(
            transport=httpx.MockTransport(refreshed_elsewhere), base_url="http://api.test"
        )

        response = await manager.get("/api/v1/videos/1")

        assert response.status_code == 200
        assert api.refresh_calls == 0

    async def test_auth_routes_are_not_refreshed(self):
        api = FakeApi()
        manager = _manager(api)

        response = await manager.post("/api/v1/users/login", json={"handle": "x", "password": "y"})

        assert response.status_code == 401
        assert api.refresh_calls == 0

    async def test_anonymous_client_does_not_refresh(self):
        api = FakeApi()
        client = httpx.AsyncClient(transport=httpx.MockTransport(api), base_url="http://api.test")
        manager = SessionManager("http://api.test", client=client)

        response = await manager.get("/api/v1/videos/1")

        assert response.status_code == 401
        assert api.refresh_calls == 0


class TestRefreshFailure:
    async def test_rejected_refresh_ends_session_for_every_waiter(self):
        api = FakeApi(refresh_status=401)
        storage = MemoryCredentialStorage(StoredCredentials(access_token="access-expired"))
        manager = _manager(api, storage=storage)
        reasons = []
        manager.on_session_ended(reasons.append)

        results = await asyncio.gather(
            *(manager.get(f"/api/v1/videos/{i}") for i in range(3)),
            return_exceptions=True,
        )

        assert all(isinstance(r, SessionEnded) for r in results)
        assert api.refresh_calls == 1
        assert reasons == ["Refresh token has expired or been used."]
        assert manager.state.access_token is None
        assert manager.state.refresh_token is None
        assert manager.state.refresh_in_flight is None
        assert storage.load() is None

    async def test_async_session_ended_callback_is_awaited(self):
        api = FakeApi(refresh_status=401)
        manager = _manager(api)
        ended = asyncio.Event()

        async def route_to_login(reason):
            ended.set()

        manager.on_session_ended(route_to_login)

        with pytest.raises(SessionEnded):
            await manager.get("/api/v1/videos/1")

        assert ended.is_set()

    async def test_request_failing_after_session_ended_does_not_refresh_again(self):
        api = FakeApi(refresh_status=401)

        async def slow_video(request):
            if request.url.path.endswith("/slow"):
                await asyncio.sleep(0.05)
            return await api(request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(slow_video), base_url="http://api.test")
        manager = SessionManager("http://api.test", client=client)
        manager.state.access_token = "access-expired"
        manager.state.refresh_token = "refresh-1"
        reasons = []
        manager.on_session_ended(reasons.append)

        results = await asyncio.gather(
            manager.get("/api/v1/videos/fast"),
            manager.get("/api/v1/videos/slow"),
            return_exceptions=True,
        )

        assert all(isinstance(r, SessionEnded) for r in results)
        assert str(results[1]) == "Refresh token has expired or been used."
        assert api.refresh_calls == 1
        assert len(reasons) == 1

    async def test_login_after_session_ended_starts_clean(self, app_manager, test_user):
        manager = app_manager()
        manager.state.access_token = "access-expired"
        manager.state.refresh_token = "refresh-expired"

        with pytest.raises(SessionEnded):
            await manager.get("/api/v1/users/current-user")

        await manager.login("viewer", "TestPassword123")

        assert manager.state.ended_reason is None
        assert (await manager.get("/api/v1/users/current-user")).status_code == 200
        await manager.aclose()

    async def test_cancelled_waiter_leaves_no_unretrieved_refresh_failure(self):
        api = FakeApi(refresh_status=401)
        manager = _manager(api)
        unhandled = []
        asyncio.get_running_loop().set_exception_handler(
            lambda loop, context: unhandled.append(context)
        )

        waiter = asyncio.create_task(manager.get("/api/v1/videos/1"))
        while manager.state.refresh_in_flight is None:
            await asyncio.sleep(0)
        task = manager.state.refresh_in_flight

        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter
        while not task.done():
            await asyncio.sleep(0.005)

        assert isinstance(task.exception(), SessionEnded)
        del task, waiter
        gc.collect()
        assert unhandled == []
        assert api.refresh_calls == 1

    async def test_server_error_keeps_session(self):
        api = FakeApi(refresh_status=503)
        manager = _manager(api)

        with pytest.raises(RefreshUnavailable):
            await manager.get("/api/v1/videos/1")

        assert manager.state.access_token == "access-expired"
        assert manager.state.refresh_token == "refresh-1"

    async def test_transport_error_keeps_session(self):
        api = FakeApi()

        async def refresh_unreachable(request):
            if request.url.path.endswith("/users/refresh-token"):
                raise httpx.ConnectError("connection refused", request=request)
            return await api(request)

        client = httpx.AsyncClient(
            transport=httpx.MockTransport(refresh_unreachable), base_url="http://api.test"
        )
        manager = SessionManager("http://api.test", client=client)
        manager.state.access_token = "access-expired"
        manager.state.refresh_token = "refresh-1"

        with pytest.raises(RefreshUnavailable):
            await manager.get("/api/v1/videos/1")

        assert manager.is_authenticated
        assert manager.state.refresh_in_flight is None


class TestStorage:
    def test_file_storage_round_trip(self, tmp_path):
        storage = FileCredentialStorage(tmp_path / "session" / "credentials.json")

        assert storage.load() is None
        storage.save(StoredCredentials(access_token="a", refresh_token="r"))
        assert storage.load() == StoredCredentials(access_token="a", refresh_token="r")

        storage.clear()
        storage.clear()
        assert storage.load() is None


@pytest.fixture
def app_manager(store, encoder):
    app.dependency_overrides[get_user_store] = lambda: store
    app.dependency_overrides[get_credential_encoder] = lambda: encoder

    def build(storage=None):
        client = httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url="http://testserver"
        )
        return SessionManager("http://testserver", storage=storage, client=client)

    return build


class TestAgainstApp:
    async def test_login_and_fetch_current_user(self, app_manager, test_user):
        manager = app_manager()

        user = await manager.login("viewer", "TestPassword123")
        current = await manager.current_user()

        assert user["id"] == current["id"] == test_user.id
        await manager.aclose()

    async def test_login_failure(self, app_manager, test_user):
        manager = app_manager()

        with pytest.raises(LoginFailed):
            await manager.login("viewer", "WrongPassword1")

        assert not manager.is_authenticated
        await manager.aclose()

    async def test_expired_access_token_is_refreshed_once_for_concurrent_requests(
        self, app_manager, store, encoder, test_user
    ):
        manager = app_manager()
        await manager.login("viewer", "TestPassword123")
        original_refresh = manager.state.refresh_token

        # Drop the cookies so only the expired bearer credential is presented
        manager.client.cookies.clear()
        issued = datetime.now(timezone.utc) - timedelta(days=2)
        manager.state.access_token = encoder.mint(CredentialKind.ACCESS, test_user.id, now=issued)

        responses = await asyncio.gather(
            *(manager.get("/api/v1/users/current-user") for _ in range(3))
        )

        # A second refresh with the same token would have been rejected as stale
        assert [r.status_code for r in responses] == [200, 200, 200]
        stored = (await store.find_by_id(test_user.id)).refresh_token
        assert stored == manager.state.refresh_token
        assert stored != original_refresh
        await manager.aclose()

    async def test_restore_after_logout_ends_session(self, app_manager, encoder, test_user, tmp_path):
        storage = FileCredentialStorage(tmp_path / "credentials.json")
        manager = app_manager(storage)
        await manager.login("viewer", "TestPassword123")
        pre_logout_refresh = manager.state.refresh_token

        await manager.logout()

        assert storage.load() is None
        assert not manager.is_authenticated
        await manager.aclose()

        # Pre-logout credentials cannot revive the session once the access token expires
        issued = datetime.now(timezone.utc) - timedelta(days=2)
        storage.save(
            StoredCredentials(
                access_token=encoder.mint(CredentialKind.ACCESS, test_user.id, now=issued),
                refresh_token=pre_logout_refresh,
            )
        )
        restored = app_manager(storage)

        assert await restored.restore() is None
        assert storage.load() is None
        await restored.aclose()

    async def test_restore_with_valid_credentials(self, app_manager, test_user, tmp_path):
        storage = FileCredentialStorage(tmp_path / "credentials.json")
        first = app_manager(storage)
        await first.login("viewer", "TestPassword123")
        await first.aclose()

        second = app_manager(storage)
        user = await second.restore()

        assert user is not None
        assert user["id"] == test_user.id
        await second.aclose()
