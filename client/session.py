"""
Client-side session manager.

Attaches the current access credential to every request and, when requests
start failing with 401, refreshes the session once for all of them: the
first failure starts the refresh, every concurrent failure awaits that same
refresh, and each original request is then retried once with the new
credential.
"""

import asyncio
import inspect

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

import httpx
import logfire

from .storage import CredentialStorage, MemoryCredentialStorage, StoredCredentials


class SessionEnded(Exception):
    """The server rejected the refresh credential. The user must log in again."""


class RefreshUnavailable(Exception):
    """The refresh endpoint could not be reached. The session is kept."""


class LoginFailed(Exception):
    """The server rejected the login handle or password."""


SessionEndedCallback = Callable[[str], Union[None, Awaitable[None]]]


@dataclass
class SessionState:
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    identity: Optional[dict[str, Any]] = None
    refresh_in_flight: Optional["asyncio.Task[str]"] = None
    ended_reason: Optional[str] = None

    @property
    def is_refreshing(self) -> bool:
        return self.refresh_in_flight is not None


class SessionManager:
    """Holds one user's session against the API and keeps it alive."""

    # Routes whose 401 means "bad input", never "refresh and retry"
    UNGUARDED_PATHS = ("/users/login", "/users/register", "/users/refresh-token")

    def __init__(
        self,
        base_url: str,
        storage: Optional[CredentialStorage] = None,
        client: Optional[httpx.AsyncClient] = None,
        api_prefix: str = "/api/v1",
    ):
        self.api_prefix = api_prefix
        self.storage = storage or MemoryCredentialStorage()
        self.client = client or httpx.AsyncClient(base_url=base_url, timeout=10.0)
        self.state = SessionState()
        self._session_ended_callbacks: list[SessionEndedCallback] = []

    async def __aenter__(self) -> "SessionManager":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()

    @property
    def is_authenticated(self) -> bool:
        return self.state.access_token is not None

    def on_session_ended(self, callback: SessionEndedCallback) -> None:
        """Register `callback(reason)` to run when the session ends irrecoverably."""
        self._session_ended_callbacks.append(callback)

    def _url(self, path: str) -> str:
        return f"{self.api_prefix}{path}"

    def _is_unguarded(self, url: str) -> bool:
        return any(url.endswith(path) for path in self.UNGUARDED_PATHS)

    async def _send(
        self, method: str, url: str, token: Optional[str], **kwargs
    ) -> httpx.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return await self.client.request(method, url, headers=headers, **kwargs)

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Send a request with the current access credential, refreshing once on 401.

        Raises:
            SessionEnded: The refresh credential was rejected; local state has been cleared.
            RefreshUnavailable: The refresh endpoint could not be reached.

        Returns:
            httpx.Response: The response to the original request, or to its single retry.
        """
        sent_with = self.state.access_token
        response = await self._send(method, url, sent_with, **kwargs)

        if response.status_code != 401 or self._is_unguarded(url):
            return response

        if sent_with is None and self.state.refresh_token is None and not self.client.cookies:
            # Never logged in: nothing to refresh
            return response

        current = self.state.access_token
        if sent_with is not None and current is None and not self.state.is_refreshing:
            # The session ended while this request was in flight
            raise SessionEnded(self.state.ended_reason or "Session ended")

        if current is not None and current != sent_with:
            # Another request already refreshed while this one was in flight
            token = current
        else:
            token = await self.refresh()

        logfire.debug(f"Retrying {method} {url} with refreshed credential")
        return await self._send(method, url, token, **kwargs)

    async def get(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def refresh(self) -> str:
        """Refresh the session, joining the refresh already in flight if there is one.

        Returns:
            str: The new access credential.
        """
        task = self.state.refresh_in_flight
        if task is None:
            task = asyncio.create_task(self._perform_refresh())
            task.add_done_callback(_retrieve_outcome)
            self.state.refresh_in_flight = task

        # Shield so one cancelled waiter does not cancel the refresh for everyone
        return await asyncio.shield(task)

    async def _perform_refresh(self) -> str:
        try:
            body = (
                {"refreshToken": self.state.refresh_token} if self.state.refresh_token else None
            )

            try:
                response = await self.client.post(self._url("/users/refresh-token"), json=body)
            except httpx.TransportError as e:
                logfire.warning(f"Token refresh failed: {str(e)}")
                raise RefreshUnavailable(str(e)) from e

            if response.status_code == 401:
                reason = _detail(response) or "Session ended"
                logfire.info(f"Token refresh rejected: {reason}")
                await self._end_session(reason)
                raise SessionEnded(reason)

            if response.is_error:
                raise RefreshUnavailable(f"Refresh endpoint answered {response.status_code}")

            data = response.json()
            self._store_tokens(data["accessToken"], data.get("refreshToken"))
            logfire.info("Token refresh successful")
            return data["accessToken"]
        finally:
            self.state.refresh_in_flight = None

    def _store_tokens(self, access_token: str, refresh_token: Optional[str]) -> None:
        self.state.access_token = access_token
        self.state.ended_reason = None
        if refresh_token:
            self.state.refresh_token = refresh_token
        self.storage.save(
            StoredCredentials(access_token=access_token, refresh_token=self.state.refresh_token)
        )

    def _clear_local_state(self) -> None:
        self.state.access_token = None
        self.state.refresh_token = None
        self.state.identity = None
        self.storage.clear()
        self.client.cookies.clear()

    async def _end_session(self, reason: str) -> None:
        self._clear_local_state()
        self.state.ended_reason = reason

        for callback in self._session_ended_callbacks:
            result = callback(reason)
            if inspect.isawaitable(result):
                await result

    async def login(self, handle: str, password: str) -> dict[str, Any]:
        """Log in and start a new session.

        Raises:
            LoginFailed: The handle or password was rejected.

        Returns:
            dict[str, Any]: The user summary returned by the server.
        """
        response = await self.client.post(
            self._url("/users/login"), json={"handle": handle, "password": password}
        )

        if response.status_code == 401:
            self._clear_local_state()
            raise LoginFailed(_detail(response) or "Invalid user credentials")
        response.raise_for_status()

        data = response.json()
        self._store_tokens(data["accessToken"], data["refreshToken"])
        self.state.identity = data["user"]
        return data["user"]

    async def logout(self) -> None:
        """End the session on the server. Local state is cleared even if the request fails."""
        try:
            if self.is_authenticated:
                response = await self.post(self._url("/users/logout"))
                response.raise_for_status()
        except SessionEnded:
            pass  # Already logged out server-side
        finally:
            self._clear_local_state()

    async def current_user(self) -> dict[str, Any]:
        response = await self.get(self._url("/users/current-user"))
        response.raise_for_status()
        self.state.identity = response.json()
        return self.state.identity

    async def restore(self) -> Optional[dict[str, Any]]:
        """Rebuild the session from storage at start-up.

        Returns:
            Optional[dict[str, Any]]: The current user, or None if there is no usable session.
        """
        stored = self.storage.load()
        if stored is None:
            return None

        self.state.access_token = stored.access_token
        self.state.refresh_token = stored.refresh_token

        try:
            return await self.current_user()
        except SessionEnded:
            return None
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 401:
                self._clear_local_state()
                return None
            raise


def _retrieve_outcome(task: "asyncio.Task[str]") -> None:
    # Every waiter may have been cancelled; mark the failure as seen
    if not task.cancelled():
        task.exception()


def _detail(response: httpx.Response) -> Optional[str]:
    try:
        detail = response.json().get("detail")
    except ValueError:
        return None
    return detail if isinstance(detail, str) else None
