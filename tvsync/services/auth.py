"""Session state and backend identity resolution."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Protocol

import httpx

from ..config import Settings
from ..stores import SessionStore

logger = logging.getLogger(__name__)

OWNER_PROCEDURE = "get_sync_owner"


class AuthState(str, Enum):
    LOADING = "loading"
    SIGNED_OUT = "signed_out"
    AUTHENTICATED = "authenticated"


AuthListener = Callable[[AuthState], None]


class AuthError(Exception):
    """Raised when no usable backend identity can be established."""


class AuthProvider(Protocol):
    """What the sync engine needs from authentication."""

    @property
    def is_authenticated(self) -> bool: ...

    def subscribe(self, listener: AuthListener) -> Callable[[], None]: ...

    async def get_effective_owner_id(self) -> str: ...


class SupabaseAuth:
    """Supabase session handling for the TV client."""

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        session: SessionStore,
    ) -> None:
        self._settings = settings
        self._client = http_client
        self._session = session
        self._state = AuthState.LOADING
        self._listeners: list[AuthListener] = []
        self._owner_id: str | None = None
        self._refresh_task: asyncio.Task[bool] | None = None

    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def is_authenticated(self) -> bool:
        return self._state is AuthState.AUTHENTICATED

    def subscribe(self, listener: AuthListener) -> Callable[[], None]:
        """Register ``listener``; it is invoked immediately with the current state."""

        self._listeners.append(listener)
        listener(self._state)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _set_state(self, state: AuthState) -> None:
        if state is self._state:
            return
        logger.info("Auth state %s -> %s", self._state.value, state.value)
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:  # pragma: no cover - listener safety net
                logger.exception("Auth state listener failed")

    def _anon_headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "apikey": self._settings.supabase_anon_key or "",
        }

    def _session_headers(self) -> dict[str, str]:
        headers = self._anon_headers()
        headers["Authorization"] = f"Bearer {self._session.access_token or ''}"
        return headers

    async def bootstrap(self) -> None:
        """Resolve the initial state from persisted credentials."""

        if not self._session.access_token:
            self._set_state(AuthState.SIGNED_OUT)
            return
        if not await self.refresh_session():
            self._set_state(AuthState.SIGNED_OUT)
            return
        self._set_state(AuthState.AUTHENTICATED)

    async def sign_in_with_password(self, email: str, password: str) -> None:
        response = await self._client.post(
            "/auth/v1/token",
            params={"grant_type": "password"},
            headers=self._anon_headers(),
            json={"email": email, "password": password},
        )
        if response.status_code >= 400:
            raise AuthError(f"Sign-in failed with status {response.status_code}")
        data = response.json()
        self._store_tokens(data)
        self._owner_id = None
        self._set_state(AuthState.AUTHENTICATED)

    async def sign_out(self) -> None:
        self._session.clear()
        self._owner_id = None
        self._set_state(AuthState.SIGNED_OUT)

    async def refresh_session(self) -> bool:
        """Exchange the refresh token; concurrent callers share one request."""

        if self._refresh_task is None:
            self._refresh_task = asyncio.create_task(self._refresh())
        task = self._refresh_task
        try:
            return await task
        finally:
            if task.done() and self._refresh_task is task:
                self._refresh_task = None

    async def _refresh(self) -> bool:
        refresh_token = self._session.refresh_token
        if not refresh_token:
            return bool(self._session.access_token)
        try:
            response = await self._client.post(
                "/auth/v1/token",
                params={"grant_type": "refresh_token"},
                headers=self._anon_headers(),
                json={"refresh_token": refresh_token},
            )
        except httpx.HTTPError as exc:
            logger.warning("Session refresh failed: %s", exc)
            return False
        if response.status_code >= 400:
            logger.warning("Session refresh rejected with status %s", response.status_code)
            return False
        try:
            data = response.json()
        except ValueError:
            return False
        if not isinstance(data, dict) or not data.get("access_token"):
            return False
        self._store_tokens(data)
        return True

    def _store_tokens(self, data: Any) -> None:
        if not isinstance(data, dict):
            raise AuthError("Unexpected token response")
        access_token = data.get("access_token") or data.get("accessToken")
        if not access_token:
            raise AuthError("Token response did not include an access token")
        self._session.access_token = access_token
        refresh_token = data.get("refresh_token") or data.get("refreshToken")
        if refresh_token:
            self._session.refresh_token = refresh_token

    async def get_effective_owner_id(self) -> str:
        """Return (and cache) the backend owner id used by table-level access.

        On an authorization failure the session is refreshed and the call is
        retried once; if that still fails the session is signed out.
        """

        if self._owner_id:
            return self._owner_id

        if not self._session.access_token:
            if not await self.refresh_session() or not self._session.access_token:
                await self.sign_out()
                raise AuthError("Missing valid session token")

        response = await self._request_owner()
        if response.status_code == 401 and await self.refresh_session():
            response = await self._request_owner()

        if response.status_code >= 400:
            if response.status_code == 401:
                await self.sign_out()
            raise AuthError(
                f"Owner lookup failed with status {response.status_code}: {response.text}"
            )

        owner = response.json()
        if isinstance(owner, list) and owner:
            owner = owner[0]
        if isinstance(owner, dict):
            owner = owner.get(OWNER_PROCEDURE) or owner.get("id")
        if not owner:
            raise AuthError("Owner lookup returned no identifier")
        self._owner_id = str(owner)
        return self._owner_id

    async def _request_owner(self) -> httpx.Response:
        try:
            return await self._client.post(
                f"/rest/v1/rpc/{OWNER_PROCEDURE}",
                headers=self._session_headers(),
            )
        except httpx.HTTPError as exc:
            raise AuthError(f"Owner lookup failed: {exc}") from exc
