"""Pytest configuration and test helpers."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Callable, Union

import httpx
import pytest


# Ensure the engine package is importable when running tests without an
# editable install. This mirrors the expected runtime layout where ``tvsync``
# sits at the project root.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tvsync.config import Settings  # noqa: E402
from tvsync.services.auth import AuthState  # noqa: E402
from tvsync.services.supabase import SupabaseClient  # noqa: E402
from tvsync.stores import SessionStore  # noqa: E402

BASE_URL = "https://project.supabase.test"

Responder = Union[httpx.Response, Callable[[httpx.Request], httpx.Response]]


class MemoryKeyValueStore:
    """In-memory stand-in for the persistent key-value store."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self.data: dict[str, Any] = {}
        for key, value in (initial or {}).items():
            self.set(key, value)

    def get(self, key: str, default: Any = None) -> Any:
        if key not in self.data:
            return default
        return json.loads(self.data[key])

    def set(self, key: str, value: Any) -> None:
        self.data[key] = json.dumps(value)

    def remove(self, key: str) -> None:
        self.data.pop(key, None)


class FakeAuth:
    """Auth provider with a fixed owner id and a switchable state."""

    def __init__(self, authenticated: bool = True, owner_id: str = "owner-1") -> None:
        self.state = AuthState.AUTHENTICATED if authenticated else AuthState.SIGNED_OUT
        self.owner_id = owner_id
        self.owner_calls = 0
        self._listeners: list[Callable[[AuthState], None]] = []

    @property
    def is_authenticated(self) -> bool:
        return self.state is AuthState.AUTHENTICATED

    def subscribe(self, listener: Callable[[AuthState], None]) -> Callable[[], None]:
        self._listeners.append(listener)
        listener(self.state)
        return lambda: self._listeners.remove(listener)

    def set_state(self, state: AuthState) -> None:
        self.state = state
        for listener in list(self._listeners):
            listener(state)

    async def get_effective_owner_id(self) -> str:
        self.owner_calls += 1
        return self.owner_id


def missing_table(name: str) -> httpx.Response:
    return httpx.Response(
        404,
        json={"code": "PGRST205", "message": f"Could not find the table 'public.{name}' in the schema cache"},
    )


def missing_function(name: str) -> httpx.Response:
    return httpx.Response(
        404,
        json={"code": "PGRST202", "message": f"Could not find the function public.{name}"},
    )


class FakeBackend:
    """Routes requests by method and path; unknown routes report a missing resource."""

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], list[Responder]] = {}
        self.requests: list[httpx.Request] = []

    def on(self, method: str, path: str, *responses: Responder) -> None:
        """Queue responses for a route; the last one repeats."""

        self.routes[(method.upper(), path)] = list(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            name = request.url.path.rsplit("/", 1)[-1]
            if "/rpc/" in request.url.path:
                return missing_function(name)
            return missing_table(name)
        responder = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(responder):
            return responder(request)
        return responder

    def calls(self, method: str | None = None, path: str | None = None) -> list[httpx.Request]:
        return [
            request
            for request in self.requests
            if (method is None or request.method == method.upper())
            and (path is None or request.url.path == path)
        ]

    def paths(self) -> list[str]:
        return [f"{request.method} {request.url.path}" for request in self.requests]


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        SUPABASE_URL=BASE_URL,
        SUPABASE_ANON_KEY="anon-key",
        PULL_RETRY_DELAY=0,
        ADDON_PUSH_DEBOUNCE=0.05,
    )  # type: ignore[call-arg]


@pytest.fixture
def memory_store() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
def fake_auth() -> FakeAuth:
    return FakeAuth()


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def session_store(memory_store: MemoryKeyValueStore) -> SessionStore:
    session = SessionStore(memory_store)
    session.access_token = "session-token"
    session.refresh_token = "refresh-token"
    return session


@pytest.fixture
def http_client(backend: FakeBackend) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(backend), base_url=BASE_URL)


@pytest.fixture
def supabase(
    settings: Settings, http_client: httpx.AsyncClient, session_store: SessionStore
) -> SupabaseClient:
    return SupabaseClient(settings, http_client, session_store)
