"""FastAPI entry point exposing on-demand sync to the TV client UI."""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import asdict
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from .config import settings
from .database import Database, KeyValueStore
from .runtime import SyncRuntime, build_runtime
from .services.auth import AuthError
from .services.progress import PlaybackContext

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app: FastAPI


class SignInRequest(BaseModel):
    email: str
    password: str


class PlaybackUpdate(BaseModel):
    content_id: str
    content_type: str = "movie"
    video_id: str | None = None
    season: int | None = None
    episode: int | None = None
    position_ms: float = Field(default=0)
    duration_ms: float = Field(default=0)
    clear: bool = False


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    exit_stack = AsyncExitStack()
    http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=settings.supabase_base_url or "",
            timeout=httpx.Timeout(settings.request_timeout_seconds, connect=10.0),
        )
    )
    database = Database(settings.database_url)
    database.create_all()

    runtime = build_runtime(settings, http_client, KeyValueStore(database))
    fastapi_app.state.runtime = runtime
    fastapi_app.state.database = database

    detach = runtime.orchestrator.attach(runtime.auth)
    if settings.supabase_base_url:
        await runtime.auth.bootstrap()
    else:
        logger.warning("SUPABASE_URL is not configured; remote sync stays disabled")

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        detach()
        await runtime.orchestrator.shutdown()
        database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Profile, addon, library and playback state sync for Nuvio TV",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    register_routes(fastapi_app)
    return fastapi_app


def get_runtime(app: FastAPI) -> SyncRuntime:
    runtime = getattr(app.state, "runtime", None)
    if not isinstance(runtime, SyncRuntime):
        raise RuntimeError("Sync runtime not initialised")
    return runtime


def _jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    return value


def register_routes(fastapi_app: FastAPI) -> None:
    def _service(entity: str):
        service = get_runtime(fastapi_app).services.get(entity)
        if service is None:
            raise HTTPException(status_code=404, detail=f"Unknown entity '{entity}'")
        return service

    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.get("/sync/status")
    async def sync_status() -> dict[str, Any]:
        runtime = get_runtime(fastapi_app)
        payload = asdict(runtime.orchestrator.status())
        payload["state"] = runtime.orchestrator.state.value
        payload["auth"] = runtime.auth.state.value
        return payload

    @fastapi_app.post("/sync/pull")
    async def sync_pull_all() -> dict[str, bool]:
        return {"ok": await get_runtime(fastapi_app).orchestrator.pull_all()}

    @fastapi_app.post("/sync/push")
    async def sync_push_all() -> dict[str, Any]:
        results = await get_runtime(fastapi_app).orchestrator.push_all()
        return {"ok": all(results.values()), "results": results}

    @fastapi_app.post("/sync/{entity}/pull")
    async def sync_pull_entity(entity: str) -> dict[str, Any]:
        service = _service(entity)
        items = await service.pull()
        return {"entity": entity, "items": _jsonable(items)}

    @fastapi_app.post("/sync/{entity}/push")
    async def sync_push_entity(entity: str) -> dict[str, Any]:
        service = _service(entity)
        return {"entity": entity, "ok": await service.push()}

    @fastapi_app.post("/auth/sign-in")
    async def sign_in(payload: SignInRequest) -> dict[str, str]:
        auth = get_runtime(fastapi_app).auth
        try:
            await auth.sign_in_with_password(payload.email, payload.password)
        except AuthError as exc:
            raise HTTPException(status_code=401, detail=str(exc)) from exc
        except httpx.HTTPError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return {"auth": auth.state.value}

    @fastapi_app.post("/auth/sign-out")
    async def sign_out() -> dict[str, str]:
        auth = get_runtime(fastapi_app).auth
        await auth.sign_out()
        return {"auth": auth.state.value}

    @fastapi_app.post("/progress")
    async def record_progress(update: PlaybackUpdate) -> dict[str, str]:
        recorder = get_runtime(fastapi_app).progress_recorder
        outcome = await recorder.record(
            PlaybackContext(
                content_id=update.content_id,
                content_type=update.content_type,
                video_id=update.video_id,
                season=update.season,
                episode=update.episode,
            ),
            update.position_ms,
            update.duration_ms,
            clear=update.clear,
        )
        return {"outcome": outcome}


app = create_app()
