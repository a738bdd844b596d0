"""Schema fallback chain behaviour."""

from __future__ import annotations

import httpx
import pytest

from tvsync.result import Err, Ok, SyncErrorKind
from tvsync.services.fallback import (
    Candidate,
    SyncContext,
    read_through,
    upsert_with_constraint_retry,
    write_through,
)
from tvsync.services.supabase import SupabaseError


def _missing(name: str) -> SupabaseError:
    return SupabaseError("not found", status=404, code="PGRST205", detail=f"Could not find the table {name}")


def _context(supabase, fake_auth) -> SyncContext:
    return SyncContext(client=supabase, auth=fake_auth, scope=1)


@pytest.mark.anyio("asyncio")
async def test_read_advances_only_past_missing_resources(supabase, fake_auth) -> None:
    attempts: list[str] = []

    async def _missing_read(context: SyncContext) -> list[str]:
        attempts.append("procedure")
        raise _missing("procedure")

    async def _table_read(context: SyncContext) -> list[str]:
        attempts.append("table")
        return ["row"]

    async def _legacy_read(context: SyncContext) -> list[str]:  # pragma: no cover - must not run
        attempts.append("legacy")
        return []

    result = await read_through(
        [
            Candidate("procedure", read=_missing_read),
            Candidate("table", read=_table_read),
            Candidate("legacy", read=_legacy_read),
        ],
        _context(supabase, fake_auth),
        "test",
    )

    assert result == Ok(["row"])
    assert attempts == ["procedure", "table"]


@pytest.mark.anyio("asyncio")
async def test_other_failures_are_terminal(supabase, fake_auth) -> None:
    attempts: list[str] = []

    async def _forbidden(context: SyncContext) -> None:
        attempts.append("procedure")
        raise SupabaseError("denied", status=403, code="42501", detail="permission denied")

    async def _table_write(context: SyncContext, payload: list[str]) -> None:  # pragma: no cover
        attempts.append("table")

    result = await write_through(
        [Candidate("procedure", write=_forbidden), Candidate("table", write=_table_write)],
        _context(supabase, fake_auth),
        ["a"],
        "test",
    )

    assert isinstance(result, Err)
    assert result.kind is SyncErrorKind.FAILED
    assert attempts == ["procedure"]


@pytest.mark.anyio("asyncio")
async def test_exhausted_chain_reports_missing_resource(supabase, fake_auth) -> None:
    async def _missing_read(context: SyncContext) -> list[str]:
        raise _missing("anything")

    result = await read_through(
        [Candidate("one", read=_missing_read), Candidate("two", read=_missing_read)],
        _context(supabase, fake_auth),
        "test",
    )

    assert isinstance(result, Err)
    assert result.kind is SyncErrorKind.MISSING_RESOURCE
    assert isinstance(result.error, SupabaseError)


@pytest.mark.anyio("asyncio")
async def test_candidates_without_the_direction_are_skipped(supabase, fake_auth) -> None:
    written: list[list[str]] = []

    async def _read(context: SyncContext) -> list[str]:  # pragma: no cover - read only
        return []

    async def _write(context: SyncContext, payload: list[str]) -> None:
        written.append(payload)

    result = await write_through(
        [Candidate("read-only", read=_read), Candidate("writer", write=_write)],
        _context(supabase, fake_auth),
        ["x"],
        "test",
    )

    assert result == Ok(None)
    assert written == [["x"]]


@pytest.mark.anyio("asyncio")
async def test_custom_missing_resource_predicate(supabase, fake_auth) -> None:
    async def _teapot(context: SyncContext) -> list[str]:
        raise SupabaseError("teapot", status=418)

    async def _next(context: SyncContext) -> list[str]:
        return ["fallback"]

    result = await read_through(
        [
            Candidate("odd", read=_teapot, is_missing_resource=lambda exc: True),
            Candidate("next", read=_next),
        ],
        _context(supabase, fake_auth),
        "test",
    )

    assert result == Ok(["fallback"])


@pytest.mark.anyio("asyncio")
async def test_owner_id_resolved_once_per_context(supabase, fake_auth) -> None:
    context = _context(supabase, fake_auth)

    assert await context.owner_id() == "owner-1"
    assert await context.owner_id() == "owner-1"
    assert fake_auth.owner_calls == 1


@pytest.mark.anyio("asyncio")
async def test_upsert_retries_without_conflict_target(supabase, backend) -> None:
    backend.on(
        "POST",
        "/rest/v1/addons",
        httpx.Response(
            400,
            json={
                "code": "42P10",
                "message": "there is no unique or exclusion constraint matching the ON CONFLICT specification",
            },
        ),
        httpx.Response(201, json=[]),
    )

    await upsert_with_constraint_retry(supabase, "addons", [{"url": "a"}], "user_id,profile_id,url")

    calls = backend.calls("POST", "/rest/v1/addons")
    assert len(calls) == 2
    assert calls[0].url.params["on_conflict"] == "user_id,profile_id,url"
    assert "on_conflict" not in calls[1].url.params


@pytest.mark.anyio("asyncio")
async def test_upsert_does_not_retry_other_errors(supabase, backend) -> None:
    backend.on("POST", "/rest/v1/addons", httpx.Response(400, json={"code": "23502", "message": "null value"}))

    with pytest.raises(SupabaseError):
        await upsert_with_constraint_retry(supabase, "addons", [{"url": "a"}], "user_id,url")

    assert len(backend.calls("POST", "/rest/v1/addons")) == 1
