"""Ordered backend access strategies for entities whose schema varies.

A deployment may expose an entity through a bulk procedure, a scoped table,
a legacy owner-only table, or none of them. Each access path is described by
a :class:`Candidate`; :func:`read_through` and :func:`write_through` try the
candidates in order and only move on when the backend reports the resource
as missing. Any other failure ends the attempt.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, Mapping, Sequence, TypeVar

from ..result import Err, Ok, Result, SyncErrorKind
from .auth import AuthError, AuthProvider
from .supabase import SupabaseClient, SupabaseError, is_conflict_target_error, is_missing_resource

logger = logging.getLogger(__name__)

T = TypeVar("T")
P = TypeVar("P")


@dataclass(slots=True)
class SyncContext:
    """Per-call inputs shared by every candidate of one pull or push."""

    client: SupabaseClient
    auth: AuthProvider
    scope: int
    _owner_id: str | None = field(default=None, repr=False)

    async def owner_id(self) -> str:
        """Backend owner id, resolved at most once per call."""

        if self._owner_id is None:
            self._owner_id = await self.auth.get_effective_owner_id()
        return self._owner_id


Reader = Callable[[SyncContext], Awaitable[T]]
Writer = Callable[[SyncContext, P], Awaitable[None]]


@dataclass(slots=True, frozen=True)
class Candidate(Generic[T, P]):
    """One way of reading and/or writing an entity collection."""

    name: str
    read: Reader[T] | None = None
    write: Writer[P] | None = None
    is_missing_resource: Callable[[BaseException], bool] = is_missing_resource


async def _run(
    candidates: Sequence[Candidate[Any, Any]],
    direction: str,
    label: str,
    invoke: Callable[[Candidate[Any, Any]], Awaitable[T] | None],
) -> Result[T]:
    last_missing: BaseException | None = None
    attempted = False
    for candidate in candidates:
        awaitable = invoke(candidate)
        if awaitable is None:
            continue
        attempted = True
        try:
            value = await awaitable
        except (SupabaseError, AuthError) as exc:
            if candidate.is_missing_resource(exc):
                logger.info(
                    "%s %s: %s unavailable, trying next candidate", label, direction, candidate.name
                )
                last_missing = exc
                continue
            logger.warning("%s %s via %s failed: %s", label, direction, candidate.name, exc)
            return Err(SyncErrorKind.FAILED, exc)
        logger.info("%s %s via %s succeeded", label, direction, candidate.name)
        return Ok(value)

    if attempted:
        logger.warning("%s %s: no backend candidate available", label, direction)
    return Err(SyncErrorKind.MISSING_RESOURCE, last_missing)


async def read_through(
    candidates: Sequence[Candidate[T, Any]], context: SyncContext, label: str
) -> Result[T]:
    """Read using the first candidate whose backend resource exists."""

    def _invoke(candidate: Candidate[T, Any]) -> Awaitable[T] | None:
        if candidate.read is None:
            return None
        return candidate.read(context)

    return await _run(candidates, "pull", label, _invoke)


async def write_through(
    candidates: Sequence[Candidate[Any, P]], context: SyncContext, payload: P, label: str
) -> Result[None]:
    """Write ``payload`` using the first candidate whose backend resource exists."""

    def _invoke(candidate: Candidate[Any, P]) -> Awaitable[None] | None:
        if candidate.write is None:
            return None
        return candidate.write(context, payload)

    return await _run(candidates, "push", label, _invoke)


async def upsert_with_constraint_retry(
    client: SupabaseClient,
    table: str,
    rows: Sequence[Mapping[str, Any]],
    on_conflict: str,
) -> None:
    """Upsert against ``on_conflict``; retry once without a conflict target
    when the backend has no matching unique constraint."""

    try:
        await client.upsert_rows(table, rows, on_conflict)
    except SupabaseError as exc:
        if not is_conflict_target_error(exc):
            raise
        logger.info("No constraint matches %s(%s); retrying upsert without target", table, on_conflict)
        await client.upsert_rows(table, rows, None)
