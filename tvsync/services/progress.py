"""Sync of watch progress (resume points) and the player-side recorder."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Sequence

from pydantic import ValidationError

from ..merge import newer_or_further_progress
from ..models import WatchProgress
from ..scopes import ProfileManager
from ..stores import WatchProgressStore
from ..utils import (
    coerce_duration_ms,
    coerce_timestamp_ms,
    first_present,
    iso_from_ms,
    ms_to_seconds,
    now_ms,
)
from .auth import AuthProvider
from .base import TimestampedSyncService
from .fallback import Candidate, SyncContext, upsert_with_constraint_retry
from .supabase import SupabaseClient, eq

logger = logging.getLogger(__name__)

TABLE = "watch_progress"
LEGACY_TABLE = "tv_watch_progress"
PULL_PROCEDURE = "sync_pull_watch_progress"
PUSH_PROCEDURE = "sync_push_watch_progress"

DEFAULT_TIMESTAMP_COLUMNS: tuple[str, ...] = ("updated_at", "last_watched", "lastWatched")

# Entries past this fraction of their duration count as finished.
COMPLETION_THRESHOLD = 0.95


def _millis(row: Mapping[str, Any], ms_column: str, loose_column: str) -> int:
    explicit = row.get(ms_column)
    if explicit is not None:
        try:
            return max(0, int(float(explicit)))
        except (TypeError, ValueError, OverflowError):
            return 0
    return coerce_duration_ms(row.get(loose_column))


def map_progress_row(
    row: Mapping[str, Any], timestamp_columns: Sequence[str] = DEFAULT_TIMESTAMP_COLUMNS
) -> WatchProgress | None:
    """Map a remote row to a progress entry.

    ``timestamp_columns`` lists the columns consulted for the entry's
    timestamp, first match wins.
    """

    updated_at = coerce_timestamp_ms(first_present(row, *timestamp_columns))
    content_id = first_present(row, "content_id", "contentId")
    video_id = first_present(row, "video_id", "videoId")
    # Pushes substitute the content id for a missing video id.
    if video_id is not None and str(video_id) == str(content_id):
        video_id = None
    try:
        return WatchProgress(
            content_id=content_id,
            content_type=first_present(row, "content_type", "contentType"),
            video_id=video_id,
            season=first_present(row, "season", "season_number"),
            episode=first_present(row, "episode", "episode_number"),
            position_ms=_millis(row, "position_ms", "position"),
            duration_ms=_millis(row, "duration_ms", "duration"),
            updated_at=updated_at or now_ms(),
        )
    except ValidationError:
        return None


def map_progress_rows(
    rows: Iterable[Any], timestamp_columns: Sequence[str] = DEFAULT_TIMESTAMP_COLUMNS
) -> list[WatchProgress]:
    entries = (
        map_progress_row(row, timestamp_columns) for row in rows or [] if isinstance(row, dict)
    )
    return [entry for entry in entries if entry is not None]


def to_remote_progress_entry(entry: WatchProgress) -> dict[str, Any]:
    return {
        "content_id": entry.content_id,
        "content_type": entry.content_type,
        "video_id": entry.video_id or entry.content_id,
        "season": entry.season,
        "episode": entry.episode,
        "position": ms_to_seconds(entry.position_ms),
        "duration": ms_to_seconds(entry.duration_ms),
        "last_watched": entry.updated_at,
        "progress_key": entry.progress_key,
    }


class ProgressSyncService(TimestampedSyncService[WatchProgress]):
    """Resume points; equal timestamps resolve to the further position."""

    label = "progress"
    comparator = staticmethod(newer_or_further_progress)

    def __init__(
        self,
        client: SupabaseClient,
        auth: AuthProvider,
        profiles: ProfileManager,
        store: WatchProgressStore,
        timestamp_columns: Mapping[str, Sequence[str]] | None = None,
    ) -> None:
        super().__init__(client, auth, profiles, store)
        self._timestamp_columns = dict(timestamp_columns or {})
        self._candidates: tuple[Candidate[list[WatchProgress], list[WatchProgress]], ...] = (
            Candidate(PULL_PROCEDURE, read=self._pull_procedure, write=self._push_procedure),
            Candidate(TABLE, read=self._read_table, write=self._write_table),
            Candidate(LEGACY_TABLE, read=self._read_legacy, write=self._write_legacy),
        )

    @property
    def candidates(self) -> Sequence[Candidate[list[WatchProgress], list[WatchProgress]]]:
        return self._candidates

    def should_push(self, items: list[WatchProgress]) -> bool:
        return bool(items)

    def _columns(self, candidate: str) -> Sequence[str]:
        return self._timestamp_columns.get(candidate, DEFAULT_TIMESTAMP_COLUMNS)

    async def _pull_procedure(self, context: SyncContext) -> list[WatchProgress]:
        rows = await context.client.call_procedure(
            PULL_PROCEDURE, {"p_profile_id": context.scope}
        )
        return map_progress_rows(
            rows if isinstance(rows, list) else [], self._columns(PULL_PROCEDURE)
        )

    async def _push_procedure(self, context: SyncContext, entries: list[WatchProgress]) -> None:
        await context.client.call_procedure(
            PUSH_PROCEDURE,
            {
                "p_profile_id": context.scope,
                "p_entries": [to_remote_progress_entry(entry) for entry in entries],
            },
        )

    async def _read_table(self, context: SyncContext) -> list[WatchProgress]:
        owner_id = await context.owner_id()
        rows = await context.client.select_rows(
            TABLE,
            {
                "user_id": eq(owner_id),
                "profile_id": eq(context.scope),
                "select": "*",
                "order": "last_watched.desc",
            },
        )
        if not rows:
            # Rows written before profiles existed carry no profile_id.
            unscoped = await context.client.select_rows(
                TABLE,
                {"user_id": eq(owner_id), "select": "*", "order": "last_watched.desc"},
            )
            rows = [
                row
                for row in unscoped
                if row.get("profile_id") in (None, "", context.scope, str(context.scope))
            ]
        return map_progress_rows(rows, self._columns(TABLE))

    async def _read_legacy(self, context: SyncContext) -> list[WatchProgress]:
        rows = await context.client.select_rows(
            LEGACY_TABLE,
            {
                "owner_id": eq(await context.owner_id()),
                "select": "*",
                "order": "updated_at.desc",
            },
        )
        return map_progress_rows(rows, self._columns(LEGACY_TABLE))

    async def _write_table(self, context: SyncContext, entries: list[WatchProgress]) -> None:
        owner_id = await context.owner_id()
        rows = [
            {"user_id": owner_id, "profile_id": context.scope, **to_remote_progress_entry(entry)}
            for entry in entries
        ]
        await upsert_with_constraint_retry(context.client, TABLE, rows, "user_id,progress_key")

    async def _write_legacy(self, context: SyncContext, entries: list[WatchProgress]) -> None:
        owner_id = await context.owner_id()
        rows = [
            {
                "owner_id": owner_id,
                "content_id": entry.content_id,
                "content_type": entry.content_type,
                "video_id": entry.video_id or entry.content_id,
                "season": entry.season,
                "episode": entry.episode,
                "position_ms": entry.position_ms,
                "duration_ms": entry.duration_ms,
                "updated_at": iso_from_ms(entry.updated_at),
            }
            for entry in entries
        ]
        await upsert_with_constraint_retry(
            context.client, LEGACY_TABLE, rows, "owner_id,content_id,video_id"
        )


@dataclass(slots=True)
class PlaybackContext:
    """What the player is currently showing."""

    content_id: str
    content_type: str = "movie"
    video_id: str | None = None
    season: int | None = None
    episode: int | None = None


class ProgressRecorder:
    """Persists player positions and pushes them on a throttle."""

    def __init__(
        self,
        store: WatchProgressStore,
        profiles: ProfileManager,
        service: ProgressSyncService,
        push_interval_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._profiles = profiles
        self._service = service
        self._push_interval = push_interval_seconds
        self._clock = clock
        self._last_push_at: float | None = None

    async def record(
        self,
        context: PlaybackContext,
        position_ms: float,
        duration_ms: float,
        clear: bool = False,
    ) -> str:
        """Save, delete or ignore a playback position.

        Returns ``"removed"``, ``"saved"`` or ``"ignored"``.
        """

        if not context.content_id:
            return "ignored"
        scope = self._profiles.resolve_scope_index()
        position = float(position_ms or 0)
        duration = float(duration_ms or 0)
        has_duration = duration > 0

        if clear or (has_duration and position / duration > COMPLETION_THRESHOLD):
            self._store.remove_progress(context.content_id, context.video_id, scope)
            await self._push(force=True)
            return "removed"

        if position <= 0:
            return "ignored"

        self._store.upsert(
            WatchProgress(
                content_id=context.content_id,
                content_type=context.content_type,
                video_id=context.video_id,
                season=context.season,
                episode=context.episode,
                position_ms=int(position),
                duration_ms=int(duration) if has_duration else 0,
                updated_at=now_ms(),
            ),
            scope,
        )
        await self._push(force=False)
        return "saved"

    async def _push(self, force: bool) -> None:
        now = self._clock()
        if (
            not force
            and self._last_push_at is not None
            and now - self._last_push_at < self._push_interval
        ):
            return
        self._last_push_at = now
        if not await self._service.push():
            logger.info("Progress push after playback update did not reach the backend")
