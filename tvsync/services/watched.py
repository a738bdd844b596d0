"""Sync of finished movies and episodes."""

from __future__ import annotations

from typing import Any, Iterable, Sequence

from pydantic import ValidationError

from ..models import WatchedItem
from ..utils import coerce_timestamp_ms, first_present, now_ms
from .base import TimestampedSyncService
from .fallback import Candidate, SyncContext, upsert_with_constraint_retry
from .supabase import eq

TABLE = "watched_items"
PULL_PROCEDURE = "sync_pull_watched_items"
PUSH_PROCEDURE = "sync_push_watched_items"


def map_watched_rows(rows: Iterable[Any]) -> list[WatchedItem]:
    items: list[WatchedItem] = []
    for row in rows or []:
        if not isinstance(row, dict):
            continue
        watched_at = coerce_timestamp_ms(first_present(row, "watched_at", "watchedAt"))
        try:
            items.append(
                WatchedItem(
                    content_id=first_present(row, "content_id", "contentId"),
                    content_type=first_present(row, "content_type", "contentType"),
                    title=str(first_present(row, "title", "name") or ""),
                    season=row.get("season"),
                    episode=row.get("episode"),
                    watched_at=watched_at or now_ms(),
                )
            )
        except ValidationError:
            continue
    return items


def to_remote_watched_item(item: WatchedItem) -> dict[str, Any]:
    return {
        "content_id": item.content_id,
        "content_type": item.content_type,
        "title": item.title,
        "season": item.season,
        "episode": item.episode,
        "watched_at": item.watched_at,
    }


class WatchedItemsSyncService(TimestampedSyncService[WatchedItem]):
    label = "watched"

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._candidates: tuple[Candidate[list[WatchedItem], list[WatchedItem]], ...] = (
            Candidate(PULL_PROCEDURE, read=self._pull_procedure, write=self._push_procedure),
            Candidate(TABLE, read=self._read_table, write=self._write_table),
        )

    @property
    def candidates(self) -> Sequence[Candidate[list[WatchedItem], list[WatchedItem]]]:
        return self._candidates

    async def _pull_procedure(self, context: SyncContext) -> list[WatchedItem]:
        rows = await context.client.call_procedure(
            PULL_PROCEDURE, {"p_profile_id": context.scope}
        )
        return map_watched_rows(rows if isinstance(rows, list) else [])

    async def _push_procedure(self, context: SyncContext, items: list[WatchedItem]) -> None:
        await context.client.call_procedure(
            PUSH_PROCEDURE,
            {
                "p_profile_id": context.scope,
                "p_items": [to_remote_watched_item(item) for item in items],
            },
        )

    async def _read_table(self, context: SyncContext) -> list[WatchedItem]:
        rows = await context.client.select_rows(
            TABLE,
            {
                "user_id": eq(await context.owner_id()),
                "profile_id": eq(context.scope),
                "select": "*",
                "order": "watched_at.desc",
            },
        )
        return map_watched_rows(rows)

    async def _write_table(self, context: SyncContext, items: list[WatchedItem]) -> None:
        owner_id = await context.owner_id()
        rows = [
            {"user_id": owner_id, "profile_id": context.scope, **to_remote_watched_item(item)}
            for item in items
        ]
        if rows:
            await upsert_with_constraint_retry(
                context.client, TABLE, rows, "user_id,profile_id,content_id,season,episode"
            )
