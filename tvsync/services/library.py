"""Sync of the saved-title library."""

from __future__ import annotations

from typing import Any, Iterable, Sequence

from pydantic import ValidationError

from ..models import LibraryItem
from ..utils import coerce_timestamp_ms, first_present, now_ms
from .base import TimestampedSyncService
from .fallback import Candidate, SyncContext, upsert_with_constraint_retry
from .supabase import eq

TABLE = "library_items"
PULL_PROCEDURE = "sync_pull_library"
PUSH_PROCEDURE = "sync_push_library"


def map_library_row(row: dict[str, Any]) -> LibraryItem | None:
    rating = first_present(row, "imdb_rating", "imdbRating")
    try:
        rating = float(rating) if rating is not None else None
    except (TypeError, ValueError):
        rating = None
    genres = row.get("genres")
    updated_at = coerce_timestamp_ms(
        first_present(row, "updated_at", "updatedAt", "created_at", "createdAt")
    )
    try:
        return LibraryItem(
            content_id=first_present(row, "content_id", "contentId", "id"),
            content_type=first_present(row, "content_type", "contentType"),
            title=str(first_present(row, "name", "title") or "Untitled"),
            poster=row.get("poster") or None,
            background=row.get("background") or None,
            description=str(row.get("description") or ""),
            release_info=str(first_present(row, "release_info", "releaseInfo") or ""),
            imdb_rating=rating,
            genres=[str(genre) for genre in genres] if isinstance(genres, list) else [],
            addon_base_url=first_present(row, "addon_base_url", "addonBaseUrl"),
            updated_at=updated_at or now_ms(),
        )
    except ValidationError:
        return None


def map_library_rows(rows: Iterable[Any]) -> list[LibraryItem]:
    items = (map_library_row(row) for row in rows or [] if isinstance(row, dict))
    return [item for item in items if item is not None]


def to_remote_library_item(item: LibraryItem) -> dict[str, Any]:
    return {
        "content_id": item.content_id,
        "content_type": item.content_type,
        "name": item.title or "Untitled",
        "poster": item.poster,
        "poster_shape": "POSTER",
        "background": item.background,
        "description": item.description,
        "release_info": item.release_info,
        "imdb_rating": item.imdb_rating,
        "genres": list(item.genres),
        "addon_base_url": item.addon_base_url,
    }


class LibrarySyncService(TimestampedSyncService[LibraryItem]):
    label = "library"

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._candidates: tuple[Candidate[list[LibraryItem], list[LibraryItem]], ...] = (
            Candidate(PULL_PROCEDURE, read=self._pull_procedure, write=self._push_procedure),
            Candidate(TABLE, read=self._read_table, write=self._write_table),
        )

    @property
    def candidates(self) -> Sequence[Candidate[list[LibraryItem], list[LibraryItem]]]:
        return self._candidates

    async def _pull_procedure(self, context: SyncContext) -> list[LibraryItem]:
        rows = await context.client.call_procedure(
            PULL_PROCEDURE, {"p_profile_id": context.scope}
        )
        return map_library_rows(rows if isinstance(rows, list) else [])

    async def _push_procedure(self, context: SyncContext, items: list[LibraryItem]) -> None:
        await context.client.call_procedure(
            PUSH_PROCEDURE,
            {
                "p_profile_id": context.scope,
                "p_items": [to_remote_library_item(item) for item in items],
            },
        )

    async def _read_table(self, context: SyncContext) -> list[LibraryItem]:
        rows = await context.client.select_rows(
            TABLE,
            {
                "user_id": eq(await context.owner_id()),
                "profile_id": eq(context.scope),
                "select": "*",
                "order": "updated_at.desc",
            },
        )
        return map_library_rows(rows)

    async def _write_table(self, context: SyncContext, items: list[LibraryItem]) -> None:
        owner_id = await context.owner_id()
        rows = [
            {
                "user_id": owner_id,
                "profile_id": context.scope,
                **to_remote_library_item(item),
                "updated_at": item.updated_at,
            }
            for item in items
        ]
        if rows:
            await upsert_with_constraint_retry(
                context.client, TABLE, rows, "user_id,profile_id,content_type,content_id"
            )
