"""Sync of the profile set."""

from __future__ import annotations

from typing import Any, Iterable, Sequence

from ..models import DEFAULT_AVATAR_COLOR, PRIMARY_PROFILE_INDEX, Profile
from ..utils import coerce_index
from .base import SyncService
from .fallback import Candidate, SyncContext, upsert_with_constraint_retry
from .supabase import eq

TABLE = "profiles"
LEGACY_TABLE = "tv_profiles"
PULL_PROCEDURE = "sync_pull_profiles"
PUSH_PROCEDURE = "sync_push_profiles"


def _flag(row: dict[str, Any], snake: str, camel: str) -> bool | None:
    for key in (snake, camel):
        if isinstance(row.get(key), bool):
            return row[key]
    return None


def sharing_flags(profile: Profile) -> dict[str, bool]:
    """Resolve unset sharing flags the same way the profile manager reads them.

    Secondary profiles share the primary addons unless told otherwise; plugin
    sharing is opt-in.
    """

    addons = profile.uses_primary_addons
    if addons is None:
        addons = profile.profile_index != PRIMARY_PROFILE_INDEX
    return {
        "uses_primary_addons": addons,
        "uses_primary_plugins": bool(profile.uses_primary_plugins),
    }


def map_profile_row(row: dict[str, Any]) -> Profile:
    """Map a procedure or table row (either naming convention) to a profile."""

    index = coerce_index(
        row.get("profile_index") or row.get("profileIndex") or row.get("id"),
        default=PRIMARY_PROFILE_INDEX,
    )
    is_primary = _flag(row, "is_primary", "isPrimary")
    return Profile(
        profile_index=index,
        name=str(row.get("name") or ""),
        avatar_color_hex=str(
            row.get("avatar_color_hex") or row.get("avatarColorHex") or DEFAULT_AVATAR_COLOR
        ),
        is_primary=is_primary if is_primary is not None else index == PRIMARY_PROFILE_INDEX,
        uses_primary_addons=_flag(row, "uses_primary_addons", "usesPrimaryAddons"),
        uses_primary_plugins=_flag(row, "uses_primary_plugins", "usesPrimaryPlugins"),
    )


def map_profile_rows(rows: Iterable[Any]) -> list[Profile]:
    return [map_profile_row(row) for row in rows or [] if isinstance(row, dict)]


class ProfileSyncService(SyncService[list[Profile]]):
    """Profiles are small and centrally owned: a pull replaces the set."""

    label = "profiles"

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._candidates: tuple[Candidate[list[Profile], list[Profile]], ...] = (
            Candidate(PULL_PROCEDURE, read=self._pull_procedure, write=self._push_procedure),
            Candidate(TABLE, read=self._read_table, write=self._write_table),
            Candidate(LEGACY_TABLE, read=self._read_legacy, write=self._write_legacy),
        )

    @property
    def candidates(self) -> Sequence[Candidate[list[Profile], list[Profile]]]:
        return self._candidates

    def read_local(self, scope: int) -> list[Profile]:
        return self._profiles.get_profiles()

    def write_local(self, scope: int, items: list[Profile]) -> None:
        self._profiles.replace_profiles(items)

    def merge(self, local: list[Profile], remote: list[Profile]) -> list[Profile]:
        return list(remote) if remote else list(local)

    def empty(self) -> list[Profile]:
        return []

    async def _pull_procedure(self, context: SyncContext) -> list[Profile]:
        rows = await context.client.call_procedure(PULL_PROCEDURE, {})
        return map_profile_rows(rows if isinstance(rows, list) else [])

    async def _push_procedure(self, context: SyncContext, profiles: list[Profile]) -> None:
        await context.client.call_procedure(
            PUSH_PROCEDURE,
            {
                "p_profiles": [
                    {
                        "profile_index": profile.profile_index,
                        "name": profile.name,
                        "avatar_color_hex": profile.avatar_color_hex,
                        **sharing_flags(profile),
                    }
                    for profile in profiles
                ]
            },
        )

    async def _read_table(self, context: SyncContext) -> list[Profile]:
        rows = await context.client.select_rows(
            TABLE,
            {
                "user_id": eq(await context.owner_id()),
                "select": "*",
                "order": "profile_index.asc",
            },
        )
        return map_profile_rows(rows)

    async def _read_legacy(self, context: SyncContext) -> list[Profile]:
        rows = await context.client.select_rows(
            LEGACY_TABLE,
            {
                "owner_id": eq(await context.owner_id()),
                "select": "*",
                "order": "profile_index.asc",
            },
        )
        return map_profile_rows(rows)

    async def _write_table(self, context: SyncContext, profiles: list[Profile]) -> None:
        owner_id = await context.owner_id()
        rows = [
            {
                "user_id": owner_id,
                "profile_index": profile.profile_index,
                "name": profile.name,
                "avatar_color_hex": profile.avatar_color_hex,
                **sharing_flags(profile),
            }
            for profile in profiles
        ]
        await context.client.delete_rows(TABLE, {"user_id": eq(owner_id)})
        if rows:
            await upsert_with_constraint_retry(
                context.client, TABLE, rows, "user_id,profile_index"
            )

    async def _write_legacy(self, context: SyncContext, profiles: list[Profile]) -> None:
        owner_id = await context.owner_id()
        rows = [
            {
                "id": profile.id,
                "owner_id": owner_id,
                "profile_index": profile.profile_index,
                "name": profile.name,
                "avatar_color_hex": profile.avatar_color_hex,
                "is_primary": bool(profile.is_primary),
            }
            for profile in profiles
        ]
        if rows:
            await upsert_with_constraint_retry(context.client, LEGACY_TABLE, rows, "id")
