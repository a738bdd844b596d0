"""Sync of the installed addon list."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Sequence

from ..merge import merge_ordered
from ..scopes import ProfileManager
from ..stores import AddonStore
from ..utils import canonicalize_addon_url, unique_ordered
from .auth import AuthProvider
from .base import SyncService
from .fallback import Candidate, SyncContext, upsert_with_constraint_retry
from .supabase import SupabaseClient, eq

logger = logging.getLogger(__name__)

ADDONS_TABLE = "addons"
LEGACY_TABLE = "tv_addons"
PUSH_PROCEDURE = "sync_push_addons"
PULL_PROCEDURE = "sync_pull_addons"


def extract_addon_urls(rows: Iterable[Any]) -> list[str]:
    """Pull canonical URLs out of ``url``/``base_url`` columns."""

    urls: list[str] = []
    for row in rows or []:
        if not isinstance(row, dict):
            continue
        urls.append(canonicalize_addon_url(row.get("url") or row.get("base_url")))
    return unique_ordered(urls)


class AddonSyncService(SyncService[list[str]]):
    """Keeps the ordered addon URL list in step with the backend."""

    label = "addons"

    def __init__(
        self,
        client: SupabaseClient,
        auth: AuthProvider,
        profiles: ProfileManager,
        store: AddonStore,
    ) -> None:
        super().__init__(client, auth, profiles)
        self._store = store
        self._candidates: tuple[Candidate[list[str], list[str]], ...] = (
            Candidate(PUSH_PROCEDURE, write=self._push_procedure),
            Candidate(ADDONS_TABLE, read=self._read_table, write=self._write_table),
            Candidate(LEGACY_TABLE, read=self._read_legacy, write=self._write_legacy),
            Candidate(PULL_PROCEDURE, read=self._pull_procedure),
        )

    @property
    def candidates(self) -> Sequence[Candidate[list[str], list[str]]]:
        return self._candidates

    def resolve_scope(self) -> int:
        return self._profiles.addon_scope()

    def read_local(self, scope: int) -> list[str]:
        return self._store.installed_urls(scope)

    def write_local(self, scope: int, items: list[str]) -> None:
        self._store.set_order(items, scope, silent=True)

    def merge(self, local: list[str], remote: list[str]) -> list[str]:
        if not remote and local:
            logger.info("Remote addon list empty, preserving %s local addons", len(local))
        return merge_ordered(local, remote, key=lambda url: url)

    def empty(self) -> list[str]:
        return []

    async def _read_table(self, context: SyncContext) -> list[str]:
        rows = await context.client.select_rows(
            ADDONS_TABLE,
            {
                "user_id": eq(await context.owner_id()),
                "profile_id": eq(context.scope),
                "select": "url,sort_order",
                "order": "sort_order.asc",
            },
        )
        return extract_addon_urls(rows)

    async def _read_legacy(self, context: SyncContext) -> list[str]:
        rows = await context.client.select_rows(
            LEGACY_TABLE,
            {
                "owner_id": eq(await context.owner_id()),
                "select": "base_url,position",
                "order": "position.asc",
            },
        )
        return extract_addon_urls(rows)

    async def _pull_procedure(self, context: SyncContext) -> list[str]:
        rows = await context.client.call_procedure(
            PULL_PROCEDURE, {"p_profile_id": context.scope}
        )
        return extract_addon_urls(rows if isinstance(rows, list) else [])

    async def _push_procedure(self, context: SyncContext, urls: list[str]) -> None:
        await context.client.call_procedure(
            PUSH_PROCEDURE,
            {
                "p_profile_id": context.scope,
                "p_addons": [
                    {"url": url, "sort_order": index} for index, url in enumerate(urls)
                ],
            },
        )

    async def _write_table(self, context: SyncContext, urls: list[str]) -> None:
        owner_id = await context.owner_id()
        await context.client.delete_rows(
            ADDONS_TABLE, {"user_id": eq(owner_id), "profile_id": eq(context.scope)}
        )
        rows = [
            {"user_id": owner_id, "profile_id": context.scope, "url": url, "sort_order": index}
            for index, url in enumerate(urls)
        ]
        if rows:
            await upsert_with_constraint_retry(
                context.client, ADDONS_TABLE, rows, "user_id,profile_id,url"
            )

    async def _write_legacy(self, context: SyncContext, urls: list[str]) -> None:
        owner_id = await context.owner_id()
        await context.client.delete_rows(LEGACY_TABLE, {"owner_id": eq(owner_id)})
        rows = [
            {"owner_id": owner_id, "base_url": url, "position": index}
            for index, url in enumerate(urls)
        ]
        if rows:
            await upsert_with_constraint_retry(
                context.client, LEGACY_TABLE, rows, "owner_id,base_url"
            )
