"""Sync of plugin (scraper) sources."""

from __future__ import annotations

from typing import Any, Iterable, Sequence

from pydantic import ValidationError

from ..merge import merge_plugin_sources
from ..models import PluginSource
from ..scopes import ProfileManager
from ..stores import PluginStore
from .auth import AuthProvider
from .base import SyncService
from .fallback import Candidate, SyncContext, upsert_with_constraint_retry
from .supabase import SupabaseClient, eq

TABLE = "plugins"
PULL_PROCEDURE = "sync_pull_plugins"
PUSH_PROCEDURE = "sync_push_plugins"


def map_plugin_rows(rows: Iterable[Any]) -> list[PluginSource]:
    """Map remote rows to sources; only columns present on the row are set."""

    sources: list[PluginSource] = []
    for row in rows or []:
        if not isinstance(row, dict):
            continue
        data: dict[str, Any] = {
            "url_template": row.get("url") or row.get("url_template") or row.get("urlTemplate") or ""
        }
        if row.get("name"):
            data["name"] = row["name"]
        if "enabled" in row and row["enabled"] is not None:
            data["enabled"] = row["enabled"] is not False
        try:
            sources.append(PluginSource(**data))
        except ValidationError:
            continue
    return sources


def _remote_plugin_payload(sources: Sequence[PluginSource]) -> list[dict[str, Any]]:
    return [
        {
            "url": source.url_template,
            "name": source.name or f"Plugin {index + 1}",
            "enabled": source.enabled,
            "sort_order": index,
        }
        for index, source in enumerate(sources)
    ]


class PluginSyncService(SyncService[list[PluginSource]]):
    """Keeps plugin sources ordered and enabled flags in step."""

    label = "plugins"

    def __init__(
        self,
        client: SupabaseClient,
        auth: AuthProvider,
        profiles: ProfileManager,
        store: PluginStore,
    ) -> None:
        super().__init__(client, auth, profiles)
        self._store = store
        self._candidates: tuple[Candidate[list[PluginSource], list[PluginSource]], ...] = (
            Candidate(PULL_PROCEDURE, read=self._pull_procedure),
            Candidate(PUSH_PROCEDURE, write=self._push_procedure),
            Candidate(TABLE, read=self._read_table, write=self._write_table),
        )

    @property
    def candidates(self) -> Sequence[Candidate[list[PluginSource], list[PluginSource]]]:
        return self._candidates

    def resolve_scope(self) -> int:
        return self._profiles.plugin_scope()

    def read_local(self, scope: int) -> list[PluginSource]:
        return self._store.list_for_scope(scope)

    def write_local(self, scope: int, items: list[PluginSource]) -> None:
        self._store.replace_for_scope(scope, items)

    def merge(self, local: list[PluginSource], remote: list[PluginSource]) -> list[PluginSource]:
        return merge_plugin_sources(local, remote)

    def empty(self) -> list[PluginSource]:
        return []

    async def _pull_procedure(self, context: SyncContext) -> list[PluginSource]:
        rows = await context.client.call_procedure(
            PULL_PROCEDURE, {"p_profile_id": context.scope}
        )
        return map_plugin_rows(rows if isinstance(rows, list) else [])

    async def _push_procedure(self, context: SyncContext, sources: list[PluginSource]) -> None:
        await context.client.call_procedure(
            PUSH_PROCEDURE,
            {"p_profile_id": context.scope, "p_plugins": _remote_plugin_payload(sources)},
        )

    async def _read_table(self, context: SyncContext) -> list[PluginSource]:
        rows = await context.client.select_rows(
            TABLE,
            {
                "user_id": eq(await context.owner_id()),
                "profile_id": eq(context.scope),
                "select": "url,name,enabled,sort_order",
                "order": "sort_order.asc",
            },
        )
        return map_plugin_rows(rows)

    async def _write_table(self, context: SyncContext, sources: list[PluginSource]) -> None:
        owner_id = await context.owner_id()
        await context.client.delete_rows(
            TABLE, {"user_id": eq(owner_id), "profile_id": eq(context.scope)}
        )
        rows = [
            {"user_id": owner_id, "profile_id": context.scope, **entry}
            for entry in _remote_plugin_payload(sources)
        ]
        if rows:
            await upsert_with_constraint_retry(
                context.client, TABLE, rows, "user_id,profile_id,url"
            )
