"""Wiring of stores, services and the orchestrator for one process."""

from __future__ import annotations

from dataclasses import dataclass

import httpx

from .config import Settings
from .scopes import ProfileManager
from .services.addons import AddonSyncService
from .services.auth import SupabaseAuth
from .services.library import LibrarySyncService
from .services.orchestrator import SyncOrchestrator, SyncServices
from .services.plugins import PluginSyncService
from .services.profiles import ProfileSyncService
from .services.progress import ProgressRecorder, ProgressSyncService
from .services.supabase import SupabaseClient
from .services.watched import WatchedItemsSyncService
from .stores import (
    AddonStore,
    LibraryStore,
    LocalStore,
    PluginStore,
    SessionStore,
    WatchedItemsStore,
    WatchProgressStore,
)


@dataclass(slots=True)
class Stores:
    addons: AddonStore
    plugins: PluginStore
    library: LibraryStore
    progress: WatchProgressStore
    watched: WatchedItemsStore
    session: SessionStore


@dataclass(slots=True)
class SyncRuntime:
    settings: Settings
    stores: Stores
    profiles: ProfileManager
    auth: SupabaseAuth
    client: SupabaseClient
    services: SyncServices
    orchestrator: SyncOrchestrator
    progress_recorder: ProgressRecorder


def build_runtime(
    settings: Settings, http_client: httpx.AsyncClient, local_store: LocalStore
) -> SyncRuntime:
    """Construct every collaborator around ``local_store`` and ``http_client``."""

    stores = Stores(
        addons=AddonStore(local_store, settings.default_addon_urls),
        plugins=PluginStore(local_store),
        library=LibraryStore(local_store, settings.library_cap),
        progress=WatchProgressStore(local_store, settings.progress_cap),
        watched=WatchedItemsStore(local_store, settings.watched_cap),
        session=SessionStore(local_store),
    )
    profiles = ProfileManager(local_store)
    auth = SupabaseAuth(settings, http_client, stores.session)
    client = SupabaseClient(settings, http_client, stores.session)

    services = SyncServices(
        profiles=ProfileSyncService(client, auth, profiles),
        plugins=PluginSyncService(client, auth, profiles, stores.plugins),
        addons=AddonSyncService(client, auth, profiles, stores.addons),
        library=LibrarySyncService(client, auth, profiles, stores.library),
        watched=WatchedItemsSyncService(client, auth, profiles, stores.watched),
        progress=ProgressSyncService(client, auth, profiles, stores.progress),
    )
    orchestrator = SyncOrchestrator.from_settings(services, stores.addons, settings)
    recorder = ProgressRecorder(
        stores.progress,
        profiles,
        services.progress,
        push_interval_seconds=settings.progress_push_interval_seconds,
    )
    return SyncRuntime(
        settings=settings,
        stores=stores,
        profiles=profiles,
        auth=auth,
        client=client,
        services=services,
        orchestrator=orchestrator,
        progress_recorder=recorder,
    )
