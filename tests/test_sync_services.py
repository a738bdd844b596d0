"""Per-entity pull/push behaviour against a routed fake backend."""

from __future__ import annotations

import json

import httpx
import pytest

from tvsync.models import LibraryItem, PluginSource, Profile, WatchedItem, WatchProgress
from tvsync.result import Err, Ok, SyncErrorKind
from tvsync.scopes import ProfileManager
from tvsync.services.addons import AddonSyncService
from tvsync.services.auth import AuthState
from tvsync.services.library import LibrarySyncService
from tvsync.services.plugins import PluginSyncService
from tvsync.services.profiles import ProfileSyncService
from tvsync.services.progress import ProgressSyncService
from tvsync.services.watched import WatchedItemsSyncService
from tvsync.stores import AddonStore, LibraryStore, PluginStore, WatchedItemsStore, WatchProgressStore

NOW = 1_700_000_000_000


def _body(request: httpx.Request):
    return json.loads(request.content)


@pytest.fixture
def profiles(memory_store) -> ProfileManager:
    return ProfileManager(memory_store)


@pytest.fixture
def addon_store(memory_store) -> AddonStore:
    return AddonStore(memory_store)


@pytest.fixture
def addons(supabase, fake_auth, profiles, addon_store) -> AddonSyncService:
    return AddonSyncService(supabase, fake_auth, profiles, addon_store)


@pytest.fixture
def progress_store(memory_store) -> WatchProgressStore:
    return WatchProgressStore(memory_store)


@pytest.fixture
def progress(supabase, fake_auth, profiles, progress_store) -> ProgressSyncService:
    return ProgressSyncService(supabase, fake_auth, profiles, progress_store)


@pytest.fixture
def library_store(memory_store) -> LibraryStore:
    return LibraryStore(memory_store)


@pytest.fixture
def library(supabase, fake_auth, profiles, library_store) -> LibrarySyncService:
    return LibrarySyncService(supabase, fake_auth, profiles, library_store)


# Addons


@pytest.mark.anyio("asyncio")
async def test_empty_remote_addon_list_preserves_local_order(addons, addon_store, backend) -> None:
    addon_store.set_order(["a.com", "b.com"])
    backend.on("GET", "/rest/v1/addons", httpx.Response(200, json=[]))
    events: list[str] = []
    addon_store.subscribe(lambda reason, scope: events.append(reason))

    result = await addons.pull()

    assert result == ["a.com", "b.com"]
    assert addon_store.installed_urls() == ["a.com", "b.com"]
    assert events == []


@pytest.mark.anyio("asyncio")
async def test_addon_pull_merges_remote_order_first(addons, addon_store, backend) -> None:
    addon_store.set_order(["https://a.example", "https://local.example"])
    backend.on(
        "GET",
        "/rest/v1/addons",
        httpx.Response(
            200,
            json=[
                {"url": "https://b.example/manifest.json", "sort_order": 0},
                {"url": "https://a.example/", "sort_order": 1},
            ],
        ),
    )

    result = await addons.pull()

    assert result == ["https://b.example", "https://a.example", "https://local.example"]
    request = backend.calls("GET", "/rest/v1/addons")[0]
    assert request.url.params["user_id"] == "eq.owner-1"
    assert request.url.params["profile_id"] == "eq.1"


@pytest.mark.anyio("asyncio")
async def test_addon_push_falls_back_from_procedure_to_table(addons, addon_store, backend) -> None:
    addon_store.set_order(["https://a.example", "https://b.example"])
    backend.on("DELETE", "/rest/v1/addons", httpx.Response(204))
    backend.on("POST", "/rest/v1/addons", httpx.Response(201, json=[]))

    assert await addons.push() is True

    assert backend.paths() == [
        "POST /rest/v1/rpc/sync_push_addons",
        "DELETE /rest/v1/addons",
        "POST /rest/v1/addons",
    ]
    upsert = backend.calls("POST", "/rest/v1/addons")[0]
    assert upsert.url.params["on_conflict"] == "user_id,profile_id,url"
    assert _body(upsert) == [
        {"user_id": "owner-1", "profile_id": 1, "url": "https://a.example", "sort_order": 0},
        {"user_id": "owner-1", "profile_id": 1, "url": "https://b.example", "sort_order": 1},
    ]


@pytest.mark.anyio("asyncio")
async def test_addon_pull_reaches_legacy_table_then_last_resort_procedure(addons, backend) -> None:
    backend.on(
        "POST",
        "/rest/v1/rpc/sync_pull_addons",
        httpx.Response(200, json=[{"url": "https://rpc.example"}]),
    )

    result = await addons.pull()

    assert result == ["https://rpc.example"]
    assert backend.paths() == [
        "GET /rest/v1/addons",
        "GET /rest/v1/tv_addons",
        "POST /rest/v1/rpc/sync_pull_addons",
    ]


@pytest.mark.anyio("asyncio")
async def test_secondary_profile_pushes_shared_primary_addons(
    addons, addon_store, profiles, backend
) -> None:
    profiles.replace_profiles([Profile(profile_index=1), Profile(profile_index=2)])
    profiles.set_active_profile(2)
    addon_store.set_order(["https://shared.example"], scope=1)
    backend.on("POST", "/rest/v1/rpc/sync_push_addons", httpx.Response(204))

    assert await addons.push() is True

    assert _body(backend.requests[0]) == {
        "p_profile_id": 1,
        "p_addons": [{"url": "https://shared.example", "sort_order": 0}],
    }


@pytest.mark.anyio("asyncio")
async def test_unauthenticated_calls_make_no_requests(addons, fake_auth, backend) -> None:
    fake_auth.state = AuthState.SIGNED_OUT

    assert await addons.pull() == []
    assert await addons.push() is False
    result = await addons.pull_result()
    assert isinstance(result, Err)
    assert result.kind is SyncErrorKind.NOT_AUTHENTICATED
    assert backend.requests == []


# Plugins


@pytest.mark.anyio("asyncio")
async def test_plugin_pull_keeps_local_flags_missing_remotely(
    supabase, fake_auth, profiles, memory_store, backend
) -> None:
    store = PluginStore(memory_store)
    store.save_sources(
        [
            PluginSource(name="Mine", url_template="https://p.example/one", enabled=False),
            PluginSource(name="Only here", url_template="https://p.example/local"),
        ]
    )
    backend.on(
        "POST",
        "/rest/v1/rpc/sync_pull_plugins",
        httpx.Response(
            200,
            json=[
                {"url": "https://p.example/two", "name": "Remote Two", "enabled": True},
                {"url": "https://p.example/one"},
            ],
        ),
    )
    service = PluginSyncService(supabase, fake_auth, profiles, store)

    result = await service.pull()

    assert [source.url_template for source in result] == [
        "https://p.example/two",
        "https://p.example/one",
        "https://p.example/local",
    ]
    assert result[1].enabled is False
    assert result[1].name == "Mine"
    assert [source.url_template for source in store.list_sources()] == [
        source.url_template for source in result
    ]


@pytest.mark.anyio("asyncio")
async def test_plugin_push_falls_back_to_table(supabase, fake_auth, profiles, memory_store, backend) -> None:
    store = PluginStore(memory_store)
    store.save_sources([PluginSource(url_template="https://p.example/one", enabled=False)])
    backend.on("DELETE", "/rest/v1/plugins", httpx.Response(204))
    backend.on("POST", "/rest/v1/plugins", httpx.Response(201, json=[]))
    service = PluginSyncService(supabase, fake_auth, profiles, store)

    assert await service.push() is True

    assert backend.paths()[0] == "POST /rest/v1/rpc/sync_push_plugins"
    rows = _body(backend.calls("POST", "/rest/v1/plugins")[0])
    assert rows == [
        {
            "user_id": "owner-1",
            "profile_id": 1,
            "url": "https://p.example/one",
            "name": "Plugin 1",
            "enabled": False,
            "sort_order": 0,
        }
    ]


# Profiles


@pytest.mark.anyio("asyncio")
async def test_profile_pull_replaces_whole_set(supabase, fake_auth, profiles, backend) -> None:
    profiles.replace_profiles([Profile(profile_index=1, name="Old"), Profile(profile_index=4)])
    backend.on(
        "POST",
        "/rest/v1/rpc/sync_pull_profiles",
        httpx.Response(
            200,
            json=[
                {"profile_index": 2, "name": "Kids", "uses_primary_addons": False},
                {"profile_index": 1, "name": "Main", "avatar_color_hex": "#FF0000"},
            ],
        ),
    )
    service = ProfileSyncService(supabase, fake_auth, profiles)

    await service.pull()

    stored = profiles.get_profiles()
    assert [(profile.profile_index, profile.name) for profile in stored] == [(1, "Main"), (2, "Kids")]
    assert stored[0].is_primary is True
    assert stored[1].uses_primary_addons is False


@pytest.mark.anyio("asyncio")
async def test_profile_pull_with_empty_remote_keeps_local(supabase, fake_auth, profiles, backend) -> None:
    profiles.replace_profiles([Profile(profile_index=1, name="Main"), Profile(profile_index=3)])
    backend.on("POST", "/rest/v1/rpc/sync_pull_profiles", httpx.Response(200, json=[]))
    service = ProfileSyncService(supabase, fake_auth, profiles)

    result = await service.pull()

    assert [profile.profile_index for profile in result] == [1, 3]
    assert [profile.profile_index for profile in profiles.get_profiles()] == [1, 3]


@pytest.mark.anyio("asyncio")
async def test_profile_push_to_table_replaces_rows(supabase, fake_auth, profiles, backend) -> None:
    profiles.replace_profiles([Profile(profile_index=1), Profile(profile_index=2)])
    backend.on("DELETE", "/rest/v1/profiles", httpx.Response(204))
    backend.on("POST", "/rest/v1/profiles", httpx.Response(201, json=[]))
    service = ProfileSyncService(supabase, fake_auth, profiles)

    assert await service.push() is True

    assert backend.paths() == [
        "POST /rest/v1/rpc/sync_push_profiles",
        "DELETE /rest/v1/profiles",
        "POST /rest/v1/profiles",
    ]
    rows = _body(backend.calls("POST", "/rest/v1/profiles")[0])
    assert [(row["profile_index"], row["uses_primary_addons"]) for row in rows] == [(1, False), (2, True)]


@pytest.mark.anyio("asyncio")
async def test_profile_procedure_push_keeps_secondary_addon_sharing(
    supabase, fake_auth, profiles, backend
) -> None:
    profiles.replace_profiles([Profile(profile_index=1), Profile(profile_index=2)])
    profiles.set_active_profile(2)
    assert profiles.addon_scope() == 1
    backend.on("POST", "/rest/v1/rpc/sync_push_profiles", httpx.Response(204))
    service = ProfileSyncService(supabase, fake_auth, profiles)

    assert await service.push() is True

    pushed = _body(backend.calls("POST", "/rest/v1/rpc/sync_push_profiles")[0])["p_profiles"]
    assert [
        (row["profile_index"], row["uses_primary_addons"], row["uses_primary_plugins"])
        for row in pushed
    ] == [(1, False, False), (2, True, False)]

    backend.on("POST", "/rest/v1/rpc/sync_pull_profiles", httpx.Response(200, json=pushed))
    await service.pull()

    assert profiles.addon_scope() == 1
    assert profiles.plugin_scope() == 2


# Library


@pytest.mark.anyio("asyncio")
async def test_procedure_missing_tries_modern_table_exactly_once(library, library_store, backend) -> None:
    backend.on(
        "GET",
        "/rest/v1/library_items",
        httpx.Response(
            200,
            json=[{"content_id": "tt1", "content_type": "movie", "name": "Remote", "updated_at": NOW}],
        ),
    )

    result = await library.pull_result()

    assert isinstance(result, Ok)
    assert [item.title for item in result.value] == ["Remote"]
    assert backend.paths() == [
        "POST /rest/v1/rpc/sync_pull_library",
        "GET /rest/v1/library_items",
    ]
    assert [item.content_id for item in library_store.list_for_scope(1)] == ["tt1"]


@pytest.mark.anyio("asyncio")
async def test_library_tie_resolves_to_remote_title(library, library_store, backend) -> None:
    library_store.upsert(LibraryItem(content_id="tt1", title="Local", updated_at=NOW))
    backend.on(
        "POST",
        "/rest/v1/rpc/sync_pull_library",
        httpx.Response(200, json=[{"content_id": "tt1", "name": "Remote", "updated_at": NOW}]),
    )

    result = await library.pull()

    assert [item.title for item in result] == ["Remote"]


@pytest.mark.anyio("asyncio")
async def test_terminal_failure_keeps_local_state(library, library_store, backend) -> None:
    library_store.upsert(LibraryItem(content_id="tt1", title="Local", updated_at=NOW))
    backend.on(
        "POST",
        "/rest/v1/rpc/sync_pull_library",
        httpx.Response(500, json={"code": "XX000", "message": "internal error"}),
    )

    failed = await library.pull_result()
    fallback = await library.pull()

    assert isinstance(failed, Err)
    assert failed.kind is SyncErrorKind.FAILED
    assert [item.title for item in fallback] == ["Local"]
    assert backend.calls("GET", "/rest/v1/library_items") == []


@pytest.mark.anyio("asyncio")
async def test_library_push_sends_remote_shape(library, library_store, backend) -> None:
    library_store.upsert(
        LibraryItem(content_id="tt1", title="Film", imdb_rating=7.5, genres=["Drama"], updated_at=NOW)
    )
    backend.on("POST", "/rest/v1/rpc/sync_push_library", httpx.Response(204))

    assert await library.push() is True

    payload = _body(backend.requests[0])
    assert payload["p_profile_id"] == 1
    assert payload["p_items"] == [
        {
            "content_id": "tt1",
            "content_type": "movie",
            "name": "Film",
            "poster": None,
            "poster_shape": "POSTER",
            "background": None,
            "description": "",
            "release_info": "",
            "imdb_rating": 7.5,
            "genres": ["Drama"],
            "addon_base_url": None,
        }
    ]


# Watched items


@pytest.mark.anyio("asyncio")
async def test_watched_pull_parses_iso_and_merges(supabase, fake_auth, profiles, memory_store, backend) -> None:
    store = WatchedItemsStore(memory_store)
    store.mark(WatchedItem(content_id="tt1", season=1, episode=1, watched_at=NOW))
    backend.on(
        "POST",
        "/rest/v1/rpc/sync_pull_watched_items",
        httpx.Response(
            200,
            json=[
                {"content_id": "tt1", "season": 1, "episode": 2, "watched_at": "2024-01-01T00:00:00Z"},
                {"content_id": "tt1", "season": 1, "episode": 1, "watched_at": NOW - 1},
            ],
        ),
    )
    service = WatchedItemsSyncService(supabase, fake_auth, profiles, store)

    result = await service.pull()

    assert [(item.episode, item.watched_at) for item in result] == [
        (2, 1_704_067_200_000),
        (1, NOW),
    ]


@pytest.mark.anyio("asyncio")
async def test_watched_table_push_retries_without_conflict_target(
    supabase, fake_auth, profiles, memory_store, backend
) -> None:
    store = WatchedItemsStore(memory_store)
    store.mark(WatchedItem(content_id="tt1", watched_at=NOW))
    backend.on(
        "POST",
        "/rest/v1/watched_items",
        httpx.Response(400, json={"code": "42P10", "message": "no unique or exclusion constraint"}),
        httpx.Response(201, json=[]),
    )
    service = WatchedItemsSyncService(supabase, fake_auth, profiles, store)

    assert await service.push() is True

    calls = backend.calls("POST", "/rest/v1/watched_items")
    assert [call.url.params.get("on_conflict") for call in calls] == [
        "user_id,profile_id,content_id,season,episode",
        None,
    ]


# Watch progress


@pytest.mark.anyio("asyncio")
async def test_progress_tie_prefers_further_remote_position(progress, progress_store, backend) -> None:
    progress_store.upsert(
        WatchProgress(content_id="tt1", video_id=None, updated_at=NOW, position_ms=30000)
    )
    backend.on(
        "POST",
        "/rest/v1/rpc/sync_pull_watch_progress",
        httpx.Response(
            200,
            json=[
                {
                    "content_id": "tt1",
                    "video_id": "tt1",
                    "position": 45,
                    "duration": 5400,
                    "last_watched": NOW,
                }
            ],
        ),
    )

    result = await progress.pull()

    assert len(result) == 1
    assert result[0].position_ms == 45000
    assert result[0].duration_ms == 5_400_000


@pytest.mark.anyio("asyncio")
async def test_progress_table_read_falls_back_to_unscoped_rows(progress, backend) -> None:
    def _rows(request: httpx.Request) -> httpx.Response:
        if "profile_id" in request.url.params:
            return httpx.Response(200, json=[])
        return httpx.Response(
            200,
            json=[
                {"content_id": "tt1", "position": 60, "last_watched": NOW, "profile_id": None},
                {"content_id": "tt2", "position": 60, "last_watched": NOW, "profile_id": 2},
            ],
        )

    backend.on("GET", "/rest/v1/watch_progress", _rows)

    result = await progress.pull()

    assert [entry.content_id for entry in result] == ["tt1"]
    assert len(backend.calls("GET", "/rest/v1/watch_progress")) == 2


@pytest.mark.anyio("asyncio")
async def test_progress_reaches_legacy_table_after_modern_table_missing(
    progress, progress_store, backend
) -> None:
    backend.on(
        "GET",
        "/rest/v1/tv_watch_progress",
        httpx.Response(
            200,
            json=[
                {
                    "content_id": "tt3",
                    "video_id": "tt3:1:2",
                    "season": 1,
                    "episode": 2,
                    "position_ms": 120000,
                    "duration_ms": 2400000,
                    "updated_at": "2024-01-01T00:00:00+00:00",
                }
            ],
        ),
    )

    result = await progress.pull()

    assert backend.paths() == [
        "POST /rest/v1/rpc/sync_pull_watch_progress",
        "GET /rest/v1/watch_progress",
        "GET /rest/v1/tv_watch_progress",
    ]
    assert result[0].position_ms == 120000
    assert result[0].updated_at == 1_704_067_200_000
    assert progress_store.find_by_content_id("tt3") is not None


@pytest.mark.anyio("asyncio")
async def test_legacy_timestamp_precedence_is_configurable(
    supabase, fake_auth, profiles, progress_store, backend
) -> None:
    row = {"content_id": "tt1", "position_ms": 1000, "updated_at": NOW, "last_watched": NOW + 5000}
    backend.on("GET", "/rest/v1/tv_watch_progress", httpx.Response(200, json=[row]))

    default_service = ProgressSyncService(supabase, fake_auth, profiles, progress_store)
    assert (await default_service.pull_result()).value[0].updated_at == NOW

    progress_store.replace_for_scope(1, [])
    tuned = ProgressSyncService(
        supabase,
        fake_auth,
        profiles,
        progress_store,
        timestamp_columns={"tv_watch_progress": ("last_watched", "updated_at")},
    )
    assert (await tuned.pull_result()).value[0].updated_at == NOW + 5000


@pytest.mark.anyio("asyncio")
async def test_progress_push_skips_empty_collection(progress, backend) -> None:
    result = await progress.push_result()

    assert result == Ok(None)
    assert backend.requests == []


@pytest.mark.anyio("asyncio")
async def test_progress_push_to_legacy_table(progress, progress_store, backend) -> None:
    progress_store.upsert(
        WatchProgress(content_id="tt1", position_ms=61000, duration_ms=120000, updated_at=NOW)
    )
    backend.on("POST", "/rest/v1/tv_watch_progress", httpx.Response(201, json=[]))

    assert await progress.push() is True

    assert backend.paths() == [
        "POST /rest/v1/rpc/sync_push_watch_progress",
        "POST /rest/v1/watch_progress",
        "POST /rest/v1/tv_watch_progress",
    ]
    legacy = backend.calls("POST", "/rest/v1/tv_watch_progress")[0]
    assert legacy.url.params["on_conflict"] == "owner_id,content_id,video_id"
    assert _body(legacy) == [
        {
            "owner_id": "owner-1",
            "content_id": "tt1",
            "content_type": "movie",
            "video_id": "tt1",
            "season": None,
            "episode": None,
            "position_ms": 61000,
            "duration_ms": 120000,
            "updated_at": "2023-11-14T22:13:20+00:00",
        }
    ]


@pytest.mark.anyio("asyncio")
async def test_progress_procedure_payload(progress, progress_store, backend) -> None:
    progress_store.upsert(
        WatchProgress(
            content_id="tt9",
            content_type="series",
            video_id="tt9:2:3",
            season=2,
            episode=3,
            position_ms=61500,
            duration_ms=1_800_000,
            updated_at=NOW,
        )
    )
    backend.on("POST", "/rest/v1/rpc/sync_push_watch_progress", httpx.Response(204))

    assert await progress.push() is True

    assert _body(backend.requests[0]) == {
        "p_profile_id": 1,
        "p_entries": [
            {
                "content_id": "tt9",
                "content_type": "series",
                "video_id": "tt9:2:3",
                "season": 2,
                "episode": 3,
                "position": 61,
                "duration": 1800,
                "last_watched": NOW,
                "progress_key": "tt9:tt9:2:3:2:3",
            }
        ],
    }
