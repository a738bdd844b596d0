"""Local entity stores persisted through the on-device key-value store.

Every store is partitioned by scope (the profile index as a string) and is
authoritative for the UI: reads and writes are synchronous and never raise.
Corrupt or unreadable entries are dropped with a warning.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Generic, Iterable, Protocol, Sequence, TypeVar

from pydantic import ValidationError

from .merge import Comparator, dedupe_timestamped, newer_or_further_progress, newer_or_remote_tie
from .models import LibraryItem, PluginSource, TimestampedEntity, WatchedItem, WatchProgress
from .utils import canonicalize_addon_url, now_ms, unique_ordered

logger = logging.getLogger(__name__)

DEFAULT_SCOPE = "1"

E = TypeVar("E", bound=TimestampedEntity)
T = TypeVar("T")

AddonListener = Callable[[str, str], None]


class LocalStore(Protocol):
    """Synchronous key-value persistence used by the stores."""

    def get(self, key: str, default: Any = None) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...

    def remove(self, key: str) -> None: ...


def normalize_scope(scope: Any) -> str:
    text = str(scope or "").strip()
    return text or DEFAULT_SCOPE


class TimestampedStore(Generic[E]):
    """Scoped, capped collection of last-write-wins records."""

    def __init__(
        self,
        local_store: LocalStore,
        storage_key: str,
        model: type[E],
        cap: int,
        comparator: Comparator = newer_or_remote_tie,
    ) -> None:
        self._local = local_store
        self._storage_key = storage_key
        self._model = model
        self._cap = cap
        self._comparator = comparator

    def _load(self) -> list[tuple[str, E]]:
        raw = self._local.get(self._storage_key, [])
        if not isinstance(raw, list):
            logger.warning("Ignoring malformed %s payload", self._storage_key)
            return []
        entries: list[tuple[str, E]] = []
        for row in raw:
            if not isinstance(row, dict):
                continue
            data = dict(row)
            scope = normalize_scope(data.pop("scope", None))
            try:
                entries.append((scope, self._model.model_validate(data)))
            except ValidationError:
                logger.warning("Dropping invalid %s entry for scope %s", self._storage_key, scope)
        return entries

    def _save(self, entries: Iterable[tuple[str, E]]) -> None:
        payload = [
            {"scope": scope, **item.model_dump(mode="json")} for scope, item in entries
        ]
        self._local.set(self._storage_key, payload)

    def _normalize(self, items: Iterable[E]) -> list[E]:
        return dedupe_timestamped(items, self._comparator)[: self._cap]

    def _write_scope(self, scope: str, items: Iterable[E]) -> None:
        others = [(entry_scope, item) for entry_scope, item in self._load() if entry_scope != scope]
        mine = [(scope, item) for item in self._normalize(items)]
        self._save(mine + others)

    def list_all(self) -> list[E]:
        return [item for _, item in self._load()]

    def list_for_scope(self, scope: Any = DEFAULT_SCOPE) -> list[E]:
        wanted = normalize_scope(scope)
        return self._normalize(item for entry_scope, item in self._load() if entry_scope == wanted)

    def upsert(self, item: E, scope: Any = DEFAULT_SCOPE) -> None:
        wanted = normalize_scope(scope)
        self._write_scope(wanted, [*self.list_for_scope(wanted), item])

    def remove(self, key: tuple[Any, ...], scope: Any = DEFAULT_SCOPE) -> bool:
        wanted = normalize_scope(scope)
        current = self.list_for_scope(wanted)
        remaining = [item for item in current if item.key() != tuple(key)]
        if len(remaining) == len(current):
            return False
        self._write_scope(wanted, remaining)
        return True

    def remove_where(self, predicate: Callable[[E], bool], scope: Any = DEFAULT_SCOPE) -> int:
        wanted = normalize_scope(scope)
        current = self.list_for_scope(wanted)
        remaining = [item for item in current if not predicate(item)]
        removed = len(current) - len(remaining)
        if removed:
            self._write_scope(wanted, remaining)
        return removed

    def replace_for_scope(self, scope: Any, items: Iterable[E]) -> None:
        self._write_scope(normalize_scope(scope), items)


class LibraryStore(TimestampedStore[LibraryItem]):
    """Saved titles."""

    def __init__(self, local_store: LocalStore, cap: int = 1_000) -> None:
        super().__init__(local_store, "savedLibraryItems", LibraryItem, cap)

    def find(self, content_id: str, scope: Any = DEFAULT_SCOPE) -> LibraryItem | None:
        return next(
            (item for item in self.list_for_scope(scope) if item.content_id == content_id),
            None,
        )

    def is_saved(self, content_id: str, scope: Any = DEFAULT_SCOPE) -> bool:
        return self.find(content_id, scope) is not None

    def save(self, item: LibraryItem, scope: Any = DEFAULT_SCOPE) -> None:
        self.upsert(item.model_copy(update={"updated_at": now_ms()}), scope)

    def toggle(self, item: LibraryItem, scope: Any = DEFAULT_SCOPE) -> bool:
        """Save ``item`` if absent, otherwise remove it. Returns the new saved state."""

        if self.is_saved(item.content_id, scope):
            self.remove_where(lambda entry: entry.content_id == item.content_id, scope)
            return False
        self.save(item, scope)
        return True


class WatchProgressStore(TimestampedStore[WatchProgress]):
    """Resume points; entries are deleted rather than zeroed once finished."""

    def __init__(self, local_store: LocalStore, cap: int = 500) -> None:
        super().__init__(
            local_store, "watchProgressItems", WatchProgress, cap, newer_or_further_progress
        )

    def find_by_content_id(self, content_id: str, scope: Any = DEFAULT_SCOPE) -> WatchProgress | None:
        return next(
            (item for item in self.list_for_scope(scope) if item.content_id == content_id),
            None,
        )

    def remove_progress(
        self, content_id: str, video_id: str | None = None, scope: Any = DEFAULT_SCOPE
    ) -> int:
        """Drop all entries of a title, or only those of one video."""

        def _matches(item: WatchProgress) -> bool:
            if item.content_id != content_id:
                return False
            return video_id is None or (item.video_id or "") == video_id

        return self.remove_where(_matches, scope)

    def recent(self, limit: int = 30, scope: Any = DEFAULT_SCOPE) -> list[WatchProgress]:
        """Newest entry per title, newest first."""

        latest: dict[str, WatchProgress] = {}
        for item in self.list_for_scope(scope):
            existing = latest.get(item.content_id)
            if existing is None or item.updated_at > existing.updated_at:
                latest[item.content_id] = item
        ordered = sorted(latest.values(), key=lambda entry: entry.updated_at, reverse=True)
        return ordered[:limit]


class WatchedItemsStore(TimestampedStore[WatchedItem]):
    """Finished movies and episodes."""

    def __init__(self, local_store: LocalStore, cap: int = 5_000) -> None:
        super().__init__(local_store, "watchedItems", WatchedItem, cap)

    def is_watched(self, content_id: str, scope: Any = DEFAULT_SCOPE) -> bool:
        return any(item.content_id == content_id for item in self.list_for_scope(scope))

    def mark(self, item: WatchedItem, scope: Any = DEFAULT_SCOPE) -> None:
        self.upsert(item, scope)

    def unmark(self, content_id: str, scope: Any = DEFAULT_SCOPE) -> int:
        return self.remove_where(lambda entry: entry.content_id == content_id, scope)


class OrderedStore(Generic[T]):
    """Scoped ordered list of unique entries."""

    def __init__(self, local_store: LocalStore, storage_key: str) -> None:
        self._local = local_store
        self._storage_key = storage_key

    def _key(self, item: T) -> str:  # pragma: no cover - overridden
        raise NotImplementedError

    def _decode(self, raw: Any) -> T | None:  # pragma: no cover - overridden
        raise NotImplementedError

    def _encode(self, item: T) -> Any:  # pragma: no cover - overridden
        raise NotImplementedError

    def _load_map(self) -> dict[str, list[Any]]:
        raw = self._local.get(self._storage_key, {})
        if not isinstance(raw, dict):
            logger.warning("Ignoring malformed %s payload", self._storage_key)
            return {}
        return {
            normalize_scope(scope): values
            for scope, values in raw.items()
            if isinstance(values, list)
        }

    def _decode_all(self, values: Sequence[Any]) -> list[T]:
        items: list[T] = []
        seen: set[str] = set()
        for raw in values:
            item = self._decode(raw)
            if item is None:
                continue
            key = self._key(item)
            if not key or key in seen:
                continue
            seen.add(key)
            items.append(item)
        return items

    def _stored(self, scope: str) -> list[T] | None:
        values = self._load_map().get(scope)
        if values is None:
            return None
        return self._decode_all(values)

    def list_all(self) -> list[T]:
        items: list[T] = []
        for values in self._load_map().values():
            items.extend(self._decode_all(values))
        return items

    def list_for_scope(self, scope: Any = DEFAULT_SCOPE) -> list[T]:
        return self._stored(normalize_scope(scope)) or []

    def replace_for_scope(self, scope: Any, items: Iterable[T]) -> None:
        mapping = self._load_map()
        mapping[normalize_scope(scope)] = [
            self._encode(item) for item in self._decode_all([self._encode(item) for item in items])
        ]
        self._local.set(self._storage_key, mapping)

    def upsert(self, item: T, scope: Any = DEFAULT_SCOPE) -> None:
        current = self.list_for_scope(scope)
        key = self._key(item)
        for index, existing in enumerate(current):
            if self._key(existing) == key:
                current[index] = item
                break
        else:
            current.append(item)
        self.replace_for_scope(scope, current)

    def remove(self, key: str, scope: Any = DEFAULT_SCOPE) -> bool:
        current = self.list_for_scope(scope)
        remaining = [item for item in current if self._key(item) != key]
        if len(remaining) == len(current):
            return False
        self.replace_for_scope(scope, remaining)
        return True


class AddonStore(OrderedStore[str]):
    """Installed addon base URLs with change notifications."""

    def __init__(self, local_store: LocalStore, default_urls: Sequence[str] = ()) -> None:
        super().__init__(local_store, "installedAddonUrls")
        self._defaults = unique_ordered(canonicalize_addon_url(url) for url in default_urls)
        self._listeners: list[AddonListener] = []

    def _key(self, item: str) -> str:
        return item

    def _decode(self, raw: Any) -> str | None:
        return canonicalize_addon_url(raw) or None

    def _encode(self, item: str) -> str:
        return item

    def installed_urls(self, scope: Any = DEFAULT_SCOPE) -> list[str]:
        """Return the scope's addon URLs, seeding defaults when none are stored."""

        wanted = normalize_scope(scope)
        stored = self._stored(wanted)
        if stored:
            return stored
        if self._defaults:
            self.replace_for_scope(wanted, self._defaults)
        return list(self._defaults)

    def list_for_scope(self, scope: Any = DEFAULT_SCOPE) -> list[str]:
        return self.installed_urls(scope)

    def add(self, url: str, scope: Any = DEFAULT_SCOPE) -> bool:
        clean = canonicalize_addon_url(url)
        if not clean:
            return False
        current = self.installed_urls(scope)
        if clean in current:
            return False
        self.replace_for_scope(scope, [*current, clean])
        self._notify("add", normalize_scope(scope))
        return True

    def remove(self, key: str, scope: Any = DEFAULT_SCOPE) -> bool:
        clean = canonicalize_addon_url(key)
        current = self.installed_urls(scope)
        remaining = [url for url in current if url != clean]
        if len(remaining) == len(current):
            return False
        self.replace_for_scope(scope, remaining)
        self._notify("remove", normalize_scope(scope))
        return True

    def set_order(self, urls: Iterable[str], scope: Any = DEFAULT_SCOPE, *, silent: bool = False) -> bool:
        """Replace the scope's list; notifies listeners unless ``silent``."""

        normalized = unique_ordered(canonicalize_addon_url(url) for url in urls)
        current = self._stored(normalize_scope(scope)) or []
        changed = current != normalized
        self.replace_for_scope(scope, normalized)
        if changed and not silent:
            self._notify("reorder", normalize_scope(scope))
        return changed

    def subscribe(self, listener: AddonListener) -> Callable[[], None]:
        """Register ``listener(reason, scope)``; returns an unsubscribe callable."""

        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self, reason: str, scope: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(reason, scope)
            except Exception:  # pragma: no cover - listener safety net
                logger.exception("Addon change listener failed")


class PluginStore(OrderedStore[PluginSource]):
    """Plugin sources keyed by URL template."""

    def __init__(self, local_store: LocalStore) -> None:
        super().__init__(local_store, "pluginSources")

    def _key(self, item: PluginSource) -> str:
        return item.url_template

    def _decode(self, raw: Any) -> PluginSource | None:
        if not isinstance(raw, dict):
            return None
        try:
            return PluginSource.model_validate(raw)
        except ValidationError:
            logger.warning("Dropping invalid plugin source entry")
            return None

    def _encode(self, item: PluginSource) -> dict[str, Any]:
        return item.model_dump(mode="json")

    def replace_for_scope(self, scope: Any, items: Iterable[PluginSource]) -> None:
        super().replace_for_scope(
            scope, [item.with_defaults(index) for index, item in enumerate(items)]
        )

    def list_sources(self, scope: Any = DEFAULT_SCOPE) -> list[PluginSource]:
        return self.list_for_scope(scope)

    def save_sources(self, sources: Iterable[PluginSource], scope: Any = DEFAULT_SCOPE) -> None:
        self.replace_for_scope(scope, sources)

    def add_source(self, source: PluginSource, scope: Any = DEFAULT_SCOPE) -> None:
        self.upsert(source, scope)

    def remove_source(self, source_id: str, scope: Any = DEFAULT_SCOPE) -> bool:
        current = self.list_for_scope(scope)
        remaining = [source for source in current if source.id != source_id]
        if len(remaining) == len(current):
            return False
        self.replace_for_scope(scope, remaining)
        return True

    def set_enabled(self, source_id: str, enabled: bool, scope: Any = DEFAULT_SCOPE) -> bool:
        current = self.list_for_scope(scope)
        updated = False
        for index, source in enumerate(current):
            if source.id == source_id:
                current[index] = source.model_copy(update={"enabled": bool(enabled)})
                updated = True
        if updated:
            self.replace_for_scope(scope, current)
        return updated


class SessionStore:
    """Persisted session credentials for the backend."""

    _ACCESS_TOKEN_KEY = "access_token"
    _REFRESH_TOKEN_KEY = "refresh_token"

    def __init__(self, local_store: LocalStore) -> None:
        self._local = local_store

    @staticmethod
    def _normalize_token(value: Any) -> str | None:
        text = str(value if value is not None else "").strip()
        if not text or text in {"null", "undefined", "None"}:
            return None
        return text

    @property
    def access_token(self) -> str | None:
        return self._normalize_token(self._local.get(self._ACCESS_TOKEN_KEY, None))

    @access_token.setter
    def access_token(self, value: str | None) -> None:
        self._write(self._ACCESS_TOKEN_KEY, value)

    @property
    def refresh_token(self) -> str | None:
        return self._normalize_token(self._local.get(self._REFRESH_TOKEN_KEY, None))

    @refresh_token.setter
    def refresh_token(self, value: str | None) -> None:
        self._write(self._REFRESH_TOKEN_KEY, value)

    def clear(self) -> None:
        self._local.remove(self._ACCESS_TOKEN_KEY)
        self._local.remove(self._REFRESH_TOKEN_KEY)

    def _write(self, key: str, value: str | None) -> None:
        normalized = self._normalize_token(value)
        if normalized is None:
            self._local.remove(key)
        else:
            self._local.set(key, normalized)
