"""Merge routines reconciling local collections with pulled remote state.

Two policies exist. Ordered collections (addon URLs, plugin sources) are
merged as an order-preserving union where the remote order leads. Timestamped
collections (library, watch progress, watched items) are merged by composite
key with last-write-wins; the tie-break on equal timestamps is supplied by the
caller as a comparator so every entity shares one merge loop.
"""

from __future__ import annotations

from typing import Callable, Hashable, Iterable, Sequence, TypeVar

from .models import PluginSource, TimestampedEntity, WatchProgress

T = TypeVar("T")
E = TypeVar("E", bound=TimestampedEntity)

# ``comparator(existing, incoming)`` returns True when ``incoming`` replaces ``existing``.
Comparator = Callable[[E, E], bool]


def newer_or_remote_tie(existing: TimestampedEntity, incoming: TimestampedEntity) -> bool:
    """Greater timestamp wins; on an exact tie the incoming (remote) record wins."""

    return incoming.timestamp >= existing.timestamp


def newer_or_further_progress(existing: WatchProgress, incoming: WatchProgress) -> bool:
    """Greater timestamp wins; on an exact tie the larger position wins."""

    if incoming.timestamp != existing.timestamp:
        return incoming.timestamp > existing.timestamp
    return incoming.position_ms > existing.position_ms


def strictly_newer(existing: TimestampedEntity, incoming: TimestampedEntity) -> bool:
    """Greater timestamp wins; ties keep the record seen first."""

    return incoming.timestamp > existing.timestamp


def dedupe_timestamped(items: Iterable[E], comparator: Comparator = strictly_newer) -> list[E]:
    """Collapse records sharing a composite key and sort newest first."""

    by_key: dict[Hashable, E] = {}
    for item in items:
        key = item.key()
        existing = by_key.get(key)
        if existing is None or comparator(existing, item):
            by_key[key] = item
    return sorted(by_key.values(), key=lambda entry: entry.timestamp, reverse=True)


def merge_timestamped(
    local: Iterable[E],
    remote: Iterable[E],
    comparator: Comparator = newer_or_remote_tie,
) -> list[E]:
    """Union ``local`` and ``remote`` by composite key.

    Local records are deduplicated first (greater timestamp wins), then each
    remote record is offered against the current holder of its key through
    ``comparator``. The result is sorted descending by timestamp.
    """

    by_key: dict[Hashable, E] = {}
    for item in local:
        key = item.key()
        existing = by_key.get(key)
        if existing is None or strictly_newer(existing, item):
            by_key[key] = item
    for item in remote:
        key = item.key()
        existing = by_key.get(key)
        if existing is None or comparator(existing, item):
            by_key[key] = item
    return sorted(by_key.values(), key=lambda entry: entry.timestamp, reverse=True)


def merge_ordered(
    local: Sequence[T],
    remote: Sequence[T],
    key: Callable[[T], str],
    combine: Callable[[T, T], T] | None = None,
) -> list[T]:
    """Order-preserving union led by the remote order.

    An empty ``remote`` leaves ``local`` untouched. Keys present only locally
    are appended after every remote key, keeping their relative order.
    ``combine(local_item, remote_item)`` builds the merged entry for keys
    present on both sides; by default the remote entry is kept.
    """

    if not remote:
        return list(local)

    local_by_key: dict[str, T] = {}
    for item in local:
        item_key = key(item)
        if item_key and item_key not in local_by_key:
            local_by_key[item_key] = item

    merged: list[T] = []
    seen: set[str] = set()
    for item in remote:
        item_key = key(item)
        if not item_key or item_key in seen:
            continue
        seen.add(item_key)
        local_item = local_by_key.get(item_key)
        if local_item is not None and combine is not None:
            merged.append(combine(local_item, item))
        else:
            merged.append(item)

    merged.extend(
        item for item_key, item in local_by_key.items() if item_key not in seen
    )
    return merged


def merge_plugin_sources(
    local: Sequence[PluginSource], remote: Sequence[PluginSource]
) -> list[PluginSource]:
    """Merge plugin sources by URL, keeping local fields the remote row lacked."""

    def _combine(local_source: PluginSource, remote_source: PluginSource) -> PluginSource:
        provided = remote_source.model_dump(include=remote_source.model_fields_set)
        if not provided.get("id"):
            provided.pop("id", None)
        return local_source.model_copy(update=provided)

    merged = merge_ordered(local, remote, key=lambda source: source.url_template, combine=_combine)
    return [source.with_defaults(index) for index, source in enumerate(merged)]
