"""Utility helpers shared by the stores and sync services."""

from __future__ import annotations

import math
import re
import time
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping


_MANIFEST_SUFFIX = "/manifest.json"
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]", re.IGNORECASE)

# Values above this are already epoch milliseconds.
EPOCH_MS_THRESHOLD = 1_000_000_000_000


def now_ms() -> int:
    """Return the current time in epoch milliseconds."""

    return int(time.time() * 1000)


def canonicalize_addon_url(url: Any) -> str:
    """Return the addon base URL without trailing slashes or manifest suffix."""

    trimmed = str(url or "").strip().rstrip("/")
    if trimmed.endswith(_MANIFEST_SUFFIX):
        trimmed = trimmed[: -len(_MANIFEST_SUFFIX)]
    return trimmed


def unique_ordered(values: Iterable[str]) -> list[str]:
    """Drop blanks and duplicates while keeping first-seen order."""

    seen: set[str] = set()
    ordered: list[str] = []
    for value in values:
        if not value or value in seen:
            continue
        seen.add(value)
        ordered.append(value)
    return ordered


def plugin_source_id(url: str, index: int) -> str:
    """Derive a stable plugin source identifier from its URL template."""

    compact = _NON_ALNUM_RE.sub("", str(url or ""))[-18:].lower()
    return f"plugin_{index + 1}_{compact or 'source'}"


def coerce_positive_int(value: Any) -> int | None:
    """Return ``value`` as a positive integer or ``None``."""

    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number) or number <= 0:
        return None
    return int(number)


def coerce_index(value: Any, default: int = 1) -> int:
    """Return a 1-based profile index, falling back to ``default``."""

    index = coerce_positive_int(value)
    return index if index is not None else default


def coerce_duration_ms(value: Any) -> int:
    """Normalise a position/duration to milliseconds.

    Backends store either milliseconds or whole seconds; anything below a
    million is treated as seconds.
    """

    if value is None or isinstance(value, bool):
        return 0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(number) or number <= 0:
        return 0
    if number > EPOCH_MS_THRESHOLD:
        return int(number)
    if number < 1_000_000:
        return int(number * 1000)
    return int(number)


def ms_to_seconds(value_ms: Any) -> int:
    """Convert milliseconds to whole seconds, clamped at zero."""

    try:
        number = float(value_ms or 0)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(number) or number <= 0:
        return 0
    return int(number // 1000)


def coerce_timestamp_ms(value: Any) -> int | None:
    """Parse epoch seconds, epoch milliseconds or ISO-8601 strings to ms."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return int(value.timestamp() * 1000)
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            try:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                return None
            return int(parsed.timestamp() * 1000)
    if not math.isfinite(number) or number <= 0:
        return None
    if number > EPOCH_MS_THRESHOLD:
        return int(number)
    return int(number * 1000)


def first_present(row: Mapping[str, Any], *keys: str) -> Any:
    """Return the first non-null value among ``keys`` in ``row``."""

    for key in keys:
        value = row.get(key)
        if value is not None and value != "":
            return value
    return None


def iso_from_ms(value_ms: int) -> str:
    """Render epoch milliseconds as a UTC ISO-8601 string."""

    return datetime.fromtimestamp(value_ms / 1000, tz=timezone.utc).isoformat()
