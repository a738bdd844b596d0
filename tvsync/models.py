"""Pydantic models describing the synchronised entities."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .utils import coerce_positive_int, now_ms, plugin_source_id

DEFAULT_AVATAR_COLOR = "#1E88E5"
PRIMARY_PROFILE_INDEX = 1

ProgressKey = tuple[str, str, int | None, int | None]
WatchedKey = tuple[str, int | None, int | None]
LibraryKey = tuple[str, str]


class Profile(BaseModel):
    """A user profile; its index doubles as the scope identifier."""

    model_config = ConfigDict(populate_by_name=True)

    profile_index: int = Field(default=PRIMARY_PROFILE_INDEX, ge=1)
    name: str = ""
    avatar_color_hex: str = DEFAULT_AVATAR_COLOR
    is_primary: bool | None = None
    uses_primary_addons: bool | None = None
    uses_primary_plugins: bool | None = None

    @model_validator(mode="after")
    def _fill_defaults(self) -> "Profile":
        if not self.name:
            self.name = f"Profile {self.profile_index}"
        if self.is_primary is None:
            self.is_primary = self.profile_index == PRIMARY_PROFILE_INDEX
        return self

    @property
    def id(self) -> str:
        return str(self.profile_index)


class PluginSource(BaseModel):
    """A scraper plugin repository the player may execute."""

    id: str = ""
    name: str = ""
    url_template: str
    enabled: bool = True

    @field_validator("url_template")
    @classmethod
    def _strip_url(cls, value: str) -> str:
        value = str(value or "").strip()
        if not value:
            raise ValueError("plugin sources require a URL template")
        return value

    def with_defaults(self, index: int) -> "PluginSource":
        """Return a copy with a derived id and display name when missing."""

        return self.model_copy(
            update={
                "id": self.id or plugin_source_id(self.url_template, index),
                "name": self.name or f"Plugin {index + 1}",
            }
        )


class TimestampedEntity(BaseModel):
    """Base for entities merged by last-write-wins."""

    content_id: str
    content_type: str = "movie"

    @field_validator("content_id", mode="before")
    @classmethod
    def _require_content_id(cls, value: Any) -> str:
        text = str(value or "").strip()
        if not text:
            raise ValueError("content_id is required")
        return text

    @field_validator("content_type", mode="before")
    @classmethod
    def _default_content_type(cls, value: Any) -> str:
        return str(value or "").strip() or "movie"

    def key(self) -> tuple[Any, ...]:  # pragma: no cover - overridden
        raise NotImplementedError

    @property
    def timestamp(self) -> int:  # pragma: no cover - overridden
        raise NotImplementedError


class LibraryItem(TimestampedEntity):
    """A title the user saved to their library."""

    title: str = "Untitled"
    poster: str | None = None
    background: str | None = None
    description: str = ""
    release_info: str = ""
    imdb_rating: float | None = None
    genres: list[str] = Field(default_factory=list)
    addon_base_url: str | None = None
    updated_at: int = Field(default_factory=now_ms)

    def key(self) -> LibraryKey:
        return (self.content_type, self.content_id)

    @property
    def timestamp(self) -> int:
        return self.updated_at


def _episode_number(value: Any) -> int | None:
    return coerce_positive_int(value)


class WatchProgress(TimestampedEntity):
    """Resume point for a movie or a single episode."""

    video_id: str | None = None
    season: int | None = None
    episode: int | None = None
    position_ms: int = Field(default=0, ge=0)
    duration_ms: int = Field(default=0, ge=0)
    updated_at: int = Field(default_factory=now_ms)

    @field_validator("season", "episode", mode="before")
    @classmethod
    def _coerce_episode(cls, value: Any) -> int | None:
        return _episode_number(value)

    @field_validator("video_id", mode="before")
    @classmethod
    def _coerce_video_id(cls, value: Any) -> str | None:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @model_validator(mode="after")
    def _clamp_position(self) -> "WatchProgress":
        if self.duration_ms > 0 and self.position_ms > self.duration_ms:
            self.position_ms = self.duration_ms
        return self

    def key(self) -> ProgressKey:
        return (self.content_id, self.video_id or "main", self.season, self.episode)

    @property
    def timestamp(self) -> int:
        return self.updated_at

    @property
    def progress_key(self) -> str:
        """Flat key string understood by the backend upsert constraint."""

        season = "" if self.season is None else str(self.season)
        episode = "" if self.episode is None else str(self.episode)
        return f"{self.content_id}:{self.video_id or 'main'}:{season}:{episode}"

    def fraction_watched(self) -> float:
        if self.duration_ms <= 0:
            return 0.0
        return self.position_ms / self.duration_ms


class WatchedItem(TimestampedEntity):
    """A movie or episode the user finished."""

    title: str = ""
    season: int | None = None
    episode: int | None = None
    watched_at: int = Field(default_factory=now_ms)

    @field_validator("season", "episode", mode="before")
    @classmethod
    def _coerce_episode(cls, value: Any) -> int | None:
        return _episode_number(value)

    def key(self) -> WatchedKey:
        return (self.content_id, self.season, self.episode)

    @property
    def timestamp(self) -> int:
        return self.watched_at
