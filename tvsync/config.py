"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Iterable, Literal

from pydantic import Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .utils import canonicalize_addon_url


DEFAULT_ADDON_URLS: tuple[str, ...] = (
    "https://v3-cinemeta.strem.io",
    "https://opensubtitles-v3.strem.io",
)


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="Nuvio TV Sync", alias="APP_NAME")
    server_host: str = Field(default="127.0.0.1", alias="HOST")
    server_port: int = Field(default=3100, alias="PORT")

    supabase_url: HttpUrl | None = Field(default=None, alias="SUPABASE_URL")
    supabase_anon_key: str | None = Field(default=None, alias="SUPABASE_ANON_KEY")

    database_url: str = Field(
        default="sqlite:///./tvsync.db", alias="DATABASE_URL"
    )

    sync_interval_seconds: float = Field(
        default=120.0, alias="SYNC_INTERVAL", gt=0
    )
    addon_push_debounce_seconds: float = Field(
        default=1.0, alias="ADDON_PUSH_DEBOUNCE", ge=0
    )
    pull_max_attempts: int = Field(
        default=3, alias="PULL_MAX_ATTEMPTS", ge=1, le=10
    )
    pull_retry_delay_seconds: float = Field(
        default=3.0, alias="PULL_RETRY_DELAY", ge=0
    )
    progress_push_interval_seconds: float = Field(
        default=30.0, alias="PROGRESS_PUSH_INTERVAL", ge=0
    )

    library_cap: int = Field(default=1_000, alias="LIBRARY_CAP", ge=1)
    progress_cap: int = Field(default=500, alias="PROGRESS_CAP", ge=1)
    watched_cap: int = Field(default=5_000, alias="WATCHED_CAP", ge=1)

    default_addon_urls: tuple[str, ...] = Field(
        default=DEFAULT_ADDON_URLS, alias="DEFAULT_ADDON_URLS"
    )

    request_timeout_seconds: float = Field(
        default=20.0, alias="REQUEST_TIMEOUT", gt=0
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("default_addon_urls", mode="before")
    @classmethod
    def _parse_default_addons(cls, value: object) -> tuple[str, ...]:
        """Normalise comma separated or iterable addon URL defaults."""

        if value is None:
            return DEFAULT_ADDON_URLS
        if isinstance(value, str):
            raw_values = [part.strip() for part in value.split(",")]
        elif isinstance(value, Iterable):
            raw_values = [str(part).strip() for part in value]
        else:
            raise TypeError("DEFAULT_ADDON_URLS must be a string or iterable of strings")

        cleaned: list[str] = []
        for entry in raw_values:
            url = canonicalize_addon_url(entry)
            if url and url not in cleaned:
                cleaned.append(url)
        return tuple(cleaned)

    @property
    def supabase_base_url(self) -> str | None:
        """Return the backend URL without a trailing slash."""

        if self.supabase_url is None:
            return None
        return str(self.supabase_url).rstrip("/")

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", populate_by_name=True
    )


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
