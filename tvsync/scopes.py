"""Profile list and active-scope resolution."""

from __future__ import annotations

import logging
from typing import Any, Iterable

from pydantic import ValidationError

from .models import PRIMARY_PROFILE_INDEX, Profile
from .stores import DEFAULT_SCOPE, LocalStore
from .utils import coerce_index

logger = logging.getLogger(__name__)

PROFILES_KEY = "profiles"
ACTIVE_PROFILE_ID_KEY = "activeProfileId"


def _default_profiles() -> list[Profile]:
    return [Profile(profile_index=PRIMARY_PROFILE_INDEX, is_primary=True)]


class ProfileManager:
    """Owns the local profile set and answers which scope is active."""

    def __init__(self, local_store: LocalStore) -> None:
        self._local = local_store

    def get_profiles(self) -> list[Profile]:
        stored = self._local.get(PROFILES_KEY, None)
        profiles = self._parse(stored) if isinstance(stored, list) else []
        if not profiles:
            profiles = _default_profiles()
            self._persist(profiles)
        return profiles

    def get_scopes(self) -> list[Profile]:
        """Profiles a sync service may resolve scope data for."""

        return self.get_profiles()

    def replace_profiles(self, profiles: Iterable[Profile]) -> list[Profile]:
        """Replace the whole profile set, keeping one profile per index."""

        by_index: dict[int, Profile] = {}
        for profile in profiles:
            by_index.setdefault(profile.profile_index, profile)
        ordered = sorted(by_index.values(), key=lambda profile: profile.profile_index)
        self._persist(ordered)
        return ordered

    def set_active_profile(self, profile_id: Any) -> None:
        self._local.set(ACTIVE_PROFILE_ID_KEY, str(profile_id))

    def get_active_scope_id(self) -> str:
        raw = self._local.get(ACTIVE_PROFILE_ID_KEY, None)
        if raw is None:
            return DEFAULT_SCOPE
        return str(raw).strip() or DEFAULT_SCOPE

    def resolve_scope_index(self) -> int:
        """Return the active profile index, falling back to the primary profile."""

        return coerce_index(self.get_active_scope_id(), default=PRIMARY_PROFILE_INDEX)

    def find_profile(self, profile_index: int) -> Profile | None:
        return next(
            (profile for profile in self.get_scopes() if profile.profile_index == profile_index),
            None,
        )

    def addon_scope(self) -> int:
        """Scope whose addons the active profile uses.

        Secondary profiles share the primary addon list unless they opted out.
        """

        index = self.resolve_scope_index()
        if index == PRIMARY_PROFILE_INDEX:
            return index
        profile = self.find_profile(index)
        shares = True if profile is None or profile.uses_primary_addons is None else profile.uses_primary_addons
        return PRIMARY_PROFILE_INDEX if shares else index

    def plugin_scope(self) -> int:
        """Scope whose plugins the active profile uses (own scope unless opted in)."""

        index = self.resolve_scope_index()
        if index == PRIMARY_PROFILE_INDEX:
            return index
        profile = self.find_profile(index)
        shares = bool(profile is not None and profile.uses_primary_plugins)
        return PRIMARY_PROFILE_INDEX if shares else index

    def _parse(self, rows: list[Any]) -> list[Profile]:
        profiles: list[Profile] = []
        for position, row in enumerate(rows):
            if not isinstance(row, dict):
                continue
            data = dict(row)
            data["profile_index"] = coerce_index(
                data.get("profile_index") or data.get("id"), default=position + 1
            )
            try:
                profiles.append(Profile.model_validate(data))
            except ValidationError:
                logger.warning("Dropping invalid stored profile at position %s", position)
        return profiles

    def _persist(self, profiles: Iterable[Profile]) -> None:
        self._local.set(
            PROFILES_KEY, [profile.model_dump(mode="json") for profile in profiles]
        )
