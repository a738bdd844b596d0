"""Shared pull/push skeleton for the per-entity sync services."""

from __future__ import annotations

import logging
from typing import Generic, Sequence, TypeVar

from ..merge import Comparator, merge_timestamped, newer_or_remote_tie
from ..models import TimestampedEntity
from ..result import Err, Ok, Result, SyncErrorKind
from ..scopes import ProfileManager
from ..stores import TimestampedStore
from .auth import AuthProvider
from .fallback import Candidate, SyncContext, read_through, write_through
from .supabase import SupabaseClient

logger = logging.getLogger(__name__)

C = TypeVar("C")
E = TypeVar("E", bound=TimestampedEntity)


class SyncService(Generic[C]):
    """Pull remote state into a local store and push local state back.

    Subclasses describe their backend candidates and how local and remote
    collections combine. ``pull_result``/``push_result`` expose the typed
    outcome; ``pull``/``push`` never raise and fall back to the local
    collection (or ``False``) on failure.
    """

    label = "sync"

    def __init__(
        self,
        client: SupabaseClient,
        auth: AuthProvider,
        profiles: ProfileManager,
    ) -> None:
        self._client = client
        self._auth = auth
        self._profiles = profiles

    @property
    def candidates(self) -> Sequence[Candidate[C, C]]:  # pragma: no cover - overridden
        raise NotImplementedError

    def resolve_scope(self) -> int:
        return self._profiles.resolve_scope_index()

    def read_local(self, scope: int) -> C:  # pragma: no cover - overridden
        raise NotImplementedError

    def write_local(self, scope: int, items: C) -> None:  # pragma: no cover - overridden
        raise NotImplementedError

    def merge(self, local: C, remote: C) -> C:  # pragma: no cover - overridden
        raise NotImplementedError

    def empty(self) -> C:  # pragma: no cover - overridden
        raise NotImplementedError

    def should_push(self, items: C) -> bool:
        return True

    def _context(self, scope: int) -> SyncContext:
        return SyncContext(client=self._client, auth=self._auth, scope=scope)

    async def pull_result(self) -> Result[C]:
        if not self._auth.is_authenticated:
            logger.info("%s pull skipped: not authenticated", self.label)
            return Err(SyncErrorKind.NOT_AUTHENTICATED)
        scope = self.resolve_scope()
        logger.info("%s pull start scope=%s", self.label, scope)
        remote = await read_through(self.candidates, self._context(scope), self.label)
        if isinstance(remote, Err):
            return remote
        # Local state is read after the round-trip, never before it.
        local = self.read_local(scope)
        merged = self.merge(local, remote.value)
        self.write_local(scope, merged)
        return Ok(merged)

    async def push_result(self) -> Result[None]:
        if not self._auth.is_authenticated:
            logger.info("%s push skipped: not authenticated", self.label)
            return Err(SyncErrorKind.NOT_AUTHENTICATED)
        scope = self.resolve_scope()
        items = self.read_local(scope)
        if not self.should_push(items):
            return Ok(None)
        logger.info("%s push start scope=%s", self.label, scope)
        return await write_through(self.candidates, self._context(scope), items, self.label)

    async def pull(self) -> C:
        """Merge remote state into the local store and return the result."""

        try:
            result = await self.pull_result()
        except Exception:  # pragma: no cover - boundary safety net
            logger.exception("%s pull failed unexpectedly", self.label)
            return self._last_known_good()
        if isinstance(result, Ok):
            return result.value
        if result.kind is SyncErrorKind.NOT_AUTHENTICATED:
            return self.empty()
        logger.warning("%s pull failed: %s", self.label, result.describe())
        return self._last_known_good()

    async def push(self) -> bool:
        """Upload local state; returns whether a backend accepted it."""

        try:
            result = await self.push_result()
        except Exception:  # pragma: no cover - boundary safety net
            logger.exception("%s push failed unexpectedly", self.label)
            return False
        if isinstance(result, Err) and result.kind is not SyncErrorKind.NOT_AUTHENTICATED:
            logger.warning("%s push failed: %s", self.label, result.describe())
        return isinstance(result, Ok)

    def _last_known_good(self) -> C:
        try:
            return self.read_local(self.resolve_scope())
        except Exception:  # pragma: no cover - store contract forbids raising
            logger.exception("%s local read failed", self.label)
            return self.empty()


class TimestampedSyncService(SyncService[list[E]]):
    """Sync service backed by a scoped last-write-wins store."""

    comparator: Comparator = staticmethod(newer_or_remote_tie)

    def __init__(
        self,
        client: SupabaseClient,
        auth: AuthProvider,
        profiles: ProfileManager,
        store: TimestampedStore[E],
    ) -> None:
        super().__init__(client, auth, profiles)
        self._store = store

    def read_local(self, scope: int) -> list[E]:
        return self._store.list_for_scope(scope)

    def write_local(self, scope: int, items: list[E]) -> None:
        self._store.replace_for_scope(scope, items)

    def merge(self, local: list[E], remote: list[E]) -> list[E]:
        if not remote:
            return list(local)
        return merge_timestamped(local, remote, self.comparator)

    def empty(self) -> list[E]:
        return []
