"""Scheduling of pulls and pushes across every sync service."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Coroutine, Iterator

from ..config import Settings
from ..result import Err, SyncErrorKind
from ..stores import AddonStore
from ..utils import now_ms
from .addons import AddonSyncService
from .auth import AuthProvider, AuthState
from .base import SyncService
from .library import LibrarySyncService
from .plugins import PluginSyncService
from .profiles import ProfileSyncService
from .progress import ProgressSyncService
from .watched import WatchedItemsSyncService

logger = logging.getLogger(__name__)


class OrchestratorState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"


@dataclass(slots=True)
class SyncServices:
    """The per-entity services in the order they are pulled and pushed."""

    profiles: ProfileSyncService
    plugins: PluginSyncService
    addons: AddonSyncService
    library: LibrarySyncService
    watched: WatchedItemsSyncService
    progress: ProgressSyncService

    def ordered(self) -> Iterator[tuple[str, SyncService[Any]]]:
        for name in ("profiles", "plugins", "addons", "library", "watched", "progress"):
            yield name, getattr(self, name)

    def get(self, name: str) -> SyncService[Any] | None:
        return dict(self.ordered()).get(name)


@dataclass(slots=True)
class SyncStatus:
    state: OrchestratorState
    in_flight: bool
    last_pull_ok: bool | None = None
    last_pull_at: int | None = None
    last_push_at: int | None = None
    last_push_results: dict[str, bool] = field(default_factory=dict)


class SyncOrchestrator:
    """Runs the startup pull, the periodic cycle and debounced addon pushes.

    ``start`` and ``stop`` are normally driven by the auth provider through
    :meth:`attach`. A periodic cycle that fires while the previous one is
    still running is skipped rather than queued.
    """

    def __init__(
        self,
        services: SyncServices,
        addon_store: AddonStore,
        *,
        interval_seconds: float = 120.0,
        debounce_seconds: float = 1.0,
        pull_max_attempts: int = 3,
        pull_retry_delay_seconds: float = 3.0,
    ) -> None:
        self._services = services
        self._addon_store = addon_store
        self._interval = interval_seconds
        self._debounce = debounce_seconds
        self._max_attempts = max(1, pull_max_attempts)
        self._retry_delay = pull_retry_delay_seconds
        self._state = OrchestratorState.STOPPED
        self._in_flight = False
        self._generation = 0
        self._timer_task: asyncio.Task[None] | None = None
        self._debounce_handle: asyncio.TimerHandle | None = None
        self._unsubscribe_addons: Callable[[], None] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._status = SyncStatus(state=self._state, in_flight=False)

    @classmethod
    def from_settings(
        cls, services: SyncServices, addon_store: AddonStore, settings: Settings
    ) -> "SyncOrchestrator":
        return cls(
            services,
            addon_store,
            interval_seconds=settings.sync_interval_seconds,
            debounce_seconds=settings.addon_push_debounce_seconds,
            pull_max_attempts=settings.pull_max_attempts,
            pull_retry_delay_seconds=settings.pull_retry_delay_seconds,
        )

    @property
    def state(self) -> OrchestratorState:
        return self._state

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def services(self) -> SyncServices:
        return self._services

    def status(self) -> SyncStatus:
        self._status.state = self._state
        self._status.in_flight = self._in_flight
        return self._status

    async def start(self) -> None:
        """Enter the running state, pull everything once and arm the timer."""

        if self._state is OrchestratorState.RUNNING:
            return
        self._state = OrchestratorState.RUNNING
        self._generation += 1
        generation = self._generation
        self._unsubscribe_addons = self._addon_store.subscribe(self._on_addons_changed)
        logger.info("Sync orchestrator started")

        await self.pull_all()

        if self._state is not OrchestratorState.RUNNING or generation != self._generation:
            return
        self._timer_task = asyncio.create_task(self._timer_loop())

    def stop(self) -> None:
        """Leave the running state; in-progress calls are left to finish."""

        if self._state is OrchestratorState.STOPPED:
            return
        self._state = OrchestratorState.STOPPED
        self._generation += 1
        if self._timer_task is not None:
            self._timer_task.cancel()
            self._timer_task = None
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None
        if self._unsubscribe_addons is not None:
            self._unsubscribe_addons()
            self._unsubscribe_addons = None
        logger.info("Sync orchestrator stopped")

    async def shutdown(self) -> None:
        """Stop and wait for every background task to wind down."""

        timer = self._timer_task
        self.stop()
        pending = [task for task in (timer, *self._tasks) if task is not None]
        for task in pending:
            task.cancel()
        for task in pending:
            with suppress(asyncio.CancelledError):
                await task

    def attach(self, auth: AuthProvider) -> Callable[[], None]:
        """Start on authentication and stop on any other auth state."""

        def _on_auth_change(state: AuthState) -> None:
            if state is AuthState.AUTHENTICATED:
                if self._state is OrchestratorState.STOPPED:
                    self._spawn(self.start(), "start")
            else:
                self.stop()

        return auth.subscribe(_on_auth_change)

    async def cycle(self) -> bool:
        """Run one pull-all/push-all pair; returns whether it ran."""

        if self._state is not OrchestratorState.RUNNING or self._in_flight:
            logger.debug("Sync cycle skipped (state=%s, in_flight=%s)", self._state, self._in_flight)
            return False
        self._in_flight = True
        try:
            await self.pull_all()
            await self.push_all()
        finally:
            self._in_flight = False
        return True

    async def pull_all(self) -> bool:
        """Pull every service in order, restarting the sequence on failure.

        Each attempt pulls every service even when one of them fails. An
        entity with no backend resource is logged and not retried; only
        terminal failures restart the sequence. Returns ``True`` once an
        attempt completes without terminal failures. Stops early without
        retrying when the session is not authenticated.
        """

        for attempt in range(1, self._max_attempts + 1):
            failures = await self._pull_sequence()
            if any(err.kind is SyncErrorKind.NOT_AUTHENTICATED for _, err in failures):
                logger.info("Pull-all skipped: not authenticated")
                self._record_pull(False)
                return False
            missing = [name for name, err in failures if err.kind is SyncErrorKind.MISSING_RESOURCE]
            if missing:
                logger.info("Pull-all: no backend resource for %s", ", ".join(missing))
            failed = [(name, err) for name, err in failures if err.kind is SyncErrorKind.FAILED]
            if not failed:
                self._record_pull(True)
                return True
            logger.warning(
                "Pull-all attempt %s/%s failed: %s",
                attempt,
                self._max_attempts,
                "; ".join(f"{name}: {err.describe()}" for name, err in failed),
            )
            if attempt < self._max_attempts:
                await asyncio.sleep(self._retry_delay)
        logger.warning("Pull-all gave up after %s attempts", self._max_attempts)
        self._record_pull(False)
        return False

    async def push_all(self) -> dict[str, bool]:
        """Push every service once, in order; failures wait for the next cycle."""

        results: dict[str, bool] = {}
        for name, service in self._services.ordered():
            results[name] = await service.push()
        self._status.last_push_results = results
        self._status.last_push_at = now_ms()
        return results

    def schedule_addon_push(self) -> None:
        """Push addons once the debounce window passes without new changes."""

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("Addon push not scheduled: no running event loop")
            return
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
        self._debounce_handle = loop.call_later(self._debounce, self._fire_addon_push)

    def _fire_addon_push(self) -> None:
        self._debounce_handle = None
        self._spawn(self._services.addons.push(), "addon push")

    def _on_addons_changed(self, reason: str, scope: str) -> None:
        if self._state is not OrchestratorState.RUNNING:
            return
        logger.debug("Addon list changed (%s, scope %s); scheduling push", reason, scope)
        self.schedule_addon_push()

    async def _pull_sequence(self) -> list[tuple[str, Err]]:
        failures: list[tuple[str, Err]] = []
        for name, service in self._services.ordered():
            try:
                result = await service.pull_result()
            except Exception as exc:  # pragma: no cover - background safety net
                logger.exception("%s pull raised", name)
                result = Err(SyncErrorKind.FAILED, exc)
            if isinstance(result, Err):
                failures.append((name, result))
                if result.kind is SyncErrorKind.NOT_AUTHENTICATED:
                    break
        return failures

    async def _timer_loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            self._spawn(self.cycle(), "periodic cycle")

    def _record_pull(self, ok: bool) -> None:
        self._status.last_pull_ok = ok
        self._status.last_pull_at = now_ms()

    def _spawn(self, coro: Coroutine[Any, Any, Any], label: str) -> asyncio.Task[Any]:
        async def _runner() -> None:
            try:
                await coro
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - background safety net
                logger.exception("Background %s failed: %s", label, exc)

        task = asyncio.create_task(_runner())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
