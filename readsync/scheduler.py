"""
Sync scheduler: decides when to run a sync exchange.

Triggers:
- startup
- periodic alarm (every 15 minutes)
- local changes to sync-relevant keys, debounced (3 seconds)
- retry after a failure, with exponential backoff
- explicit user request

Automatic triggers are skipped within the minimum interval (30 seconds)
of the last successful sync; a manual request always runs. All state is
in memory and starts over with the process.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .clock import AlarmFacility, Clock, Timer
from .debounce import Debouncer
from .errors import ReadSyncError
from .storage_facade import StorageFacade
from .sync_service import SYNC_COMPLETED, SYNC_FAILED, SyncEvent, SyncResult, SyncService
from .tasks import TaskQueue
from .types import SYNC_RELEVANT_KEYS

logger = logging.getLogger(__name__)

ALARM_NAME = "sync-periodic"

REASONS = ("startup", "periodic", "state-change", "retry", "manual")


@dataclass
class SchedulerSettings:
    """Scheduler timing in milliseconds."""
    periodic_interval_ms: int = 15 * 60 * 1000
    debounce_ms: int = 3000
    min_interval_ms: int = 30 * 1000
    base_backoff_ms: int = 60 * 1000
    max_backoff_ms: int = 60 * 60 * 1000

    @classmethod
    def from_config(cls, sync) -> "SchedulerSettings":
        """From a ``config.SyncSettings`` (seconds)."""
        return cls(
            periodic_interval_ms=sync.periodic_interval * 1000,
            debounce_ms=sync.debounce * 1000,
            min_interval_ms=sync.min_interval * 1000,
            base_backoff_ms=sync.base_backoff * 1000,
            max_backoff_ms=sync.max_backoff * 1000,
        )


def compute_backoff(consecutive_errors: int, base_ms: int, max_ms: int) -> int:
    """``min(base * 2^(n-1), max)`` for the n-th consecutive failure."""
    n = max(consecutive_errors, 1)
    return min(base_ms * (2 ** (n - 1)), max_ms)


class SyncScheduler:
    """Schedules sync exchanges for one storage facade and sync service."""

    def __init__(
        self,
        facade: StorageFacade,
        service: SyncService,
        clock: Clock,
        timer: Timer,
        alarms: AlarmFacility,
        tasks: TaskQueue,
        settings: Optional[SchedulerSettings] = None,
    ):
        self._facade = facade
        self._service = service
        self._clock = clock
        self._timer = timer
        self._alarms = alarms
        self._tasks = tasks
        self.settings = settings or SchedulerSettings()

        self.last_sync_time = 0
        self.consecutive_errors = 0

        self._debouncer: Debouncer[str] = Debouncer(
            timer, self.settings.debounce_ms, self._debounced_sync, tasks,
            name="sync-debounce",
        )
        self._unsubscribe_changes: Optional[Callable[[], None]] = None
        self._unsubscribe_events: Optional[Callable[[], None]] = None
        alarms.set_handler(self.handle_alarm)

    @property
    def listening(self) -> bool:
        return self._unsubscribe_changes is not None

    async def initialize(self, startup_sync: bool = True) -> None:
        """
        Start scheduling if sync is enabled.

        Arms the periodic alarm, subscribes to local changes and, unless
        ``startup_sync`` is False, runs the startup sync.
        """
        if self._unsubscribe_events is None:
            self._unsubscribe_events = self._service.on_event(self._on_sync_event)

        state = await self._facade.get_state()
        if not state.sync_enabled:
            logger.debug("Sync disabled; scheduler idle")
            return

        self._setup_periodic_alarm()
        self._listen_for_state_changes()
        if startup_sync:
            await self.trigger_sync("startup")

    def _setup_periodic_alarm(self) -> None:
        self._alarms.clear(ALARM_NAME)
        self._alarms.create(ALARM_NAME, self.settings.periodic_interval_ms)

    def _listen_for_state_changes(self) -> None:
        if self._unsubscribe_changes is None:
            self._unsubscribe_changes = self._facade.on_change(self._on_state_change)

    def _stop_listening(self) -> None:
        self._debouncer.cancel()
        if self._unsubscribe_changes is not None:
            self._unsubscribe_changes()
            self._unsubscribe_changes = None

    # -------------------------------------------------------------------------
    # Triggers
    # -------------------------------------------------------------------------

    async def handle_alarm(self, name: str) -> None:
        if name != ALARM_NAME:
            return
        await self.trigger_sync("periodic")

    def _on_state_change(self, changes: dict[str, Any]) -> None:
        if SYNC_RELEVANT_KEYS.intersection(changes):
            self._debouncer.schedule("state-change")

    async def _debounced_sync(self, reason: str) -> None:
        await self.trigger_sync(reason)

    def _on_sync_event(self, event: SyncEvent) -> None:
        if event.type == SYNC_COMPLETED:
            self.consecutive_errors = 0
            self.last_sync_time = self._clock.now()
        elif event.type == SYNC_FAILED:
            self.consecutive_errors += 1
            self._schedule_retry_with_backoff()

    def _schedule_retry_with_backoff(self) -> None:
        delay = compute_backoff(
            self.consecutive_errors,
            self.settings.base_backoff_ms,
            self.settings.max_backoff_ms,
        )
        logger.info(
            "Sync failed %d time(s) in a row; retrying in %ds",
            self.consecutive_errors, delay // 1000,
        )
        self._timer.call_later(
            delay, lambda: self._tasks.submit(self.trigger_sync("retry"), name="sync-retry"),
        )

    async def trigger_sync(self, reason: str) -> Optional[SyncResult]:
        """
        Run a sync unless throttled or not ready.

        Returns the result, or None when the sync was skipped.
        """
        since_last = self._clock.now() - self.last_sync_time
        if reason != "manual" and since_last < self.settings.min_interval_ms:
            logger.debug("Skipping %s sync: last sync %dms ago", reason, since_last)
            return None

        try:
            if not await self._service.is_ready_to_sync():
                logger.debug("Skipping %s sync: not ready", reason)
                return None
            result = await self._service.sync_now()
        except ReadSyncError as e:
            logger.error("Sync (%s) failed: %s", reason, e)
            return None

        if not result.success:
            logger.warning("Sync (%s) failed: %s", reason, result.error)
        return result

    async def sync_now(self) -> Optional[SyncResult]:
        """User-requested sync; ignores the minimum interval."""
        self.last_sync_time = 0
        return await self.trigger_sync("manual")

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def set_enabled(self, enabled: bool) -> None:
        await self._facade.update_sync_config(sync_enabled=enabled)
        if enabled:
            self._setup_periodic_alarm()
            self._listen_for_state_changes()
        else:
            self._alarms.clear(ALARM_NAME)
            self._stop_listening()

    def destroy(self) -> None:
        """Cancel the pending debounce and drop subscriptions."""
        self._stop_listening()
        if self._unsubscribe_events is not None:
            self._unsubscribe_events()
            self._unsubscribe_events = None
