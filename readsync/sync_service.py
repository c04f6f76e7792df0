"""
One snapshot exchange with the remote provider.

    download remote
      none            -> upload local                      (uploaded)
      same device and
      same updated_at -> nothing to do                     (no-change)
      otherwise       -> merge, apply locally, and upload
                         if the merge changed anything or
                         local was newer                   (merged / downloaded / uploaded)

Transport failures never escape ``sync_now``: they are recorded in
``last_sync_error`` and returned as a failed result.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from .clock import Clock, SystemClock
from .errors import ReadSyncError
from .providers.base import SyncProvider
from .providers.encrypted import EncryptedProvider
from .reconcile import ConflictInfo, merge_states
from .storage_facade import StorageFacade

logger = logging.getLogger(__name__)

SYNC_STARTED = "sync-started"
SYNC_COMPLETED = "sync-completed"
SYNC_FAILED = "sync-failed"
CONFLICT_DETECTED = "conflict-detected"


@dataclass
class SyncResult:
    success: bool
    timestamp: int
    action: str  # uploaded | downloaded | merged | no-change | error
    conflicts: list[ConflictInfo] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class SyncEvent:
    type: str
    timestamp: int
    data: Any = None


EventCallback = Callable[[SyncEvent], None]


class SyncService:
    """Runs sync exchanges between the storage facade and a provider."""

    def __init__(
        self,
        facade: StorageFacade,
        provider: Optional[SyncProvider] = None,
        clock: Optional[Clock] = None,
    ):
        self._facade = facade
        self._provider = provider
        self._clock = clock or SystemClock()
        self._listeners: list[EventCallback] = []
        self._in_progress = False

    @property
    def provider(self) -> Optional[SyncProvider]:
        return self._provider

    @property
    def in_progress(self) -> bool:
        return self._in_progress

    def set_provider(self, provider: Optional[SyncProvider]) -> None:
        self._provider = provider

    async def is_ready_to_sync(self) -> bool:
        """True when a provider is set, sync is enabled and the provider is ready."""
        if self._provider is None:
            return False
        state = await self._facade.get_state()
        if not state.sync_enabled:
            return False
        return await self._provider.is_ready_to_sync()

    def on_event(self, callback: EventCallback) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _emit(self, event_type: str, data: Any = None) -> None:
        event = SyncEvent(type=event_type, timestamp=self._clock.now(), data=data)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error("Sync event listener failed: %s", e, exc_info=True)

    def _failed(self, error: str) -> SyncResult:
        return SyncResult(success=False, timestamp=self._clock.now(), action="error", error=error)

    async def sync_now(self) -> SyncResult:
        """
        Run one exchange.

        Prerequisite failures (no provider, sync disabled, passphrase not
        supplied, another exchange running) return a failed result without
        emitting events.
        """
        if self._provider is None:
            return self._failed("No provider configured")
        state = await self._facade.get_state()
        if not state.sync_enabled:
            return self._failed("Sync not enabled")
        if isinstance(self._provider, EncryptedProvider) and not self._provider.has_passphrase:
            return self._failed("Passphrase not set")
        if self._in_progress:
            return self._failed("Sync already in progress")

        self._in_progress = True
        self._emit(SYNC_STARTED)
        try:
            result = await self._perform_sync()
        except ReadSyncError as e:
            message = str(e)
            logger.warning("Sync failed during %s: %s", e.operation, message)
            await self._facade.update_sync_config(last_sync_error=message)
            result = self._failed(message)
            self._emit(SYNC_FAILED, result)
            return result
        finally:
            self._in_progress = False

        await self._facade.update_sync_config(
            last_sync_time=result.timestamp, last_sync_error=None,
        )
        self._emit(SYNC_COMPLETED, result)
        logger.info("Sync completed: %s", result.action)
        return result

    async def _perform_sync(self) -> SyncResult:
        provider = self._provider
        local = await self._facade.get_state_for_sync()
        device_id = local.device_id

        remote = await provider.download_snapshot()
        if remote is None:
            await provider.upload_snapshot(local)
            return SyncResult(success=True, timestamp=self._clock.now(), action="uploaded")

        local_newer = local.updated_at > remote.updated_at
        remote_newer = remote.updated_at > local.updated_at

        if remote.device_id == device_id and local.updated_at == remote.updated_at:
            return SyncResult(success=True, timestamp=self._clock.now(), action="no-change")

        result = merge_states(local, remote, device_id, self._clock.now())
        for conflict in result.conflicts:
            self._emit(CONFLICT_DETECTED, conflict)

        await self._facade.apply_remote_state(result.merged)

        if result.has_changes or local_newer:
            await provider.upload_snapshot(result.merged)

        if result.has_changes:
            action = "merged"
        elif remote_newer:
            action = "downloaded"
        else:
            action = "uploaded"
        return SyncResult(
            success=True,
            timestamp=self._clock.now(),
            action=action,
            conflicts=result.conflicts,
        )

    async def delete_item_content(self, identifier: str) -> None:
        """
        Remove remote content stored under a tombstone identifier.

        Does nothing when no provider is set or sync is disabled. Provider
        failures propagate to the caller (normally the task queue, which
        logs them).
        """
        if self._provider is None:
            return
        state = await self._facade.get_state()
        if not state.sync_enabled:
            return
        await self._provider.delete_item_content(identifier)
        logger.debug("Deleted remote content for %s", identifier)
