"""
Runtime wiring for a readsync store.

``ReadSync`` opens the local state store named by the configuration and
builds the facade, the domain services, the sync service and the
scheduler on top of it. The CLI and any embedding application use it as
their single entry point.

Example:
    async with ReadSync() as rs:
        item = await rs.archive.add_recent(AddRecentInput(
            type="web", title="Example", source_label="example.com",
            url="https://example.com/post",
        ))
        await rs.scheduler.sync_now()
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional

from .annotations import AnnotationService
from .archive import ArchiveService
from .clock import AlarmFacility, Clock, LoopAlarms, LoopTimer, SystemClock, Timer
from .collections import CollectionService
from .config import (
    ProviderConfig,
    StoreConfig,
    get_store_path,
    load_or_create_config,
    save_config,
)
from .errors import ConfigError
from .locks import LockRegistry
from .providers import (
    EncryptedProvider,
    PayloadProvider,
    SyncProvider,
    create_provider,
    create_transport,
)
from .providers.encrypted import encode_salt, resolve_salt
from .scheduler import SchedulerSettings, SyncScheduler
from .state_store import StateStore
from .storage_facade import StorageFacade
from .sync_service import SyncService
from .tasks import TaskQueue

logger = logging.getLogger(__name__)

_FROM_CONFIG = object()

DEFAULT_POLL_INTERVAL = 1.0


class ReadSync:
    """
    A readsync store with its services.

    Construction is synchronous and touches only the filesystem; timers and
    alarms start in ``start()``, which must run inside an event loop.
    """

    def __init__(
        self,
        store_path: Optional[str | Path] = None,
        *,
        config: Optional[StoreConfig] = None,
        provider=_FROM_CONFIG,
        clock: Optional[Clock] = None,
        timer: Optional[Timer] = None,
        alarms: Optional[AlarmFacility] = None,
    ) -> None:
        """
        Args:
            store_path: Store directory. Defaults to READSYNC_STORE_PATH or ~/.readsync.
            config: Pre-loaded StoreConfig (skips reading readsync.toml).
            provider: Sync provider to use instead of the configured one
                (None disables remote sync).
            clock, timer, alarms: Time sources (tests inject fakes).
        """
        # --- Config resolution ---
        if config is not None:
            self._config = config
        else:
            path = Path(store_path).expanduser().resolve() if store_path else get_store_path()
            self._config = load_or_create_config(path)
        self._store_path = self._config.path

        # --- Persistent operations log ---
        from .logging_config import configure_ops_log
        self._ops_log_handler = configure_ops_log(self._store_path)

        self.clock = clock or SystemClock()
        self.timer = timer or LoopTimer()
        self.alarms = alarms or LoopAlarms()
        self.tasks = TaskQueue()
        self.locks = LockRegistry()

        self.store = StateStore(self._config.state_db_path)
        self.facade = StorageFacade(self.store, self.clock, locks=self.locks)

        if provider is _FROM_CONFIG:
            provider = create_provider(self._config.provider)
        self.sync = SyncService(self.facade, provider, self.clock)

        self.archive = ArchiveService(
            self.facade, self.timer, self.tasks, self.clock,
            max_items=self._config.archive.max_items,
            write_delay_ms=self._config.archive.write_delay_ms,
            remote_delete=self.sync.delete_item_content,
        )
        self.annotations = AnnotationService(self.facade, self.clock)
        self.collections = CollectionService(self.facade, self.clock)

        self.scheduler = SyncScheduler(
            self.facade, self.sync, self.clock, self.timer, self.alarms, self.tasks,
            SchedulerSettings.from_config(self._config.sync),
        )
        self._started = False

    @property
    def config(self) -> StoreConfig:
        return self._config

    @property
    def store_path(self) -> Path:
        return self._store_path

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self, startup_sync: bool = True) -> None:
        """Run migrations and start the scheduler."""
        version = await self.facade.run_migrations()
        logger.debug("State schema v%d at %s", version, self._store_path)
        await self.scheduler.initialize(startup_sync=startup_sync)
        self._started = True

    async def run(
        self,
        stop: Optional[asyncio.Event] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        """
        Keep syncing until ``stop`` is set.

        Writes made by other processes on the same store (the CLI, another
        reader) are picked up every ``poll_interval`` seconds and reach the
        scheduler like local writes.
        """
        if not self._started:
            await self.start()
        stop = stop or asyncio.Event()
        while not stop.is_set():
            await self.store.poll_changes()
            try:
                await asyncio.wait_for(stop.wait(), timeout=poll_interval)
            except asyncio.TimeoutError:
                pass

    async def aclose(self) -> None:
        """Flush pending writes, finish background work and close the store."""
        self.scheduler.destroy()
        if isinstance(self.alarms, LoopAlarms):
            self.alarms.clear_all()
        await self.archive.flush()
        await self.tasks.drain()
        provider = self.sync.provider
        if provider is not None and hasattr(provider, "aclose"):
            await provider.aclose()
        self.close()

    def close(self) -> None:
        """Close the state store and the ops log."""
        if getattr(self, "facade", None) is not None:
            self.facade.close()
        if getattr(self, "store", None) is not None:
            self.store.close()

        # Remove ops log handler to avoid handler accumulation
        if getattr(self, "_ops_log_handler", None):
            logging.getLogger("readsync").removeHandler(self._ops_log_handler)
            self._ops_log_handler.close()
            self._ops_log_handler = None

    async def __aenter__(self):
        await self.start(startup_sync=False)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()
        return False

    # -------------------------------------------------------------------------
    # Operations spanning services
    # -------------------------------------------------------------------------

    async def remove_item(self, item_id: str) -> bool:
        """Delete an archive item everywhere and drop it from collections."""
        removed = await self.archive.remove_recent(item_id)
        if removed:
            await self.collections.remove_item_everywhere(item_id)
        return removed

    async def configure_provider(
        self, name: str, *, passphrase: Optional[str] = None, **params,
    ) -> Optional[SyncProvider]:
        """
        Select a sync provider, persist it to readsync.toml and use it now.

        With a ``passphrase`` the snapshot is encrypted end to end. An
        encrypted remote that already exists must open with the same
        passphrase; its salt is reused so every device derives one key.
        The passphrase itself is never written to disk.
        """
        params = {k: v for k, v in params.items() if v is not None}
        provider = create_transport(ProviderConfig(name, params))
        if passphrase is not None:
            if not isinstance(provider, PayloadProvider):
                raise ConfigError(f"Provider {name!r} does not support encryption", "configuration")
            salt = await resolve_salt(provider, passphrase)
            params.update(encrypt=True, salt=encode_salt(salt))
            provider = EncryptedProvider(provider, salt, passphrase)

        previous = self.sync.provider
        if previous is not None and hasattr(previous, "aclose"):
            await previous.aclose()
        self._config.provider.name = name
        self._config.provider.params = params
        save_config(self._config)
        self.sync.set_provider(provider)
        await self.facade.update_sync_config(sync_provider=None if name == "none" else name)
        logger.info("Sync provider set to %s%s", name, " (encrypted)" if passphrase else "")
        return provider

    def set_passphrase(self, passphrase: str) -> None:
        """Supply the passphrase for an encrypted provider on this device."""
        provider = self.sync.provider
        if not isinstance(provider, EncryptedProvider):
            raise ConfigError("Sync provider is not encrypted", "configuration")
        provider.set_passphrase(passphrase)

    async def set_sync_enabled(self, enabled: bool) -> None:
        await self.scheduler.set_enabled(enabled)
