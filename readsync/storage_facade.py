"""
Storage facade: the single reader and writer of the local state store.

The facade is the source of truth for:
- Schema version and migrations
- The ``data_updated_at`` stamp used to order snapshots between devices
- Device identity
- Deletion tombstones

It prepares the sync snapshot (without cached document payloads) and folds
a remote snapshot back into local state.

Every write goes through ``_commit``. A write touching a sync-relevant key
is stamped with the current time, except when it comes from
``apply_remote_state``, which keeps the remote ``updated_at``. That
exception is what stops a remote apply from looking like a new local
change and triggering another sync round.
"""

import logging
import secrets
from dataclasses import replace
from typing import Any, Awaitable, Callable, Iterable, Optional

from .clock import Clock, SystemClock
from .locks import LockRegistry
from .migrations import CURRENT_VERSION, migrate, needs_migration
from .reconcile import merge_tombstones
from .state_store import StateStore
from .types import (
    SYNC_RELEVANT_KEYS,
    Annotation,
    ArchiveItem,
    Collection,
    LocalState,
    ReadingPosition,
    SyncStateDocument,
    annotations_to_dict,
    positions_to_dict,
    tombstone_keys,
)

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[dict[str, Any]], None]

_UNSET = object()


def generate_device_id() -> str:
    """Random 128-bit device identifier, hex encoded."""
    return secrets.token_hex(16)


class StorageFacade:
    """
    Typed access to the local reading state.

    Other components read snapshots returned from here and never touch the
    state store themselves.
    """

    def __init__(
        self,
        store: StateStore,
        clock: Optional[Clock] = None,
        *,
        locks: Optional[LockRegistry] = None,
    ):
        self._store = store
        self._clock = clock or SystemClock()
        self.locks = locks or LockRegistry()
        self._device_id: Optional[str] = None
        self._listeners: list[ChangeCallback] = []
        self._pending_writers: list[Callable[[], Awaitable[None]]] = []
        self._unsubscribe_store = store.subscribe(self._notify_listeners)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_state(self) -> LocalState:
        """
        Read the whole local state with defaults applied.

        An empty store is initialized on first read with a fresh device id
        and ``data_updated_at = 0`` so that on the first sync any remote
        state wins. Older schemas are migrated and written back.
        """
        data = await self._store.get(None)

        if not data:
            initial = LocalState(
                version=CURRENT_VERSION,
                data_updated_at=0,
                device_id=self._device_id or generate_device_id(),
            )
            self._device_id = initial.device_id
            # Direct write: a fresh install has no user data yet
            await self._store.set(initial.to_dict())
            logger.info("Initialized local state for device %s", initial.device_id)
            return initial

        if needs_migration(data):
            data = await self._write_migrated(data)

        state = LocalState.from_dict(data)
        if not state.device_id:
            state.device_id = await self.get_device_id()
        return state

    async def get_device_id(self) -> str:
        """This device's id, created and stored on first use."""
        if self._device_id:
            return self._device_id
        stored = (await self._store.get(["device_id"])).get("device_id")
        if stored:
            self._device_id = stored
            return stored
        self._device_id = generate_device_id()
        await self._store.set({"device_id": self._device_id})
        return self._device_id

    async def get_archive_items(self) -> list[ArchiveItem]:
        """Archive items including cached payloads."""
        data = await self._store.get(["archive_items"])
        return [ArchiveItem.from_dict(i) for i in data.get("archive_items") or []]

    async def get_state_for_sync(self) -> SyncStateDocument:
        """
        Project local state into the transmissible snapshot.

        Cached documents are stripped. ``updated_at`` is the stored data
        stamp, not the current time.
        """
        await self.flush_pending()
        state = await self.get_state()
        return SyncStateDocument(
            schema_version=CURRENT_VERSION,
            updated_at=state.data_updated_at,
            device_id=state.device_id,
            settings=state.settings,
            presets=state.presets,
            custom_themes=state.custom_themes,
            archive_items=[i.for_sync() for i in state.archive_items],
            positions=state.positions,
            deleted_items=state.deleted_items,
            annotations=state.annotations,
            collections=state.collections,
            reading_stats=state.reading_stats,
            onboarding_completed=state.onboarding_completed,
            exit_confirmation_dismissed=state.exit_confirmation_dismissed,
        )

    # -------------------------------------------------------------------------
    # Setters
    # -------------------------------------------------------------------------

    async def update_settings(self, settings: dict[str, Any]) -> None:
        """Patch reader settings."""
        state = await self.get_state()
        await self._commit({
            "settings": {**state.settings, **settings},
            "version": CURRENT_VERSION,
        })

    async def update_positions(self, positions: dict[str, ReadingPosition]) -> None:
        """Set reading positions for the given document keys."""
        state = await self.get_state()
        merged = {**state.positions, **positions}
        await self._commit({"positions": positions_to_dict(merged)})

    async def update_archive_items(self, items: Iterable[ArchiveItem]) -> None:
        """Replace the archive list."""
        await self._commit({
            "archive_items": [i.to_dict() for i in items],
            "version": CURRENT_VERSION,
        })

    async def update_archive_item_cached_document(
        self, item_id: str, cached_document: Optional[dict[str, Any]],
    ) -> bool:
        """Attach downloaded content to one item. Returns False if the item is gone."""
        async with self.locks.hold("archive"):
            await self.flush_pending()
            items = await self.get_archive_items()
            found = False
            updated = []
            for item in items:
                if item.id == item_id:
                    item = replace(item, cached_document=cached_document)
                    found = True
                updated.append(item)
            if found:
                await self.update_archive_items(updated)
            return found

    async def update_custom_themes(self, themes: list[dict[str, Any]]) -> None:
        await self._commit({"custom_themes": list(themes)})

    async def update_presets(self, presets: dict[str, dict[str, Any]]) -> None:
        await self._commit({"presets": dict(presets)})

    async def update_annotations(self, annotations: dict[str, list[Annotation]]) -> None:
        await self._commit({"annotations": annotations_to_dict(annotations)})

    async def update_collections(self, collections: Iterable[Collection]) -> None:
        await self._commit({"collections": [c.to_dict() for c in collections]})

    async def update_reading_stats(self, stats: dict[str, Any]) -> None:
        """Replace the reading statistics."""
        await self._commit({"reading_stats": dict(stats)})

    async def update_flags(
        self,
        *,
        onboarding_completed: Optional[bool] = None,
        exit_confirmation_dismissed: Optional[bool] = None,
    ) -> None:
        """Update UI flags. Flags are not sync-relevant keys."""
        values = {}
        if onboarding_completed is not None:
            values["onboarding_completed"] = onboarding_completed
        if exit_confirmation_dismissed is not None:
            values["exit_confirmation_dismissed"] = exit_confirmation_dismissed
        await self._commit(values)

    async def update_sync_config(
        self,
        *,
        sync_enabled: Any = _UNSET,
        sync_provider: Any = _UNSET,
        last_sync_time: Any = _UNSET,
        last_sync_error: Any = _UNSET,
    ) -> None:
        """Update sync configuration fields; omitted fields are left alone."""
        values = {
            "sync_enabled": sync_enabled,
            "sync_provider": sync_provider,
            "last_sync_time": last_sync_time,
            "last_sync_error": last_sync_error,
        }
        await self._commit({k: v for k, v in values.items() if v is not _UNSET})

    # -------------------------------------------------------------------------
    # Tombstones
    # -------------------------------------------------------------------------

    async def add_deleted_item_tombstone(
        self, item_id: str, file_hash: Optional[str] = None, url: Optional[str] = None,
    ) -> list[str]:
        """
        Record a deletion under every identifier the item is known by.

        Returns the identifiers written.
        """
        keys = tombstone_keys(item_id, file_hash, url)
        async with self.locks.hold("tombstones"):
            state = await self.get_state()
            now = self._clock.now()
            deleted = dict(state.deleted_items)
            for key in keys:
                deleted[key] = now
            await self._commit({"deleted_items": deleted})
        logger.debug("Tombstoned %s", ", ".join(keys))
        return keys

    async def clear_deleted_item_tombstones(self) -> None:
        async with self.locks.hold("tombstones"):
            await self._commit({"deleted_items": {}})

    # -------------------------------------------------------------------------
    # Remote application
    # -------------------------------------------------------------------------

    async def apply_remote_state(self, remote: SyncStateDocument) -> None:
        """
        Fold a remote snapshot into local state.

        Remote items get the local cached document for the same id back.
        Local items missing from the snapshot are kept: only tombstones
        delete. Settings, presets, themes, positions, annotations,
        collections, reading statistics and flags are taken from the
        snapshot as they are.
        Remote tombstones are added to the local set.

        Incoming items are not checked against tombstones here.
        """
        async with self.locks.hold("archive"):
            await self.flush_pending()
            local = await self.get_state()
            local_by_id = {i.id: i for i in local.archive_items}

            merged: list[ArchiveItem] = []
            seen: set[str] = set()
            for remote_item in remote.archive_items:
                mine = local_by_id.get(remote_item.id)
                merged.append(replace(
                    remote_item,
                    cached_document=mine.cached_document if mine else None,
                ))
                seen.add(remote_item.id)
            for item in local.archive_items:
                if item.id not in seen:
                    merged.append(item)

            await self._commit({
                "version": CURRENT_VERSION,
                "data_updated_at": remote.updated_at,
                "settings": remote.settings,
                "presets": remote.presets,
                "custom_themes": remote.custom_themes,
                "archive_items": [i.to_dict() for i in merged],
                "positions": positions_to_dict(remote.positions),
                "deleted_items": merge_tombstones(local.deleted_items, remote.deleted_items),
                "annotations": annotations_to_dict(remote.annotations),
                "collections": [c.to_dict() for c in remote.collections],
                "reading_stats": remote.reading_stats,
                "onboarding_completed": remote.onboarding_completed,
                "exit_confirmation_dismissed": remote.exit_confirmation_dismissed,
                "last_sync_time": self._clock.now(),
                "last_sync_error": None,
            }, from_remote=True)

        logger.info(
            "Applied remote state from %s (%d items, updated_at=%d)",
            remote.device_id, len(merged), remote.updated_at,
        )

    # -------------------------------------------------------------------------
    # Change notification and pending writes
    # -------------------------------------------------------------------------

    def on_change(self, callback: ChangeCallback) -> Callable[[], None]:
        """Subscribe to every committed write, local or remote-applied."""
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def lock(self, name: str):
        """Async context manager holding the named cooperative lock."""
        return self.locks.hold(name)

    def add_pending_writer(self, flush: Callable[[], Awaitable[None]]) -> None:
        """Register a coalescing writer that must be flushed before snapshots."""
        self._pending_writers.append(flush)

    async def flush_pending(self) -> None:
        for flush in list(self._pending_writers):
            await flush()

    def _notify_listeners(self, changes: dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                listener(changes)
            except Exception as e:
                logger.error("Storage change listener failed: %s", e, exc_info=True)

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    async def run_migrations(self) -> int:
        """Migrate stored state to the current schema. Returns the resulting version."""
        data = await self._store.get(None)
        if needs_migration(data):
            data = await self._write_migrated(data)
        return int(data.get("version") or CURRENT_VERSION)

    async def _write_migrated(self, data: dict[str, Any]) -> dict[str, Any]:
        """
        Migrate ``data`` and write back the keys that changed.

        A migration changes the stored shape, not the user's data, so the
        write is not stamped: ``data_updated_at`` keeps its stored value
        (0 when the old schema had none).
        """
        migrated = migrate(data)
        await self._store.set({k: v for k, v in migrated.items() if data.get(k) != v})
        return migrated

    async def clear_all(self) -> None:
        """Erase all local state. The next read re-initializes with a new device id."""
        await self._store.clear()
        self._device_id = None

    def close(self) -> None:
        self._unsubscribe_store()

    async def _commit(self, values: dict[str, Any], *, from_remote: bool = False) -> None:
        """
        The only write path into the store.

        Stamps ``data_updated_at`` with the current time whenever a
        sync-relevant key is written, unless the write applies a remote
        snapshot (which supplies its own stamp).
        """
        if not values:
            return
        values = dict(values)
        if not from_remote and SYNC_RELEVANT_KEYS.intersection(values):
            values["data_updated_at"] = self._clock.now()
        await self._store.set(values)
