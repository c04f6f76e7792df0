"""
readsync

Local-first reading state (settings, positions, archive history,
annotations, collections) kept consistent across devices through a
best-effort remote provider, without a central coordinator.

Quick Start:
    import asyncio
    from readsync import ReadSync, AddRecentInput

    async def main():
        async with ReadSync() as rs:
            await rs.archive.add_recent(AddRecentInput(
                type="web", title="An article", source_label="example.com",
                url="https://example.com/article",
            ))

    asyncio.run(main())

CLI Usage:
    readsync add "An article" --url https://example.com/article
    readsync enable --folder ~/Dropbox/readsync
    readsync run

Default Store:
    ~/.readsync/ (state.db, readsync.toml, logs).
    Override with READSYNC_STORE_PATH or an explicit path argument.

Environment Variables:
    READSYNC_STORE_PATH  - Override default store location
    READSYNC_API_KEY     - Bearer token for the HTTP provider
    READSYNC_VERBOSE     - Set to 1 for debug logging in the CLI
"""

from .api import ReadSync
from .archive import AddRecentInput, ArchiveService, calculate_progress
from .errors import ConfigError, ReadSyncError, StorageError, SyncError
from .reconcile import dedupe, merge_items, merge_states
from .scheduler import SyncScheduler
from .storage_facade import StorageFacade
from .sync_service import SyncResult, SyncService
from .types import (
    Annotation,
    ArchiveItem,
    ArchiveProgress,
    Collection,
    LocalState,
    ReadingPosition,
    SyncStateDocument,
    normalize_url,
)

__version__ = "0.1.0"
__all__ = [
    "ReadSync",
    "AddRecentInput",
    "ArchiveService",
    "calculate_progress",
    "StorageFacade",
    "SyncService",
    "SyncResult",
    "SyncScheduler",
    "ReadSyncError",
    "StorageError",
    "SyncError",
    "ConfigError",
    "dedupe",
    "merge_items",
    "merge_states",
    "normalize_url",
    "Annotation",
    "ArchiveItem",
    "ArchiveProgress",
    "Collection",
    "LocalState",
    "ReadingPosition",
    "SyncStateDocument",
]
