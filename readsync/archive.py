"""
Archive history: the bounded list of documents the user has opened.

Writes are coalesced: a burst of ``add_recent``/``update_last_opened``
calls within the write delay produces one store write carrying the last
list. Reads see the pending list before it is written. Deletions are
never coalesced; they are written at once together with their tombstones.
"""

import logging
import secrets
import string
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Iterable, Optional

from .clock import Clock, SystemClock, Timer
from .debounce import Debouncer
from .errors import ReadSyncError
from .reconcile import dedupe
from .storage_facade import StorageFacade
from .tasks import TaskQueue
from .types import (
    ARCHIVE_ITEM_TYPES,
    ArchiveItem,
    ArchiveProgress,
    ReadingPosition,
    document_key,
    normalize_url,
)

logger = logging.getLogger(__name__)

MAX_ARCHIVE_ITEMS = 200
MAX_PASTE_CONTENT_SIZE = 100_000
WRITE_DELAY_MS = 300

SORT_FIELDS = ("last_opened_at", "created_at", "title")

_ID_ALPHABET = string.ascii_lowercase + string.digits


@dataclass
class AddRecentInput:
    """What the reader knows about a document when it is opened."""
    type: str
    title: str
    source_label: str
    author: Optional[str] = None
    url: Optional[str] = None
    file_hash: Optional[str] = None
    progress: Optional[ArchiveProgress] = None
    last_position: Optional[ReadingPosition] = None
    paste_content: Optional[str] = None
    cached_document: Optional[dict[str, Any]] = None


def generate_item_id(item_type: str, now: int) -> str:
    """``<type>_<millis>_<7 random chars>``."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(7))
    return f"{item_type}_{now}_{suffix}"


def calculate_progress(
    block_index: int,
    total_blocks: int,
    chapter_info: Optional[tuple[int, int]] = None,
) -> ArchiveProgress:
    """
    Progress for display from a block position.

    Args:
        block_index: Current block
        total_blocks: Blocks in the document (or chapter)
        chapter_info: Optional (current_chapter, total_chapters), zero-based

    Returns:
        ArchiveProgress with a rounded percent and a label like
        ``"42%"`` or ``"Ch 3 of 12 (42%)"``
    """
    percent = round(block_index / total_blocks * 100) if total_blocks > 0 else 0
    label = f"{percent}%"
    if chapter_info and chapter_info[1] > 1:
        current, total = chapter_info
        label = f"Ch {current + 1} of {total}"
        if percent > 0:
            label += f" ({percent}%)"
    return ArchiveProgress(percent=percent, label=label)


def _matches(item: ArchiveItem, file_hash: Optional[str], url: Optional[str]) -> bool:
    if file_hash and item.file_hash == file_hash:
        return True
    if url and item.url and normalize_url(item.url) == normalize_url(url):
        return True
    return False


class ArchiveService:
    """
    Archive operations over the storage facade.

    Every read-modify-write holds the ``archive`` lock. Remote content
    deletions after ``remove_recent`` are handed to the task queue.
    """

    def __init__(
        self,
        facade: StorageFacade,
        timer: Timer,
        tasks: TaskQueue,
        clock: Optional[Clock] = None,
        *,
        max_items: int = MAX_ARCHIVE_ITEMS,
        write_delay_ms: int = WRITE_DELAY_MS,
        remote_delete: Optional[Callable[[str], Awaitable[Any]]] = None,
    ):
        self._facade = facade
        self._tasks = tasks
        self._clock = clock or SystemClock()
        self._max_items = max_items
        self._remote_delete = remote_delete
        self._writer: Debouncer[list[ArchiveItem]] = Debouncer(
            timer, write_delay_ms, facade.update_archive_items, tasks,
            name="archive-write",
        )
        facade.add_pending_writer(self.flush)

    def set_remote_delete(self, remote_delete: Optional[Callable[[str], Awaitable[Any]]]) -> None:
        self._remote_delete = remote_delete

    async def _items(self) -> list[ArchiveItem]:
        pending = self._writer.pending
        if pending is not None:
            return list(pending)
        return await self._facade.get_archive_items()

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def add_recent(self, entry: AddRecentInput) -> ArchiveItem:
        """
        Add a document, or refresh it if the archive already has it.

        An existing record with the same file hash or normalized URL keeps
        its id and ``created_at`` and moves to the front. When the archive
        grows past ``max_items`` the least recently opened items are evicted.
        """
        if entry.type not in ARCHIVE_ITEM_TYPES:
            raise ValueError(f"Unknown archive item type: {entry.type!r}")

        paste_content = entry.paste_content
        if paste_content and len(paste_content) > MAX_PASTE_CONTENT_SIZE:
            logger.warning(
                "Paste content truncated from %d to %d characters",
                len(paste_content), MAX_PASTE_CONTENT_SIZE,
            )
            paste_content = paste_content[:MAX_PASTE_CONTENT_SIZE]

        async with self._facade.lock("archive"):
            items = await self._items()
            now = self._clock.now()

            existing_index = next(
                (i for i, item in enumerate(items)
                 if _matches(item, entry.file_hash, entry.url)),
                None,
            )

            if existing_index is not None:
                existing = items.pop(existing_index)
                item = replace(
                    existing,
                    type=entry.type,
                    title=entry.title,
                    source_label=entry.source_label,
                    author=entry.author or existing.author,
                    url=entry.url or existing.url,
                    file_hash=entry.file_hash or existing.file_hash,
                    progress=entry.progress or existing.progress,
                    last_position=entry.last_position or existing.last_position,
                    paste_content=paste_content or existing.paste_content,
                    cached_document=entry.cached_document or existing.cached_document,
                    last_opened_at=now,
                )
            else:
                item = ArchiveItem(
                    id=generate_item_id(entry.type, now),
                    type=entry.type,
                    title=entry.title,
                    source_label=entry.source_label,
                    created_at=now,
                    last_opened_at=now,
                    author=entry.author,
                    url=entry.url,
                    file_hash=entry.file_hash,
                    progress=entry.progress,
                    last_position=entry.last_position,
                    cached_document=entry.cached_document,
                    paste_content=paste_content,
                )

            items.insert(0, item)
            if len(items) > self._max_items:
                items.sort(key=lambda i: i.last_opened_at, reverse=True)
                evicted = items[self._max_items:]
                items = items[:self._max_items]
                logger.debug("Evicted %d archive items over capacity", len(evicted))

            self._writer.schedule(items)
        return item

    async def update_last_opened(
        self,
        item_id: str,
        position: Optional[ReadingPosition] = None,
        progress: Optional[ArchiveProgress] = None,
    ) -> bool:
        """Mark an item opened now, optionally recording position and progress.

        The position is also stored under the item's document key. Returns
        False if the item is not in the archive.
        """
        async with self._facade.lock("archive"):
            items = await self._items()
            index = next((i for i, item in enumerate(items) if item.id == item_id), None)
            if index is None:
                return False
            item = items.pop(index)
            changes: dict[str, Any] = {"last_opened_at": self._clock.now()}
            if position is not None:
                changes["last_position"] = position
            if progress is not None:
                changes["progress"] = progress
            item = replace(item, **changes)
            items.insert(0, item)
            self._writer.schedule(items)

        key = document_key(item)
        if position is not None and key:
            await self._facade.update_positions({key: position})
        return True

    async def remove_recent(self, item_id: str) -> bool:
        """
        Delete an item here and, through tombstones, everywhere.

        The shortened list is written immediately, then tombstones for every
        identifier of the item, then one remote content deletion per
        identifier is queued. Returns False if the item was not found.
        """
        async with self._facade.lock("archive"):
            items = await self._items()
            target = next((i for i in items if i.id == item_id), None)
            if target is None:
                return False
            await self._writer.flush([i for i in items if i.id != item_id])
            keys = await self._facade.add_deleted_item_tombstone(
                target.id, target.file_hash, target.url,
            )

        self._queue_remote_deletes(keys)
        logger.info("Removed archive item %s", item_id)
        return True

    async def remove_many(self, item_ids: Iterable[str]) -> list[str]:
        """Remove several items; one failure does not stop the rest.

        Returns the ids actually removed.
        """
        removed = []
        for item_id in item_ids:
            try:
                if await self.remove_recent(item_id):
                    removed.append(item_id)
            except ReadSyncError as e:
                logger.warning("Failed to remove %s: %s", item_id, e)
        return removed

    async def clear_recents(self) -> int:
        """Delete every item, with tombstones. Returns the number removed."""
        async with self._facade.lock("archive"):
            items = await self._items()
            await self._writer.flush([])
            keys: list[str] = []
            for item in items:
                keys.extend(await self._facade.add_deleted_item_tombstone(
                    item.id, item.file_hash, item.url,
                ))
        self._queue_remote_deletes(keys)
        return len(items)

    async def dedupe_archive(self) -> int:
        """Collapse duplicate records. Returns how many records were merged away."""
        async with self._facade.lock("archive"):
            items = await self._items()
            deduped = dedupe(items)
            removed = len(items) - len(deduped)
            if removed:
                await self._writer.flush(deduped)
                logger.info("Deduplicated archive: %d duplicates merged", removed)
        return removed

    async def flush(self) -> None:
        """Write the pending list now, if there is one."""
        await self._writer.flush()

    def _queue_remote_deletes(self, keys: list[str]) -> None:
        if self._remote_delete is None:
            return
        for key in keys:
            self._tasks.submit(self._remote_delete(key), name=f"delete-content:{key}")

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_recent(self, item_id: str) -> Optional[ArchiveItem]:
        for item in await self._items():
            if item.id == item_id:
                return item
        return None

    async def query_recents(
        self,
        search: Optional[str] = None,
        types: Optional[Iterable[str]] = None,
        sort_by: str = "last_opened_at",
        sort_order: str = "desc",
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[ArchiveItem]:
        """
        Filter, sort and page the archive.

        ``search`` matches title, author and source label, case-insensitively.
        """
        if sort_by not in SORT_FIELDS:
            raise ValueError(f"Cannot sort by {sort_by!r}; use one of {', '.join(SORT_FIELDS)}")

        items = await self._items()

        if types:
            wanted = set(types)
            items = [i for i in items if i.type in wanted]

        if search and search.strip():
            query = search.strip().lower()
            items = [
                i for i in items
                if query in i.title.lower()
                or query in (i.author or "").lower()
                or query in i.source_label.lower()
            ]

        def sort_key(item: ArchiveItem):
            if sort_by == "title":
                return item.title.casefold()
            return getattr(item, sort_by)

        items.sort(key=sort_key, reverse=(sort_order == "desc"))

        end = offset + limit if limit is not None else None
        return items[offset:end]
