"""
User-defined collections of archive items.
"""

import logging
import uuid
from dataclasses import replace
from typing import Optional

from .clock import Clock, SystemClock
from .storage_facade import StorageFacade
from .types import Collection

logger = logging.getLogger(__name__)


class CollectionService:
    """Collection CRUD and membership; writes hold the ``collections`` lock."""

    def __init__(self, facade: StorageFacade, clock: Optional[Clock] = None):
        self._facade = facade
        self._clock = clock or SystemClock()

    async def get_collections(self) -> list[Collection]:
        state = await self._facade.get_state()
        return state.collections

    async def get_collection(self, collection_id: str) -> Optional[Collection]:
        for collection in await self.get_collections():
            if collection.id == collection_id:
                return collection
        return None

    async def create_collection(self, name: str) -> Collection:
        name = name.strip()
        if not name:
            raise ValueError("Collection name must not be empty")
        async with self._facade.lock("collections"):
            collections = await self.get_collections()
            now = self._clock.now()
            collection = Collection(
                id=str(uuid.uuid4()), name=name, created_at=now, updated_at=now,
            )
            collections.append(collection)
            await self._facade.update_collections(collections)
        return collection

    async def rename_collection(self, collection_id: str, name: str) -> Optional[Collection]:
        return await self._update(collection_id, lambda c: replace(c, name=name.strip()))

    async def delete_collection(self, collection_id: str) -> bool:
        async with self._facade.lock("collections"):
            collections = await self.get_collections()
            remaining = [c for c in collections if c.id != collection_id]
            if len(remaining) == len(collections):
                return False
            await self._facade.update_collections(remaining)
        return True

    async def add_to_collection(self, collection_id: str, item_id: str) -> Optional[Collection]:
        def add(c: Collection) -> Collection:
            if item_id in c.item_ids:
                return c
            return replace(c, item_ids=c.item_ids + (item_id,))

        return await self._update(collection_id, add)

    async def remove_from_collection(self, collection_id: str, item_id: str) -> Optional[Collection]:
        return await self._update(
            collection_id,
            lambda c: replace(c, item_ids=tuple(i for i in c.item_ids if i != item_id)),
        )

    async def remove_item_everywhere(self, item_id: str) -> int:
        """Drop an item from every collection. Returns how many collections changed."""
        async with self._facade.lock("collections"):
            collections = await self.get_collections()
            now = self._clock.now()
            changed = 0
            updated = []
            for c in collections:
                if item_id in c.item_ids:
                    c = replace(
                        c, item_ids=tuple(i for i in c.item_ids if i != item_id), updated_at=now,
                    )
                    changed += 1
                updated.append(c)
            if changed:
                await self._facade.update_collections(updated)
        return changed

    async def _update(self, collection_id, change) -> Optional[Collection]:
        async with self._facade.lock("collections"):
            collections = await self.get_collections()
            for index, collection in enumerate(collections):
                if collection.id == collection_id:
                    updated = change(collection)
                    if updated is collection:
                        return collection
                    updated = replace(updated, updated_at=self._clock.now())
                    collections[index] = updated
                    await self._facade.update_collections(collections)
                    return updated
        logger.debug("Collection %s not found", collection_id)
        return None
