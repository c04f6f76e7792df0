"""
Highlights and notes, stored per document key.

Document keys come from ``types.document_key`` so that the same document
opened on two devices (same file hash or same normalized URL) shares its
annotations.
"""

import logging
import uuid
from dataclasses import replace
from typing import Any, Optional

from .clock import Clock, SystemClock
from .storage_facade import StorageFacade
from .types import Annotation

logger = logging.getLogger(__name__)

HIGHLIGHT_COLORS = ("yellow", "green", "blue", "pink", "purple")


class AnnotationService:
    """Annotation CRUD; every read-modify-write holds the ``annotations`` lock."""

    def __init__(self, facade: StorageFacade, clock: Optional[Clock] = None):
        self._facade = facade
        self._clock = clock or SystemClock()

    def create_annotation(
        self, anchor: dict[str, Any], color: str = HIGHLIGHT_COLORS[0], note: Optional[str] = None,
    ) -> Annotation:
        """Build a new annotation (not yet saved). A note makes it a ``note``."""
        now = self._clock.now()
        return Annotation(
            id=str(uuid.uuid4()),
            type="note" if note else "highlight",
            color=color,
            anchor=dict(anchor),
            created_at=now,
            updated_at=now,
            note=note,
        )

    async def get_annotations(self, doc_key: str) -> list[Annotation]:
        state = await self._facade.get_state()
        return list(state.annotations.get(doc_key, []))

    async def get_all_annotations(self) -> dict[str, list[Annotation]]:
        state = await self._facade.get_state()
        return state.annotations

    async def save_annotation(self, doc_key: str, annotation: Annotation) -> Annotation:
        """Insert, or update by id (bumping ``updated_at``)."""
        async with self._facade.lock("annotations"):
            all_annotations = await self.get_all_annotations()
            doc_annotations = list(all_annotations.get(doc_key, []))

            index = next(
                (i for i, a in enumerate(doc_annotations) if a.id == annotation.id), None,
            )
            if index is not None:
                annotation = replace(annotation, updated_at=self._clock.now())
                doc_annotations[index] = annotation
            else:
                doc_annotations.append(annotation)

            all_annotations[doc_key] = doc_annotations
            await self._facade.update_annotations(all_annotations)
        return annotation

    async def delete_annotation(self, doc_key: str, annotation_id: str) -> bool:
        async with self._facade.lock("annotations"):
            all_annotations = await self.get_all_annotations()
            doc_annotations = all_annotations.get(doc_key, [])
            remaining = [a for a in doc_annotations if a.id != annotation_id]
            if len(remaining) == len(doc_annotations):
                return False
            if remaining:
                all_annotations[doc_key] = remaining
            else:
                del all_annotations[doc_key]
            await self._facade.update_annotations(all_annotations)
        return True

    async def delete_document_annotations(self, doc_key: str) -> int:
        """Drop every annotation of one document. Returns how many were removed."""
        async with self._facade.lock("annotations"):
            all_annotations = await self.get_all_annotations()
            removed = all_annotations.pop(doc_key, [])
            if removed:
                await self._facade.update_annotations(all_annotations)
                logger.debug("Removed %d annotations for %s", len(removed), doc_key)
        return len(removed)
