"""
Tests for annotation and collection services.
"""

import asyncio
from dataclasses import replace

import pytest

from readsync.annotations import AnnotationService
from readsync.collections import CollectionService

from conftest import START_TIME

DOC = "url:https://example.com/article"


@pytest.fixture
def annotations(facade, clock):
    return AnnotationService(facade, clock)


@pytest.fixture
def collections(facade, clock):
    return CollectionService(facade, clock)


class TestAnnotations:
    """Highlights and notes per document key."""

    def test_create_highlight_and_note(self, annotations):
        highlight = annotations.create_annotation({"block": 1, "start": 0, "end": 5})
        note = annotations.create_annotation({"block": 2}, color="blue", note="remember")
        assert highlight.type == "highlight"
        assert highlight.color == "yellow"
        assert note.type == "note"
        assert highlight.id != note.id
        assert highlight.created_at == highlight.updated_at == START_TIME

    @pytest.mark.asyncio
    async def test_save_and_get(self, annotations):
        ann = annotations.create_annotation({"block": 1})
        await annotations.save_annotation(DOC, ann)
        assert await annotations.get_annotations(DOC) == [ann]
        assert await annotations.get_annotations("url:other") == []

    @pytest.mark.asyncio
    async def test_update_bumps_updated_at(self, annotations, clock):
        ann = annotations.create_annotation({"block": 1})
        await annotations.save_annotation(DOC, ann)
        clock.advance(100)
        edited = await annotations.save_annotation(DOC, replace(ann, note="edit"))
        assert edited.updated_at == START_TIME + 100
        stored = await annotations.get_annotations(DOC)
        assert len(stored) == 1
        assert stored[0].note == "edit"

    @pytest.mark.asyncio
    async def test_concurrent_saves_keep_both(self, annotations):
        first = annotations.create_annotation({"block": 1})
        second = annotations.create_annotation({"block": 2})
        await asyncio.gather(
            annotations.save_annotation(DOC, first),
            annotations.save_annotation(DOC, second),
        )
        ids = {a.id for a in await annotations.get_annotations(DOC)}
        assert ids == {first.id, second.id}

    @pytest.mark.asyncio
    async def test_delete(self, annotations):
        ann = annotations.create_annotation({"block": 1})
        await annotations.save_annotation(DOC, ann)
        assert await annotations.delete_annotation(DOC, ann.id)
        assert not await annotations.delete_annotation(DOC, ann.id)
        assert DOC not in await annotations.get_all_annotations()

    @pytest.mark.asyncio
    async def test_delete_document_annotations(self, annotations):
        for block in range(3):
            await annotations.save_annotation(DOC, annotations.create_annotation({"block": block}))
        assert await annotations.delete_document_annotations(DOC) == 3
        assert await annotations.delete_document_annotations(DOC) == 0

    @pytest.mark.asyncio
    async def test_save_stamps_state(self, annotations, facade, clock):
        await facade.get_state()
        clock.advance(50)
        await annotations.save_annotation(DOC, annotations.create_annotation({}))
        assert (await facade.get_state()).data_updated_at == START_TIME + 50


class TestCollections:
    """Collections of archive items."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, collections):
        coll = await collections.create_collection("  To read  ")
        assert coll.name == "To read"
        assert await collections.get_collection(coll.id) == coll
        assert await collections.get_collection("missing") is None

    @pytest.mark.asyncio
    async def test_empty_name_rejected(self, collections):
        with pytest.raises(ValueError):
            await collections.create_collection("   ")

    @pytest.mark.asyncio
    async def test_rename(self, collections, clock):
        coll = await collections.create_collection("A")
        clock.advance(10)
        renamed = await collections.rename_collection(coll.id, "B")
        assert renamed.name == "B"
        assert renamed.updated_at == START_TIME + 10
        assert await collections.rename_collection("missing", "C") is None

    @pytest.mark.asyncio
    async def test_membership(self, collections):
        coll = await collections.create_collection("A")
        coll = await collections.add_to_collection(coll.id, "item-1")
        again = await collections.add_to_collection(coll.id, "item-1")
        assert again.item_ids == ("item-1",)
        assert again.updated_at == coll.updated_at

        coll = await collections.remove_from_collection(coll.id, "item-1")
        assert coll.item_ids == ()

    @pytest.mark.asyncio
    async def test_remove_item_everywhere(self, collections):
        a = await collections.create_collection("A")
        b = await collections.create_collection("B")
        await collections.create_collection("C")
        await collections.add_to_collection(a.id, "x")
        await collections.add_to_collection(b.id, "x")
        await collections.add_to_collection(b.id, "y")

        assert await collections.remove_item_everywhere("x") == 2
        assert (await collections.get_collection(b.id)).item_ids == ("y",)

    @pytest.mark.asyncio
    async def test_delete(self, collections):
        coll = await collections.create_collection("A")
        assert await collections.delete_collection(coll.id)
        assert not await collections.delete_collection(coll.id)
        assert await collections.get_collections() == []

    @pytest.mark.asyncio
    async def test_concurrent_creates_keep_both(self, collections):
        await asyncio.gather(
            collections.create_collection("A"),
            collections.create_collection("B"),
        )
        assert sorted(c.name for c in await collections.get_collections()) == ["A", "B"]
