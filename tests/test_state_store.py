"""
Tests for the SQLite key/value state store.
"""

import pytest

from readsync.errors import StorageError
from readsync.state_store import StateStore


class TestReadWrite:
    """Partial writes and keyed reads."""

    @pytest.mark.asyncio
    async def test_set_then_get(self, store):
        await store.set({"settings": {"font_size": 18}, "sync_enabled": True})
        assert await store.get(["settings"]) == {"settings": {"font_size": 18}}
        assert await store.get(None) == {"settings": {"font_size": 18}, "sync_enabled": True}

    @pytest.mark.asyncio
    async def test_missing_keys_omitted(self, store):
        await store.set({"a": 1})
        assert await store.get(["a", "b"]) == {"a": 1}
        assert await store.get([]) == {}

    @pytest.mark.asyncio
    async def test_partial_write_leaves_other_keys(self, store):
        await store.set({"a": 1, "b": 2})
        await store.set({"b": 3})
        assert await store.get(None) == {"a": 1, "b": 3}

    @pytest.mark.asyncio
    async def test_clear(self, store):
        await store.set({"a": 1})
        await store.clear()
        assert await store.get(None) == {}

    @pytest.mark.asyncio
    async def test_persists_across_connections(self, db_path):
        with StateStore(db_path) as first:
            await first.set({"device_id": "abc"})
        with StateStore(db_path) as second:
            assert await second.get(["device_id"]) == {"device_id": "abc"}

    @pytest.mark.asyncio
    async def test_unserializable_value_raises_storage_error(self, store):
        with pytest.raises(StorageError) as exc_info:
            await store.set({"bad": object()})
        assert exc_info.value.operation == "set"

    def test_unopenable_path_raises_storage_error(self, tmp_path):
        """A directory where the database file should be cannot be opened."""
        path = tmp_path / "state.db"
        path.mkdir()
        with pytest.raises(StorageError) as exc_info:
            StateStore(path)
        assert exc_info.value.operation == "open"


class TestChangeNotification:
    """Subscribers see every committed write."""

    @pytest.mark.asyncio
    async def test_subscriber_receives_changes(self, store):
        seen = []
        store.subscribe(seen.append)
        await store.set({"a": 1, "b": [2]})
        assert seen == [{"a": 1, "b": [2]}]

    @pytest.mark.asyncio
    async def test_unsubscribe(self, store):
        seen = []
        unsubscribe = store.subscribe(seen.append)
        unsubscribe()
        unsubscribe()
        await store.set({"a": 1})
        assert seen == []

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_write(self, store):
        def broken(changes):
            raise RuntimeError("listener bug")

        seen = []
        store.subscribe(broken)
        store.subscribe(seen.append)
        await store.set({"a": 1})
        assert seen == [{"a": 1}]
        assert await store.get(["a"]) == {"a": 1}

    @pytest.mark.asyncio
    async def test_poll_sees_other_connection_writes(self, db_path):
        """A write through one connection reaches subscribers of another on poll."""
        with StateStore(db_path) as writer, StateStore(db_path) as reader:
            seen = []
            reader.subscribe(seen.append)

            await writer.set({"archive_items": [], "settings": {"theme": "dark"}})
            changes = await reader.poll_changes()

            assert changes == {"archive_items": [], "settings": {"theme": "dark"}}
            assert seen == [changes]
            assert await reader.poll_changes() == {}

    @pytest.mark.asyncio
    async def test_poll_ignores_own_writes(self, store):
        await store.set({"a": 1})
        assert await store.poll_changes() == {}
