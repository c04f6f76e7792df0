"""
Tests for URL normalization, document keys and record serialization.
"""

import pytest

from readsync.types import (
    ArchiveItem,
    LocalState,
    ReadingPosition,
    SyncStateDocument,
    document_key,
    normalize_url,
    same_document,
    tombstone_keys,
)

from conftest import make_item


class TestNormalizeUrl:
    """Equivalent URLs normalize to the same string."""

    @pytest.mark.parametrize("url, expected", [
        ("https://WWW.Example.com/Path/", "https://example.com/Path"),
        ("https://example.com", "https://example.com/"),
        ("https://example.com/", "https://example.com/"),
        ("https://example.com/a?b=2&a=1", "https://example.com/a?a=1&b=2"),
        ("https://example.com/a?utm_source=x&fbclid=y&id=3", "https://example.com/a?id=3"),
        ("https://example.com/a#section-2", "https://example.com/a"),
        ("HTTP://Example.com:8080/x/", "http://example.com:8080/x"),
        ("http://[::1]:8080/", "http://[::1]:8080/"),
        ("https://[2001:DB8::1]/doc/", "https://[2001:db8::1]/doc"),
    ])
    def test_normalizes(self, url, expected):
        assert normalize_url(url) == expected

    def test_unparseable_falls_back_to_lowercase(self):
        """Anything without scheme and host is just lower-cased."""
        assert normalize_url("Not A URL") == "not a url"

    def test_idempotent(self):
        once = normalize_url("https://www.example.com/a/?utm_medium=m&z=1&a=2#top")
        assert normalize_url(once) == once


class TestDocumentIdentity:
    """same_document, document_key and tombstone_keys."""

    def test_hash_decides_when_both_have_one(self):
        a = make_item("a", file_hash="h1", url="https://example.com/a")
        b = make_item("b", file_hash="h2", url="https://example.com/a")
        assert not same_document(a, b)

    def test_url_decides_without_hashes(self):
        a = make_item("a", url="https://www.example.com/a/")
        b = make_item("b", url="https://example.com/a?utm_source=feed")
        assert same_document(a, b)

    def test_document_key_prefers_hash(self):
        item = make_item(file_hash="abc", url="https://example.com/")
        assert document_key(item) == "hash:abc"

    def test_document_key_from_url(self):
        item = make_item(url="https://www.example.com/post/")
        assert document_key(item) == "url:https://example.com/post"

    def test_document_key_for_paste(self):
        item = make_item(type="paste", title="My  Notes", created_at=42)
        assert document_key(item) == "doc:my-notes-42"

    def test_document_key_none(self):
        assert document_key(make_item()) is None

    def test_tombstone_keys(self):
        keys = tombstone_keys("web_1_x", "abc", "https://www.example.com/a/")
        assert keys == ["web_1_x", "hash:abc", "url:https://example.com/a"]

    def test_tombstone_keys_id_only(self):
        assert tombstone_keys("pdf_1_x") == ["pdf_1_x"]


class TestSerialization:
    """to_dict/from_dict behavior that other devices depend on."""

    def test_sync_document_never_carries_cached_documents(self):
        item = make_item(cached_document={"blocks": ["x"]})
        doc = SyncStateDocument(schema_version=3, updated_at=1, device_id="d",
                                archive_items=[item])
        data = doc.to_dict()
        assert "cached_document" not in data["archive_items"][0]
        assert SyncStateDocument.from_dict(data).archive_items[0].cached_document is None

    def test_sync_document_tolerates_missing_keys(self):
        doc = SyncStateDocument.from_dict({"updated_at": 5, "device_id": "d"})
        assert doc.schema_version == 1
        assert doc.archive_items == []
        assert doc.deleted_items == {}

    def test_local_state_layers_default_settings(self):
        state = LocalState.from_dict({"version": 3, "settings": {"font_size": 22}})
        assert state.settings["font_size"] == 22
        assert state.settings["theme"] == "light"

    def test_optional_fields_omitted(self):
        data = make_item().to_dict()
        assert "url" not in data
        assert "last_position" not in data
        assert ArchiveItem.from_dict(data) == make_item()

    def test_position_defaults(self):
        pos = ReadingPosition.from_dict({"block_index": 7})
        assert pos == ReadingPosition(block_index=7)
