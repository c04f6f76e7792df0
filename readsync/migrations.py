"""
Schema migrations for the stored reading state.

Migrations are pure: they take the raw stored record and return the
upgraded one. The storage facade reads, migrates and writes back.

Versions:
    1: ``recent_documents`` list (pre-archive)
    2: ``archive_items`` replaces ``recent_documents``
    3: sync fields (device id, tombstones, sync config, data timestamp)
"""

import hashlib
import logging
from typing import Any, Callable
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)

CURRENT_VERSION = 3

_SOURCE_TYPES = {
    "web": "web",
    "selection": "web",
    "pdf": "pdf",
    "docx": "docx",
    "epub": "epub",
    "mobi": "mobi",
    "paste": "paste",
}


def _source_label(doc: dict[str, Any]) -> str:
    url = doc.get("url")
    if url:
        return urlsplit(url).hostname or url
    file_name = (doc.get("cached_document") or {}).get("metadata", {}).get("file_name")
    return file_name or doc.get("source", "web")


def _legacy_id(item_type: str, doc: dict[str, Any]) -> str:
    """Stable id for a v1 record stored without one."""
    seed = doc.get("url") or doc.get("title") or repr(sorted(doc))
    digest = hashlib.sha256(str(seed).encode("utf-8")).hexdigest()[:7]
    item_id = f"{item_type}_{doc.get('timestamp', 0)}_{digest}"
    logger.warning("v1 recent document without id; assigned %s", item_id)
    return item_id


def _migrate_v1_to_v2(data: dict[str, Any]) -> dict[str, Any]:
    """Convert recent_documents into archive items."""
    recents = data.get("recent_documents") or []
    # The store cannot delete keys; leave an empty list behind
    data["recent_documents"] = []
    if data.get("archive_items"):
        return data
    items = []
    for doc in recents:
        if not isinstance(doc, dict):
            logger.warning("Skipping unreadable v1 recent document: %r", doc)
            continue
        cached = doc.get("cached_document")
        item_type = _SOURCE_TYPES.get(doc.get("source", "web"), "web")
        item = {
            "id": doc.get("id") or _legacy_id(item_type, doc),
            "type": item_type,
            "title": doc.get("title", ""),
            "source_label": _source_label(doc),
            "created_at": doc.get("timestamp", 0),
            "last_opened_at": doc.get("timestamp", 0),
        }
        if doc.get("url"):
            item["url"] = doc["url"]
        if cached:
            item["cached_document"] = cached
            file_hash = (cached.get("metadata") or {}).get("file_hash")
            if file_hash:
                item["file_hash"] = file_hash
        items.append(item)
    data["archive_items"] = items
    return data


def _migrate_v2_to_v3(data: dict[str, Any]) -> dict[str, Any]:
    """Add sync bookkeeping with defaults."""
    data.setdefault("data_updated_at", 0)
    data.setdefault("deleted_items", {})
    data.setdefault("sync_enabled", False)
    data.setdefault("sync_provider", None)
    data.setdefault("last_sync_time", None)
    data.setdefault("last_sync_error", None)
    data.setdefault("annotations", {})
    data.setdefault("collections", [])
    return data


MIGRATIONS: dict[int, Callable[[dict[str, Any]], dict[str, Any]]] = {
    2: _migrate_v1_to_v2,
    3: _migrate_v2_to_v3,
}


def needs_migration(data: dict[str, Any]) -> bool:
    return bool(data) and int(data.get("version") or 1) < CURRENT_VERSION


def migrate(data: dict[str, Any]) -> dict[str, Any]:
    """Bring a stored record up to CURRENT_VERSION.

    Records already at (or past) the current version are returned as-is.
    """
    version = int(data.get("version") or 1)
    if version >= CURRENT_VERSION:
        return data

    logger.info("Migrating state from v%d to v%d", version, CURRENT_VERSION)
    migrated = dict(data)
    for target in range(version + 1, CURRENT_VERSION + 1):
        step = MIGRATIONS.get(target)
        if step is not None:
            logger.debug("Running migration to v%d", target)
            migrated = step(migrated)
    migrated["version"] = CURRENT_VERSION
    return migrated
