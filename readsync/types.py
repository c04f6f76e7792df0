"""
Data types for the reading-state sync engine.

All timestamps are integer epoch milliseconds. Every type converts to and
from plain JSON-ready dicts; ``from_dict`` tolerates missing optional keys
so that snapshots written by older devices still load.
"""

import time
from dataclasses import dataclass, field, replace
from typing import Any, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit


ARCHIVE_ITEM_TYPES = frozenset({"web", "pdf", "docx", "epub", "mobi", "paste"})

# Keys whose writes count as user data changes (bump data_updated_at)
SYNC_RELEVANT_KEYS = frozenset({
    "settings",
    "presets",
    "custom_themes",
    "archive_items",
    "positions",
    "deleted_items",
    "annotations",
    "collections",
    "reading_stats",
})

DEFAULT_SETTINGS: dict[str, Any] = {
    "font_family": "serif",
    "font_size": 18,
    "line_height": 1.6,
    "column_width": 680,
    "theme": "light",
    "text_align": "left",
    "hyphenation": False,
    "wpm": 300,
}


def default_reading_stats() -> dict[str, Any]:
    """Empty reading statistics. Dates are ISO ``YYYY-MM-DD`` strings."""
    return {
        "total_reading_time_ms": 0,
        "total_words_read": 0,
        "total_documents_completed": 0,
        "total_annotations_created": 0,
        "current_streak": 0,
        "longest_streak": 0,
        "last_reading_date": None,
        "daily_stats": {},
        "weekly_stats": {},
        "wpm_history": [],
        "hourly_activity": [],
        "personal_bests": {
            "longest_session": None,
            "most_words_in_day": None,
            "fastest_wpm": None,
        },
        "goals": {},
    }


def now_ms() -> int:
    """Current time in epoch milliseconds."""
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# Identity normalization
# ---------------------------------------------------------------------------

# Query parameters that carry analytics only, never content identity
TRACKING_PARAMS = frozenset({
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "utm_term",
    "utm_content",
    "fbclid",
    "gclid",
    "ref",
})


def normalize_url(url: str) -> str:
    """Normalize a URL so equivalent addresses compare equal.

    Lower-cases the host, strips a leading ``www.``, drops trailing slashes
    from the path (the root stays ``/``), removes tracking parameters, sorts
    the remaining query parameters and drops the fragment.

    Anything that does not parse as an absolute URL falls back to a
    lower-cased copy of the input.
    """
    try:
        parsed = urlsplit(url.strip())
        if not parsed.scheme or not parsed.netloc:
            raise ValueError(f"Not an absolute URL: {url!r}")
        host = (parsed.hostname or "").lower()
        if not host:
            raise ValueError(f"URL has no host: {url!r}")
        if host.startswith("www."):
            host = host[4:]
        netloc = f"[{host}]" if ":" in host else host
        port = parsed.port
        if port is not None:
            netloc = f"{netloc}:{port}"
        if parsed.username:
            userinfo = parsed.username
            if parsed.password:
                userinfo += f":{parsed.password}"
            netloc = f"{userinfo}@{netloc}"

        path = parsed.path.rstrip("/") or "/"

        params = [
            (k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True)
            if k not in TRACKING_PARAMS
        ]
        params.sort()
        query = urlencode(params)

        return urlunsplit((parsed.scheme.lower(), netloc, path, query, ""))
    except ValueError:
        return url.lower()


def same_document(a: "ArchiveItem", b: "ArchiveItem") -> bool:
    """True if two items describe the same document (file hash, then URL)."""
    if a.file_hash and b.file_hash:
        return a.file_hash == b.file_hash
    if a.url and b.url:
        return normalize_url(a.url) == normalize_url(b.url)
    return False


def document_key(item: "ArchiveItem") -> Optional[str]:
    """Stable key for per-document data (positions, annotations).

    Prefers the content hash, then the normalized URL. Paste items without
    either fall back to title + creation time. Returns None when no key
    can be derived.
    """
    if item.file_hash:
        return f"hash:{item.file_hash}"
    if item.url:
        return f"url:{normalize_url(item.url)}"
    if item.type == "paste" and item.created_at:
        slug = "-".join(item.title.lower().split())
        return f"doc:{slug}-{item.created_at}"
    return None


def tombstone_keys(item_id: str, file_hash: Optional[str] = None,
                   url: Optional[str] = None) -> list[str]:
    """Every identifier a deleted item may be known by on another device."""
    keys = [item_id]
    if file_hash:
        keys.append(f"hash:{file_hash}")
    if url:
        keys.append(f"url:{normalize_url(url)}")
    return keys


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

def _drop_none(d: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in d.items() if v is not None}


@dataclass(frozen=True)
class ReadingPosition:
    """Structural position inside a document."""
    block_index: int
    word_index: int = 0
    chapter_index: Optional[int] = None
    timestamp: int = 0

    def to_dict(self) -> dict[str, Any]:
        return _drop_none({
            "block_index": self.block_index,
            "word_index": self.word_index,
            "chapter_index": self.chapter_index,
            "timestamp": self.timestamp,
        })

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ReadingPosition":
        return cls(
            block_index=int(data.get("block_index", 0)),
            word_index=int(data.get("word_index", 0)),
            chapter_index=data.get("chapter_index"),
            timestamp=int(data.get("timestamp", 0)),
        )


@dataclass(frozen=True)
class ArchiveProgress:
    """Reading progress shown in the archive (percent 0-100 plus label)."""
    percent: float
    label: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"percent": self.percent, "label": self.label}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ArchiveProgress":
        return cls(percent=data.get("percent", 0), label=data.get("label", ""))


@dataclass(frozen=True)
class ArchiveItem:
    """
    One remembered document.

    ``cached_document`` holds the full extracted content and stays on this
    device; the synced form of an item is the same record with it removed
    (see ``for_sync``).
    """
    id: str
    type: str
    title: str
    source_label: str
    created_at: int
    last_opened_at: int
    author: Optional[str] = None
    url: Optional[str] = None
    file_hash: Optional[str] = None
    progress: Optional[ArchiveProgress] = None
    last_position: Optional[ReadingPosition] = None
    cached_document: Optional[dict[str, Any]] = None
    paste_content: Optional[str] = None

    def for_sync(self) -> "ArchiveItem":
        """Copy without the bulky cached payload."""
        if self.cached_document is None:
            return self
        return replace(self, cached_document=None)

    def to_dict(self) -> dict[str, Any]:
        return _drop_none({
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "source_label": self.source_label,
            "created_at": self.created_at,
            "last_opened_at": self.last_opened_at,
            "author": self.author,
            "url": self.url,
            "file_hash": self.file_hash,
            "progress": self.progress.to_dict() if self.progress else None,
            "last_position": self.last_position.to_dict() if self.last_position else None,
            "cached_document": self.cached_document,
            "paste_content": self.paste_content,
        })

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ArchiveItem":
        progress = data.get("progress")
        position = data.get("last_position")
        return cls(
            id=data["id"],
            type=data.get("type", "web"),
            title=data.get("title", ""),
            source_label=data.get("source_label", ""),
            created_at=int(data.get("created_at", 0)),
            last_opened_at=int(data.get("last_opened_at", 0)),
            author=data.get("author"),
            url=data.get("url"),
            file_hash=data.get("file_hash"),
            progress=ArchiveProgress.from_dict(progress) if progress else None,
            last_position=ReadingPosition.from_dict(position) if position else None,
            cached_document=data.get("cached_document"),
            paste_content=data.get("paste_content"),
        )


@dataclass(frozen=True)
class Annotation:
    """A highlight or note anchored inside a document."""
    id: str
    type: str
    color: str
    anchor: dict[str, Any]
    created_at: int
    updated_at: int
    note: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return _drop_none({
            "id": self.id,
            "type": self.type,
            "color": self.color,
            "anchor": self.anchor,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "note": self.note,
        })

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Annotation":
        return cls(
            id=data["id"],
            type=data.get("type", "highlight"),
            color=data.get("color", ""),
            anchor=dict(data.get("anchor") or {}),
            created_at=int(data.get("created_at", 0)),
            updated_at=int(data.get("updated_at", 0)),
            note=data.get("note"),
        )


@dataclass(frozen=True)
class Collection:
    """A user-defined group of archive items."""
    id: str
    name: str
    created_at: int
    updated_at: int
    item_ids: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "item_ids": list(self.item_ids),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Collection":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            created_at=int(data.get("created_at", 0)),
            updated_at=int(data.get("updated_at", 0)),
            item_ids=tuple(data.get("item_ids") or ()),
        )


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------

def _positions_from(data: Optional[dict]) -> dict[str, ReadingPosition]:
    return {k: ReadingPosition.from_dict(v) for k, v in (data or {}).items()}


def _annotations_from(data: Optional[dict]) -> dict[str, list[Annotation]]:
    return {
        k: [Annotation.from_dict(a) for a in v]
        for k, v in (data or {}).items()
    }


_STATS_MAPPINGS = ("daily_stats", "weekly_stats", "personal_bests", "goals")
_STATS_HISTORY = ("daily_stats", "weekly_stats")
_STATS_RECORD_LISTS = ("wpm_history", "hourly_activity")


def _reading_stats_from(data: Optional[dict]) -> dict[str, Any]:
    stats = default_reading_stats()
    if data is None:
        return stats
    if not isinstance(data, dict):
        raise TypeError(f"reading_stats must be an object, got {type(data).__name__}")
    stats.update(data)
    for key in _STATS_MAPPINGS:
        stats[key] = stats[key] or {}
        if not isinstance(stats[key], dict):
            raise TypeError(f"reading_stats.{key} must be an object")
    for key in _STATS_HISTORY:
        if not all(isinstance(r, dict) for r in stats[key].values()):
            raise TypeError(f"reading_stats.{key} entries must be objects")
    for key in _STATS_RECORD_LISTS:
        stats[key] = stats[key] or []
        if not isinstance(stats[key], list) or not all(isinstance(r, dict) for r in stats[key]):
            raise TypeError(f"reading_stats.{key} must be a list of objects")
    return stats


def annotations_to_dict(annotations: dict[str, list[Annotation]]) -> dict[str, list[dict]]:
    return {k: [a.to_dict() for a in v] for k, v in annotations.items()}


def positions_to_dict(positions: dict[str, ReadingPosition]) -> dict[str, dict]:
    return {k: p.to_dict() for k, p in positions.items()}


@dataclass
class SyncStateDocument:
    """
    The transmissible snapshot exchanged with a remote provider.

    Never carries cached document payloads.
    """
    schema_version: int
    updated_at: int
    device_id: str
    settings: dict[str, Any] = field(default_factory=dict)
    presets: dict[str, dict[str, Any]] = field(default_factory=dict)
    custom_themes: list[dict[str, Any]] = field(default_factory=list)
    archive_items: list[ArchiveItem] = field(default_factory=list)
    positions: dict[str, ReadingPosition] = field(default_factory=dict)
    deleted_items: dict[str, int] = field(default_factory=dict)
    annotations: dict[str, list[Annotation]] = field(default_factory=dict)
    collections: list[Collection] = field(default_factory=list)
    reading_stats: dict[str, Any] = field(default_factory=default_reading_stats)
    onboarding_completed: bool = False
    exit_confirmation_dismissed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "updated_at": self.updated_at,
            "device_id": self.device_id,
            "settings": self.settings,
            "presets": self.presets,
            "custom_themes": self.custom_themes,
            "archive_items": [i.for_sync().to_dict() for i in self.archive_items],
            "positions": positions_to_dict(self.positions),
            "deleted_items": self.deleted_items,
            "annotations": annotations_to_dict(self.annotations),
            "collections": [c.to_dict() for c in self.collections],
            "reading_stats": self.reading_stats,
            "onboarding_completed": self.onboarding_completed,
            "exit_confirmation_dismissed": self.exit_confirmation_dismissed,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncStateDocument":
        return cls(
            schema_version=int(data.get("schema_version", 1)),
            updated_at=int(data.get("updated_at", 0)),
            device_id=data.get("device_id", ""),
            settings=dict(data.get("settings") or {}),
            presets=dict(data.get("presets") or {}),
            custom_themes=list(data.get("custom_themes") or []),
            archive_items=[
                ArchiveItem.from_dict(i).for_sync()
                for i in data.get("archive_items") or []
            ],
            positions=_positions_from(data.get("positions")),
            deleted_items={k: int(v) for k, v in (data.get("deleted_items") or {}).items()},
            annotations=_annotations_from(data.get("annotations")),
            collections=[Collection.from_dict(c) for c in data.get("collections") or []],
            reading_stats=_reading_stats_from(data.get("reading_stats")),
            onboarding_completed=bool(data.get("onboarding_completed", False)),
            exit_confirmation_dismissed=bool(data.get("exit_confirmation_dismissed", False)),
        )


@dataclass
class LocalState:
    """The full local record held in the state store."""
    version: int
    data_updated_at: int
    device_id: str
    settings: dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_SETTINGS))
    presets: dict[str, dict[str, Any]] = field(default_factory=dict)
    custom_themes: list[dict[str, Any]] = field(default_factory=list)
    archive_items: list[ArchiveItem] = field(default_factory=list)
    positions: dict[str, ReadingPosition] = field(default_factory=dict)
    deleted_items: dict[str, int] = field(default_factory=dict)
    annotations: dict[str, list[Annotation]] = field(default_factory=dict)
    collections: list[Collection] = field(default_factory=list)
    reading_stats: dict[str, Any] = field(default_factory=default_reading_stats)
    onboarding_completed: bool = False
    exit_confirmation_dismissed: bool = False
    sync_enabled: bool = False
    sync_provider: Optional[str] = None
    last_sync_time: Optional[int] = None
    last_sync_error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "data_updated_at": self.data_updated_at,
            "device_id": self.device_id,
            "settings": self.settings,
            "presets": self.presets,
            "custom_themes": self.custom_themes,
            "archive_items": [i.to_dict() for i in self.archive_items],
            "positions": positions_to_dict(self.positions),
            "deleted_items": self.deleted_items,
            "annotations": annotations_to_dict(self.annotations),
            "collections": [c.to_dict() for c in self.collections],
            "reading_stats": self.reading_stats,
            "onboarding_completed": self.onboarding_completed,
            "exit_confirmation_dismissed": self.exit_confirmation_dismissed,
            "sync_enabled": self.sync_enabled,
            "sync_provider": self.sync_provider,
            "last_sync_time": self.last_sync_time,
            "last_sync_error": self.last_sync_error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LocalState":
        # Stored settings are layered over defaults so new settings appear
        settings = {**DEFAULT_SETTINGS, **(data.get("settings") or {})}
        return cls(
            version=int(data.get("version", 1)),
            data_updated_at=int(data.get("data_updated_at") or 0),
            device_id=data.get("device_id", ""),
            settings=settings,
            presets=dict(data.get("presets") or {}),
            custom_themes=list(data.get("custom_themes") or []),
            archive_items=[ArchiveItem.from_dict(i) for i in data.get("archive_items") or []],
            positions=_positions_from(data.get("positions")),
            deleted_items={k: int(v) for k, v in (data.get("deleted_items") or {}).items()},
            annotations=_annotations_from(data.get("annotations")),
            collections=[Collection.from_dict(c) for c in data.get("collections") or []],
            reading_stats=_reading_stats_from(data.get("reading_stats")),
            onboarding_completed=bool(data.get("onboarding_completed", False)),
            exit_confirmation_dismissed=bool(data.get("exit_confirmation_dismissed", False)),
            sync_enabled=bool(data.get("sync_enabled", False)),
            sync_provider=data.get("sync_provider"),
            last_sync_time=data.get("last_sync_time"),
            last_sync_error=data.get("last_sync_error"),
        )
