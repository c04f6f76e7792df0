"""
Reconciliation of independently edited copies of the reading state.

Pure functions, no I/O. Every function here is total: any combination of
present or missing optional fields has a defined result, so the sync path
never fails inside reconciliation.

Policy:
- Reading progress: furthest position wins (chapter, then block).
- Item metadata: the copy opened most recently wins.
- Duplicates: same file hash first, then same normalized URL.
- Deletions: tombstones keyed by id, ``hash:<file_hash>`` and
  ``url:<normalized url>``.
- Reading statistics: per counter maximum, history merged by date.
"""

import logging
import math
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Optional

from .types import (
    Annotation,
    ArchiveItem,
    ArchiveProgress,
    Collection,
    ReadingPosition,
    SyncStateDocument,
    normalize_url,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Positions and progress
# ---------------------------------------------------------------------------

def is_position_further(a: Optional[ReadingPosition],
                        b: Optional[ReadingPosition]) -> bool:
    """True if ``a`` is further into the document than ``b``.

    Compares chapter index first (missing counts as 0), then block index.
    A missing position is never further; any position beats a missing one.
    """
    if a is None:
        return False
    if b is None:
        return True
    a_chapter = a.chapter_index or 0
    b_chapter = b.chapter_index or 0
    if a_chapter != b_chapter:
        return a_chapter > b_chapter
    return a.block_index > b.block_index


def further_position(a: Optional[ReadingPosition],
                     b: Optional[ReadingPosition]) -> Optional[ReadingPosition]:
    """The further of two positions; equal positions fall back to the newer timestamp."""
    if a is None:
        return b
    if b is None:
        return a
    if is_position_further(a, b):
        return a
    if is_position_further(b, a):
        return b
    return a if a.timestamp >= b.timestamp else b


def further_progress(a: Optional[ArchiveProgress],
                     b: Optional[ArchiveProgress]) -> Optional[ArchiveProgress]:
    """The higher of two progress values (ties keep ``a``)."""
    if a is None:
        return b
    if b is None:
        return a
    return a if (a.percent or 0) >= (b.percent or 0) else b


def _percent(item: ArchiveItem) -> float:
    return (item.progress.percent or 0) if item.progress else 0


# ---------------------------------------------------------------------------
# Pairwise merge
# ---------------------------------------------------------------------------

def merge_items(a: ArchiveItem, b: ArchiveItem) -> ArchiveItem:
    """
    Merge two records of the same document.

    The item further along (by position, else by progress percent, ties to
    ``a``) is primary and keeps its id. Metadata comes from whichever was
    opened most recently. ``created_at`` is the earlier of the two. Optional
    payloads take the first non-empty value, primary first.

    ``merge_items(x, x)`` equals ``x``.
    """
    a_further = is_position_further(a.last_position, b.last_position)
    b_further = is_position_further(b.last_position, a.last_position)

    if a_further or (not b_further and _percent(a) >= _percent(b)):
        primary, secondary = a, b
    else:
        primary, secondary = b, a

    newer = primary if primary.last_opened_at >= secondary.last_opened_at else secondary

    return replace(
        newer,
        id=primary.id,
        created_at=min(primary.created_at, secondary.created_at),
        last_position=further_position(primary.last_position, secondary.last_position),
        progress=further_progress(primary.progress, secondary.progress),
        file_hash=primary.file_hash or secondary.file_hash,
        url=primary.url or secondary.url,
        paste_content=primary.paste_content or secondary.paste_content,
        cached_document=primary.cached_document or secondary.cached_document,
    )


def _fold(items: list[ArchiveItem]) -> ArchiveItem:
    merged = items[0]
    for item in items[1:]:
        merged = merge_items(merged, item)
    return merged


# ---------------------------------------------------------------------------
# Deduplication
# ---------------------------------------------------------------------------

def dedupe(items: Iterable[ArchiveItem]) -> list[ArchiveItem]:
    """
    Collapse records that describe the same document.

    Pass 1 groups by file hash and folds each group left to right. Every
    item carrying a file hash is settled here and does not take part in
    pass 2, because a hash names one exact revision while a URL may serve
    several. Pass 2 groups the remaining items by normalized URL. Items
    matched by neither pass through. Records left sharing an id are merged.

    Returns the result sorted by ``last_opened_at``, newest first.
    Applying ``dedupe`` to its own output returns the same list.
    """
    items = list(items)

    by_hash: dict[str, list[ArchiveItem]] = {}
    by_url: dict[str, list[ArchiveItem]] = {}
    rest: list[ArchiveItem] = []

    for item in items:
        if item.file_hash:
            by_hash.setdefault(item.file_hash, []).append(item)
        elif item.url:
            by_url.setdefault(normalize_url(item.url), []).append(item)
        else:
            rest.append(item)

    resolved: list[ArchiveItem] = []
    for file_hash, group in by_hash.items():
        if len(group) > 1:
            logger.debug("Dedup: merging %d items with hash %s", len(group), file_hash[:8])
        resolved.append(_fold(group))
    for url, group in by_url.items():
        if len(group) > 1:
            logger.debug("Dedup: merging %d items with url %s", len(group), url[:60])
        resolved.append(_fold(group))
    resolved.extend(rest)

    by_id: dict[str, ArchiveItem] = {}
    for item in resolved:
        existing = by_id.get(item.id)
        by_id[item.id] = merge_items(existing, item) if existing else item

    return sorted(by_id.values(), key=lambda i: i.last_opened_at, reverse=True)


# ---------------------------------------------------------------------------
# Tombstones
# ---------------------------------------------------------------------------

def merge_tombstones(local: dict[str, int], remote: dict[str, int]) -> dict[str, int]:
    """Union of two tombstone sets, keeping the newest deletion time per key."""
    merged = dict(local)
    for key, ts in remote.items():
        if key not in merged or ts > merged[key]:
            merged[key] = ts
    return merged


def is_item_deleted(item: ArchiveItem, tombstones: dict[str, int]) -> bool:
    """True if any identifier of ``item`` carries a tombstone."""
    if item.id in tombstones:
        return True
    if item.file_hash and f"hash:{item.file_hash}" in tombstones:
        return True
    if item.url and f"url:{normalize_url(item.url)}" in tombstones:
        return True
    return False


def apply_tombstones(items: Iterable[ArchiveItem],
                     tombstones: dict[str, int]) -> list[ArchiveItem]:
    """Drop every item recognized as deleted."""
    return [i for i in items if not is_item_deleted(i, tombstones)]


# ---------------------------------------------------------------------------
# Whole-state merge
# ---------------------------------------------------------------------------

@dataclass
class ConflictInfo:
    """A disagreement between local and remote that was resolved automatically."""
    type: str  # settings | archive-item | position
    resolution: str  # local-wins | remote-wins | merged
    item_id: Optional[str] = None
    local_value: Any = None
    remote_value: Any = None


@dataclass
class MergeResult:
    merged: SyncStateDocument
    conflicts: list[ConflictInfo] = field(default_factory=list)
    has_changes: bool = False


def merge_positions(
    local: dict[str, ReadingPosition],
    remote: dict[str, ReadingPosition],
) -> tuple[dict[str, ReadingPosition], list[ConflictInfo]]:
    """Merge positions per document key; the further one wins."""
    conflicts: list[ConflictInfo] = []
    merged = dict(local)
    for key, remote_pos in remote.items():
        local_pos = merged.get(key)
        if local_pos is None:
            merged[key] = remote_pos
            continue
        if is_position_further(remote_pos, local_pos):
            merged[key] = remote_pos
            conflicts.append(ConflictInfo(
                type="position", resolution="remote-wins", item_id=key,
                local_value=local_pos, remote_value=remote_pos,
            ))
        elif (not is_position_further(local_pos, remote_pos)
              and remote_pos.timestamp > local_pos.timestamp):
            merged[key] = remote_pos
    return merged, conflicts


def merge_custom_themes(local: list[dict], remote: list[dict]) -> list[dict]:
    """Union by theme name; remote wins on a name clash."""
    by_name: dict[str, dict] = {}
    for theme in local:
        by_name[theme.get("name", "")] = theme
    for theme in remote:
        by_name[theme.get("name", "")] = theme
    return list(by_name.values())


def merge_annotations(
    local: dict[str, list[Annotation]],
    remote: dict[str, list[Annotation]],
    remote_is_newer: bool,
) -> dict[str, list[Annotation]]:
    """Merge per document, then per annotation id by ``updated_at``."""
    result: dict[str, list[Annotation]] = {}
    for key in list(local) + [k for k in remote if k not in local]:
        by_id = {a.id: a for a in local.get(key, [])}
        for ann in remote.get(key, []):
            existing = by_id.get(ann.id)
            if (existing is None or ann.updated_at > existing.updated_at
                    or (ann.updated_at == existing.updated_at and remote_is_newer)):
                by_id[ann.id] = ann
        if by_id:
            result[key] = sorted(by_id.values(), key=lambda a: a.created_at)
    return result


def merge_collections(
    local: list[Collection],
    remote: list[Collection],
    remote_is_newer: bool,
) -> list[Collection]:
    """Merge collections by id; newer ``updated_at`` wins."""
    by_id = {c.id: c for c in local}
    for coll in remote:
        existing = by_id.get(coll.id)
        if (existing is None or coll.updated_at > existing.updated_at
                or (coll.updated_at == existing.updated_at and remote_is_newer)):
            by_id[coll.id] = coll
    return list(by_id.values())


# ---------------------------------------------------------------------------
# Reading statistics
# ---------------------------------------------------------------------------

# Both copies may already count the same sessions, so counters take the
# maximum rather than the sum.
_TOTAL_COUNTERS = (
    "total_reading_time_ms",
    "total_words_read",
    "total_documents_completed",
    "total_annotations_created",
    "current_streak",
    "longest_streak",
)
_DAY_COUNTERS = ("reading_time_ms", "words_read", "annotations_created")
_WEEK_COUNTERS = (
    "reading_time_ms",
    "words_read",
    "documents_completed",
    "annotations_created",
    "session_count",
    "active_days",
)
_PERSONAL_BESTS = (
    ("longest_session", "duration_ms"),
    ("most_words_in_day", "words"),
    ("fastest_wpm", "wpm"),
)


def _max_counters(a: dict, b: dict, names: Iterable[str]) -> dict[str, Any]:
    return {name: max(a.get(name) or 0, b.get(name) or 0) for name in names}


def _merge_day(date: str, a: Optional[dict], b: Optional[dict]) -> dict:
    if a is None or b is None:
        return dict(a or b)
    return {
        "date": date,
        **_max_counters(a, b, _DAY_COUNTERS),
        "documents_opened": sorted(set(a.get("documents_opened") or [])
                                   | set(b.get("documents_opened") or [])),
        "documents_completed": sorted(set(a.get("documents_completed") or [])
                                      | set(b.get("documents_completed") or [])),
    }


def _merge_week(week_start: str, a: Optional[dict], b: Optional[dict]) -> dict:
    if a is None or b is None:
        return dict(a or b)
    avg = ((a.get("avg_wpm") or 0) + (b.get("avg_wpm") or 0)) / 2
    return {
        "week_start": week_start,
        **_max_counters(a, b, _WEEK_COUNTERS),
        "avg_wpm": int(math.floor(avg + 0.5)),
    }


def _merge_by_key(a: dict[str, dict], b: dict[str, dict], merge_one) -> dict[str, dict]:
    return {key: merge_one(key, a.get(key), b.get(key)) for key in sorted(set(a) | set(b))}


def _best_record(a: Optional[dict], b: Optional[dict], measure: str) -> Optional[dict]:
    if not a:
        return b
    if not b:
        return a
    return a if (a.get(measure) or 0) >= (b.get(measure) or 0) else b


def merge_reading_stats(local: dict[str, Any], remote: dict[str, Any]) -> dict[str, Any]:
    """
    Merge two copies of the reading statistics.

    Counters, streaks and same-day or same-week history take the maximum
    of both copies; the documents opened and completed on a day are
    unioned. WPM history keeps, per date, the entry with more sessions.
    Personal bests keep the better record. Goals come from the copy that
    read most recently.
    """
    daily = _merge_by_key(local.get("daily_stats") or {}, remote.get("daily_stats") or {},
                          _merge_day)
    weekly = _merge_by_key(local.get("weekly_stats") or {}, remote.get("weekly_stats") or {},
                           _merge_week)

    wpm_by_date: dict[str, dict] = {}
    for entry in list(local.get("wpm_history") or []) + list(remote.get("wpm_history") or []):
        date = entry.get("date", "")
        existing = wpm_by_date.get(date)
        sessions = entry.get("session_count") or 0
        if existing is None or sessions > (existing.get("session_count") or 0):
            wpm_by_date[date] = entry
    wpm_history = [wpm_by_date[d] for d in sorted(wpm_by_date)]

    local_hours = {h.get("hour"): h for h in local.get("hourly_activity") or []}
    remote_hours = {h.get("hour"): h for h in remote.get("hourly_activity") or []}
    hourly = []
    for hour in range(24):
        counters = _max_counters(local_hours.get(hour, {}), remote_hours.get(hour, {}),
                                 ("total_reading_time_ms", "session_count"))
        if counters["total_reading_time_ms"] > 0 or counters["session_count"] > 0:
            hourly.append({"hour": hour, **counters})

    local_bests = local.get("personal_bests") or {}
    remote_bests = remote.get("personal_bests") or {}
    bests = {
        name: _best_record(local_bests.get(name), remote_bests.get(name), measure)
        for name, measure in _PERSONAL_BESTS
    }

    local_last = local.get("last_reading_date") or ""
    remote_last = remote.get("last_reading_date") or ""

    return {
        **_max_counters(local, remote, _TOTAL_COUNTERS),
        "last_reading_date": max(local_last, remote_last) or None,
        "daily_stats": daily,
        "weekly_stats": weekly,
        "wpm_history": wpm_history,
        "hourly_activity": hourly,
        "personal_bests": bests,
        "goals": dict((local if local_last >= remote_last else remote).get("goals") or {}),
    }


def _same_metadata(a: ArchiveItem, b: ArchiveItem) -> bool:
    return (a.title == b.title and a.author == b.author
            and a.type == b.type and a.source_label == b.source_label)


def _archive_conflicts(local: list[ArchiveItem],
                       remote: list[ArchiveItem]) -> list[ConflictInfo]:
    local_by_id = {i.id: i for i in local}
    conflicts = []
    for item in remote:
        mine = local_by_id.get(item.id)
        if mine is not None and not _same_metadata(mine, item):
            resolution = "remote-wins" if item.last_opened_at > mine.last_opened_at else "local-wins"
            conflicts.append(ConflictInfo(
                type="archive-item", resolution=resolution, item_id=item.id,
                local_value=mine, remote_value=item,
            ))
    return conflicts


def merge_states(
    local: SyncStateDocument,
    remote: SyncStateDocument,
    device_id: str,
    now: int,
) -> MergeResult:
    """
    Merge a local and a remote snapshot into one document for both sides.

    Settings, presets-on-clash and flags follow the snapshot with the newer
    ``updated_at``. Tombstones are unioned and applied to the deduplicated
    archive. The merged document is stamped with ``now`` and this device.
    """
    remote_is_newer = remote.updated_at > local.updated_at
    winner = remote if remote_is_newer else local
    conflicts: list[ConflictInfo] = []

    if local.settings != remote.settings:
        conflicts.append(ConflictInfo(
            type="settings",
            resolution="remote-wins" if remote_is_newer else "local-wins",
            local_value=local.settings, remote_value=remote.settings,
        ))

    tombstones = merge_tombstones(local.deleted_items, remote.deleted_items)

    conflicts.extend(_archive_conflicts(local.archive_items, remote.archive_items))
    archive = apply_tombstones(
        dedupe(local.archive_items + remote.archive_items), tombstones,
    )
    archive = [i.for_sync() for i in archive]

    positions, position_conflicts = merge_positions(local.positions, remote.positions)
    conflicts.extend(position_conflicts)

    reading_stats = merge_reading_stats(local.reading_stats, remote.reading_stats)

    merged = SyncStateDocument(
        schema_version=max(local.schema_version, remote.schema_version),
        updated_at=now,
        device_id=device_id,
        settings=winner.settings,
        presets={**local.presets, **remote.presets},
        custom_themes=merge_custom_themes(local.custom_themes, remote.custom_themes),
        archive_items=archive,
        positions=positions,
        deleted_items=tombstones,
        annotations=merge_annotations(local.annotations, remote.annotations, remote_is_newer),
        collections=merge_collections(local.collections, remote.collections, remote_is_newer),
        reading_stats=reading_stats,
        onboarding_completed=winner.onboarding_completed,
        exit_confirmation_dismissed=winner.exit_confirmation_dismissed,
    )

    has_changes = (
        bool(conflicts)
        or len(archive) != len(local.archive_items)
        or len(positions) != len(local.positions)
        or tombstones != local.deleted_items
        or reading_stats != local.reading_stats
    )

    logger.debug(
        "Merged states: remote %s, %d conflicts, %d items",
        "newer" if remote_is_newer else "older", len(conflicts), len(archive),
    )
    return MergeResult(merged=merged, conflicts=conflicts, has_changes=has_changes)
