"""
Shared pytest fixtures for readsync tests.

Time is driven by hand: ``FakeClock`` supplies ``now()``, ``FakeTimer``
runs due callbacks when advanced, and ``FakeAlarms`` records alarms and
fires them on request. ``InMemoryProvider`` stands in for a remote
snapshot store.
"""

import copy
from pathlib import Path
from typing import Any, Callable, Optional

import pytest

from readsync.archive import ArchiveService
from readsync.errors import SyncError
from readsync.locks import LockRegistry
from readsync.state_store import StateStore
from readsync.storage_facade import StorageFacade
from readsync.sync_service import SyncService
from readsync.tasks import TaskQueue
from readsync.types import ArchiveItem, SyncStateDocument


# -----------------------------------------------------------------------------
# Time
# -----------------------------------------------------------------------------

START_TIME = 1_700_000_000_000


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, now: int = START_TIME):
        self.time = now

    def now(self) -> int:
        return self.time

    def advance(self, ms: int) -> None:
        self.time += ms


class FakeTimerHandle:
    def __init__(self, due: int, callback: Callable[[], Any]):
        self.due = due
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeTimer:
    """
    One-shot timers on a FakeClock.

    ``advance(ms)`` moves the clock forward, running callbacks in due order
    with the clock set to each one's due time.
    """

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.handles: list[FakeTimerHandle] = []

    def call_later(self, delay_ms: int, callback: Callable[[], Any]) -> FakeTimerHandle:
        handle = FakeTimerHandle(self.clock.now() + delay_ms, callback)
        self.handles.append(handle)
        return handle

    def pending(self) -> list[FakeTimerHandle]:
        """Armed timers, soonest first."""
        live = [h for h in self.handles if not h.cancelled and not h.fired]
        return sorted(live, key=lambda h: h.due)

    def advance(self, ms: int) -> None:
        target = self.clock.now() + ms
        while True:
            due = [h for h in self.pending() if h.due <= target]
            if not due:
                break
            handle = due[0]
            self.clock.time = max(self.clock.time, handle.due)
            handle.fired = True
            handle.callback()
        self.clock.time = target


class FakeAlarms:
    """Records named alarms; ``fire`` delivers one to the handler."""

    def __init__(self):
        self.alarms: dict[str, int] = {}
        self.handler: Optional[Callable[[str], Any]] = None

    def create(self, name: str, period_ms: int) -> None:
        self.alarms[name] = period_ms

    def clear(self, name: str) -> None:
        self.alarms.pop(name, None)

    def set_handler(self, handler: Callable[[str], Any]) -> None:
        self.handler = handler

    async def fire(self, name: str) -> None:
        await self.handler(name)


# -----------------------------------------------------------------------------
# Providers
# -----------------------------------------------------------------------------

class InMemoryProvider:
    """
    Remote snapshot kept in memory as a plain dict.

    The snapshot is serialized on upload and parsed on download, so the
    devices sharing it never share objects.
    """

    name = "memory"

    def __init__(self):
        self.data: Optional[dict] = None
        self.uploads = 0
        self.downloads = 0
        self.deleted: list[str] = []
        self.fail = False
        self.ready = True
        self.gate = None  # asyncio.Event that download waits on, if set

    @property
    def doc(self) -> Optional[SyncStateDocument]:
        return SyncStateDocument.from_dict(self.data) if self.data else None

    async def upload_snapshot(self, doc: SyncStateDocument) -> None:
        if self.fail:
            raise SyncError("Simulated upload failure", "upload")
        self.data = copy.deepcopy(doc.to_dict())
        self.uploads += 1

    async def download_snapshot(self) -> Optional[SyncStateDocument]:
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise SyncError("Simulated download failure", "download")
        self.downloads += 1
        return self.doc

    async def delete_item_content(self, identifier: str) -> None:
        if self.fail:
            raise SyncError("Simulated delete failure", "delete")
        self.deleted.append(identifier)

    async def is_ready_to_sync(self) -> bool:
        return self.ready


# -----------------------------------------------------------------------------
# Builders
# -----------------------------------------------------------------------------

def make_item(item_id: str = "web_1_abcdefg", **fields) -> ArchiveItem:
    """An archive item with sensible defaults."""
    defaults = dict(
        id=item_id,
        type="web",
        title="Title",
        source_label="example.com",
        created_at=1000,
        last_opened_at=1000,
    )
    defaults.update(fields)
    return ArchiveItem(**defaults)


def make_doc(device_id: str = "remote-device", updated_at: int = 1000, **fields) -> SyncStateDocument:
    """A sync snapshot with sensible defaults."""
    return SyncStateDocument(
        schema_version=3, updated_at=updated_at, device_id=device_id, **fields,
    )


# -----------------------------------------------------------------------------
# Fixtures
# -----------------------------------------------------------------------------

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def timer(clock):
    return FakeTimer(clock)


@pytest.fixture
def alarms():
    return FakeAlarms()


@pytest.fixture
def tasks():
    return TaskQueue()


@pytest.fixture
def db_path(tmp_path) -> Path:
    return tmp_path / "state.db"


@pytest.fixture
def store(db_path):
    """A StateStore on a temporary database."""
    s = StateStore(db_path)
    yield s
    s.close()


@pytest.fixture
def facade(store, clock):
    f = StorageFacade(store, clock, locks=LockRegistry())
    yield f
    f.close()


@pytest.fixture
def provider():
    return InMemoryProvider()


@pytest.fixture
def archive(facade, timer, tasks, clock):
    return ArchiveService(facade, timer, tasks, clock)


@pytest.fixture
def sync_service(facade, provider, clock):
    return SyncService(facade, provider, clock)
