"""
Remote sync provider protocol.

A provider stores one snapshot of the reading state and, beside it, the
content files of archive items. Providers know nothing about merging;
they move documents. Any transport or authentication failure is raised
as ``SyncError``.

Built-in providers also expose the raw JSON object they store
(``PayloadProvider``), which is what the encrypting wrapper uses.
"""

import hashlib
from typing import Any, Optional, Protocol, runtime_checkable

from ..errors import SyncError
from ..types import SyncStateDocument


CONTENT_FILE_EXTENSION = ".json"


def content_filename(identifier: str) -> str:
    """
    File name for the content stored under a tombstone identifier.

    ``hash:<file_hash>`` maps to ``<file_hash>.json``; ids and URLs are
    hashed so they are safe on any filesystem.
    """
    if identifier.startswith("hash:"):
        name = identifier[len("hash:"):]
    else:
        name = hashlib.sha256(identifier.encode("utf-8")).hexdigest()[:32]
    return name + CONTENT_FILE_EXTENSION


def parse_snapshot(data: Any, source: str) -> SyncStateDocument:
    """
    Build a snapshot from decoded JSON.

    Raises:
        SyncError: If ``data`` is not a snapshot object
    """
    if not isinstance(data, dict):
        raise SyncError(
            f"Corrupt snapshot from {source}: expected an object, got {type(data).__name__}",
            "download",
        )
    try:
        return SyncStateDocument.from_dict(data)
    except (ValueError, KeyError, TypeError, AttributeError) as e:
        raise SyncError(f"Corrupt snapshot from {source}: {e!r}", "download") from e


@runtime_checkable
class SyncProvider(Protocol):
    """
    A remote place to keep the shared snapshot.

    Example implementation:
        class MemoryProvider:
            name = "memory"

            def __init__(self):
                self.doc = None

            async def upload_snapshot(self, doc):
                self.doc = doc

            async def download_snapshot(self):
                return self.doc

            async def delete_item_content(self, identifier):
                pass

            async def is_ready_to_sync(self):
                return True
    """

    name: str

    async def upload_snapshot(self, doc: SyncStateDocument) -> None:
        """
        Replace the remote snapshot.

        Raises:
            SyncError: If the upload fails
        """
        ...

    async def download_snapshot(self) -> Optional[SyncStateDocument]:
        """
        Fetch the remote snapshot.

        Returns:
            The snapshot, or None if nothing has been uploaded yet

        Raises:
            SyncError: If the download fails
        """
        ...

    async def delete_item_content(self, identifier: str) -> None:
        """Remove stored content for a tombstone identifier. Missing content is not an error."""
        ...

    async def is_ready_to_sync(self) -> bool:
        """False while the provider cannot be used yet (e.g. missing credentials)."""
        ...


@runtime_checkable
class PayloadProvider(Protocol):
    """A provider that can also move the stored JSON object unparsed."""

    name: str

    async def upload_payload(self, payload: dict[str, Any]) -> None:
        """Replace the remote object with ``payload``."""
        ...

    async def download_payload(self) -> Optional[dict[str, Any]]:
        """
        Fetch the remote object.

        Returns:
            The decoded JSON object, or None if nothing has been uploaded yet

        Raises:
            SyncError: If the download fails or the stored data is not a JSON object
        """
        ...

    async def delete_item_content(self, identifier: str) -> None:
        ...

    async def is_ready_to_sync(self) -> bool:
        ...
