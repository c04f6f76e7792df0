"""
Folder sync provider.

Keeps the snapshot as a JSON file in a directory that some other tool
shares between devices (a cloud drive mount, a network share, a synced
folder). Content files live in a ``content/`` subdirectory.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Optional

from ..errors import SyncError
from ..types import SyncStateDocument
from .base import content_filename, parse_snapshot

logger = logging.getLogger(__name__)

SYNC_FILE_NAME = "readsync-state.json"
CONTENT_FOLDER_NAME = "content"


class FolderProvider:
    """Snapshot exchange through a shared directory."""

    name = "folder"

    def __init__(self, folder: Path):
        self._folder = Path(folder).expanduser()

    @property
    def folder(self) -> Path:
        return self._folder

    @property
    def state_file(self) -> Path:
        return self._folder / SYNC_FILE_NAME

    @property
    def content_dir(self) -> Path:
        return self._folder / CONTENT_FOLDER_NAME

    async def is_ready_to_sync(self) -> bool:
        return self._folder.is_dir() and os.access(self._folder, os.W_OK)

    async def upload_snapshot(self, doc: SyncStateDocument) -> None:
        await self.upload_payload(doc.to_dict())

    async def download_snapshot(self) -> Optional[SyncStateDocument]:
        data = await self.download_payload()
        if data is None:
            return None
        return parse_snapshot(data, str(self.state_file))

    async def upload_payload(self, payload: dict[str, Any]) -> None:
        if not await self.is_ready_to_sync():
            raise SyncError(f"Sync folder is not writable: {self._folder}", "upload")
        text = json.dumps(payload, ensure_ascii=False, indent=1)
        # Write beside the target and rename, so readers never see a partial file
        fd, tmp = tempfile.mkstemp(dir=self._folder, prefix=".readsync-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(text)
            os.replace(tmp, self.state_file)
        except OSError as e:
            Path(tmp).unlink(missing_ok=True)
            raise SyncError(f"Failed to write {self.state_file}: {e}", "upload") from e
        logger.debug("Uploaded snapshot to %s (%d bytes)", self.state_file, len(text))

    async def download_payload(self) -> Optional[dict[str, Any]]:
        if not self._folder.is_dir():
            raise SyncError(f"Sync folder not found: {self._folder}", "download")
        try:
            text = self.state_file.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise SyncError(f"Failed to read {self.state_file}: {e}", "download") from e
        try:
            data = json.loads(text)
        except ValueError as e:
            raise SyncError(f"Corrupt snapshot in {self.state_file}: {e}", "download") from e
        if not isinstance(data, dict):
            raise SyncError(f"Corrupt snapshot in {self.state_file}: not an object", "download")
        return data

    async def delete_item_content(self, identifier: str) -> None:
        path = self.content_dir / content_filename(identifier)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise SyncError(f"Failed to delete {path}: {e}", "delete") from e
