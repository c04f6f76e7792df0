"""
Error types and error logging for readsync.

Logs full stack traces for debugging while showing clean messages to users.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path


class ReadSyncError(Exception):
    """Base class for readsync errors, carrying the failed operation."""

    code = "READSYNC_ERROR"

    def __init__(self, message: str, operation: str):
        super().__init__(message)
        self.operation = operation


class StorageError(ReadSyncError):
    """A local state store operation failed."""

    code = "STORAGE_ERROR"


class SyncError(ReadSyncError):
    """A sync exchange with the remote provider failed.

    operation is one of: configuration, sync, upload, download, delete.
    """

    code = "SYNC_ERROR"


class EncryptionError(SyncError):
    """A snapshot could not be encrypted or decrypted.

    operation is one of: encrypt, decrypt, derive-key.
    """

    code = "ENCRYPTION_ERROR"


class ConfigError(ReadSyncError):
    """Configuration is missing or invalid."""

    code = "CONFIG_ERROR"


def _error_log_path() -> Path:
    """Resolve error log path, respecting READSYNC_STORE_PATH."""
    store = os.environ.get("READSYNC_STORE_PATH")
    if store:
        return Path(store) / "readsync-errors.log"
    return Path.home() / ".readsync" / "readsync-errors.log"


def log_exception(exc: Exception, context: str = "") -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path()
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}]")
            if context:
                f.write(f" {context}")
            f.write(f" {type(exc).__name__}: {exc}\n")
            f.write("".join(traceback.format_exception(exc)))
    except OSError:
        pass  # Error log is best-effort
    return log_path
