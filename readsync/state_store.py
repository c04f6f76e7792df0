"""
Local state store using SQLite.

A key/value store holding one JSON document per top-level key. Writes are
atomic per key; there are no cross-key transactions. Every committed write
is delivered to subscribers as ``{key: new_value}``.

Writes made by other processes on the same database (e.g. the CLI while a
sync daemon runs) are picked up by ``poll_changes()``, which compares a
per-row write sequence against the last one this store has seen.
"""

import json
import logging
import sqlite3
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from .errors import StorageError

logger = logging.getLogger(__name__)

ChangeListener = Callable[[dict[str, Any]], None]


class StateStore:
    """
    SQLite-backed key/value store for the local reading state.

    The async methods run their SQLite statements inline: the engine is
    single-threaded and each statement is short.
    """

    def __init__(self, store_path: Path):
        """
        Args:
            store_path: Path to SQLite database file
        """
        self._db_path = store_path
        self._conn: Optional[sqlite3.Connection] = None
        self._listeners: list[ChangeListener] = []
        self._last_seq = 0
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row

            # WAL lets a daemon and the CLI share the file
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA busy_timeout=5000")

            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS state (
                    key TEXT PRIMARY KEY,
                    value_json TEXT NOT NULL,
                    seq INTEGER NOT NULL DEFAULT 0
                )
            """)
            self._conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_state_seq
                ON state(seq)
            """)
            self._conn.commit()
            self._last_seq = self._max_seq()
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open state store {self._db_path}: {e}", "open") from e

    def _max_seq(self) -> int:
        row = self._conn.execute("SELECT COALESCE(MAX(seq), 0) FROM state").fetchone()
        return row[0]

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    async def get(self, keys: Optional[Iterable[str]] = None) -> dict[str, Any]:
        """
        Read stored values.

        Args:
            keys: Keys to read, or None for the whole record

        Returns:
            Dict of key -> decoded value (missing keys omitted)
        """
        try:
            if keys is None:
                cursor = self._conn.execute("SELECT key, value_json FROM state")
            else:
                keys = list(keys)
                if not keys:
                    return {}
                placeholders = ",".join("?" * len(keys))
                cursor = self._conn.execute(
                    f"SELECT key, value_json FROM state WHERE key IN ({placeholders})",
                    keys,
                )
            return {row["key"]: json.loads(row["value_json"]) for row in cursor}
        except sqlite3.Error as e:
            raise StorageError(str(e), "get") from e

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    async def set(self, values: dict[str, Any]) -> None:
        """
        Write a partial record. Keys not named are left untouched.

        Subscribers are notified after the commit.
        """
        if not values:
            return
        try:
            seq = self._max_seq()
            rows = []
            for key, value in values.items():
                seq += 1
                rows.append((key, json.dumps(value, ensure_ascii=False), seq))
            self._conn.executemany("""
                INSERT INTO state (key, value_json, seq) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value_json = excluded.value_json,
                    seq = excluded.seq
            """, rows)
            self._conn.commit()
        except (sqlite3.Error, TypeError, ValueError) as e:
            raise StorageError(str(e), "set") from e

        self._last_seq = seq
        self._notify(dict(values))

    async def clear(self) -> None:
        """Remove every key."""
        try:
            self._conn.execute("DELETE FROM state")
            self._conn.commit()
        except sqlite3.Error as e:
            raise StorageError(str(e), "clear") from e
        self._last_seq = 0

    # -------------------------------------------------------------------------
    # Change notification
    # -------------------------------------------------------------------------

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """Register a change listener. Returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def poll_changes(self) -> dict[str, Any]:
        """
        Deliver writes committed by other connections since the last check.

        Returns the changes that were delivered (empty if none).
        """
        try:
            cursor = self._conn.execute(
                "SELECT key, value_json, seq FROM state WHERE seq > ? ORDER BY seq",
                (self._last_seq,),
            )
            rows = cursor.fetchall()
        except sqlite3.Error as e:
            raise StorageError(str(e), "poll") from e
        if not rows:
            return {}
        self._last_seq = rows[-1]["seq"]
        changes = {row["key"]: json.loads(row["value_json"]) for row in rows}
        self._notify(changes)
        return changes

    def _notify(self, changes: dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                listener(changes)
            except Exception as e:
                logger.error("State change listener failed: %s", e, exc_info=True)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __del__(self):
        self.close()
