"""SQLite-backed settings and per-chat metadata stores.

Writes land in an in-memory buffer first and reach the database at most once per
debounce interval (or on flush()), so a scoring cycle that saves state several times
costs one write.
"""
from __future__ import annotations

import json
import logging
import sqlite3
import time
from typing import Any, Callable, Dict, Optional

from backend.app.config import DEFAULT_DB_PATH

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_SECONDS = 1.0


class _DebouncedSqliteTable:
    """Key -> JSON rows in one table, with a write-behind buffer."""

    table = ""

    def __init__(
        self,
        db_path: str | None = None,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.db_path = db_path or DEFAULT_DB_PATH
        self.debounce_seconds = debounce_seconds
        self._clock = clock
        self._cache: Dict[str, Any] = {}
        self._dirty: set[str] = set()
        self._last_flush = clock()

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_table(self, conn: sqlite3.Connection) -> None:
        conn.execute(f"""
            CREATE TABLE IF NOT EXISTS {self.table} (
                key TEXT PRIMARY KEY,
                value_json TEXT NOT NULL,
                updated_at TEXT DEFAULT (datetime('now'))
            )
        """)

    def _read(self, key: str) -> Any:
        if key in self._cache:
            return self._cache[key]
        try:
            conn = self._get_conn()
            try:
                self._ensure_table(conn)
                row = conn.execute(f"SELECT value_json FROM {self.table} WHERE key = ?", (key,)).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.warning("%s read failed for %s (non-fatal): %s", self.table, key, e)
            return None
        if row is None:
            return None
        try:
            value = json.loads(row["value_json"])
        except json.JSONDecodeError as e:
            logger.warning("Discarding unreadable %s row %s: %s", self.table, key, e)
            return None
        self._cache[key] = value
        return value

    def _write(self, key: str, value: Any) -> None:
        self._cache[key] = value
        self._dirty.add(key)
        if self._clock() - self._last_flush >= self.debounce_seconds:
            self.flush()

    def flush(self) -> None:
        """Write every buffered key to the database."""
        if not self._dirty:
            self._last_flush = self._clock()
            return
        keys = sorted(self._dirty)
        try:
            conn = self._get_conn()
            try:
                self._ensure_table(conn)
                conn.executemany(
                    f"""INSERT OR REPLACE INTO {self.table} (key, value_json, updated_at)
                        VALUES (?, ?, datetime('now'))""",
                    [(k, json.dumps(self._cache[k])) for k in keys],
                )
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.warning("%s flush failed (%d keys kept in memory): %s", self.table, len(keys), e)
            return
        self._dirty.difference_update(keys)
        self._last_flush = self._clock()
        logger.debug("%s flushed %d keys", self.table, len(keys))


class SqliteSettingsStore(_DebouncedSqliteTable):
    """Global key-value settings (pinned calibrations, report index)."""

    table = "driftguard_settings"

    def get(self, key: str, default: Any = None) -> Any:
        value = self._read(key)
        return default if value is None else value

    def set(self, key: str, value: Any) -> None:
        self._write(key, value)


class SqliteChatMetadataStore(_DebouncedSqliteTable):
    """Serialized SessionState per chat id."""

    table = "driftguard_chat_metadata"

    def load(self, chat_id: str) -> Optional[Dict[str, Any]]:
        value = self._read(chat_id)
        return value if isinstance(value, dict) else None

    def save(self, chat_id: str, data: Dict[str, Any]) -> None:
        self._write(chat_id, data)

    def chat_ids(self) -> list[str]:
        """Every chat id with stored state (flushes pending writes first)."""
        self.flush()
        try:
            conn = self._get_conn()
            try:
                self._ensure_table(conn)
                rows = conn.execute(f"SELECT key FROM {self.table} ORDER BY key").fetchall()
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.warning("%s listing failed: %s", self.table, e)
            return sorted(self._cache)
        return [r["key"] for r in rows]
