"""SQLite stores: debounced write-behind, flush, reload."""
from __future__ import annotations

import os
import sqlite3
import tempfile

from backend.app.core.host import ChatMetadataStore, KeyValueStore
from backend.app.core.store import SqliteChatMetadataStore, SqliteSettingsStore


class Clock:
    def __init__(self):
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def _rows(db_path: str, table: str) -> list[str]:
    conn = sqlite3.connect(db_path)
    try:
        return [r[0] for r in conn.execute(f"SELECT key FROM {table} ORDER BY key").fetchall()]
    except sqlite3.OperationalError:
        return []
    finally:
        conn.close()


def test_stores_satisfy_host_protocols():
    with tempfile.TemporaryDirectory() as tmp:
        db = os.path.join(tmp, "drift.db")
        assert isinstance(SqliteSettingsStore(db), KeyValueStore)
        assert isinstance(SqliteChatMetadataStore(db), ChatMetadataStore)


def test_writes_are_buffered_until_the_debounce_interval():
    with tempfile.TemporaryDirectory() as tmp:
        db = os.path.join(tmp, "drift.db")
        clock = Clock()
        store = SqliteChatMetadataStore(db, debounce_seconds=1.0, clock=clock)

        store.save("chat-1", {"messages_scored": 1})
        assert store.load("chat-1") == {"messages_scored": 1}
        assert _rows(db, store.table) == []

        clock.now += 1.5
        store.save("chat-2", {"messages_scored": 2})
        assert _rows(db, store.table) == ["chat-1", "chat-2"]


def test_flush_persists_and_a_new_store_reads_it_back():
    with tempfile.TemporaryDirectory() as tmp:
        db = os.path.join(tmp, "drift.db")
        store = SqliteSettingsStore(db, debounce_seconds=60.0)
        store.set("report_index", [{"chat_id": "chat-1"}])
        store.flush()

        fresh = SqliteSettingsStore(db)
        assert fresh.get("report_index") == [{"chat_id": "chat-1"}]
        assert fresh.get("missing", "default") == "default"


def test_chat_ids_flushes_pending_writes():
    with tempfile.TemporaryDirectory() as tmp:
        db = os.path.join(tmp, "drift.db")
        store = SqliteChatMetadataStore(db, debounce_seconds=60.0)
        store.save("b", {})
        store.save("a", {})
        assert store.chat_ids() == ["a", "b"]


def test_non_dict_metadata_is_ignored():
    with tempfile.TemporaryDirectory() as tmp:
        db = os.path.join(tmp, "drift.db")
        store = SqliteChatMetadataStore(db, debounce_seconds=0.0)
        store._write("chat-1", ["not", "a", "state"])
        assert SqliteChatMetadataStore(db).load("chat-1") is None


def test_unreadable_row_is_discarded():
    with tempfile.TemporaryDirectory() as tmp:
        db = os.path.join(tmp, "drift.db")
        store = SqliteSettingsStore(db)
        store.flush()
        conn = sqlite3.connect(db)
        conn.execute(
            f"CREATE TABLE IF NOT EXISTS {store.table} (key TEXT PRIMARY KEY, value_json TEXT NOT NULL, updated_at TEXT)"
        )
        conn.execute(f"INSERT INTO {store.table} (key, value_json) VALUES ('k', '{{broken')")
        conn.commit()
        conn.close()
        assert store.get("k", "fallback") == "fallback"
