"""
Key-value collaborators for the persistent cache tier.

The cache only needs four string operations, so anything that offers them
(a browser-style local storage bridge, a database table, a dict) can back
the hybrid tier.
"""
import sqlite3
import threading
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Protocol, Union

logger = logging.getLogger("cache.persistence")


class KeyValueStore(Protocol):
    """Interface for the persistent tier of a CacheStore."""

    def get_item(self, key: str) -> Optional[str]:
        """Stored string for key, or None when absent."""
        ...

    def set_item(self, key: str, value: str) -> None:
        ...

    def remove_item(self, key: str) -> None:
        """Remove key. Removing an absent key is a no-op."""
        ...

    def list_keys(self) -> List[str]:
        ...


class InMemoryKeyValueStore:
    """Dict-backed KeyValueStore, useful for tests and single-process hosts."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._items: Dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def get_item(self, key: str) -> Optional[str]:
        with self._lock:
            return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            self._items[key] = value

    def remove_item(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)

    def list_keys(self) -> List[str]:
        with self._lock:
            return list(self._items.keys())

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


SCHEMA = """
CREATE TABLE IF NOT EXISTS kv_store (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


class SQLiteKeyValueStore:
    """
    SQLite-backed KeyValueStore.

    Opens a short-lived connection per operation so instances can be shared
    between threads.
    """

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        """Initialize database with schema."""
        with self._get_connection() as conn:
            conn.executescript(SCHEMA)
            conn.commit()

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.db_path))
        try:
            yield conn
        finally:
            conn.close()

    def get_item(self, key: str) -> Optional[str]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None

    def set_item(self, key: str, value: str) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO kv_store (key, value) VALUES (?, ?)",
                (key, value),
            )
            conn.commit()

    def remove_item(self, key: str) -> None:
        with self._get_connection() as conn:
            conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            conn.commit()

    def list_keys(self) -> List[str]:
        with self._get_connection() as conn:
            rows = conn.execute("SELECT key FROM kv_store").fetchall()
        return [row[0] for row in rows]
