"""Persisted string key-value stores local to the device."""

import logging
import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# Schema for the key-value table
SCHEMA = """
CREATE TABLE IF NOT EXISTS kv_store (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


class StateStore(ABC):
    """Synchronous string-keyed key-value space.

    Values are always strings; a missing key reads as None.
    """

    @abstractmethod
    def get(self, key: str) -> str | None:
        """Return the value stored under key, or None if absent."""
        ...

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store value under key, replacing any previous value."""
        ...

    @abstractmethod
    def remove(self, key: str) -> None:
        """Remove key. Removing an absent key is a no-op."""
        ...

    @abstractmethod
    def list_keys(self) -> list[str]:
        """Return every key currently stored."""
        ...

    def close(self) -> None:
        """Release any resources held by the store."""


class MemoryStateStore(StateStore):
    """Dict-backed store for tests and ephemeral sessions."""

    def __init__(self, initial: dict[str, str] | None = None):
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def list_keys(self) -> list[str]:
        return list(self._data)

    def to_dict(self) -> dict[str, str]:
        """Return a copy of the stored data."""
        return dict(self._data)


class SQLiteStateStore(StateStore):
    """SQLite-backed key-value store."""

    def __init__(self, db_path: str | Path):
        """Initialize the store.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
        """
        self._in_memory = str(db_path) == ":memory:"
        self.db_path = Path(db_path) if self._in_memory else Path(db_path).expanduser()
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Initialize database connection and schema."""
        if self._conn is not None:
            return

        if not self._in_memory:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(SCHEMA)
        self._conn.commit()

        logger.info(f"SQLiteStateStore connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
            logger.info("SQLiteStateStore connection closed")

    def _ensure_connected(self) -> sqlite3.Connection:
        """Ensure we have a database connection."""
        if self._conn is None:
            self.connect()
        return self._conn

    def get(self, key: str) -> str | None:
        conn = self._ensure_connected()
        row = conn.execute(
            "SELECT value FROM kv_store WHERE key = ?", (key,)
        ).fetchone()
        return row["value"] if row else None

    def set(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise TypeError(f"Value for {key!r} must be a string, got {type(value).__name__}")

        conn = self._ensure_connected()
        conn.execute(
            """
            INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                updated_at = excluded.updated_at
            """,
            (key, value, datetime.now().isoformat()),
        )
        conn.commit()

    def remove(self, key: str) -> None:
        conn = self._ensure_connected()
        conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
        conn.commit()

    def list_keys(self) -> list[str]:
        conn = self._ensure_connected()
        cursor = conn.execute("SELECT key FROM kv_store ORDER BY key")
        return [row["key"] for row in cursor]

    def get_stats(self) -> dict[str, Any]:
        """Get store statistics.

        Returns:
            Dictionary with key count and database size.
        """
        conn = self._ensure_connected()

        stats: dict[str, Any] = {
            "key_count": conn.execute("SELECT COUNT(*) FROM kv_store").fetchone()[0],
        }

        if not self._in_memory and self.db_path.exists():
            stats["db_size_mb"] = round(
                self.db_path.stat().st_size / (1024 * 1024), 2
            )

        return stats
