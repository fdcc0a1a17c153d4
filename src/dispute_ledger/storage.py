"""
Key-value storage behind the evidence store and case registry.

The ledger core only needs string keys and values, an atomic
compare-and-set, and append-only secondary indices. Two backends:

- MemoryKeyValueStore: dict guarded by a lock (tests, single process)
- SQLiteKeyValueStore: WAL-mode SQLite, CAS via conditional UPDATE
"""

import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import closing
from pathlib import Path
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """Minimal storage interface required by the ledger core."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the value for key, or None."""

    @abstractmethod
    def put_if_absent(self, key: str, value: str) -> bool:
        """Insert key only if it does not exist. Returns True if inserted."""

    @abstractmethod
    def compare_and_set(self, key: str, expected: str, new: str) -> bool:
        """Replace the value only if it still equals expected."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove key. Returns True if it existed."""

    @abstractmethod
    def keys(self, prefix: str = "") -> List[str]:
        """All keys starting with prefix, sorted."""

    @abstractmethod
    def index_add(self, index_key: str, member: str) -> None:
        """Append member to an index; adding an existing member is a no-op."""

    @abstractmethod
    def index_members(self, index_key: str) -> List[str]:
        """Index members in insertion order."""

    def close(self) -> None:
        pass


class MemoryKeyValueStore(KeyValueStore):
    """In-process store; every operation holds one lock."""

    def __init__(self):
        self._data: Dict[str, str] = {}
        self._indices: Dict[str, List[str]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def put_if_absent(self, key: str, value: str) -> bool:
        with self._lock:
            if key in self._data:
                return False
            self._data[key] = value
            return True

    def compare_and_set(self, key: str, expected: str, new: str) -> bool:
        with self._lock:
            if self._data.get(key) != expected:
                return False
            self._data[key] = new
            return True

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))

    def index_add(self, index_key: str, member: str) -> None:
        with self._lock:
            members = self._indices.setdefault(index_key, [])
            if member not in members:
                members.append(member)

    def index_members(self, index_key: str) -> List[str]:
        with self._lock:
            return list(self._indices.get(index_key, []))


class SQLiteKeyValueStore(KeyValueStore):
    """
    SQLite-backed store.

    Features:
    - WAL mode for durability and concurrent readers
    - Atomic CAS through a single conditional UPDATE
    - Index membership kept in insertion order
    """

    def __init__(self, db_path: Path, timeout: float = 30.0):
        """
        Initialize store.

        Args:
            db_path: Path to SQLite database file
            timeout: Seconds to wait on a locked database
        """
        self.db_path = Path(db_path)
        self.timeout = timeout
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path, timeout=self.timeout)

    def _init_db(self):
        """Initialize SQLite database with schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with closing(self._connect()) as conn:
            conn.execute('PRAGMA journal_mode=WAL')
            conn.execute('PRAGMA synchronous=NORMAL')

            conn.execute('''
                CREATE TABLE IF NOT EXISTS kv (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
            ''')

            conn.execute('''
                CREATE TABLE IF NOT EXISTS kv_index (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    index_key TEXT NOT NULL,
                    member TEXT NOT NULL,
                    UNIQUE (index_key, member)
                )
            ''')

            conn.execute('''
                CREATE INDEX IF NOT EXISTS idx_kv_index_key
                ON kv_index(index_key, seq)
            ''')

            conn.commit()

        logger.info(f"Key-value store initialized at {self.db_path}")

    def get(self, key: str) -> Optional[str]:
        with closing(self._connect()) as conn:
            row = conn.execute('SELECT value FROM kv WHERE key = ?', (key,)).fetchone()
        return row[0] if row else None

    def put_if_absent(self, key: str, value: str) -> bool:
        with closing(self._connect()) as conn:
            cursor = conn.execute(
                'INSERT OR IGNORE INTO kv (key, value) VALUES (?, ?)',
                (key, value)
            )
            conn.commit()
            return cursor.rowcount == 1

    def compare_and_set(self, key: str, expected: str, new: str) -> bool:
        with closing(self._connect()) as conn:
            cursor = conn.execute(
                'UPDATE kv SET value = ? WHERE key = ? AND value = ?',
                (new, key, expected)
            )
            conn.commit()
            return cursor.rowcount == 1

    def delete(self, key: str) -> bool:
        with closing(self._connect()) as conn:
            cursor = conn.execute('DELETE FROM kv WHERE key = ?', (key,))
            conn.commit()
            return cursor.rowcount == 1

    def keys(self, prefix: str = "") -> List[str]:
        # Literal prefix match; keys may contain LIKE/GLOB metacharacters
        with closing(self._connect()) as conn:
            rows = conn.execute(
                'SELECT key FROM kv WHERE substr(key, 1, ?) = ? ORDER BY key',
                (len(prefix), prefix)
            ).fetchall()
        return [row[0] for row in rows]

    def index_add(self, index_key: str, member: str) -> None:
        with closing(self._connect()) as conn:
            conn.execute(
                'INSERT OR IGNORE INTO kv_index (index_key, member) VALUES (?, ?)',
                (index_key, member)
            )
            conn.commit()

    def index_members(self, index_key: str) -> List[str]:
        with closing(self._connect()) as conn:
            rows = conn.execute(
                'SELECT member FROM kv_index WHERE index_key = ? ORDER BY seq',
                (index_key,)
            ).fetchall()
        return [row[0] for row in rows]


def create_store(backend: str, db_path: Optional[Path] = None) -> KeyValueStore:
    """Build the configured backend."""
    if backend == "memory":
        return MemoryKeyValueStore()
    if backend == "sqlite":
        if db_path is None:
            raise ValueError("db_path required for sqlite backend")
        return SQLiteKeyValueStore(db_path)
    raise ValueError(f"Unknown storage backend: {backend}")
