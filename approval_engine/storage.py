"""
Storage Backend Module

Provides the abstract storage interface used by every engine component and
implementations for in-memory (testing), SQLite and PostgreSQL persistence.

Two primitives sit on top of plain save/load:

- ``insert`` creates a record only if its id is unused, which enforces the
  one-row-per-(request, level) rule through a deterministic key.
- ``compare_and_set`` replaces a record only when the stored copy still
  matches the expected field values. Level and request transitions guard on
  ``status`` and ``version`` so a concurrent writer always loses cleanly.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Tuple, Union
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
        return result


def _copy(data: Any) -> Any:
    """Detached copy of JSON-compatible data"""
    return json.loads(json.dumps(data, default=str))


_ABSENT = object()


def _matches(record: Dict[str, Any], expected: Dict[str, Any]) -> bool:
    for key, value in expected.items():
        if key not in record or record[key] != value:
            return False
    return True


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save (insert or replace) a record"""
        pass

    @abstractmethod
    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> bool:
        """Create a record; returns False if the id already exists"""
        pass

    @abstractmethod
    def compare_and_set(self, table: str, record_id: str,
                        expected: Dict[str, Any], data: Dict[str, Any]) -> bool:
        """Replace a record only if its stored fields match ``expected``"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def begin_transaction(self) -> None:
        """Start a database transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield
            self.commit()
        except BaseException:
            self.rollback()
            raise


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing and embedding.

    A transaction holds the store lock until it commits or rolls back, so
    transactions are serialized. Writes inside a transaction remember the
    previous value of each record they touch, and rollback of the outermost
    transaction puts those values back.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._tx_depth = 0
        self._undo: Dict[Tuple[str, str], Any] = {}

    def _ensure_table(self, table: str) -> None:
        if table not in self._data:
            self._data[table] = {}

    def _remember(self, table: str, record_id: str) -> None:
        if self._tx_depth and (table, record_id) not in self._undo:
            self._undo[(table, record_id)] = self._data[table].get(record_id, _ABSENT)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            self._remember(table, record_id)
            self._data[table][record_id] = _copy(data)

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> bool:
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                return False
            self._remember(table, record_id)
            self._data[table][record_id] = _copy(data)
            return True

    def compare_and_set(self, table: str, record_id: str,
                        expected: Dict[str, Any], data: Dict[str, Any]) -> bool:
        with self._lock:
            self._ensure_table(table)
            current = self._data[table].get(record_id)
            if current is None or not _matches(current, expected):
                return False
            self._remember(table, record_id)
            self._data[table][record_id] = _copy(data)
            return True

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return _copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            return [_copy(record) for record in self._data[table].values()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                self._remember(table, record_id)
                del self._data[table][record_id]
                return True
            return False

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            return [
                _copy(record) for record in self._data[table].values()
                if _matches(record, filters)
            ]

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            for record_id in list(self._data[table]):
                self._remember(table, record_id)
            self._data[table] = {}

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def begin_transaction(self) -> None:
        self._lock.acquire()
        self._tx_depth += 1

    def commit(self) -> None:
        self._tx_depth -= 1
        if self._tx_depth == 0:
            self._undo = {}
        self._lock.release()

    def rollback(self) -> None:
        # Only the outermost transaction restores; inner failures propagate to it
        self._tx_depth -= 1
        if self._tx_depth == 0:
            for (table, record_id), previous in self._undo.items():
                self._ensure_table(table)
                if previous is _ABSENT:
                    self._data[table].pop(record_id, None)
                else:
                    self._data[table][record_id] = previous
            self._undo = {}
        self._lock.release()


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._tx_depth = 0
        self._tables = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    @property
    def _in_transaction(self) -> bool:
        return self._tx_depth > 0

    def _autocommit(self) -> None:
        if not self._in_transaction:
            self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        with self._lock:
            self._connection.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._connection.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table}(created_at)
            """)
            self._autocommit()
            self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            self._connection.execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, json.dumps(data, default=str), record_id, now, now))
            self._autocommit()

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> bool:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            cursor = self._connection.execute(f"""
                INSERT OR IGNORE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
            """, (record_id, json.dumps(data, default=str), now, now))
            self._autocommit()
            return cursor.rowcount == 1

    def compare_and_set(self, table: str, record_id: str,
                        expected: Dict[str, Any], data: Dict[str, Any]) -> bool:
        with self._lock:
            self._ensure_table(table)
            conditions = ["id = ?"]
            params: List[Any] = [record_id]
            for key, value in expected.items():
                conditions.append("json_extract(data, ?) = ?")
                params.extend([f"$.{key}", value])
            now = datetime.now(timezone.utc).isoformat()
            cursor = self._connection.execute(f"""
                UPDATE {table} SET data = ?, updated_at = ?
                WHERE {' AND '.join(conditions)}
            """, [json.dumps(data, default=str), now] + params)
            self._autocommit()
            return cursor.rowcount == 1

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))
            self._autocommit()
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        return [record for record in self.load_all(table) if _matches(record, filters)]

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")
            self._autocommit()

    def begin_transaction(self) -> None:
        # The lock stays held until commit/rollback so other threads cannot
        # interleave statements into this transaction on the shared connection
        self._lock.acquire()
        self._tx_depth += 1

    def commit(self) -> None:
        self._tx_depth -= 1
        if self._tx_depth == 0:
            self._connection.commit()
        self._lock.release()

    def rollback(self) -> None:
        self._tx_depth -= 1
        if self._tx_depth == 0:
            self._connection.rollback()
            # Tables created inside the rolled-back transaction are gone too
            self._tables.clear()
        self._lock.release()

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLStorage(StorageInterface):
    """PostgreSQL storage backend with ACID transaction support"""

    def __init__(self, connection_string: str):
        try:
            import psycopg2
            import psycopg2.extras
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.connection_string = connection_string
        self._connection = None
        self._lock = threading.RLock()
        self._tx_depth = 0
        self._tables = set()
        self._connect()

    def _connect(self) -> None:
        with self._lock:
            self._connection = self.psycopg2.connect(
                self.connection_string,
                cursor_factory=self.extras.RealDictCursor
            )
            self._connection.autocommit = False

    def _autocommit(self) -> None:
        if self._tx_depth == 0:
            self._connection.commit()

    @contextmanager
    def _cursor(self):
        with self._lock:
            cursor = self._connection.cursor()
            try:
                yield cursor
            finally:
                cursor.close()

    def _ensure_table(self, table: str) -> None:
        if table in self._tables:
            return
        with self._cursor() as cursor:
            cursor.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data JSONB NOT NULL,
                    created_at TIMESTAMP DEFAULT NOW(),
                    updated_at TIMESTAMP DEFAULT NOW()
                )
            """)
            cursor.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_data
                ON {table} USING gin(data)
            """)
            self._autocommit()
            self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        self._ensure_table(table)
        now = datetime.now(timezone.utc)
        with self._cursor() as cursor:
            cursor.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    data = EXCLUDED.data,
                    updated_at = EXCLUDED.updated_at
            """, (record_id, json.dumps(data, default=str), now, now))
            self._autocommit()

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> bool:
        self._ensure_table(table)
        now = datetime.now(timezone.utc)
        with self._cursor() as cursor:
            cursor.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (id) DO NOTHING
            """, (record_id, json.dumps(data, default=str), now, now))
            self._autocommit()
            return cursor.rowcount == 1

    def compare_and_set(self, table: str, record_id: str,
                        expected: Dict[str, Any], data: Dict[str, Any]) -> bool:
        self._ensure_table(table)
        conditions = ["id = %s"]
        params: List[Any] = [record_id]
        for key, value in expected.items():
            conditions.append("data ->> %s = %s")
            params.extend([key, str(value)])
        with self._cursor() as cursor:
            cursor.execute(f"""
                UPDATE {table} SET data = %s, updated_at = %s
                WHERE {' AND '.join(conditions)}
            """, [json.dumps(data, default=str), datetime.now(timezone.utc)] + params)
            self._autocommit()
            return cursor.rowcount == 1

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        self._ensure_table(table)
        with self._cursor() as cursor:
            cursor.execute(f"SELECT data FROM {table} WHERE id = %s", (record_id,))
            row = cursor.fetchone()
            if row:
                return dict(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        self._ensure_table(table)
        with self._cursor() as cursor:
            cursor.execute(f"SELECT data FROM {table} ORDER BY created_at")
            return [dict(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        self._ensure_table(table)
        with self._cursor() as cursor:
            cursor.execute(f"DELETE FROM {table} WHERE id = %s", (record_id,))
            self._autocommit()
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        self._ensure_table(table)
        with self._cursor() as cursor:
            cursor.execute(f"SELECT 1 FROM {table} WHERE id = %s LIMIT 1", (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSONB containment"""
        self._ensure_table(table)
        with self._cursor() as cursor:
            if not filters:
                cursor.execute(f"SELECT data FROM {table} ORDER BY created_at")
            else:
                cursor.execute(f"""
                    SELECT data FROM {table}
                    WHERE data @> %s::jsonb
                    ORDER BY created_at
                """, (json.dumps(filters, default=str),))
            return [dict(row['data']) for row in cursor.fetchall()]

    def count(self, table: str) -> int:
        self._ensure_table(table)
        with self._cursor() as cursor:
            cursor.execute(f"SELECT COUNT(*) as count FROM {table}")
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        self._ensure_table(table)
        with self._cursor() as cursor:
            cursor.execute(f"DELETE FROM {table}")
            self._autocommit()

    def begin_transaction(self) -> None:
        self._lock.acquire()
        self._tx_depth += 1

    def commit(self) -> None:
        self._tx_depth -= 1
        if self._tx_depth == 0:
            self._connection.commit()
        self._lock.release()

    def rollback(self) -> None:
        self._tx_depth -= 1
        if self._tx_depth == 0:
            self._connection.rollback()
            self._tables.clear()
        self._lock.release()

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a database URL.

    Supported forms: ``memory://``, ``sqlite:///relative/or/absolute.db``,
    ``sqlite://`` (in-memory SQLite) and ``postgresql://...``.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite:///"):] if database_url.startswith("sqlite:///") else ""
        return SQLiteStorage(path or ":memory:")
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(database_url)
    raise ValueError(f"Unsupported database URL: {database_url}")
