"""
Storage Backend Module

Provides the abstract storage interface and implementations for in-memory
(testing) and SQLite (persistence). Records are JSON documents keyed by an
integer identifier that the backend assigns in the same step that persists
the record. Monetary values are stored as Decimal strings.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from datetime import datetime, timezone
import sqlite3
import json
import threading
from pathlib import Path
from contextlib import contextmanager

from .errors import StorageError, InvalidInput


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def insert(self, table: str, data: Dict[str, Any]) -> int:
        """
        Persist a new record and return its generated identifier.

        The identifier is assigned atomically with the write; a record is
        never visible without one.
        """
        pass

    @abstractmethod
    def load(self, table: str, record_id: int) -> Optional[Dict[str, Any]]:
        """Load a record by identifier"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table in insertion order"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: int) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records whose fields equal all filter values, in insertion order"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""
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
        except Exception:
            self.rollback()
            raise


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing.

    Every operation is a single step under one lock, so the default no-op
    transaction hooks are sufficient: an atomic unit whose only write is
    its last statement either persists that write or nothing.
    """

    def __init__(self):
        self._data: Dict[str, Dict[int, Dict[str, Any]]] = {}
        self._sequences: Dict[str, int] = {}
        self._lock = threading.RLock()

    def _ensure_table(self, table: str) -> None:
        if table not in self._data:
            self._data[table] = {}
            self._sequences[table] = 0

    def insert(self, table: str, data: Dict[str, Any]) -> int:
        with self._lock:
            self._ensure_table(table)
            record_id = self._sequences[table] + 1
            # Deep copy to prevent external mutation
            record = json.loads(json.dumps(data, default=str))
            record['id'] = record_id
            self._data[table][record_id] = record
            self._sequences[table] = record_id
            return record_id

    def load(self, table: str, record_id: int) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return json.loads(json.dumps(record))
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            return [json.loads(json.dumps(record)) for record in self._data[table].values()]

    def exists(self, table: str, record_id: int) -> bool:
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            return [
                json.loads(json.dumps(record))
                for record in self._data[table].values()
                if _matches(record, filters)
            ]

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._lock = threading.RLock()
        self._in_transaction = False
        self._tables = set()
        try:
            # DEFERRED isolation gives manual transaction control
            self._connection = sqlite3.connect(
                self.db_path, check_same_thread=False, isolation_level='DEFERRED'
            )
            self._connection.row_factory = sqlite3.Row

            # WAL mode for better concurrent access
            if self.db_path != ":memory:":
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open SQLite database {self.db_path}: {e}") from e

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        if self._connection is None:
            raise StorageError("SQLite storage is closed")
        try:
            return self._connection.execute(sql, params)
        except sqlite3.Error as e:
            raise StorageError(f"SQLite operation failed: {e}") from e

    def _commit_unless_in_transaction(self) -> None:
        if not self._in_transaction:
            try:
                self._connection.commit()
            except sqlite3.Error as e:
                raise StorageError(f"SQLite commit failed: {e}") from e

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        if not table.replace("_", "").isalnum():
            raise InvalidInput(f"Invalid table name: {table}")

        self._execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        """)
        self._execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_created_at
            ON {table}(created_at)
        """)
        self._commit_unless_in_transaction()
        # A rollback could undo DDL issued inside an open transaction
        if not self._in_transaction:
            self._tables.add(table)

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> Dict[str, Any]:
        record = json.loads(row['data'])
        record['id'] = row['id']
        return record

    def insert(self, table: str, data: Dict[str, Any]) -> int:
        with self._lock:
            self._ensure_table(table)

            payload = {k: v for k, v in data.items() if k != 'id'}
            now = datetime.now(timezone.utc).isoformat()
            cursor = self._execute(f"""
                INSERT INTO {table} (data, created_at) VALUES (?, ?)
            """, (json.dumps(payload, default=str), now))

            self._commit_unless_in_transaction()
            return cursor.lastrowid

    def load(self, table: str, record_id: int) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            row = self._execute(f"""
                SELECT id, data FROM {table} WHERE id = ?
            """, (record_id,)).fetchone()
            if row:
                return self._row_to_record(row)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"SELECT id, data FROM {table} ORDER BY id")
            return [self._row_to_record(row) for row in cursor.fetchall()]

    def exists(self, table: str, record_id: int) -> bool:
        with self._lock:
            self._ensure_table(table)
            row = self._execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,)).fetchone()
            return row is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        with self._lock:
            return [record for record in self.load_all(table) if _matches(record, filters)]

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            row = self._execute(f"SELECT COUNT(*) AS count FROM {table}").fetchone()
            return row['count']

    def begin_transaction(self) -> None:
        with self._lock:
            if not self._in_transaction:
                # DEFERRED mode opens the transaction on the first write
                self._in_transaction = True

    def commit(self) -> None:
        with self._lock:
            if self._in_transaction:
                self._in_transaction = False
                try:
                    self._connection.commit()
                except sqlite3.Error as e:
                    raise StorageError(f"SQLite commit failed: {e}") from e

    def rollback(self) -> None:
        with self._lock:
            if self._in_transaction:
                self._in_transaction = False
                try:
                    self._connection.rollback()
                except sqlite3.Error as e:
                    raise StorageError(f"SQLite rollback failed: {e}") from e

    @contextmanager
    def atomic(self):
        """
        Run a unit of work as one SQLite transaction.

        The connection lock is held for the whole unit so statements issued
        by other threads on the shared connection cannot join or commit it.
        Nested units join the outermost one.
        """
        with self._lock:
            if self._in_transaction:
                yield
                return
            self.begin_transaction()
            try:
                yield
                self.commit()
            except Exception:
                self.rollback()
                raise

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(backend: str, database_path: Union[str, Path] = ":memory:") -> StorageInterface:
    """Build a storage backend by name ("memory" or "sqlite")"""
    backend = backend.lower()
    if backend == "memory":
        return InMemoryStorage()
    if backend == "sqlite":
        return SQLiteStorage(database_path)
    raise InvalidInput(f"Unknown storage backend: {backend}")
