"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). All monetary values stored as Decimal strings.

Records are JSON documents keyed by id. A table may additionally carry a
unique natural key (cycle and institution names): the backend's unique index
is the source of truth, and get_or_insert converges concurrent creators on a
single row.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from decimal import Decimal
from datetime import datetime, timezone
import copy
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .errors import ValidationError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Union[str, datetime]) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC"""
    if isinstance(value, datetime):
        result = value
    else:
        text = value.strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        result = datetime.fromisoformat(text)
    if result.tzinfo is None:
        result = result.replace(tzinfo=timezone.utc)
    return result


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


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any],
             natural_key: Optional[str] = None) -> None:
        """Insert or update a record; natural_key must stay unique per table"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table in insertion order"""
        pass

    @abstractmethod
    def load_by_key(self, table: str, natural_key: str) -> Optional[Dict[str, Any]]:
        """Load the record holding a natural key"""
        pass

    @abstractmethod
    def get_or_insert(self, table: str, natural_key: str, record_id: str,
                      data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Insert a record unless its natural key already exists

        Returns the stored record: the new one, or the existing holder of the key.
        """
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
        pass

    @abstractmethod
    def delete_where(self, table: str, filters: Dict[str, Any]) -> int:
        """Delete every record matching filters, returning the count"""
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
        except Exception:
            self.rollback()
            raise
        self.commit()


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing

    atomic() holds the lock for the whole scope and restores a snapshot on
    rollback, so it behaves like a serializable transaction.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._keys: Dict[str, Dict[str, str]] = {}
        self._lock = threading.RLock()
        self._depth = 0
        self._snapshot = None

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}
            self._keys[table] = {}

    def _key_of(self, table: str, record_id: str) -> Optional[str]:
        for key, owner in self._keys[table].items():
            if owner == record_id:
                return key
        return None

    def save(self, table: str, record_id: str, data: Dict[str, Any],
             natural_key: Optional[str] = None) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            if natural_key is not None:
                owner = self._keys[table].get(natural_key)
                if owner is not None and owner != record_id:
                    raise ValidationError(f"'{natural_key}' already exists in {table}")
                previous = self._key_of(table, record_id)
                if previous is not None and previous != natural_key:
                    del self._keys[table][previous]
                self._keys[table][natural_key] = record_id
            # Deep copy to prevent external mutation
            self._data[table][record_id] = json.loads(json.dumps(data, default=str))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return json.loads(json.dumps(record))
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            return [json.loads(json.dumps(record)) for record in self._data[table].values()]

    def load_by_key(self, table: str, natural_key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            record_id = self._keys[table].get(natural_key)
            if record_id is None:
                return None
            return self.load(table, record_id)

    def get_or_insert(self, table: str, natural_key: str, record_id: str,
                      data: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            self._ensure_table(table)
            existing = self.load_by_key(table, natural_key)
            if existing is not None:
                return existing
            self.save(table, record_id, data, natural_key=natural_key)
            return self.load(table, record_id)

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                del self._data[table][record_id]
                key = self._key_of(table, record_id)
                if key is not None:
                    del self._keys[table][key]
                return True
            return False

    def delete_where(self, table: str, filters: Dict[str, Any]) -> int:
        with self._lock:
            self._ensure_table(table)
            doomed = [record_id for record_id, record in self._data[table].items()
                      if _matches(record, filters)]
            for record_id in doomed:
                self.delete(table, record_id)
            return len(doomed)

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._lock:
            self._ensure_table(table)
            return [json.loads(json.dumps(record))
                    for record in self._data[table].values()
                    if _matches(record, filters)]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def begin_transaction(self) -> None:
        """
        Start (or join) a transaction

        The outermost scope deep-copies every table, so each write costs time
        proportional to the whole dataset. Use SQLiteStorage outside tests.
        """
        self._lock.acquire()
        if self._depth == 0:
            self._snapshot = (copy.deepcopy(self._data), copy.deepcopy(self._keys))
        self._depth += 1

    def commit(self) -> None:
        self._depth -= 1
        if self._depth == 0:
            self._snapshot = None
        self._lock.release()

    def rollback(self) -> None:
        self._depth -= 1
        if self._depth == 0 and self._snapshot is not None:
            self._data, self._keys = self._snapshot
            self._snapshot = None
        self._lock.release()


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence

    atomic() opens the scope with BEGIN IMMEDIATE: the write lock is taken
    before the first read, so a balance check and the write that depends on it
    cannot interleave with another connection's write.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        # Autocommit mode: transactions are opened explicitly by begin_transaction
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._tables = set()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.execute("PRAGMA busy_timeout = 5000")

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        with self._lock:
            self._connection.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    natural_key TEXT UNIQUE,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._connection.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table}(created_at)
            """)
            self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any],
             natural_key: Optional[str] = None) -> None:
        """Save a record to SQLite"""
        with self._lock:
            self._ensure_table(table)

            now = utc_now().isoformat()
            data_json = json.dumps(data, default=str)

            try:
                # Upsert on id only; a clash on natural_key must fail, not replace
                self._connection.execute(f"""
                    INSERT INTO {table} (id, natural_key, data, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        natural_key = COALESCE(excluded.natural_key, {table}.natural_key),
                        data = excluded.data,
                        updated_at = excluded.updated_at
                """, (record_id, natural_key, data_json, now, now))
            except sqlite3.IntegrityError:
                raise ValidationError(f"'{natural_key}' already exists in {table}")

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
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
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY rowid
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def load_by_key(self, table: str, natural_key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} WHERE natural_key = ?
            """, (natural_key,))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def get_or_insert(self, table: str, natural_key: str, record_id: str,
                      data: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            self._ensure_table(table)
            now = utc_now().isoformat()
            self._connection.execute(f"""
                INSERT INTO {table} (id, natural_key, data, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(natural_key) DO NOTHING
            """, (record_id, natural_key, json.dumps(data, default=str), now, now))
            return self.load_by_key(table, natural_key)

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))
            return cursor.rowcount > 0

    def delete_where(self, table: str, filters: Dict[str, Any]) -> int:
        with self.atomic():
            doomed = [record['id'] for record in self.find(table, filters)]
            for record_id in doomed:
                self.delete(table, record_id)
            return len(doomed)

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        with self._lock:
            self._ensure_table(table)
            if not filters:
                return self.load_all(table)

            conditions = []
            params = []
            for key, value in filters.items():
                conditions.append("json_extract(data, ?) = ?")
                params.extend([f"$.{key}", value])
            cursor = self._connection.execute(f"""
                SELECT data FROM {table}
                WHERE {" AND ".join(conditions)}
                ORDER BY rowid
            """, params)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def begin_transaction(self) -> None:
        """Start (or join) a write transaction"""
        self._lock.acquire()
        try:
            if self._depth == 0:
                self._connection.execute("BEGIN IMMEDIATE")
        except Exception:
            self._lock.release()
            raise
        self._depth += 1

    def commit(self) -> None:
        """Commit when the outermost scope completes"""
        try:
            self._depth -= 1
            if self._depth == 0:
                try:
                    self._connection.execute("COMMIT")
                except sqlite3.Error:
                    self._abort()
                    raise
        finally:
            self._lock.release()

    def rollback(self) -> None:
        """Rollback when the outermost scope fails"""
        try:
            self._depth -= 1
            if self._depth == 0:
                self._abort()
        finally:
            self._lock.release()

    def _abort(self) -> None:
        if self._connection.in_transaction:
            self._connection.execute("ROLLBACK")
        # Tables created inside the scope are gone again
        self._tables.clear()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a URL

    Supported: "memory://" and "sqlite:///<path>" ("sqlite://" alone is an
    in-process SQLite database).
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        if path:
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        return SQLiteStorage(path or ":memory:")
    raise ValueError(f"Unsupported database URL: {database_url}")
