"""
Storage Backend Module

Provides the abstract storage interface and implementations for in-memory
(testing) and SQLite (persistence). All monetary values are stored as
Decimal strings.

Every backend supports atomic units through ``storage.atomic()``: the
outermost block is a unit of work that commits or rolls back as a whole,
nested blocks are savepoints that can fail on their own without aborting
the enclosing unit.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union
from decimal import Decimal
from datetime import date, datetime, timezone
from enum import Enum
import sqlite3
import json
import re
import threading
from dataclasses import dataclass, fields
from pathlib import Path
from contextlib import contextmanager

from .currency import Currency, Money
from .errors import UnexpectedError


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Currency):
        return value.code
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return str(value)


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert to dictionary for storage.

        Money fields are flattened to their amount string; the owning record
        stores the currency code once.
        """
        result = {}
        for item in fields(self):
            value = getattr(self, item.name)
            if isinstance(value, Money):
                value = str(value.amount)
            elif isinstance(value, Currency):
                value = value.code
            elif isinstance(value, Enum):
                value = value.value
            elif isinstance(value, Decimal):
                value = str(value)
            elif isinstance(value, (datetime, date)):
                value = value.isoformat()
            result[item.name] = value
        return result

    def touch(self) -> None:
        self.updated_at = datetime.now(timezone.utc)


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    def __init__(self):
        # Per-thread stack of open atomic frames; each frame collects on-commit callbacks
        self._local = threading.local()

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert or replace a record"""

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table in insertion order"""

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records whose top-level fields equal the filter values"""

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        return self.load(table, record_id) is not None

    def iter_chunks(
        self,
        table: str,
        chunk_size: int,
        filters: Optional[Dict[str, Any]] = None
    ) -> Iterator[List[Dict[str, Any]]]:
        """
        Iterate over a table in bounded chunks ordered by record id.

        The set of ids is fixed when iteration starts; each chunk is loaded
        fresh when it is reached, so later chunks see changes committed by
        earlier ones.
        """
        if chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")

        record_ids = sorted(record['id'] for record in self.find(table, filters or {}))
        for start in range(0, len(record_ids), chunk_size):
            chunk = []
            for record_id in record_ids[start:start + chunk_size]:
                record = self.load(table, record_id)
                if record is not None:
                    chunk.append(record)
            if chunk:
                yield chunk

    # Atomic units

    def _frames(self) -> List[List[Callable[[], None]]]:
        frames = getattr(self._local, 'frames', None)
        if frames is None:
            frames = self._local.frames = []
        return frames

    def in_atomic(self) -> bool:
        """True while the current thread is inside an atomic unit"""
        return bool(self._frames())

    @contextmanager
    def atomic(self):
        """
        Context manager for atomic operations.

        The outermost block commits on success and rolls back on any
        exception. Nested blocks become savepoints.
        """
        frames = self._frames()

        if frames:
            depth = len(frames)
            self._begin_savepoint(depth)
            frames.append([])
            try:
                yield
            except BaseException:
                frames.pop()
                self._rollback_savepoint(depth)
                raise
            callbacks = frames.pop()
            self._release_savepoint(depth)
            frames[-1].extend(callbacks)
            return

        self._begin()
        frames.append([])
        try:
            yield
        except BaseException:
            frames.pop()
            self._rollback()
            raise
        callbacks = frames.pop()
        self._commit()

        for callback in callbacks:
            callback()

    def on_commit(self, callback: Callable[[], None]) -> None:
        """
        Run callback after the current unit commits.

        Outside a unit the callback runs immediately. Callbacks registered in
        a unit or savepoint that rolls back are discarded.
        """
        frames = self._frames()
        if frames:
            frames[-1].append(callback)
        else:
            callback()

    @abstractmethod
    def _begin(self) -> None:
        """Start a unit of work"""

    @abstractmethod
    def _commit(self) -> None:
        """Commit the current unit of work"""

    @abstractmethod
    def _rollback(self) -> None:
        """Discard the current unit of work"""

    @abstractmethod
    def _begin_savepoint(self, depth: int) -> None:
        """Open a savepoint at the given nesting depth"""

    @abstractmethod
    def _release_savepoint(self, depth: int) -> None:
        """Merge a savepoint into its parent"""

    @abstractmethod
    def _rollback_savepoint(self, depth: int) -> None:
        """Discard a savepoint"""


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing.

    Writes made inside an atomic unit go to a per-thread overlay and only
    become visible to other threads when the unit commits.
    """

    def __init__(self):
        super().__init__()
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    def _layers(self) -> List[Dict[Tuple[str, str], Dict[str, Any]]]:
        layers = getattr(self._local, 'layers', None)
        if layers is None:
            layers = self._local.layers = []
        return layers

    @staticmethod
    def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
        # Deep copy to prevent external mutation
        return json.loads(json.dumps(data, default=_json_default))

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory (or to the open unit's overlay)"""
        record = self._copy(data)
        layers = self._layers()
        if layers:
            layers[-1][(table, record_id)] = record
            return
        with self._lock:
            self._data.setdefault(table, {})[record_id] = record

    def _lookup(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        for layer in reversed(self._layers()):
            if (table, record_id) in layer:
                return layer[(table, record_id)]
        with self._lock:
            return self._data.get(table, {}).get(record_id)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        record = self._lookup(table, record_id)
        if record is None:
            return None
        return self._copy(record)

    def exists(self, table: str, record_id: str) -> bool:
        return self._lookup(table, record_id) is not None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            merged = dict(self._data.get(table, {}))
        for layer in self._layers():
            for (layer_table, record_id), record in layer.items():
                if layer_table == table:
                    merged[record_id] = record
        return [self._copy(record) for record in merged.values()]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        return [record for record in self.load_all(table) if _matches(record, filters)]

    def count(self, table: str) -> int:
        """Count records in table"""
        return len(self.load_all(table))

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""

    def _begin(self) -> None:
        self._local.layers = [{}]

    def _commit(self) -> None:
        layers = self._layers()
        with self._lock:
            for (table, record_id), record in layers[0].items():
                self._data.setdefault(table, {})[record_id] = record
        self._local.layers = []

    def _rollback(self) -> None:
        self._local.layers = []

    def _begin_savepoint(self, depth: int) -> None:
        self._layers().append({})

    def _release_savepoint(self, depth: int) -> None:
        layers = self._layers()
        top = layers.pop()
        layers[-1].update(top)

    def _rollback_savepoint(self, depth: int) -> None:
        self._layers().pop()


_FILTER_KEY = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence.

    A single connection is shared by all threads. An atomic unit holds the
    store lock from BEGIN to COMMIT/ROLLBACK, so units are serialised.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:", timeout: float = 30.0):
        super().__init__()
        self.db_path = str(db_path)
        # Autocommit mode; units issue BEGIN/COMMIT explicitly
        self._connection = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None, timeout=timeout
        )
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        self._connection.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            self._connection.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    data = excluded.data,
                    updated_at = excluded.updated_at
            """, (record_id, json.dumps(data, default=_json_default), now, now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            row = self._connection.execute(
                f"SELECT data FROM {table} WHERE id = ?", (record_id,)
            ).fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(
                f"SELECT data FROM {table} ORDER BY created_at, rowid"
            )
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using json_extract"""
        conditions = []
        params: List[Any] = []
        for key, value in filters.items():
            if not _FILTER_KEY.match(key):
                raise ValueError(f"Invalid filter key: {key}")
            if value is None:
                conditions.append(f"json_extract(data, '$.{key}') IS NULL")
                continue
            conditions.append(f"json_extract(data, '$.{key}') = ?")
            params.append(int(value) if isinstance(value, bool) else value)

        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(
                f"SELECT data FROM {table} {where_clause} ORDER BY created_at, rowid", params
            )
            records = [json.loads(row['data']) for row in cursor.fetchall()]
        # json_extract IS NULL also matches missing keys; keep dict semantics
        return [record for record in records if _matches(record, filters)]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"SELECT COUNT(*) AS count FROM {table}")
            return cursor.fetchone()['count']

    def _begin(self) -> None:
        self._lock.acquire()
        try:
            self._connection.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            self._lock.release()
            raise UnexpectedError(f"Could not start transaction: {e}")

    def _commit(self) -> None:
        try:
            self._connection.execute("COMMIT")
        except sqlite3.Error as e:
            self._connection.execute("ROLLBACK")
            raise UnexpectedError(f"Commit failed: {e}")
        finally:
            self._lock.release()

    def _rollback(self) -> None:
        try:
            self._connection.execute("ROLLBACK")
        finally:
            self._lock.release()

    def _begin_savepoint(self, depth: int) -> None:
        self._connection.execute(f"SAVEPOINT sp_{depth}")

    def _release_savepoint(self, depth: int) -> None:
        self._connection.execute(f"RELEASE SAVEPOINT sp_{depth}")

    def _rollback_savepoint(self, depth: int) -> None:
        self._connection.execute(f"ROLLBACK TO SAVEPOINT sp_{depth}")
        self._connection.execute(f"RELEASE SAVEPOINT sp_{depth}")

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str, timeout: float = 30.0) -> StorageInterface:
    """
    Build a storage backend from a URL.

    Supported forms: ``memory://``, ``sqlite://:memory:`` and
    ``sqlite:///relative/or/absolute/path.db``.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:", timeout=timeout)
    raise ValueError(f"Unsupported database URL: {database_url}")
