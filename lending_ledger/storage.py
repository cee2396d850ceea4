"""
Storage Backend Module

Transactional record storage for the ledger. Two backends share one
interface: an in-memory store (tests, single-process deployments) and
SQLite (persistence). Records are JSON documents keyed by (table, id) and
every monetary value is stored as a Decimal string.

Transactions are per thread. Inside a transaction, reads see the
transaction's own writes, ``load_for_update`` takes a row lock that is
held until commit or rollback, and a record that was read and then
written is version-checked at commit: if another transaction committed a
change to it in between, commit raises ``PersistenceConflictError`` and
nothing is applied.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Set, Tuple, Union
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .exceptions import PersistenceConflictError


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


def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
    """Deep copy through JSON so callers never share mutable state with the store"""
    return json.loads(json.dumps(data, default=str))


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_for_update(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record and hold its row lock until the transaction ends"""
        pass

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert or replace a record"""
        pass

    @abstractmethod
    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a new record; an existing id raises PersistenceConflictError"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table in insertion order"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records whose top-level fields equal every filter value"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    @abstractmethod
    def begin_transaction(self) -> None:
        """Start a transaction for the calling thread"""
        pass

    @abstractmethod
    def commit(self) -> None:
        """Commit the calling thread's transaction"""
        pass

    @abstractmethod
    def rollback(self) -> None:
        """Discard the calling thread's transaction"""
        pass

    @abstractmethod
    def in_transaction(self) -> bool:
        """Whether the calling thread has an open transaction"""
        pass

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        return self.load(table, record_id) is not None

    @contextmanager
    def atomic(self):
        """
        Context manager for atomic operations. Joins the caller's
        transaction when one is already open on this thread.
        """
        if self.in_transaction():
            yield
            return

        self.begin_transaction()
        try:
            yield
            self.commit()
        except BaseException:
            self.rollback()
            raise


class _Transaction:
    """Per-thread transaction state for InMemoryStorage"""

    def __init__(self):
        self.writes: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.inserts: Set[Tuple[str, str]] = set()
        self.read_versions: Dict[Tuple[str, str], int] = {}
        self.locks: Dict[Tuple[str, str], threading.Lock] = {}


class InMemoryStorage(StorageInterface):
    """
    In-memory storage with optimistic version checks and pessimistic
    row locks. Uncommitted writes live in the owning thread's transaction
    and are invisible to every other thread.
    """

    def __init__(self, lock_timeout: float = 5.0):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._versions: Dict[Tuple[str, str], int] = {}
        self._lock = threading.RLock()
        self._row_locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._local = threading.local()
        self.lock_timeout = lock_timeout

    def _tx(self) -> Optional[_Transaction]:
        return getattr(self._local, 'tx', None)

    def _apply(self, key: Tuple[str, str], data: Dict[str, Any]) -> None:
        table, record_id = key
        self._data.setdefault(table, {})[record_id] = data
        self._versions[key] = self._versions.get(key, 0) + 1

    def _row_lock(self, key: Tuple[str, str]) -> threading.Lock:
        with self._lock:
            lock = self._row_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._row_locks[key] = lock
            return lock

    def in_transaction(self) -> bool:
        return self._tx() is not None

    def begin_transaction(self) -> None:
        if self._tx() is None:
            self._local.tx = _Transaction()

    def _end(self, tx: _Transaction) -> None:
        for lock in tx.locks.values():
            lock.release()
        self._local.tx = None

    def commit(self) -> None:
        tx = self._tx()
        if tx is None:
            return
        try:
            with self._lock:
                for key in tx.writes:
                    current = self._versions.get(key, 0)
                    if key in tx.inserts and current != 0:
                        raise PersistenceConflictError(
                            f"Record {key[0]}/{key[1]} was inserted concurrently",
                            {"table": key[0], "id": key[1]}
                        )
                    if key in tx.read_versions and tx.read_versions[key] != current:
                        raise PersistenceConflictError(
                            f"Record {key[0]}/{key[1]} changed since it was read",
                            {"table": key[0], "id": key[1]}
                        )
                for key, data in tx.writes.items():
                    self._apply(key, data)
        finally:
            self._end(tx)

    def rollback(self) -> None:
        tx = self._tx()
        if tx is not None:
            self._end(tx)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        key = (table, record_id)
        tx = self._tx()
        if tx is not None and key in tx.writes:
            return _copy(tx.writes[key])

        with self._lock:
            record = self._data.get(table, {}).get(record_id)
            version = self._versions.get(key, 0)

        if tx is not None and key not in tx.read_versions:
            tx.read_versions[key] = version
        return _copy(record) if record is not None else None

    def load_for_update(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        key = (table, record_id)
        tx = self._tx()
        if tx is None:
            return self.load(table, record_id)

        if key not in tx.locks:
            lock = self._row_lock(key)
            if not lock.acquire(timeout=self.lock_timeout):
                raise PersistenceConflictError(
                    f"Timed out waiting for lock on {table}/{record_id}",
                    {"table": table, "id": record_id}
                )
            tx.locks[key] = lock
            # Re-read under the lock; an earlier unlocked read may be stale
            tx.read_versions.pop(key, None)
        return self.load(table, record_id)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        key = (table, record_id)
        tx = self._tx()
        if tx is None:
            with self._lock:
                self._apply(key, _copy(data))
            return
        tx.writes[key] = _copy(data)

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        key = (table, record_id)
        tx = self._tx()
        with self._lock:
            committed = key in self._versions
            if tx is None:
                if committed:
                    raise PersistenceConflictError(
                        f"Record {table}/{record_id} already exists",
                        {"table": table, "id": record_id}
                    )
                self._apply(key, _copy(data))
                return

        if committed or key in tx.writes:
            raise PersistenceConflictError(
                f"Record {table}/{record_id} already exists",
                {"table": table, "id": record_id}
            )
        tx.writes[key] = _copy(data)
        tx.inserts.add(key)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            records = dict(self._data.get(table, {}))

        tx = self._tx()
        if tx is not None:
            for (write_table, record_id), data in tx.writes.items():
                if write_table == table:
                    records[record_id] = data

        return [_copy(record) for record in records.values() if _matches(record, filters)]

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        return self.find(table, {})

    def count(self, table: str) -> int:
        return len(self.load_all(table))

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """
    SQLite storage. SQLite admits a single writer, so a transaction takes
    the connection exclusively (BEGIN IMMEDIATE) and every other thread,
    readers included, waits until it commits or rolls back. No thread can
    observe another thread's uncommitted rows.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:", lock_timeout: float = 5.0):
        self.db_path = str(db_path)
        self.lock_timeout = lock_timeout
        # Autocommit mode; transactions are opened explicitly
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._tx_owner: Optional[int] = None
        self._tables: Set[str] = set()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        with self._lock:
            self._connection.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    version INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._tables.add(table)

    def in_transaction(self) -> bool:
        return self._tx_owner == threading.get_ident()

    def begin_transaction(self) -> None:
        if self.in_transaction():
            return
        if not self._lock.acquire(timeout=self.lock_timeout):
            raise PersistenceConflictError("Timed out waiting for the database write lock")
        try:
            self._connection.execute("BEGIN IMMEDIATE")
        except sqlite3.OperationalError as e:
            self._lock.release()
            raise PersistenceConflictError(f"Could not open transaction: {e}")
        self._tx_owner = threading.get_ident()

    def commit(self) -> None:
        if not self.in_transaction():
            return
        try:
            self._connection.execute("COMMIT")
        finally:
            self._tx_owner = None
            self._lock.release()

    def rollback(self) -> None:
        if not self.in_transaction():
            return
        try:
            self._connection.execute("ROLLBACK")
        finally:
            # Tables created inside the transaction are gone too
            self._tables.clear()
            self._tx_owner = None
            self._lock.release()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        self._ensure_table(table)
        with self._lock:
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_for_update(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        # The open transaction already holds the database exclusively
        return self.load(table, record_id)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        self._ensure_table(table)
        now = datetime.now(timezone.utc).isoformat()
        data_json = json.dumps(data, default=str)
        with self._lock:
            self._connection.execute(f"""
                INSERT INTO {table} (id, data, version, created_at, updated_at)
                VALUES (?, ?, 1, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    data = excluded.data,
                    version = {table}.version + 1,
                    updated_at = excluded.updated_at
            """, (record_id, data_json, now, now))

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        self._ensure_table(table)
        now = datetime.now(timezone.utc).isoformat()
        data_json = json.dumps(data, default=str)
        with self._lock:
            try:
                self._connection.execute(f"""
                    INSERT INTO {table} (id, data, version, created_at, updated_at)
                    VALUES (?, ?, 1, ?, ?)
                """, (record_id, data_json, now, now))
            except sqlite3.IntegrityError:
                raise PersistenceConflictError(
                    f"Record {table}/{record_id} already exists",
                    {"table": table, "id": record_id}
                )

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        self._ensure_table(table)
        with self._lock:
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY rowid
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        return [record for record in self.load_all(table) if _matches(record, filters)]

    def count(self, table: str) -> int:
        self._ensure_table(table)
        with self._lock:
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str, lock_timeout: float = 5.0) -> StorageInterface:
    """
    Build a storage backend from a URL

    Args:
        database_url: "memory://" or "sqlite:///path/to/file.db"
            ("sqlite:///:memory:" for a throwaway SQLite database)
        lock_timeout: Seconds to wait for a row or database lock

    Returns:
        StorageInterface implementation
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage(lock_timeout=lock_timeout)
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):], lock_timeout=lock_timeout)
    raise ValueError(f"Unsupported database url: {database_url}")
