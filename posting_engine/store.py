"""
Persistent record stores.

The engine talks to a store through a small interface: get/put/insert/
delete by (collection, key), equality-filtered queries, and a guarded
numeric adjustment that applies a delta only if the result stays above a
floor. Two implementations ship:

    MemoryStore  - process-local dicts; no multi-statement transactions,
                   so orchestrations run as compensating sagas
    SQLiteStore  - a single SQLite file (or :memory:) with real ACID
                   transactions
"""

from __future__ import annotations

import copy
import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Iterator, Optional, TypeVar, Union

from posting_engine.errors import ExternalStoreError
from posting_engine.models import Record, to_plain

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=Record)
T = TypeVar("T")


class RecordStore(ABC):
    """Key/value record store with simple filtered queries."""

    supports_transactions = False

    def __init__(self) -> None:
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Primitive operations
    # ------------------------------------------------------------------

    @abstractmethod
    def get(self, collection: str, key: str) -> Optional[dict[str, Any]]:
        ...

    @abstractmethod
    def put(self, collection: str, key: str, record: dict[str, Any]) -> None:
        """Insert or replace a record."""

    @abstractmethod
    def insert(self, collection: str, key: str, record: dict[str, Any]) -> bool:
        """Insert only if the key is free. Returns False if it already exists."""

    @abstractmethod
    def delete(self, collection: str, key: str) -> None:
        ...

    @abstractmethod
    def find(self, collection: str, **criteria: Any) -> list[dict[str, Any]]:
        """Return records whose top-level fields equal every criterion."""

    @contextmanager
    def transaction(self) -> Iterator[None]:
        raise NotImplementedError(f"{type(self).__name__} has no transactions")
        yield  # pragma: no cover

    @contextmanager
    def _guarded(self) -> Iterator[None]:
        """Hold the store lock for a read-modify-write sequence."""
        with self._lock:
            yield

    def conditional_adjust(
        self,
        collection: str,
        key: str,
        field_name: str,
        delta: Decimal,
        floor: Any = Decimal("0"),
    ) -> Optional[Decimal]:
        """
        Add delta to a numeric field unless the result would fall below floor.

        Returns the new value, or None if the guard rejected the change.
        Pass floor=None to apply the delta unconditionally. Raises
        KeyError when the record does not exist.
        """
        with self._guarded():
            record = self.get(collection, key)
            if record is None:
                raise KeyError(f"{collection}/{key}")
            current = Decimal(str(record.get(field_name) or "0"))
            new_value = current + Decimal(str(delta))
            if floor is not None and new_value < floor:
                return None
            record[field_name] = str(new_value)
            self.put(collection, key, record)
            return new_value

    def patch(self, collection: str, key: str, **values: Any) -> dict[str, Any]:
        """Overwrite selected fields of a record in one guarded step."""
        with self._guarded():
            record = self.get(collection, key)
            if record is None:
                raise KeyError(f"{collection}/{key}")
            record.update({name: to_plain(value) for name, value in values.items()})
            self.put(collection, key, record)
            return record

    # ------------------------------------------------------------------
    # Typed helpers
    # ------------------------------------------------------------------

    def load(self, model: type[R], key: str) -> Optional[R]:
        data = self.get(model.collection, key)
        return model.from_record(data) if data is not None else None

    def save(self, obj: Record) -> None:
        self.put(obj.collection, obj.key, obj.to_record())

    def add(self, obj: Record) -> bool:
        return self.insert(obj.collection, obj.key, obj.to_record())

    def remove(self, obj: Record) -> None:
        self.delete(obj.collection, obj.key)

    def update(self, model: type[R], key: str, change: Callable[[R], bool]) -> Optional[R]:
        """
        Load, mutate and save one record under the store guard.

        ``change`` edits the object in place and returns False to leave
        the stored record untouched. Returns the saved object, or None if
        the change declined. Raises KeyError when the record is missing.
        """
        with self._guarded():
            obj = self.load(model, key)
            if obj is None:
                raise KeyError(f"{model.collection}/{key}")
            if not change(obj):
                return None
            self.save(obj)
            return obj

    def query(self, model: type[R], **criteria: Any) -> list[R]:
        plain = {k: to_plain(v) for k, v in criteria.items()}
        return [model.from_record(r) for r in self.find(model.collection, **plain)]


def _matches(record: dict[str, Any], criteria: dict[str, Any]) -> bool:
    return all(record.get(k) == v for k, v in criteria.items())


class MemoryStore(RecordStore):
    """
    In-process store backed by dicts.

    Records are deep-copied on the way in and out so callers never share
    mutable state with the store.
    """

    def __init__(self) -> None:
        super().__init__()
        self._data: dict[str, dict[str, dict[str, Any]]] = {}

    def get(self, collection: str, key: str) -> Optional[dict[str, Any]]:
        with self._lock:
            record = self._data.get(collection, {}).get(key)
            return copy.deepcopy(record) if record is not None else None

    def put(self, collection: str, key: str, record: dict[str, Any]) -> None:
        with self._lock:
            self._data.setdefault(collection, {})[key] = copy.deepcopy(record)

    def insert(self, collection: str, key: str, record: dict[str, Any]) -> bool:
        with self._lock:
            bucket = self._data.setdefault(collection, {})
            if key in bucket:
                return False
            bucket[key] = copy.deepcopy(record)
            return True

    def delete(self, collection: str, key: str) -> None:
        with self._lock:
            self._data.get(collection, {}).pop(key, None)

    def find(self, collection: str, **criteria: Any) -> list[dict[str, Any]]:
        with self._lock:
            return [
                copy.deepcopy(r)
                for r in self._data.get(collection, {}).values()
                if _matches(r, criteria)
            ]

    def count(self, collection: str) -> int:
        with self._lock:
            return len(self._data.get(collection, {}))


_SCHEMA = """
CREATE TABLE IF NOT EXISTS records (
    collection TEXT NOT NULL,
    key        TEXT NOT NULL,
    data       TEXT NOT NULL,
    PRIMARY KEY (collection, key)
)
"""


class SQLiteStore(RecordStore):
    """
    SQLite-backed store with ACID transactions.

    Records are stored as JSON documents in one table keyed by
    (collection, key). A single connection is shared behind a reentrant
    lock; ``transaction()`` holds the lock and an IMMEDIATE transaction
    for its whole duration, so concurrent writers serialize.
    """

    supports_transactions = True

    def __init__(
        self, path: Union[str, Path] = ":memory:", read_retries: int = 3
    ) -> None:
        super().__init__()
        self.path = str(path)
        self.read_retries = max(1, read_retries)
        self._depth = 0
        try:
            self._conn = sqlite3.connect(
                self.path, check_same_thread=False, isolation_level=None
            )
            self._conn.execute(_SCHEMA)
        except sqlite3.Error as e:
            raise ExternalStoreError("connect", str(e), retryable=False) from e
        logger.debug("SQLite store opened at %s", self.path)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ------------------------------------------------------------------
    # Execution helpers
    # ------------------------------------------------------------------

    def _read(self, operation: str, fn: Callable[[], T]) -> T:
        """Run an idempotent read, retrying transient failures."""
        last_error: Optional[sqlite3.Error] = None
        for attempt in range(1, self.read_retries + 1):
            try:
                with self._lock:
                    return fn()
            except sqlite3.OperationalError as e:
                last_error = e
                logger.warning(
                    "Store read %s failed (attempt %d/%d): %s",
                    operation, attempt, self.read_retries, e,
                )
            except sqlite3.Error as e:
                raise ExternalStoreError(operation, str(e), retryable=False) from e
        raise ExternalStoreError(operation, str(last_error), retryable=True)

    def _write(self, operation: str, sql: str, params: tuple) -> sqlite3.Cursor:
        # Writes are never retried here; callers own dedupe keys.
        try:
            with self._lock:
                return self._conn.execute(sql, params)
        except sqlite3.Error as e:
            raise ExternalStoreError(operation, str(e), retryable=False) from e

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            outermost = self._depth == 0
            if outermost:
                try:
                    self._conn.execute("BEGIN IMMEDIATE")
                except sqlite3.Error as e:
                    raise ExternalStoreError("begin", str(e)) from e
            self._depth += 1
            try:
                yield
            except BaseException:
                self._depth -= 1
                if outermost:
                    self._conn.execute("ROLLBACK")
                    logger.debug("Transaction rolled back")
                raise
            else:
                self._depth -= 1
                if outermost:
                    try:
                        self._conn.execute("COMMIT")
                    except sqlite3.Error as e:
                        self._conn.execute("ROLLBACK")
                        raise ExternalStoreError("commit", str(e), retryable=False) from e

    @contextmanager
    def _guarded(self) -> Iterator[None]:
        with self.transaction():
            yield

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    # ------------------------------------------------------------------
    # Primitive operations
    # ------------------------------------------------------------------

    def get(self, collection: str, key: str) -> Optional[dict[str, Any]]:
        def fetch() -> Optional[dict[str, Any]]:
            row = self._conn.execute(
                "SELECT data FROM records WHERE collection = ? AND key = ?",
                (collection, key),
            ).fetchone()
            return json.loads(row[0]) if row else None

        return self._read("get", fetch)

    def put(self, collection: str, key: str, record: dict[str, Any]) -> None:
        self._write(
            "put",
            "INSERT OR REPLACE INTO records (collection, key, data) VALUES (?, ?, ?)",
            (collection, key, json.dumps(record)),
        )

    def insert(self, collection: str, key: str, record: dict[str, Any]) -> bool:
        cursor = self._write(
            "insert",
            "INSERT OR IGNORE INTO records (collection, key, data) VALUES (?, ?, ?)",
            (collection, key, json.dumps(record)),
        )
        return cursor.rowcount == 1

    def delete(self, collection: str, key: str) -> None:
        self._write(
            "delete",
            "DELETE FROM records WHERE collection = ? AND key = ?",
            (collection, key),
        )

    def find(self, collection: str, **criteria: Any) -> list[dict[str, Any]]:
        sql = "SELECT data FROM records WHERE collection = ?"
        params: list[Any] = [collection]
        for name, value in criteria.items():
            if value is None:
                sql += f" AND json_extract(data, '$.{name}') IS NULL"
            else:
                sql += f" AND json_extract(data, '$.{name}') = ?"
                params.append(value)
        sql += " ORDER BY rowid"

        def fetch() -> list[dict[str, Any]]:
            rows = self._conn.execute(sql, tuple(params)).fetchall()
            return [json.loads(r[0]) for r in rows]

        return self._read("find", fetch)
