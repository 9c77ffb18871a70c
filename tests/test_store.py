"""Tests for the memory and SQLite record stores."""

import sqlite3
from decimal import Decimal

import pytest

from posting_engine.errors import ExternalStoreError
from posting_engine.models import Customer, InventoryItem
from posting_engine.store import MemoryStore, SQLiteStore


# ── Primitive operations ─────────────────────────────────────────────


def test_insert_refuses_existing_key(store):
    assert store.insert("claims", "k1", {"v": 1}) is True
    assert store.insert("claims", "k1", {"v": 2}) is False
    assert store.get("claims", "k1") == {"v": 1}


def test_delete_missing_key_is_noop(store):
    store.delete("claims", "nope")
    assert store.get("claims", "nope") is None


def test_find_filters_on_fields(store):
    store.put("docs", "a", {"kind": "x", "n": 1})
    store.put("docs", "b", {"kind": "y", "n": 2})
    store.put("docs", "c", {"kind": "x", "n": None})
    assert [d["n"] for d in store.find("docs", kind="x", n=1)] == [1]
    assert len(store.find("docs", n=None)) == 1
    assert len(store.find("docs")) == 3


def test_typed_round_trip(store):
    customer = store.load(Customer, "C1")
    assert customer.name == "Ravi Stores"
    assert customer.balance == Decimal("0.00")
    assert [c.id for c in store.query(Customer, business_id="B1", location="MH")] == ["C2"]


def test_memory_store_returns_copies():
    store = MemoryStore()
    record = {"items": [1]}
    store.put("docs", "a", record)
    record["items"].append(2)
    fetched = store.get("docs", "a")
    fetched["items"].append(3)
    assert store.get("docs", "a") == {"items": [1]}


# ── Guarded updates ──────────────────────────────────────────────────


def test_conditional_adjust_applies_within_floor(store):
    assert store.conditional_adjust(
        InventoryItem.collection, "P1", "current_stock", Decimal("-4")
    ) == Decimal("6")
    assert store.load(InventoryItem, "P1").current_stock == Decimal("6")


def test_conditional_adjust_rejects_below_floor(store):
    result = store.conditional_adjust(
        InventoryItem.collection, "P2", "current_stock", Decimal("-4")
    )
    assert result is None
    assert store.load(InventoryItem, "P2").current_stock == Decimal("3")


def test_conditional_adjust_without_floor(store):
    value = store.conditional_adjust(
        Customer.collection, "C1", "balance", Decimal("-50"), floor=None
    )
    assert value == Decimal("-50.00")


def test_conditional_adjust_missing_record(store):
    with pytest.raises(KeyError):
        store.conditional_adjust(InventoryItem.collection, "nope", "current_stock", Decimal("1"))


def test_patch_updates_selected_fields(store):
    store.patch(Customer.collection, "C1", location="TN")
    customer = store.load(Customer, "C1")
    assert customer.location == "TN"
    assert customer.name == "Ravi Stores"


def test_update_declined_change_leaves_record(store):
    def rename(c: Customer) -> bool:
        c.name = "Changed"
        return False

    assert store.update(Customer, "C1", rename) is None
    assert store.load(Customer, "C1").name == "Ravi Stores"


def test_update_missing_record(store):
    with pytest.raises(KeyError):
        store.update(Customer, "ghost", lambda c: True)


# ── SQLite transactions ──────────────────────────────────────────────


def test_sqlite_transaction_rolls_back(sqlite_store: SQLiteStore):
    with pytest.raises(RuntimeError):
        with sqlite_store.transaction():
            sqlite_store.put("docs", "a", {"v": 1})
            with sqlite_store.transaction():
                sqlite_store.put("docs", "b", {"v": 2})
            raise RuntimeError("boom")
    assert sqlite_store.get("docs", "a") is None
    assert sqlite_store.get("docs", "b") is None
    assert not sqlite_store.in_transaction


def test_sqlite_transaction_commits(sqlite_store: SQLiteStore):
    with sqlite_store.transaction():
        sqlite_store.put("docs", "a", {"v": 1})
    assert sqlite_store.get("docs", "a") == {"v": 1}


def test_memory_store_has_no_transactions():
    store = MemoryStore()
    assert not store.supports_transactions
    with pytest.raises(NotImplementedError):
        with store.transaction():
            pass


def test_sqlite_file_persists(tmp_path):
    path = tmp_path / "books.db"
    first = SQLiteStore(path)
    first.put("docs", "a", {"v": 1})
    first.close()
    second = SQLiteStore(path)
    assert second.get("docs", "a") == {"v": 1}
    second.close()


class _FlakyConnection:
    """Fails the first ``failures`` SELECTs with a transient error."""

    def __init__(self, conn: sqlite3.Connection, failures: int) -> None:
        self._conn = conn
        self.failures = failures

    def execute(self, sql, params=()):
        if sql.startswith("SELECT") and self.failures:
            self.failures -= 1
            raise sqlite3.OperationalError("database is locked")
        return self._conn.execute(sql, params)

    def close(self) -> None:
        self._conn.close()


def test_reads_retry_transient_failures(sqlite_store: SQLiteStore):
    sqlite_store._conn = _FlakyConnection(sqlite_store._conn, failures=2)
    assert sqlite_store.load(Customer, "C1").name == "Ravi Stores"


def test_reads_give_up_after_retries(sqlite_store: SQLiteStore):
    sqlite_store._conn = _FlakyConnection(sqlite_store._conn, failures=10)
    with pytest.raises(ExternalStoreError) as exc:
        sqlite_store.get("customers", "C1")
    assert exc.value.retryable


def test_writes_are_not_retried(sqlite_store: SQLiteStore):
    class _Broken:
        def execute(self, sql, params=()):
            raise sqlite3.OperationalError("disk I/O error")

        def close(self) -> None:
            pass

    sqlite_store._conn = _Broken()
    with pytest.raises(ExternalStoreError) as exc:
        sqlite_store.put("docs", "a", {"v": 1})
    assert not exc.value.retryable
