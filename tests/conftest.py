"""Shared fixtures: a fixed clock, both store kinds and a seeded business."""

from datetime import datetime
from decimal import Decimal

import pytest

from posting_engine.engine import PostingEngine
from posting_engine.models import Business, Customer, InventoryItem, Period, Vendor
from posting_engine.store import MemoryStore, SQLiteStore

NOW = datetime(2024, 6, 15, 10, 30)


def fixed_clock() -> datetime:
    return NOW


def seed(store) -> None:
    """Business B1 in Karnataka with two customers, two vendors and two products."""
    store.save(
        Business(
            id="B1",
            name="Acme Traders",
            jurisdiction="IN",
            location="KA",
            currency="INR",
            default_tax_rate=Decimal("18"),
            payment_terms_days=30,
            registration_id="29ABCDE1234F1Z5",
            annual_turnover=Decimal("2500000"),
        )
    )
    store.save(Customer(id="C1", business_id="B1", name="Ravi Stores", location="KA"))
    store.save(Customer(id="C2", business_id="B1", name="Meera Exports", location="MH"))
    store.save(
        Vendor(id="V1", business_id="B1", name="Bharat Metals", location="KA",
               registration_id="29FGHIJ5678K1Z2")
    )
    store.save(Vendor(id="V2", business_id="B1", name="Local Packers", location="KA"))
    store.save(
        InventoryItem(
            product_id="P1",
            business_id="B1",
            name="Steel Bottle",
            current_stock=Decimal("10"),
            min_stock_level=Decimal("2"),
            selling_price=Decimal("100"),
            tax_rate=Decimal("18"),
        )
    )
    store.save(
        InventoryItem(
            product_id="P2",
            business_id="B1",
            name="Brass Lamp",
            current_stock=Decimal("3"),
            min_stock_level=Decimal("1"),
            selling_price=Decimal("250"),
            tax_rate=Decimal("12"),
        )
    )


@pytest.fixture
def memory_store() -> MemoryStore:
    store = MemoryStore()
    seed(store)
    return store


@pytest.fixture
def sqlite_store():
    store = SQLiteStore(":memory:")
    seed(store)
    yield store
    store.close()


@pytest.fixture(params=["memory", "sqlite"])
def store(request):
    """Every store kind, seeded."""
    if request.param == "memory":
        yield request.getfixturevalue("memory_store")
    else:
        yield request.getfixturevalue("sqlite_store")


@pytest.fixture
def engine(store) -> PostingEngine:
    return PostingEngine(store, clock=fixed_clock)


@pytest.fixture
def june() -> Period:
    return Period.parse("2024-06")


@pytest.fixture
def memory_engine(memory_store) -> PostingEngine:
    return PostingEngine(memory_store, clock=fixed_clock)
