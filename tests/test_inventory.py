"""Tests for the InventoryAdjuster."""

import threading
from datetime import date
from decimal import Decimal

import pytest

from posting_engine.errors import InsufficientStockError, NotFoundError, ValidationError
from posting_engine.inventory import InventoryAdjuster
from posting_engine.models import InventoryItem, MovementType, StockMovement


@pytest.fixture
def inventory(store) -> InventoryAdjuster:
    return InventoryAdjuster(store)


# ── Adjustments ──────────────────────────────────────────────────────


def test_sale_decrements_and_records_movement(inventory: InventoryAdjuster, store):
    new_stock = inventory.adjust_stock("P1", Decimal("-3"), MovementType.SALE, "SV-1")
    assert new_stock == Decimal("7")
    assert inventory.get_stock("P1") == Decimal("7")
    movements = inventory.movements_for("SV-1")
    assert len(movements) == 1
    assert movements[0].quantity == Decimal("-3")
    assert movements[0].movement_type is MovementType.SALE
    assert store.load(InventoryItem, "P1").last_sold_date is not None


def test_oversell_rejected_without_side_effects(inventory: InventoryAdjuster, store):
    with pytest.raises(InsufficientStockError) as exc:
        inventory.adjust_stock("P2", Decimal("-5"), MovementType.SALE, "SV-1", line_index=0)
    assert exc.value.available == Decimal("3")
    assert exc.value.requested == Decimal("5")
    assert "line 1" in str(exc.value)
    assert inventory.get_stock("P2") == Decimal("3")
    assert store.query(StockMovement) == []


def test_purchase_increments(inventory: InventoryAdjuster):
    assert inventory.adjust_stock("P2", 7, MovementType.PURCHASE, "PV-1") == Decimal("10")


def test_adjustment_may_go_either_way(inventory: InventoryAdjuster):
    inventory.adjust_stock("P1", -1, MovementType.ADJUSTMENT, "ADJ-1")
    inventory.adjust_stock("P1", 2, MovementType.ADJUSTMENT, "ADJ-2")
    assert inventory.get_stock("P1") == Decimal("11")


@pytest.mark.parametrize(
    "delta, movement_type",
    [(1, MovementType.SALE), (-1, MovementType.PURCHASE), (-1, MovementType.RETURN), (0, MovementType.ADJUSTMENT)],
)
def test_sign_rules(inventory: InventoryAdjuster, delta, movement_type):
    with pytest.raises(ValidationError):
        inventory.adjust_stock("P1", delta, movement_type, "X-1")


def test_unknown_product(inventory: InventoryAdjuster):
    with pytest.raises(NotFoundError):
        inventory.adjust_stock("P404", -1, MovementType.SALE, "SV-1")


def test_revert_restores_stock(inventory: InventoryAdjuster, store):
    inventory.adjust_stock("P1", -4, MovementType.SALE, "SV-1")
    for movement in inventory.movements_for("SV-1"):
        inventory.revert(movement)
    assert inventory.get_stock("P1") == Decimal("10")
    assert inventory.movements_for("SV-1") == []


def test_revert_drops_alert_and_restores_last_sold(inventory: InventoryAdjuster, store):
    store.patch(InventoryItem.collection, "P1", last_sold_date=date(2024, 1, 31))
    inventory.adjust_stock("P1", -8, MovementType.SALE, "SV-OLD")
    inventory.adjust_stock("P1", -1, MovementType.SALE, "SV-1")
    inventory.adjust_stock("P1", -1, MovementType.SALE, "SV-1")
    assert len(inventory.open_alerts("P1")) == 3

    for movement in inventory.movements_for("SV-1"):
        inventory.revert(movement)

    (kept,) = inventory.open_alerts("P1")
    assert kept.voucher_ref == "SV-OLD"
    assert inventory.get_stock("P1") == Decimal("2")
    first = inventory.movements_for("SV-OLD")[0]
    assert first.previous_last_sold == date(2024, 1, 31)

    inventory.revert(first)
    assert store.load(InventoryItem, "P1").last_sold_date == date(2024, 1, 31)
    assert inventory.open_alerts() == []


# ── Low stock ────────────────────────────────────────────────────────


def test_low_stock_alert_raised_at_minimum(inventory: InventoryAdjuster):
    inventory.adjust_stock("P1", -8, MovementType.SALE, "SV-1")
    alerts = inventory.open_alerts("P1")
    assert len(alerts) == 1
    assert alerts[0].current_stock == Decimal("2")
    assert [i.product_id for i in inventory.low_stock_items("B1")] == ["P1"]


def test_no_alert_on_increase(inventory: InventoryAdjuster):
    inventory.adjust_stock("P2", 1, MovementType.RETURN, "REV-1")
    assert inventory.open_alerts() == []


def test_alerts_can_be_disabled(store):
    quiet = InventoryAdjuster(store, low_stock_alerts=False)
    quiet.adjust_stock("P1", -9, MovementType.SALE, "SV-1")
    assert quiet.open_alerts() == []


# ── Concurrency ──────────────────────────────────────────────────────


def test_concurrent_sales_of_last_units(inventory: InventoryAdjuster):
    # P2 has 3 units; six threads each try to sell one
    barrier = threading.Barrier(6)
    results: list[str] = []

    def sell(n: int) -> None:
        barrier.wait()
        try:
            inventory.adjust_stock("P2", -1, MovementType.SALE, f"SV-{n}")
            results.append("ok")
        except InsufficientStockError:
            results.append("short")

    threads = [threading.Thread(target=sell, args=(n,)) for n in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count("ok") == 3
    assert results.count("short") == 3
    assert inventory.get_stock("P2") == Decimal("0")
