"""
Inventory adjuster.

Stock only changes through ``adjust_stock``, which applies a signed
delta with a non-negative guard and records a StockMovement for every
change. Adjustments to the same product serialize on a per-product lock
and the guarded update itself is a single conditional write in the
store, so two sales of the last unit can never both succeed.
"""

from __future__ import annotations

import logging
import threading
from contextlib import nullcontext
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from posting_engine.errors import InsufficientStockError, NotFoundError, ValidationError
from posting_engine.models import (
    InventoryItem,
    MovementType,
    StockAlert,
    StockMovement,
    new_id,
)
from posting_engine.store import RecordStore

logger = logging.getLogger(__name__)

# Direction each movement type must move stock in; ADJUSTMENT may go either way.
_SIGN_RULES = {
    MovementType.SALE: -1,
    MovementType.PURCHASE: 1,
    MovementType.RETURN: 1,
}


class InventoryAdjuster:
    """Applies guarded stock changes and keeps the movement trail."""

    def __init__(
        self,
        store: RecordStore,
        clock: Optional[Callable[[], datetime]] = None,
        low_stock_alerts: bool = True,
    ) -> None:
        self.store = store
        self.clock = clock or datetime.now
        self.low_stock_alerts = low_stock_alerts
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, product_id: str):
        # A transactional store already serializes writers for the whole
        # transaction; taking a second lock there could deadlock.
        if self.store.supports_transactions:
            return nullcontext()
        with self._registry_lock:
            lock = self._locks.get(product_id)
            if lock is None:
                lock = self._locks[product_id] = threading.Lock()
            return lock

    def adjust_stock(
        self,
        product_id: str,
        delta,
        movement_type: MovementType,
        voucher_ref: str,
        *,
        reference: str = "",
        line_index: Optional[int] = None,
    ) -> Decimal:
        """
        Apply ``delta`` to a product's stock and return the new level.

        Raises NotFoundError for an unknown product and
        InsufficientStockError if the result would be negative; in both
        cases nothing is written.
        """
        delta = Decimal(str(delta))
        if delta == 0:
            raise ValidationError("quantity", "Stock adjustment quantity cannot be zero")
        sign = _SIGN_RULES.get(movement_type)
        if sign is not None and (delta > 0) != (sign > 0):
            raise ValidationError(
                "quantity",
                f"{movement_type.value} movement must "
                f"{'increase' if sign > 0 else 'decrease'} stock",
            )

        with self._lock_for(product_id):
            item = self.store.load(InventoryItem, product_id)
            if item is None:
                raise NotFoundError("product", product_id)

            new_stock = self.store.conditional_adjust(
                InventoryItem.collection, product_id, "current_stock", delta
            )
            if new_stock is None:
                current = self.store.load(InventoryItem, product_id)
                available = current.current_stock if current else item.current_stock
                raise InsufficientStockError(
                    product_id,
                    available=available,
                    requested=-delta,
                    line_index=line_index,
                    product_name=item.name,
                )

            now = self.clock()
            previous = item.last_sold_date
            earlier = [
                m for m in self.movements_for(voucher_ref) if m.product_id == product_id
            ]
            if earlier:
                previous = earlier[0].previous_last_sold
            movement = StockMovement(
                id=new_id("MOV"),
                product_id=product_id,
                movement_type=movement_type,
                quantity=delta,
                voucher_ref=voucher_ref,
                movement_date=now.date(),
                reference=reference,
                previous_last_sold=previous if movement_type is MovementType.SALE else None,
            )
            self.store.save(movement)

            if movement_type is MovementType.SALE:
                self.store.patch(
                    InventoryItem.collection, product_id, last_sold_date=now.date()
                )

        logger.info(
            "Stock %s %s%s -> %s (%s)",
            product_id, "+" if delta > 0 else "", delta, new_stock, voucher_ref,
        )
        if self.low_stock_alerts and delta < 0 and new_stock <= item.min_stock_level:
            self._raise_alert(item, new_stock, now, voucher_ref)
        return new_stock

    def _raise_alert(
        self, item: InventoryItem, stock: Decimal, now: datetime, voucher_ref: str
    ) -> None:
        logger.warning(
            "Low stock for %s: %s left (minimum %s)",
            item.product_id, stock, item.min_stock_level,
        )
        self.store.save(
            StockAlert(
                id=new_id("ALR"),
                product_id=item.product_id,
                current_stock=stock,
                min_stock_level=item.min_stock_level,
                created_at=now,
                voucher_ref=voucher_ref,
            )
        )

    def revert(self, movement: StockMovement) -> None:
        """
        Undo an uncommitted movement: restore stock, drop the row and any
        low-stock alert it raised, and put back the last sold date.

        Used by compensations only; committed sales are undone with
        RETURN movements.
        """
        with self._lock_for(movement.product_id):
            self.store.conditional_adjust(
                InventoryItem.collection,
                movement.product_id,
                "current_stock",
                -movement.quantity,
                floor=None,
            )
            self.store.remove(movement)
            for alert in self.store.query(
                StockAlert, product_id=movement.product_id, voucher_ref=movement.voucher_ref
            ):
                self.store.remove(alert)
            if movement.movement_type is MovementType.SALE:
                item = self.store.load(InventoryItem, movement.product_id)
                if item is not None and item.last_sold_date == movement.movement_date:
                    self.store.patch(
                        InventoryItem.collection,
                        movement.product_id,
                        last_sold_date=movement.previous_last_sold,
                    )

    def movements_for(self, voucher_ref: str) -> list[StockMovement]:
        return self.store.query(StockMovement, voucher_ref=voucher_ref)

    def get_stock(self, product_id: str) -> Decimal:
        item = self.store.load(InventoryItem, product_id)
        if item is None:
            raise NotFoundError("product", product_id)
        return item.current_stock

    def low_stock_items(self, business_id: str) -> list[InventoryItem]:
        items = self.store.query(InventoryItem, business_id=business_id)
        return sorted(
            (i for i in items if i.current_stock <= i.min_stock_level),
            key=lambda i: i.product_id,
        )

    def open_alerts(self, product_id: Optional[str] = None) -> list[StockAlert]:
        criteria = {"resolved": False}
        if product_id:
            criteria["product_id"] = product_id
        return self.store.query(StockAlert, **criteria)
