"""
Purchase recorder.

Records a vendor bill as one atomic unit:

- Purchase voucher: Dr Purchases, Dr "<component> Input" per tax
  component (input tax credit), Cr the vendor payable or the payment
  account when paid on the spot
- PURCHASE stock movements for product lines
- PURCHASE tax transaction linked to the voucher
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Optional

from posting_engine.calculator import TaxCalculator, TaxContext, TaxResult, combine_results
from posting_engine.config import EngineConfig
from posting_engine.errors import NotFoundError, ValidationError
from posting_engine.inventory import InventoryAdjuster
from posting_engine.invoicing import LineInput, payment_account
from posting_engine.ledger import LedgerPoster, credit, debit
from posting_engine.models import (
    ZERO,
    AccountClass,
    Business,
    Direction,
    InventoryItem,
    MovementType,
    PaymentMethod,
    TaxTransaction,
    Vendor,
    VoucherType,
    money,
    new_id,
)
from posting_engine.saga import unit_of_work
from posting_engine.store import RecordStore

logger = logging.getLogger(__name__)

PURCHASES_ACCOUNT = "Purchases"


def payable_account(vendor: Vendor) -> str:
    return f"{vendor.name} (Vendor)"


@dataclass
class PurchaseRequest:
    business_id: str
    vendor_id: str
    items: list[LineInput] = field(default_factory=list)
    amount: Optional[Decimal] = None
    bill_number: str = ""
    purchase_date: Optional[date] = None
    payment_method: Optional[PaymentMethod] = None  # None means on credit

    @classmethod
    def from_dict(cls, data: dict) -> "PurchaseRequest":
        return cls(
            business_id=str(data.get("business_id", "")),
            vendor_id=str(data.get("vendor_id", "")),
            items=[LineInput.from_dict(item) for item in data.get("items", [])],
            amount=Decimal(str(data["amount"])) if data.get("amount") is not None else None,
            bill_number=data.get("bill_number", ""),
            purchase_date=(
                date.fromisoformat(data["purchase_date"])
                if isinstance(data.get("purchase_date"), str)
                else data.get("purchase_date")
            ),
            payment_method=(
                PaymentMethod(data["payment_method"]) if data.get("payment_method") else None
            ),
        )


@dataclass
class PurchaseResult:
    voucher_ref: str
    vendor_id: str
    purchase_date: date
    subtotal: Decimal
    tax_amount: Decimal
    total: Decimal
    input_credit: dict[str, Decimal] = field(default_factory=dict)
    claimable: bool = True  # False when the vendor has no registration id


class PurchaseRecorder:
    """Posts vendor bills with input tax credit and stock receipts."""

    def __init__(
        self,
        store: RecordStore,
        calculator: Optional[TaxCalculator] = None,
        ledger: Optional[LedgerPoster] = None,
        inventory: Optional[InventoryAdjuster] = None,
        config: Optional[EngineConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
        id_factory: Callable[[str], str] = new_id,
    ) -> None:
        self.store = store
        self.config = config or EngineConfig()
        self.clock = clock or datetime.now
        self.calculator = calculator or TaxCalculator()
        self.ledger = ledger or LedgerPoster(store, self.clock)
        self.inventory = inventory or InventoryAdjuster(
            store, self.clock, low_stock_alerts=self.config.low_stock_alerts
        )
        self.id_factory = id_factory

    def record_purchase(
        self, request: PurchaseRequest, timeout: Optional[float] = None
    ) -> PurchaseResult:
        if not request.business_id:
            raise ValidationError("business_id")
        if not request.vendor_id:
            raise ValidationError("vendor_id")
        if not request.items and request.amount is None:
            raise ValidationError("items", "Either line items or an amount is required")

        business = self.store.load(Business, request.business_id)
        if business is None:
            raise NotFoundError("business", request.business_id)
        vendor = self.store.load(Vendor, request.vendor_id)
        if vendor is None:
            raise NotFoundError("vendor", request.vendor_id)

        day = request.purchase_date or self.clock().date()
        calc = self.calculator.bind(business.jurisdiction, day)
        lines = request.items or [
            LineInput(description="Amount", quantity=Decimal("1"), rate=request.amount)
        ]

        results: list[TaxResult] = []
        for index, line in enumerate(lines):
            if line.quantity <= 0 or line.rate < 0:
                raise ValidationError(
                    f"items[{index}]", f"Line {index + 1}: quantity and rate must be positive"
                )
            rate = line.tax_rate
            category = line.category
            if line.product_id:
                product = self.store.load(InventoryItem, line.product_id)
                if product is None:
                    raise NotFoundError("product", line.product_id)
                rate = rate if rate is not None else product.tax_rate
                category = category or product.category
            if rate is None:
                rate = business.default_tax_rate
            try:
                results.append(
                    calc.calculate(
                        TaxContext(
                            amount=money(line.quantity * line.rate - line.discount),
                            jurisdiction=business.jurisdiction,
                            direction=Direction.PURCHASE,
                            business_location=business.location,
                            counterpart_location=vendor.location,
                            rate=rate,
                            category=category,
                            on=day,
                        )
                    )
                )
            except ValidationError as e:
                raise ValidationError(
                    f"items[{index}].{e.field}", f"Line {index + 1}: {e}"
                ) from e

        subtotal = sum((r.taxable_amount for r in results), ZERO)
        if subtotal <= 0:
            raise ValidationError("amount", "Purchase amount must be greater than zero")
        combined = combine_results(results)
        total = subtotal + combined.tax_amount

        purchase_id = self.id_factory("PUR")
        voucher_ref = f"PV-{purchase_id}"
        reference = request.bill_number or purchase_id
        narration = f"Purchase {reference} from {vendor.name}"

        entries = [debit(PURCHASES_ACCOUNT, AccountClass.EXPENSE, subtotal, narration)]
        for component, amount in sorted(combined.components.items()):
            entries.append(
                debit(f"{component} Input", AccountClass.ASSET, amount, f"{narration} - {component}")
            )
        if request.payment_method is not None:
            entries.append(
                credit(payment_account(request.payment_method), AccountClass.ASSET, total, narration)
            )
        else:
            entries.append(
                credit(payable_account(vendor), AccountClass.LIABILITY, total, narration)
            )

        limit = timeout if timeout is not None else self.config.orchestration_timeout
        with unit_of_work(self.store, f"purchase {purchase_id}", limit) as saga:
            self.ledger.post_voucher(
                voucher_ref,
                entries,
                business_id=business.id,
                voucher_type=VoucherType.PURCHASE,
                voucher_date=day,
                party_id=vendor.id,
                narration=narration,
            )
            saga.add("purchase voucher", lambda: self.ledger.discard_voucher(voucher_ref))
            saga.checkpoint()

            def revert_stock() -> None:
                for movement in self.inventory.movements_for(voucher_ref):
                    self.inventory.revert(movement)

            saga.add("stock receipts", revert_stock)
            for index, line in enumerate(lines):
                if line.product_id:
                    self.inventory.adjust_stock(
                        line.product_id,
                        line.quantity,
                        MovementType.PURCHASE,
                        voucher_ref,
                        reference=reference,
                        line_index=index,
                    )

            record = TaxTransaction(
                id=self.id_factory("TAX"),
                voucher_ref=voucher_ref,
                business_id=business.id,
                direction=Direction.PURCHASE,
                tax_type=combined.tax_type,
                rate=combined.tax_rate,
                taxable_amount=combined.taxable_amount,
                tax_amount=combined.tax_amount,
                components=combined.components,
                transaction_date=day,
                party_id=vendor.id,
            )
            self.store.save(record)
            saga.add("tax transaction", lambda: self.store.remove(record))

        claimable = bool(vendor.registration_id)
        if not claimable and combined.tax_amount:
            logger.warning(
                "Input tax %s on %s is unclaimable: vendor %s has no registration id",
                combined.tax_amount, voucher_ref, vendor.id,
            )
        logger.info("Recorded purchase %s from %s: total %s", reference, vendor.name, total)
        return PurchaseResult(
            voucher_ref=voucher_ref,
            vendor_id=vendor.id,
            purchase_date=day,
            subtotal=subtotal,
            tax_amount=combined.tax_amount,
            total=total,
            input_credit=combined.components,
            claimable=claimable,
        )
