"""
Records produced and consumed by the posting engine.

Every record is a dataclass that knows the store collection it lives in
and how to flatten itself to plain JSON-compatible values (Decimals as
strings, dates as ISO strings, enums as their values) and back.
"""

from __future__ import annotations

import re
import typing
import uuid
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, ClassVar, Optional, Union


ZERO = Decimal("0.00")
CENT = Decimal("0.01")


def money(amount: Any) -> Decimal:
    """Quantize an amount to the nearest cent, rounding half up."""
    if amount is None or amount == "":
        return ZERO
    return Decimal(str(amount)).quantize(CENT, rounding=ROUND_HALF_UP)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12].upper()}"


# -----------------------------------------------------------------------
# Enumerations
# -----------------------------------------------------------------------


class InvoiceType(Enum):
    TAX_INVOICE = "tax_invoice"
    BILL_OF_SUPPLY = "bill_of_supply"
    PROFORMA = "proforma"
    CREDIT_NOTE = "credit_note"
    DEBIT_NOTE = "debit_note"


class InvoiceStatus(Enum):
    DRAFT = "draft"
    SENT = "sent"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class PostingState(Enum):
    PENDING = "pending"  # persistence steps in flight
    POSTED = "posted"


class PaymentMethod(Enum):
    CASH = "cash"
    BANK = "bank"
    UPI = "upi"
    CARD = "card"
    CHEQUE = "cheque"


class AccountClass(Enum):
    ASSET = "asset"
    LIABILITY = "liability"
    INCOME = "income"
    EXPENSE = "expense"
    RECEIVABLE = "receivable"


class VoucherType(Enum):
    SALES = "SALES"
    PURCHASE = "PURCHASE"
    RECEIPT = "RECEIPT"
    REVERSAL = "REVERSAL"
    JOURNAL = "JOURNAL"


class Direction(Enum):
    SALE = "SALE"
    PURCHASE = "PURCHASE"


class TaxMode(Enum):
    INTRA_STATE = "INTRA_STATE"
    INTER_STATE = "INTER_STATE"


class MovementType(Enum):
    SALE = "SALE"
    PURCHASE = "PURCHASE"
    ADJUSTMENT = "ADJUSTMENT"
    RETURN = "RETURN"


class FilingStatus(Enum):
    PENDING = "PENDING"
    FILED = "FILED"


# -----------------------------------------------------------------------
# Flattening helpers
# -----------------------------------------------------------------------


def to_plain(value: Any) -> Any:
    """Convert a value to JSON-compatible primitives."""
    if isinstance(value, Record):
        return value.to_record()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): to_plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_plain(v) for v in value]
    return value


def _coerce(value: Any, tp: Any) -> Any:
    """Rebuild a typed value from its plain form."""
    if value is None:
        return None

    origin = typing.get_origin(tp)
    if origin is Union:
        args = [a for a in typing.get_args(tp) if a is not type(None)]
        return _coerce(value, args[0]) if args else value
    if origin is list:
        (item_tp,) = typing.get_args(tp) or (Any,)
        return [_coerce(v, item_tp) for v in value]
    if origin is dict:
        _, val_tp = typing.get_args(tp) or (str, Any)
        return {k: _coerce(v, val_tp) for k, v in value.items()}

    if tp is Any:
        return value
    if isinstance(tp, type):
        if isinstance(value, tp) and tp is not date:
            return value
        if issubclass(tp, Enum):
            return tp(value)
        if issubclass(tp, Decimal):
            return Decimal(str(value))
        if tp is datetime:
            return datetime.fromisoformat(value)
        if tp is date:
            if isinstance(value, datetime):
                return value.date()
            if isinstance(value, date):
                return value
            return date.fromisoformat(value[:10])
        if is_dataclass(tp) and issubclass(tp, Record):
            return tp.from_record(value)
        if tp in (int, float, str, bool):
            return tp(value)
    return value


class Record:
    """Mixin for dataclasses persisted in the record store."""

    collection: ClassVar[str] = ""
    key_field: ClassVar[str] = "id"

    @property
    def key(self) -> str:
        return str(getattr(self, self.key_field))

    def to_record(self) -> dict[str, Any]:
        return {f.name: to_plain(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_record(cls, data: dict[str, Any]):
        hints = typing.get_type_hints(cls)
        kwargs = {}
        for f in fields(cls):
            if f.name in data:
                kwargs[f.name] = _coerce(data[f.name], hints[f.name])
        return cls(**kwargs)


# -----------------------------------------------------------------------
# Parties and master data
# -----------------------------------------------------------------------


@dataclass
class Business(Record):
    collection: ClassVar[str] = "businesses"

    id: str
    name: str
    jurisdiction: str  # rule table code, e.g. "IN", "GB"
    location: Optional[str] = None  # state / region within the jurisdiction
    currency: Optional[str] = None
    default_tax_rate: Optional[Decimal] = None
    payment_terms_days: Optional[int] = None
    registration_id: Optional[str] = None
    annual_turnover: Decimal = ZERO


@dataclass
class Customer(Record):
    collection: ClassVar[str] = "customers"

    id: str
    business_id: str
    name: str
    location: Optional[str] = None
    balance: Decimal = ZERO
    last_invoice_date: Optional[date] = None


@dataclass
class Vendor(Record):
    collection: ClassVar[str] = "vendors"

    id: str
    business_id: str
    name: str
    location: Optional[str] = None
    registration_id: Optional[str] = None


@dataclass
class InventoryItem(Record):
    collection: ClassVar[str] = "inventory"
    key_field: ClassVar[str] = "product_id"

    product_id: str
    business_id: str
    name: str
    current_stock: Decimal = ZERO
    min_stock_level: Decimal = Decimal("10")
    unit: str = "pcs"
    purchase_price: Decimal = ZERO
    selling_price: Decimal = ZERO
    tax_rate: Optional[Decimal] = None
    category: Optional[str] = None
    last_sold_date: Optional[date] = None


@dataclass
class StockMovement(Record):
    collection: ClassVar[str] = "stock_movements"

    id: str
    product_id: str
    movement_type: MovementType
    quantity: Decimal  # signed
    voucher_ref: str
    movement_date: date
    reference: str = ""
    previous_last_sold: Optional[date] = None  # last_sold_date before the voucher


@dataclass
class StockAlert(Record):
    collection: ClassVar[str] = "stock_alerts"

    id: str
    product_id: str
    current_stock: Decimal
    min_stock_level: Decimal
    created_at: datetime
    alert_type: str = "LOW_STOCK"
    resolved: bool = False
    voucher_ref: str = ""


# -----------------------------------------------------------------------
# Invoices and payments
# -----------------------------------------------------------------------


@dataclass
class InvoiceLineItem(Record):
    description: str
    quantity: Decimal
    rate: Decimal
    discount: Decimal = ZERO
    product_id: Optional[str] = None
    category: Optional[str] = None
    tax_rate: Optional[Decimal] = None
    subtotal: Decimal = ZERO
    tax_amount: Decimal = ZERO
    tax_components: dict[str, Decimal] = field(default_factory=dict)
    exemption_reason: Optional[str] = None
    total: Decimal = ZERO


@dataclass
class Invoice(Record):
    collection: ClassVar[str] = "invoices"

    id: str
    business_id: str
    customer_id: str
    invoice_type: InvoiceType
    number: str
    issue_date: date
    due_date: date
    items: list[InvoiceLineItem] = field(default_factory=list)
    subtotal: Decimal = ZERO
    tax_amount: Decimal = ZERO
    tax_components: dict[str, Decimal] = field(default_factory=dict)
    discount: Decimal = ZERO
    total: Decimal = ZERO
    paid_amount: Decimal = ZERO
    balance_due: Decimal = ZERO
    status: InvoiceStatus = InvoiceStatus.SENT
    currency: str = "INR"
    tax_mode: Optional[TaxMode] = None
    payment_method: Optional[PaymentMethod] = None
    voucher_ref: str = ""
    posting_state: PostingState = PostingState.PENDING
    notes: str = ""
    created_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status not in (InvoiceStatus.PAID, InvoiceStatus.CANCELLED)


@dataclass
class Payment(Record):
    collection: ClassVar[str] = "payments"

    id: str
    business_id: str
    invoice_id: str
    customer_id: str
    amount: Decimal
    method: PaymentMethod
    payment_date: date
    voucher_ref: str
    reference: str = ""


# -----------------------------------------------------------------------
# Ledger and tax
# -----------------------------------------------------------------------


@dataclass
class Voucher(Record):
    collection: ClassVar[str] = "vouchers"
    key_field: ClassVar[str] = "ref"

    ref: str
    business_id: str
    voucher_type: VoucherType
    voucher_date: date
    total_amount: Decimal
    invoice_id: Optional[str] = None
    party_id: Optional[str] = None
    narration: str = ""
    reversed_by: Optional[str] = None
    posted_at: Optional[datetime] = None


@dataclass
class LedgerEntry(Record):
    collection: ClassVar[str] = "ledger_entries"

    id: str
    voucher_ref: str
    business_id: str
    account_name: str
    account_class: AccountClass
    debit: Decimal
    credit: Decimal
    entry_date: date
    description: str = ""


@dataclass
class TaxTransaction(Record):
    collection: ClassVar[str] = "tax_transactions"

    id: str
    voucher_ref: str
    business_id: str
    direction: Direction
    tax_type: str
    rate: Decimal
    taxable_amount: Decimal
    tax_amount: Decimal
    components: dict[str, Decimal] = field(default_factory=dict)
    transaction_date: Optional[date] = None
    party_id: Optional[str] = None


@dataclass
class TaxFiling(Record):
    collection: ClassVar[str] = "tax_filings"

    id: str
    business_id: str
    jurisdiction: str
    period_start: date
    period_end: date
    due_date: date
    status: FilingStatus = FilingStatus.PENDING
    filed_on: Optional[date] = None


@dataclass(frozen=True)
class Period:
    """An inclusive date range."""

    start: date
    end: date

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValueError(f"Period end {self.end} precedes start {self.start}")

    def contains(self, day: Optional[date]) -> bool:
        if day is None:
            return False
        if isinstance(day, datetime):
            day = day.date()
        return self.start <= day <= self.end

    @property
    def label(self) -> str:
        return f"{self.start.isoformat()} to {self.end.isoformat()}"

    @classmethod
    def parse(cls, text: str) -> "Period":
        """Parse "YYYY-MM-DD:YYYY-MM-DD", "YYYY-MM" or "YYYY"."""
        if ":" in text:
            start, end = text.split(":", 1)
            return cls(date.fromisoformat(start), date.fromisoformat(end))
        if re.fullmatch(r"\d{4}-\d{2}", text):
            year, month = (int(p) for p in text.split("-"))
            start = date(year, month, 1)
            end = (
                date(year + 1, 1, 1) if month == 12 else date(year, month + 1, 1)
            )
            return cls(start, date.fromordinal(end.toordinal() - 1))
        if re.fullmatch(r"\d{4}", text):
            return cls(date(int(text), 1, 1), date(int(text), 12, 31))
        raise ValueError(f"Unrecognised period: {text}")
