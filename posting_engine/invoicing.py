"""
Invoice orchestrator.

Turns one invoice request into its full set of side effects:

- Invoice record with per-line tax
- Balanced sales voucher (receivable, revenue, tax payable, discount,
  immediate payment)
- Stock decrements for product lines
- Customer balance update
- Payment record for any immediate payment
- SALE tax transaction linked to the voucher

All of it commits together or not at all. On a transactional store the
steps run inside one transaction; otherwise each step registers a
compensation and a failure unwinds everything already written. Payments,
cancellations, the overdue sweep and the recovery sweep live here too.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Optional

from posting_engine.calculator import (
    TaxCalculator,
    TaxContext,
    TaxResult,
    combine_results,
    decide_tax_mode,
)
from posting_engine.config import EngineConfig
from posting_engine.errors import ExternalStoreError, NotFoundError, ValidationError
from posting_engine.inventory import InventoryAdjuster
from posting_engine.ledger import LedgerPoster, PostingLine, credit, debit
from posting_engine.models import (
    ZERO,
    AccountClass,
    Business,
    Customer,
    Direction,
    InventoryItem,
    Invoice,
    InvoiceLineItem,
    InvoiceStatus,
    InvoiceType,
    MovementType,
    Payment,
    PaymentMethod,
    PostingState,
    TaxMode,
    TaxTransaction,
    Voucher,
    VoucherType,
    money,
    new_id,
)
from posting_engine.saga import Saga, unit_of_work
from posting_engine.store import RecordStore

logger = logging.getLogger(__name__)

NUMBER_CLAIMS = "invoice_numbers"
_NUMBER_ATTEMPTS = 20

SALES_ACCOUNT = "Sales Revenue"
DISCOUNT_ACCOUNT = "Discount Allowed"

PAYMENT_ACCOUNTS = {
    PaymentMethod.CASH: "Cash in Hand",
    PaymentMethod.BANK: "Bank Account",
    PaymentMethod.UPI: "Bank Account",
    PaymentMethod.CARD: "Bank Account",
    PaymentMethod.CHEQUE: "Bank Account",
}


def payment_account(method: Optional[PaymentMethod]) -> str:
    return PAYMENT_ACCOUNTS.get(method, "Cash in Hand")


def receivable_account(customer: Customer) -> str:
    return f"{customer.name} (Customer)"


def _dec(value: Any, default: Optional[Decimal] = None) -> Optional[Decimal]:
    if value is None or value == "":
        return default
    return Decimal(str(value))


def _day(value: Any) -> Optional[date]:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


@dataclass
class LineInput:
    """One requested invoice line."""

    description: str = ""
    quantity: Decimal = Decimal("1")
    rate: Decimal = ZERO
    discount: Decimal = ZERO
    product_id: Optional[str] = None
    category: Optional[str] = None
    tax_rate: Optional[Decimal] = None  # percent; overrides product/business rate

    @classmethod
    def from_dict(cls, data: dict) -> "LineInput":
        return cls(
            description=str(data.get("description", "")),
            quantity=_dec(data.get("quantity"), Decimal("1")),
            rate=_dec(data.get("rate"), ZERO),
            discount=_dec(data.get("discount"), ZERO),
            product_id=data.get("product_id"),
            category=data.get("category"),
            tax_rate=_dec(data.get("tax_rate")),
        )


@dataclass
class InvoiceRequest:
    """Everything a caller supplies to create an invoice."""

    business_id: str
    customer_id: str
    invoice_type: Optional[InvoiceType] = InvoiceType.TAX_INVOICE
    items: list[LineInput] = field(default_factory=list)
    amount: Optional[Decimal] = None  # flat amount when there are no lines
    discount: Decimal = ZERO
    paid_amount: Decimal = ZERO
    payment_method: PaymentMethod = PaymentMethod.CASH
    number: Optional[str] = None
    issue_date: Optional[date] = None
    due_date: Optional[date] = None
    tax_mode: Optional[TaxMode] = None
    currency: Optional[str] = None
    notes: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "InvoiceRequest":
        return cls(
            business_id=str(data.get("business_id", "")),
            customer_id=str(data.get("customer_id", "")),
            invoice_type=InvoiceType(data.get("invoice_type", "tax_invoice")),
            items=[LineInput.from_dict(item) for item in data.get("items", [])],
            amount=_dec(data.get("amount")),
            discount=_dec(data.get("discount"), ZERO),
            paid_amount=_dec(data.get("paid_amount"), ZERO),
            payment_method=PaymentMethod(data.get("payment_method", "cash")),
            number=data.get("number"),
            issue_date=_day(data.get("issue_date")),
            due_date=_day(data.get("due_date")),
            tax_mode=TaxMode(data["tax_mode"]) if data.get("tax_mode") else None,
            currency=data.get("currency"),
            notes=data.get("notes", ""),
        )


@dataclass
class PaymentRequest:
    amount: Decimal
    method: PaymentMethod = PaymentMethod.CASH
    payment_date: Optional[date] = None
    reference: str = ""


@dataclass
class RecoveryReport:
    """What a recovery sweep repaired."""

    rolled_back_invoices: list[str] = field(default_factory=list)
    orphan_vouchers: list[str] = field(default_factory=list)
    released_numbers: list[str] = field(default_factory=list)
    reconciled_customers: list[str] = field(default_factory=list)

    @property
    def repaired(self) -> int:
        return (
            len(self.rolled_back_invoices)
            + len(self.orphan_vouchers)
            + len(self.released_numbers)
            + len(self.reconciled_customers)
        )


def payment_status(total: Decimal, paid: Decimal) -> InvoiceStatus:
    if paid > 0 and paid >= total:
        return InvoiceStatus.PAID
    if paid > 0:
        return InvoiceStatus.PARTIALLY_PAID
    return InvoiceStatus.SENT


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class InvoiceOrchestrator:
    """
    Creates invoices and records payments against them atomically.

    Collaborators default to fresh instances over the same store, so the
    common case is ``InvoiceOrchestrator(store)``.
    """

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

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _require(self, model, key: str, kind: str):
        obj = self.store.load(model, key)
        if obj is None:
            raise NotFoundError(kind, key)
        return obj

    def get_invoice(self, invoice_id: str) -> Invoice:
        return self._require(Invoice, invoice_id, "invoice")

    def invoices_for(self, customer_id: str) -> list[Invoice]:
        invoices = self.store.query(Invoice, customer_id=customer_id)
        return sorted(invoices, key=lambda inv: inv.number)

    # ------------------------------------------------------------------
    # Invoice creation
    # ------------------------------------------------------------------

    def create_invoice(
        self, request: InvoiceRequest, timeout: Optional[float] = None
    ) -> Invoice:
        """
        Create, price and post an invoice.

        Raises ValidationError, NotFoundError, InsufficientStockError or
        BalanceError; on any failure nothing is left in the store.
        """
        self._validate(request)
        business = self._require(Business, request.business_id, "business")
        customer = self._require(Customer, request.customer_id, "customer")
        if customer.business_id != business.id:
            raise ValidationError(
                "customer_id",
                f"Customer {customer.id} does not belong to business {business.id}",
            )

        now = self.clock()
        issue_date = request.issue_date or now.date()
        terms = business.payment_terms_days or self.config.default_payment_terms_days
        due_date = request.due_date or issue_date + timedelta(days=terms)
        if due_date < issue_date:
            raise ValidationError("due_date", "Due date cannot precede the issue date")

        tax_mode = request.tax_mode or decide_tax_mode(
            business.location, customer.location
        )
        items, combined = self._price_lines(request, business, tax_mode, issue_date)

        subtotal = sum((item.subtotal for item in items), ZERO)
        if subtotal <= 0:
            raise ValidationError("amount", "Invoice amount must be greater than zero")
        discount = money(request.discount)
        total = subtotal + combined.tax_amount - discount
        if total < 0:
            raise ValidationError("discount", "Discount cannot exceed the invoice amount")
        paid = money(request.paid_amount)
        if paid > total:
            logger.warning(
                "Rejected over-payment on new invoice for %s: paid %s, total %s",
                customer.id, paid, total,
            )
            raise ValidationError(
                "paid_amount", f"Paid amount {paid} exceeds invoice total {total}"
            )

        invoice_id = self.id_factory("IV")
        voucher_ref = f"SV-{invoice_id}"
        label = f"invoice {invoice_id}"
        limit = timeout if timeout is not None else self.config.orchestration_timeout

        with unit_of_work(self.store, label, limit) as saga:
            number = self._assign_number(business.id, invoice_id, request.number, issue_date, saga)
            invoice = Invoice(
                id=invoice_id,
                business_id=business.id,
                customer_id=customer.id,
                invoice_type=request.invoice_type,
                number=number,
                issue_date=issue_date,
                due_date=due_date,
                items=items,
                subtotal=subtotal,
                tax_amount=combined.tax_amount,
                tax_components=combined.components,
                discount=discount,
                total=total,
                paid_amount=paid,
                balance_due=total - paid,
                status=payment_status(total, paid),
                currency=request.currency or business.currency or self.config.default_currency,
                tax_mode=tax_mode,
                payment_method=request.payment_method if paid > 0 else None,
                voucher_ref=voucher_ref,
                posting_state=PostingState.PENDING,
                notes=request.notes,
                created_at=now,
            )
            self.store.save(invoice)
            saga.add("invoice record", lambda: self.store.remove(invoice))
            saga.checkpoint()

            self.ledger.post_voucher(
                voucher_ref,
                self._sales_lines(invoice, customer),
                business_id=business.id,
                voucher_type=VoucherType.SALES,
                voucher_date=issue_date,
                invoice_id=invoice.id,
                party_id=customer.id,
                narration=f"Invoice {number}",
            )
            saga.add("sales voucher", lambda: self.ledger.discard_voucher(voucher_ref))
            saga.checkpoint()

            saga.add("stock movements", lambda: self._revert_movements(voucher_ref))
            for index, item in enumerate(items):
                if item.product_id:
                    self.inventory.adjust_stock(
                        item.product_id,
                        -item.quantity,
                        MovementType.SALE,
                        voucher_ref,
                        reference=number,
                        line_index=index,
                    )
            saga.checkpoint()

            self._adjust_customer(customer, invoice.balance_due, saga, last_invoice_date=issue_date)

            if paid > 0:
                payment = Payment(
                    id=self.id_factory("PMT"),
                    business_id=business.id,
                    invoice_id=invoice.id,
                    customer_id=customer.id,
                    amount=paid,
                    method=request.payment_method,
                    payment_date=issue_date,
                    voucher_ref=voucher_ref,
                    reference=f"Initial payment for {number}",
                )
                self.store.save(payment)
                saga.add("payment record", lambda: self.store.remove(payment))

            tax_record = self._tax_record(
                voucher_ref, business.id, customer.id, combined, issue_date
            )
            self.store.save(tax_record)
            saga.add("tax transaction", lambda: self.store.remove(tax_record))

            invoice.posting_state = PostingState.POSTED
            self.store.save(invoice)

        logger.info(
            "Created invoice %s for %s: total %s, paid %s (%s)",
            invoice.number, customer.name, invoice.total, invoice.paid_amount,
            invoice.status.value,
        )
        return invoice

    def _validate(self, request: InvoiceRequest) -> None:
        if not request.business_id:
            raise ValidationError("business_id")
        if not request.customer_id:
            raise ValidationError("customer_id")
        if request.invoice_type is None:
            raise ValidationError("invoice_type")
        if not request.items and request.amount is None:
            raise ValidationError("items", "Either line items or an amount is required")
        if request.amount is not None and request.amount < 0:
            raise ValidationError("amount", "Amount cannot be negative")
        if request.discount < 0:
            raise ValidationError("discount", "Discount cannot be negative")
        if request.paid_amount < 0:
            raise ValidationError("paid_amount", "Paid amount cannot be negative")

        for index, line in enumerate(request.items):
            where = f"items[{index}]"
            if line.quantity is None or line.quantity <= 0:
                raise ValidationError(
                    f"{where}.quantity", f"Line {index + 1}: quantity must be greater than zero"
                )
            if line.rate is None or line.rate < 0:
                raise ValidationError(
                    f"{where}.rate", f"Line {index + 1}: rate cannot be negative"
                )
            if line.discount < 0 or line.discount > line.quantity * line.rate:
                raise ValidationError(
                    f"{where}.discount",
                    f"Line {index + 1}: discount must be between 0 and the line amount",
                )

    def _price_lines(
        self,
        request: InvoiceRequest,
        business: Business,
        tax_mode: TaxMode,
        on: date,
    ) -> tuple[list[InvoiceLineItem], TaxResult]:
        """Tax every line with the business's jurisdiction calculator."""
        calc = self.calculator.bind(business.jurisdiction, on)
        # The calculator decides the mode from locations; an explicit mode
        # is honoured by choosing the counterpart location to match.
        home = business.location or business.jurisdiction
        counterpart = home if tax_mode is TaxMode.INTRA_STATE else None

        lines = request.items or [
            LineInput(description="Amount", quantity=Decimal("1"), rate=request.amount)
        ]
        items: list[InvoiceLineItem] = []
        results: list[TaxResult] = []
        for index, line in enumerate(lines):
            product = None
            if line.product_id:
                product = self._require(InventoryItem, line.product_id, "product")
                if product.business_id != business.id:
                    raise ValidationError(
                        f"items[{index}].product_id",
                        f"Line {index + 1}: product {product.product_id} belongs to another business",
                    )

            rate = line.tax_rate
            if rate is None and product is not None:
                rate = product.tax_rate
            if rate is None:
                rate = business.default_tax_rate
            category = line.category or (product.category if product else None)
            subtotal = money(line.quantity * line.rate - line.discount)

            try:
                result = calc.calculate(
                    TaxContext(
                        amount=subtotal,
                        jurisdiction=business.jurisdiction,
                        direction=Direction.SALE,
                        business_location=home,
                        counterpart_location=counterpart,
                        rate=rate,
                        category=category,
                        on=on,
                    )
                )
            except ValidationError as e:
                raise ValidationError(
                    f"items[{index}].{e.field}", f"Line {index + 1}: {e}"
                ) from e
            for warning in result.warnings:
                logger.warning("Line %d: %s", index + 1, warning)

            results.append(result)
            items.append(
                InvoiceLineItem(
                    description=line.description or (product.name if product else f"Item {index + 1}"),
                    quantity=line.quantity,
                    rate=money(line.rate),
                    discount=money(line.discount),
                    product_id=line.product_id,
                    category=category,
                    tax_rate=result.tax_rate,
                    subtotal=subtotal,
                    tax_amount=result.tax_amount,
                    tax_components=result.components,
                    exemption_reason=result.exemption_reason,
                    total=subtotal + result.tax_amount,
                )
            )
        return items, combine_results(results)

    def _sales_lines(self, invoice: Invoice, customer: Customer) -> list[PostingLine]:
        receivable = receivable_account(customer)
        narration = f"Invoice {invoice.number}"
        lines = [
            debit(receivable, AccountClass.RECEIVABLE, invoice.total, narration),
            credit(SALES_ACCOUNT, AccountClass.INCOME, invoice.subtotal, narration),
        ]
        for component, amount in sorted(invoice.tax_components.items()):
            lines.append(
                credit(
                    f"{component} Payable",
                    AccountClass.LIABILITY,
                    amount,
                    f"{narration} - {component}",
                )
            )
        if invoice.discount:
            lines.append(
                debit(DISCOUNT_ACCOUNT, AccountClass.EXPENSE, invoice.discount, narration)
            )
        if invoice.paid_amount:
            lines.append(
                debit(
                    payment_account(invoice.payment_method),
                    AccountClass.ASSET,
                    invoice.paid_amount,
                    f"Payment for {narration}",
                )
            )
            lines.append(
                credit(
                    receivable,
                    AccountClass.RECEIVABLE,
                    invoice.paid_amount,
                    f"Payment received for {narration}",
                )
            )
        return lines

    def _tax_record(
        self,
        voucher_ref: str,
        business_id: str,
        party_id: str,
        result: TaxResult,
        on: date,
        direction: Direction = Direction.SALE,
    ) -> TaxTransaction:
        return TaxTransaction(
            id=self.id_factory("TAX"),
            voucher_ref=voucher_ref,
            business_id=business_id,
            direction=direction,
            tax_type=result.tax_type,
            rate=result.tax_rate,
            taxable_amount=result.taxable_amount,
            tax_amount=result.tax_amount,
            components=result.components,
            transaction_date=on,
            party_id=party_id,
        )

    # ------------------------------------------------------------------
    # Numbering
    # ------------------------------------------------------------------

    def _format_number(self, year: int, sequence: int) -> str:
        width = self.config.invoice_sequence_width
        return f"{self.config.invoice_prefix}-{year}-{sequence:0{width}d}"

    def _next_sequence(self, business_id: str) -> int:
        invoices = self.store.query(Invoice, business_id=business_id)
        if not invoices:
            return 1
        latest = max(
            invoices, key=lambda inv: (inv.created_at or datetime.min, inv.number)
        )
        match = re.search(r"(\d+)$", latest.number)
        return int(match.group(1)) + 1 if match else len(invoices) + 1

    def _claim(self, business_id: str, number: str, invoice_id: str) -> bool:
        return self.store.insert(
            NUMBER_CLAIMS,
            f"{business_id}:{number}",
            {
                "business_id": business_id,
                "number": number,
                "invoice_id": invoice_id,
                "claimed_at": self.clock().isoformat(),
            },
        )

    def _assign_number(
        self,
        business_id: str,
        invoice_id: str,
        requested: Optional[str],
        issue_date: date,
        saga: Saga,
    ) -> str:
        """Reserve a number unique within the business."""
        if requested:
            if not self._claim(business_id, requested, invoice_id):
                raise ValidationError("number", f"Invoice number {requested} already exists")
            number = requested
        else:
            sequence = self._next_sequence(business_id)
            for _ in range(_NUMBER_ATTEMPTS):
                number = self._format_number(issue_date.year, sequence)
                if self._claim(business_id, number, invoice_id):
                    break
                sequence += 1
            else:
                raise ExternalStoreError(
                    "claim_invoice_number", f"no free number near {number}"
                )
        saga.add(
            f"number {number}",
            lambda: self.store.delete(NUMBER_CLAIMS, f"{business_id}:{number}"),
        )
        return number

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    def _adjust_customer(
        self,
        customer: Customer,
        delta: Decimal,
        saga: Saga,
        last_invoice_date: Optional[date] = None,
    ) -> None:
        if delta:
            self.store.conditional_adjust(
                Customer.collection, customer.id, "balance", delta, floor=None
            )
            saga.add(
                f"balance of {customer.id}",
                lambda: self.store.conditional_adjust(
                    Customer.collection, customer.id, "balance", -delta, floor=None
                ),
            )
        if last_invoice_date is not None:
            previous = customer.last_invoice_date
            self.store.patch(
                Customer.collection, customer.id, last_invoice_date=last_invoice_date
            )
            saga.add(
                f"last invoice date of {customer.id}",
                lambda: self.store.patch(
                    Customer.collection, customer.id, last_invoice_date=previous
                ),
            )

    def _revert_movements(self, voucher_ref: str) -> None:
        for movement in self.inventory.movements_for(voucher_ref):
            self.inventory.revert(movement)

    def _remove_tax_records(self, voucher_ref: str) -> None:
        for record in self.store.query(TaxTransaction, voucher_ref=voucher_ref):
            self.store.remove(record)

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def record_partial_payment(
        self,
        invoice_id: str,
        payment: PaymentRequest,
        timeout: Optional[float] = None,
    ) -> Invoice:
        """
        Apply a payment to an invoice.

        Status moves to PARTIALLY_PAID, or PAID once nothing is due. A
        payment larger than the balance due is rejected.
        """
        invoice = self.get_invoice(invoice_id)
        if invoice.status is InvoiceStatus.CANCELLED:
            raise ValidationError("invoice_id", f"Invoice {invoice.number} is cancelled")
        if invoice.posting_state is not PostingState.POSTED:
            raise ValidationError(
                "invoice_id", f"Invoice {invoice.number} has not finished posting"
            )
        amount = money(payment.amount)
        if amount <= 0:
            raise ValidationError("amount", "Payment amount must be greater than zero")
        customer = self._require(Customer, invoice.customer_id, "customer")

        payment_id = self.id_factory("PMT")
        voucher_ref = f"PAY-{payment_id}"
        payment_date = payment.payment_date or self.clock().date()
        limit = timeout if timeout is not None else self.config.orchestration_timeout
        previous: dict[str, InvoiceStatus] = {}

        def apply(inv: Invoice) -> bool:
            if inv.status is InvoiceStatus.CANCELLED or amount > inv.balance_due:
                return False
            previous["status"] = inv.status
            inv.paid_amount += amount
            inv.balance_due = inv.total - inv.paid_amount
            inv.status = (
                InvoiceStatus.PAID if inv.balance_due <= 0 else InvoiceStatus.PARTIALLY_PAID
            )
            if inv.payment_method is None:
                inv.payment_method = payment.method
            return True

        def undo(inv: Invoice) -> bool:
            inv.paid_amount -= amount
            inv.balance_due = inv.total - inv.paid_amount
            inv.status = previous["status"]
            return True

        with unit_of_work(self.store, f"payment {payment_id}", limit) as saga:
            updated = self.store.update(Invoice, invoice.id, apply)
            if updated is None:
                current = self.get_invoice(invoice.id)
                logger.warning(
                    "Rejected over-payment of %s on invoice %s (balance due %s)",
                    amount, current.number, current.balance_due,
                )
                raise ValidationError(
                    "amount",
                    f"Payment {amount} exceeds balance due {current.balance_due} "
                    f"on invoice {current.number}",
                )
            saga.add("invoice amounts", lambda: self.store.update(Invoice, invoice.id, undo))
            saga.checkpoint()

            self.ledger.post_voucher(
                voucher_ref,
                [
                    debit(
                        payment_account(payment.method),
                        AccountClass.ASSET,
                        amount,
                        f"Payment for Invoice {invoice.number}",
                    ),
                    credit(
                        receivable_account(customer),
                        AccountClass.RECEIVABLE,
                        amount,
                        f"Payment received for Invoice {invoice.number}",
                    ),
                ],
                business_id=invoice.business_id,
                voucher_type=VoucherType.RECEIPT,
                voucher_date=payment_date,
                invoice_id=invoice.id,
                party_id=customer.id,
                narration=f"Payment for Invoice {invoice.number}",
            )
            saga.add("receipt voucher", lambda: self.ledger.discard_voucher(voucher_ref))

            record = Payment(
                id=payment_id,
                business_id=invoice.business_id,
                invoice_id=invoice.id,
                customer_id=customer.id,
                amount=amount,
                method=payment.method,
                payment_date=payment_date,
                voucher_ref=voucher_ref,
                reference=payment.reference,
            )
            self.store.save(record)
            saga.add("payment record", lambda: self.store.remove(record))

            self._adjust_customer(customer, -amount, saga)

        logger.info(
            "Recorded payment of %s on invoice %s; balance due %s (%s)",
            amount, updated.number, updated.balance_due, updated.status.value,
        )
        return updated

    def payments_for(self, invoice_id: str) -> list[Payment]:
        payments = self.store.query(Payment, invoice_id=invoice_id)
        return sorted(payments, key=lambda p: (p.payment_date, p.id))

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel_invoice(
        self, invoice_id: str, reason: str = "", timeout: Optional[float] = None
    ) -> Invoice:
        """
        Cancel an unpaid invoice.

        Posts an offsetting reversal voucher, returns sold stock, reverses
        the tax transaction and removes the outstanding amount from the
        customer's balance. The invoice itself is kept with status
        CANCELLED.
        """
        invoice = self.get_invoice(invoice_id)
        if invoice.status is InvoiceStatus.CANCELLED:
            raise ValidationError("invoice_id", f"Invoice {invoice.number} is already cancelled")
        if invoice.posting_state is not PostingState.POSTED:
            raise ValidationError(
                "invoice_id", f"Invoice {invoice.number} has not finished posting"
            )
        if invoice.paid_amount > 0:
            raise ValidationError(
                "invoice_id",
                f"Invoice {invoice.number} has payments recorded and cannot be cancelled",
            )
        customer = self._require(Customer, invoice.customer_id, "customer")

        today = self.clock().date()
        reversal_ref = f"REV-{invoice.voucher_ref}"
        limit = timeout if timeout is not None else self.config.orchestration_timeout
        previous_status = invoice.status

        def mark_cancelled(inv: Invoice) -> bool:
            if inv.status is InvoiceStatus.CANCELLED or inv.paid_amount > 0:
                return False
            inv.status = InvoiceStatus.CANCELLED
            if reason:
                inv.notes = f"{inv.notes}\nCancelled: {reason}".strip()
            return True

        def restore(inv: Invoice) -> bool:
            inv.status = previous_status
            inv.notes = invoice.notes
            return True

        with unit_of_work(self.store, f"cancel {invoice.id}", limit) as saga:
            updated = self.store.update(Invoice, invoice.id, mark_cancelled)
            if updated is None:
                raise ValidationError(
                    "invoice_id", f"Invoice {invoice.number} can no longer be cancelled"
                )
            saga.add("invoice status", lambda: self.store.update(Invoice, invoice.id, restore))

            self.ledger.reverse_voucher(
                invoice.voucher_ref,
                reversal_ref,
                voucher_date=today,
                narration=f"Cancellation of Invoice {invoice.number}",
            )
            saga.add(
                "reversal voucher",
                lambda: self._undo_reversal(invoice.voucher_ref, reversal_ref),
            )
            saga.checkpoint()

            saga.add("returned stock", lambda: self._revert_movements(reversal_ref))
            for movement in self.inventory.movements_for(invoice.voucher_ref):
                if movement.movement_type is MovementType.SALE:
                    self.inventory.adjust_stock(
                        movement.product_id,
                        -movement.quantity,
                        MovementType.RETURN,
                        reversal_ref,
                        reference=f"Cancelled {invoice.number}",
                    )

            self._adjust_customer(customer, -invoice.balance_due, saga)

            saga.add("reversed tax", lambda: self._remove_tax_records(reversal_ref))
            for original in self.store.query(TaxTransaction, voucher_ref=invoice.voucher_ref):
                self.store.save(
                    TaxTransaction(
                        id=self.id_factory("TAX"),
                        voucher_ref=reversal_ref,
                        business_id=original.business_id,
                        direction=original.direction,
                        tax_type=original.tax_type,
                        rate=original.rate,
                        taxable_amount=-original.taxable_amount,
                        tax_amount=-original.tax_amount,
                        components={k: -v for k, v in original.components.items()},
                        transaction_date=today,
                        party_id=original.party_id,
                    )
                )

        logger.info("Cancelled invoice %s (%s)", invoice.number, reason or "no reason given")
        return updated

    def _undo_reversal(self, voucher_ref: str, reversal_ref: str) -> None:
        self.ledger.discard_voucher(reversal_ref)
        self.store.patch(Voucher.collection, voucher_ref, reversed_by=None)

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    def mark_overdue_invoices(
        self, business_id: Optional[str] = None, as_of: Optional[date] = None
    ) -> list[Invoice]:
        """Flip open invoices past their due date to OVERDUE. Idempotent."""
        today = as_of or self.clock().date()
        criteria = {"business_id": business_id} if business_id else {}

        def flag(inv: Invoice) -> bool:
            if (
                inv.posting_state is not PostingState.POSTED
                or not inv.is_open
                or inv.status is InvoiceStatus.OVERDUE
                or inv.due_date >= today
            ):
                return False
            inv.status = InvoiceStatus.OVERDUE
            return True

        flagged = []
        for invoice in self.store.query(Invoice, **criteria):
            if invoice.due_date >= today or not invoice.is_open:
                continue
            updated = self.store.update(Invoice, invoice.id, flag)
            if updated is not None:
                flagged.append(updated)

        if flagged:
            logger.info("Overdue sweep flagged %d invoice(s)", len(flagged))
        return sorted(flagged, key=lambda inv: inv.number)

    def recovery_grace(self) -> timedelta:
        """How old unfinished work must be before recovery touches it."""
        seconds = max(self.config.recovery_grace, self.config.orchestration_timeout or 0)
        return timedelta(seconds=seconds)

    def recover_incomplete_invoices(
        self, stale_after: Optional[timedelta] = None
    ) -> RecoveryReport:
        """
        Repair work left behind by an interrupted orchestration.

        Rolls back invoices still marked PENDING, discards sales vouchers
        that point at an invoice which no longer exists, releases orphaned
        number claims and recomputes the balance of every affected
        customer. Only work older than ``stale_after`` (default
        ``recovery_grace()``) is touched, so invoices being created right
        now are left to finish.
        """
        report = RecoveryReport()
        if stale_after is None:
            stale_after = self.recovery_grace()
        cutoff = self.clock() - stale_after
        customers: set[str] = set()

        for invoice in self.store.query(Invoice, posting_state=PostingState.PENDING):
            if invoice.created_at is not None and invoice.created_at > cutoff:
                continue
            logger.warning("Rolling back incomplete invoice %s", invoice.number)
            self._discard_posting(invoice.voucher_ref)
            for payment in self.store.query(Payment, invoice_id=invoice.id):
                self.store.remove(payment)
            self.store.delete(NUMBER_CLAIMS, f"{invoice.business_id}:{invoice.number}")
            self.store.remove(invoice)
            customers.add(invoice.customer_id)
            report.rolled_back_invoices.append(invoice.id)

        for voucher in self.store.query(Voucher, voucher_type=VoucherType.SALES):
            if voucher.invoice_id is None:
                continue
            if voucher.posted_at is not None and voucher.posted_at > cutoff:
                continue
            if self.store.load(Invoice, voucher.invoice_id) is not None:
                continue
            logger.warning("Discarding orphan voucher %s", voucher.ref)
            self._discard_posting(voucher.ref)
            for payment in self.store.query(Payment, invoice_id=voucher.invoice_id):
                self.store.remove(payment)
            if voucher.party_id:
                customers.add(voucher.party_id)
            report.orphan_vouchers.append(voucher.ref)

        for claim in self.store.find(NUMBER_CLAIMS):
            claimed_at = claim.get("claimed_at")
            if claimed_at and datetime.fromisoformat(claimed_at) > cutoff:
                continue
            if self.store.load(Invoice, claim["invoice_id"]) is None:
                self.store.delete(NUMBER_CLAIMS, f"{claim['business_id']}:{claim['number']}")
                report.released_numbers.append(claim["number"])

        for customer_id in sorted(customers):
            if self.reconcile_customer_balance(customer_id):
                report.reconciled_customers.append(customer_id)

        if report.repaired:
            logger.info(
                "Recovery repaired %d invoice(s), %d voucher(s), %d customer balance(s)",
                len(report.rolled_back_invoices),
                len(report.orphan_vouchers),
                len(report.reconciled_customers),
            )
        return report

    def _discard_posting(self, voucher_ref: str) -> None:
        self._revert_movements(voucher_ref)
        self._remove_tax_records(voucher_ref)
        if self.ledger.get_voucher(voucher_ref) is not None:
            self.ledger.discard_voucher(voucher_ref)

    def outstanding_balance(self, customer_id: str) -> Decimal:
        """Sum of balance due over the customer's posted, non-cancelled invoices."""
        return sum(
            (
                inv.balance_due
                for inv in self.store.query(Invoice, customer_id=customer_id)
                if inv.status is not InvoiceStatus.CANCELLED
                and inv.posting_state is PostingState.POSTED
            ),
            ZERO,
        )

    def reconcile_customer_balance(self, customer_id: str) -> bool:
        """Reset a customer's cached balance from its invoices. True if it changed."""
        expected = self.outstanding_balance(customer_id)

        def fix(customer: Customer) -> bool:
            if customer.balance == expected:
                return False
            logger.warning(
                "Customer %s balance %s does not match invoices (%s); correcting",
                customer.id, customer.balance, expected,
            )
            customer.balance = expected
            return True

        try:
            return self.store.update(Customer, customer_id, fix) is not None
        except KeyError:
            raise NotFoundError("customer", customer_id) from None
