"""
PostingEngine: one object wiring every component over a shared store.

Applications normally construct this once and call through it; the
individual components remain usable on their own.
"""

from __future__ import annotations

import json
import logging
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Optional, Union

from posting_engine.calculator import TaxCalculator, TaxContext, TaxResult
from posting_engine.config import EngineConfig
from posting_engine.errors import ValidationError
from posting_engine.filings import FilingSchedule
from posting_engine.inventory import InventoryAdjuster
from posting_engine.invoicing import (
    InvoiceOrchestrator,
    InvoiceRequest,
    PaymentRequest,
    RecoveryReport,
)
from posting_engine.ledger import LedgerPoster
from posting_engine.models import (
    Business,
    Customer,
    InventoryItem,
    Invoice,
    PaymentMethod,
    Period,
    Record,
    Vendor,
    new_id,
)
from posting_engine.purchases import PurchaseRecorder, PurchaseRequest, PurchaseResult
from posting_engine.rates import RuleStore
from posting_engine.readiness import ReadinessReport, TaxReadinessScorer
from posting_engine.report_generator import ReportGenerator
from posting_engine.store import MemoryStore, RecordStore, SQLiteStore

logger = logging.getLogger(__name__)

# Master data sections accepted by load_master_data, in dependency order
_MASTER_SECTIONS: list[tuple[str, type]] = [
    ("businesses", Business),
    ("customers", Customer),
    ("vendors", Vendor),
    ("products", InventoryItem),
]


class PostingEngine:
    """Facade over the calculator, posters, orchestrators and reports."""

    def __init__(
        self,
        store: Optional[RecordStore] = None,
        config: Optional[EngineConfig] = None,
        rules: Optional[RuleStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
        id_factory: Callable[[str], str] = new_id,
    ) -> None:
        self.config = config or EngineConfig()
        self.store = store if store is not None else MemoryStore()
        self.rules = rules or self.config.load_rules()
        self.clock = clock or datetime.now

        self.calculator = TaxCalculator(self.rules)
        self.ledger = LedgerPoster(self.store, self.clock)
        self.inventory = InventoryAdjuster(
            self.store, self.clock, low_stock_alerts=self.config.low_stock_alerts
        )
        self.invoices = InvoiceOrchestrator(
            self.store,
            calculator=self.calculator,
            ledger=self.ledger,
            inventory=self.inventory,
            config=self.config,
            clock=self.clock,
            id_factory=id_factory,
        )
        self.purchases = PurchaseRecorder(
            self.store,
            calculator=self.calculator,
            ledger=self.ledger,
            inventory=self.inventory,
            config=self.config,
            clock=self.clock,
            id_factory=id_factory,
        )
        self.filings = FilingSchedule(self.store, self.rules, self.clock)
        self.scorer = TaxReadinessScorer(self.store, self.rules, self.clock)
        self.reports = ReportGenerator(self.store)

    @classmethod
    def open(
        cls, path: Union[str, Path, None] = None, config: Optional[EngineConfig] = None
    ) -> "PostingEngine":
        """Engine over a SQLite database (``config.database_path`` by default)."""
        config = config or EngineConfig()
        store = SQLiteStore(path or config.database_path, read_retries=config.read_retries)
        return cls(store, config)

    # ------------------------------------------------------------------
    # Master data
    # ------------------------------------------------------------------

    def register(self, record: Record) -> Record:
        self.store.save(record)
        return record

    def load_master_data(self, data: dict[str, list[dict[str, Any]]]) -> dict[str, int]:
        """
        Save businesses, customers, vendors and products from plain dicts.

        Returns the number of records saved per section.
        """
        counts: dict[str, int] = {}
        for section, model in _MASTER_SECTIONS:
            rows = data.get(section, [])
            for row in rows:
                try:
                    self.store.save(model.from_record(row))
                except (TypeError, ValueError, ArithmeticError) as e:
                    raise ValidationError(section, f"Invalid {section} record {row!r}: {e}") from e
            counts[section] = len(rows)
        logger.info(
            "Loaded master data: %s",
            ", ".join(f"{n} {section}" for section, n in counts.items()),
        )
        return counts

    def load_master_file(self, path: Union[str, Path]) -> dict[str, int]:
        return self.load_master_data(json.loads(Path(path).read_text(encoding="utf-8")))

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def calculate_tax(self, ctx: TaxContext) -> TaxResult:
        return self.calculator.calculate(ctx)

    def create_invoice(self, request: Union[InvoiceRequest, dict]) -> Invoice:
        if isinstance(request, dict):
            request = InvoiceRequest.from_dict(request)
        return self.invoices.create_invoice(request)

    def record_payment(
        self,
        invoice_id: str,
        amount: Union[Decimal, str, int],
        method: PaymentMethod = PaymentMethod.CASH,
        payment_date: Optional[date] = None,
        reference: str = "",
    ) -> Invoice:
        return self.invoices.record_partial_payment(
            invoice_id,
            PaymentRequest(Decimal(str(amount)), method, payment_date, reference),
        )

    def cancel_invoice(self, invoice_id: str, reason: str = "") -> Invoice:
        return self.invoices.cancel_invoice(invoice_id, reason)

    def record_purchase(self, request: Union[PurchaseRequest, dict]) -> PurchaseResult:
        if isinstance(request, dict):
            request = PurchaseRequest.from_dict(request)
        return self.purchases.record_purchase(request)

    def score_readiness(
        self, business_id: str, period: Period, as_of: Optional[date] = None
    ) -> ReadinessReport:
        return self.scorer.score(business_id, period, as_of)

    def sweep(self, as_of: Optional[date] = None) -> tuple[list[Invoice], RecoveryReport]:
        """Run the recovery sweep, then flag overdue invoices."""
        recovery = self.invoices.recover_incomplete_invoices()
        overdue = self.invoices.mark_overdue_invoices(as_of=as_of)
        return overdue, recovery

    def close(self) -> None:
        if isinstance(self.store, SQLiteStore):
            self.store.close()
