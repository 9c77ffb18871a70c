"""
Transaction Posting Engine
==========================

Invoicing, double-entry posting and multi-jurisdiction tax for small
businesses, with guarded inventory updates and a tax readiness score.

Modules:
    models          - Records, enums and money helpers
    rates           - Versioned jurisdiction rule store
    calculator      - Tax calculation per rule variant
    store           - Memory and SQLite record stores
    saga            - Atomic units of work (transactions or compensations)
    ledger          - Balanced voucher posting and reversal
    inventory       - Guarded stock adjustments and movements
    invoicing       - Invoice orchestration, payments, cancellation, sweeps
    purchases       - Vendor bills with input tax credit
    filings         - Return periods and due dates
    readiness       - Tax readiness scoring
    report_generator- Tax summaries and liability with CSV/JSON export
    engine          - Facade wiring every component over one store
    cli             - Command-line interface
"""

__version__ = "1.0.0"

from posting_engine.calculator import TaxCalculator, TaxContext, TaxResult
from posting_engine.config import EngineConfig
from posting_engine.engine import PostingEngine
from posting_engine.errors import (
    BalanceError,
    DuplicateVoucherError,
    ExternalStoreError,
    InsufficientStockError,
    NotFoundError,
    OrchestrationTimeout,
    PostingError,
    ValidationError,
)
from posting_engine.inventory import InventoryAdjuster
from posting_engine.invoicing import InvoiceOrchestrator, InvoiceRequest, LineInput
from posting_engine.ledger import LedgerPoster
from posting_engine.rates import RuleStore
from posting_engine.readiness import TaxReadinessScorer
from posting_engine.report_generator import ReportGenerator
from posting_engine.store import MemoryStore, SQLiteStore

__all__ = [
    "PostingEngine",
    "EngineConfig",
    "RuleStore",
    "TaxCalculator",
    "TaxContext",
    "TaxResult",
    "MemoryStore",
    "SQLiteStore",
    "LedgerPoster",
    "InventoryAdjuster",
    "InvoiceOrchestrator",
    "InvoiceRequest",
    "LineInput",
    "TaxReadinessScorer",
    "ReportGenerator",
    "PostingError",
    "ValidationError",
    "NotFoundError",
    "InsufficientStockError",
    "BalanceError",
    "DuplicateVoucherError",
    "ExternalStoreError",
    "OrchestrationTimeout",
]
