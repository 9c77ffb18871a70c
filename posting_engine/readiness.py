"""
Tax readiness scorer.

Audits a business's postings for one period and produces a 0-100
score. Starting from 100, each detected issue costs points:

- Sales voucher without an invoice       -2
- Recorded tax off by more than 1 unit   -5
- Purchase tax from unregistered vendor  -3
- Filing past due and not filed          -10
- Turnover over threshold, unregistered  -15

The scorer only reads. A check that cannot run (missing business,
broken record) contributes no issues and is reported as a warning.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Optional

from posting_engine.errors import NotFoundError
from posting_engine.models import (
    Business,
    Direction,
    FilingStatus,
    Invoice,
    Period,
    TaxFiling,
    TaxTransaction,
    Vendor,
    Voucher,
    VoucherType,
)
from posting_engine.rates import RuleStore
from posting_engine.store import RecordStore

logger = logging.getLogger(__name__)

WRONG_TAX_TOLERANCE = Decimal("1")
FILING_READY_SCORE = 80


class Priority(Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


@dataclass
class ReadinessIssue:
    """One detected defect."""

    reference: str
    message: str
    on: Optional[date] = None
    amount: Optional[Decimal] = None
    expected: Optional[Decimal] = None


@dataclass
class Recommendation:
    priority: Priority
    issue: str
    action: str
    impact: str


@dataclass
class ReadinessReport:
    """Score, grade and the evidence behind them."""

    business_id: str
    period: Period
    as_of: date
    score: int
    grade: str
    issues: dict[str, list[ReadinessIssue]] = field(default_factory=dict)
    recommendations: list[Recommendation] = field(default_factory=list)
    filing_ready: bool = False
    warnings: list[str] = field(default_factory=list)

    @property
    def issue_count(self) -> int:
        return sum(len(found) for found in self.issues.values())


# Issue class -> (penalty per occurrence, title, priority, action template, impact)
ISSUE_CLASSES: dict[str, tuple[int, str, Priority, str, str]] = {
    "missing_invoices": (
        2,
        "Missing Invoices",
        Priority.HIGH,
        "Generate invoices for {n} transactions",
        "Cannot claim tax credit without proper invoices",
    ),
    "wrong_tax": (
        5,
        "Wrong Tax Calculations",
        Priority.CRITICAL,
        "Review and correct {n} tax entries",
        "May lead to penalties and interest",
    ),
    "unmatched_itc": (
        3,
        "Unmatched Input Tax Credit",
        Priority.MEDIUM,
        "Add vendor registration id for {n} purchases",
        "Cannot claim input tax credit",
    ),
    "late_filings": (
        10,
        "Late Filings",
        Priority.CRITICAL,
        "File {n} pending returns immediately",
        "Late fees and penalties applicable",
    ),
    "threshold_violations": (
        15,
        "Threshold Violations",
        Priority.CRITICAL,
        "Register for tax immediately",
        "Operating without registration is illegal",
    ),
}


def grade_for(score: int) -> str:
    if score >= 90:
        return "A"
    if score >= 80:
        return "B"
    if score >= 70:
        return "C"
    if score >= 60:
        return "D"
    return "F"


class TaxReadinessScorer:
    """Read-only compliance audit over a period's postings."""

    def __init__(
        self,
        store: RecordStore,
        rules: Optional[RuleStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.rules = rules or RuleStore()
        self.clock = clock or datetime.now

    def score(
        self, business_id: str, period: Period, as_of: Optional[date] = None
    ) -> ReadinessReport:
        """Score a business for a period. Never raises on bad data."""
        today = as_of or self.clock().date()
        checks: dict[str, Callable[[], list[ReadinessIssue]]] = {
            "missing_invoices": lambda: self._missing_invoices(business_id, period),
            "wrong_tax": lambda: self._wrong_tax(business_id, period),
            "unmatched_itc": lambda: self._unmatched_itc(business_id, period),
            "late_filings": lambda: self._late_filings(business_id, period, today),
            "threshold_violations": lambda: self._threshold_violations(business_id, period),
        }

        issues: dict[str, list[ReadinessIssue]] = {}
        warnings: list[str] = []
        score = 100
        for kind, check in checks.items():
            try:
                found = check()
            except Exception as e:
                logger.warning(
                    "Readiness check %s failed for %s: %s", kind, business_id, e
                )
                warnings.append(f"{kind}: {e}")
                found = []
            issues[kind] = found
            score -= ISSUE_CLASSES[kind][0] * len(found)

        score = max(0, score)
        report = ReadinessReport(
            business_id=business_id,
            period=period,
            as_of=today,
            score=score,
            grade=grade_for(score),
            issues=issues,
            recommendations=self._recommendations(issues),
            filing_ready=score >= FILING_READY_SCORE,
            warnings=warnings,
        )
        logger.info(
            "Readiness for %s over %s: %d (%s), %d issue(s)",
            business_id, period.label, report.score, report.grade, report.issue_count,
        )
        return report

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def _missing_invoices(self, business_id: str, period: Period) -> list[ReadinessIssue]:
        found = []
        vouchers = self.store.query(
            Voucher, business_id=business_id, voucher_type=VoucherType.SALES
        )
        for voucher in vouchers:
            if not period.contains(voucher.voucher_date):
                continue
            if voucher.invoice_id and self.store.load(Invoice, voucher.invoice_id):
                continue
            found.append(
                ReadinessIssue(
                    reference=voucher.ref,
                    message=f"Sales voucher {voucher.ref} has no invoice",
                    on=voucher.voucher_date,
                    amount=voucher.total_amount,
                )
            )
        return _ordered(found)

    def _tax_records(self, business_id: str, period: Period, **criteria: Any) -> list[TaxTransaction]:
        return [
            t for t in self.store.query(TaxTransaction, business_id=business_id, **criteria)
            if period.contains(t.transaction_date)
        ]

    def _wrong_tax(self, business_id: str, period: Period) -> list[ReadinessIssue]:
        found = []
        for record in self._tax_records(business_id, period):
            expected = record.taxable_amount * record.rate / Decimal("100")
            if abs(record.tax_amount - expected) > WRONG_TAX_TOLERANCE:
                found.append(
                    ReadinessIssue(
                        reference=record.voucher_ref,
                        message=(
                            f"Recorded tax {record.tax_amount} differs from "
                            f"{record.rate}% of {record.taxable_amount}"
                        ),
                        on=record.transaction_date,
                        amount=record.tax_amount,
                        expected=expected.quantize(Decimal("0.01")),
                    )
                )
        return _ordered(found)

    def _unmatched_itc(self, business_id: str, period: Period) -> list[ReadinessIssue]:
        found = []
        for record in self._tax_records(business_id, period, direction=Direction.PURCHASE):
            vendor = self.store.load(Vendor, record.party_id) if record.party_id else None
            if vendor is not None and vendor.registration_id:
                continue
            who = vendor.name if vendor else (record.party_id or "unknown vendor")
            found.append(
                ReadinessIssue(
                    reference=record.voucher_ref,
                    message=f"Input tax on {record.voucher_ref} from {who} has no vendor registration id",
                    on=record.transaction_date,
                    amount=record.tax_amount,
                )
            )
        return _ordered(found)

    def _late_filings(
        self, business_id: str, period: Period, today: date
    ) -> list[ReadinessIssue]:
        found = []
        for filing in self.store.query(TaxFiling, business_id=business_id):
            if filing.status is FilingStatus.FILED or filing.due_date >= today:
                continue
            if filing.period_end < period.start or filing.period_start > period.end:
                continue
            found.append(
                ReadinessIssue(
                    reference=filing.id,
                    message=(
                        f"{filing.jurisdiction} return for "
                        f"{filing.period_start.isoformat()} to {filing.period_end.isoformat()} "
                        f"was due {filing.due_date.isoformat()}"
                    ),
                    on=filing.due_date,
                )
            )
        return _ordered(found)

    def _threshold_violations(self, business_id: str, period: Period) -> list[ReadinessIssue]:
        business = self.store.load(Business, business_id)
        if business is None:
            raise NotFoundError("business", business_id)
        rule = self.rules.get(business.jurisdiction, period.end)
        if rule is None or rule.registration_threshold is None:
            return []
        if business.annual_turnover > rule.registration_threshold and not business.registration_id:
            return [
                ReadinessIssue(
                    reference=business.id,
                    message=(
                        f"Turnover exceeds registration threshold. "
                        f"{rule.tax_type.value} registration required."
                    ),
                    amount=business.annual_turnover,
                    expected=rule.registration_threshold,
                )
            ]
        return []

    # ------------------------------------------------------------------
    # Recommendations
    # ------------------------------------------------------------------

    def _recommendations(
        self, issues: dict[str, list[ReadinessIssue]]
    ) -> list[Recommendation]:
        recommendations = []
        for kind, (_, title, priority, action, impact) in ISSUE_CLASSES.items():
            count = len(issues.get(kind, []))
            if count:
                recommendations.append(
                    Recommendation(
                        priority=priority,
                        issue=title,
                        action=action.format(n=count),
                        impact=impact,
                    )
                )
        return recommendations


def _ordered(found: list[ReadinessIssue]) -> list[ReadinessIssue]:
    return sorted(found, key=lambda i: (i.on or date.min, i.reference))
