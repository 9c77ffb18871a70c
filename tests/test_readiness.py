"""Tests for the TaxReadinessScorer."""

from datetime import date
from decimal import Decimal

import pytest

from posting_engine.invoicing import InvoiceRequest, LineInput
from posting_engine.ledger import credit, debit
from posting_engine.models import (
    AccountClass,
    Business,
    Direction,
    Period,
    TaxTransaction,
    VoucherType,
)
from posting_engine.purchases import PurchaseRequest
from posting_engine.readiness import Priority, grade_for


def _sell(engine, day: date = date(2024, 6, 10)):
    return engine.create_invoice(
        InvoiceRequest(
            business_id="B1",
            customer_id="C1",
            items=[LineInput(quantity=Decimal("2"), rate=Decimal("100"), product_id="P1")],
            issue_date=day,
        )
    )


def _manual_sale(engine, ref: str, day: date = date(2024, 6, 12)):
    engine.ledger.post_voucher(
        ref,
        [
            debit("Cash in Hand", AccountClass.ASSET, Decimal("118")),
            credit("Sales Revenue", AccountClass.INCOME, Decimal("100")),
            credit("IGST Payable", AccountClass.LIABILITY, Decimal("18")),
        ],
        business_id="B1",
        voucher_type=VoucherType.SALES,
        voucher_date=day,
    )


def _bad_tax(engine, n: int, taxable: str = "1000", tax: str = "170") -> None:
    engine.store.save(
        TaxTransaction(
            id=f"TAX-BAD-{n}",
            voucher_ref=f"JV-{n}",
            business_id="B1",
            direction=Direction.SALE,
            tax_type="GST",
            rate=Decimal("18"),
            taxable_amount=Decimal(taxable),
            tax_amount=Decimal(tax),
            components={"IGST": Decimal(tax)},
            transaction_date=date(2024, 6, 5),
        )
    )


# ── Clean books ──────────────────────────────────────────────────────


def test_clean_period_scores_full(engine, june):
    _sell(engine)
    report = engine.score_readiness("B1", june, as_of=date(2024, 6, 30))
    assert report.score == 100
    assert report.grade == "A"
    assert report.filing_ready
    assert report.recommendations == []
    assert report.issue_count == 0
    assert report.warnings == []


@pytest.mark.parametrize(
    "score, grade",
    [(100, "A"), (90, "A"), (89, "B"), (80, "B"), (70, "C"), (60, "D"), (59, "F"), (0, "F")],
)
def test_grade_thresholds(score, grade):
    assert grade_for(score) == grade


# ── Issue classes ────────────────────────────────────────────────────


def test_sales_voucher_without_invoice_costs_two(engine, june):
    _sell(engine)
    _manual_sale(engine, "SV-MANUAL")
    report = engine.score_readiness("B1", june, as_of=date(2024, 6, 30))
    assert report.score == 98
    (issue,) = report.issues["missing_invoices"]
    assert issue.reference == "SV-MANUAL"
    (rec,) = report.recommendations
    assert rec.priority is Priority.HIGH
    assert rec.action == "Generate invoices for 1 transactions"


def test_vouchers_outside_period_ignored(engine, june):
    _manual_sale(engine, "SV-MAY", day=date(2024, 5, 31))
    assert engine.score_readiness("B1", june, as_of=date(2024, 6, 30)).score == 100


def test_wrong_tax_costs_five(engine, june):
    _bad_tax(engine, 1)
    _bad_tax(engine, 2, tax="180.90")  # within one unit of 180
    report = engine.score_readiness("B1", june, as_of=date(2024, 6, 30))
    assert report.score == 95
    (issue,) = report.issues["wrong_tax"]
    assert issue.expected == Decimal("180.00")
    assert report.recommendations[0].priority is Priority.CRITICAL


def test_unregistered_vendor_input_tax_costs_three(engine, june):
    engine.record_purchase(
        PurchaseRequest(business_id="B1", vendor_id="V2", amount=Decimal("100"),
                        purchase_date=date(2024, 6, 3))
    )
    engine.record_purchase(
        PurchaseRequest(business_id="B1", vendor_id="V1", amount=Decimal("100"),
                        purchase_date=date(2024, 6, 3))
    )
    report = engine.score_readiness("B1", june, as_of=date(2024, 6, 30))
    assert report.score == 97
    assert len(report.issues["unmatched_itc"]) == 1
    assert report.recommendations[0].priority is Priority.MEDIUM


def test_late_filing_costs_ten(engine, june):
    engine.filings.generate("B1", 2024)
    report = engine.score_readiness("B1", june, as_of=date(2024, 7, 25))
    # only the June return overlaps the period
    assert report.score == 90
    assert len(report.issues["late_filings"]) == 1

    engine.filings.mark_filed("B1", date(2024, 6, 1), date(2024, 6, 30))
    assert engine.score_readiness("B1", june, as_of=date(2024, 7, 25)).score == 100


def test_filing_not_late_before_due_date(engine, june):
    engine.filings.generate("B1", 2024)
    assert engine.score_readiness("B1", june, as_of=date(2024, 7, 20)).score == 100


def test_unregistered_over_threshold_costs_fifteen(engine, june):
    engine.register(
        Business(id="B2", name="Big Unregistered", jurisdiction="IN", location="KA",
                 annual_turnover=Decimal("5000000"))
    )
    report = engine.score_readiness("B2", june, as_of=date(2024, 6, 30))
    assert report.score == 85
    assert report.grade == "B"
    (rec,) = report.recommendations
    assert rec.priority is Priority.CRITICAL
    assert rec.action == "Register for tax immediately"


def test_recommendations_follow_issue_class_order(engine, june):
    _manual_sale(engine, "SV-X")
    _bad_tax(engine, 1)
    report = engine.score_readiness("B1", june, as_of=date(2024, 6, 30))
    assert [r.priority for r in report.recommendations] == [Priority.HIGH, Priority.CRITICAL]


# ── Robustness ───────────────────────────────────────────────────────


def test_score_floors_at_zero(engine, june):
    for n in range(25):
        _bad_tax(engine, n)
    report = engine.score_readiness("B1", june, as_of=date(2024, 6, 30))
    assert report.score == 0
    assert report.grade == "F"
    assert not report.filing_ready


def test_missing_business_becomes_warning(engine, june):
    report = engine.score_readiness("GHOST", june, as_of=date(2024, 6, 30))
    assert report.score == 100
    assert report.issues["threshold_violations"] == []
    assert report.warnings == ["threshold_violations: Business not found: GHOST"]


def test_scoring_is_idempotent(engine, june):
    _sell(engine)
    _manual_sale(engine, "SV-MANUAL")
    _bad_tax(engine, 1)
    first = engine.score_readiness("B1", june, as_of=date(2024, 6, 30))
    second = engine.score_readiness("B1", june, as_of=date(2024, 6, 30))
    assert first == second


def test_scoring_does_not_write(engine, june):
    _sell(engine)
    before = {c: engine.store.find(c) for c in ("invoices", "vouchers", "ledger_entries", "customers")}
    engine.score_readiness("B1", Period.parse("2024"), as_of=date(2024, 6, 30))
    after = {c: engine.store.find(c) for c in before}
    assert before == after
