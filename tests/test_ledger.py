"""Tests for the double-entry LedgerPoster."""

import logging
from datetime import date
from decimal import Decimal

import pytest

from posting_engine.errors import (
    GENERIC_FAILURE_MESSAGE,
    BalanceError,
    DuplicateVoucherError,
    ValidationError,
    user_message,
)
from posting_engine.ledger import LedgerPoster, credit, debit
from posting_engine.models import AccountClass, LedgerEntry, Voucher, VoucherType


@pytest.fixture
def ledger(store) -> LedgerPoster:
    return LedgerPoster(store)


def _sale_lines(amount: str = "236.00"):
    return [
        debit("Ravi Stores (Customer)", AccountClass.RECEIVABLE, Decimal(amount)),
        credit("Sales Revenue", AccountClass.INCOME, Decimal("200.00")),
        credit("CGST Payable", AccountClass.LIABILITY, Decimal("18.00")),
        credit("SGST Payable", AccountClass.LIABILITY, Decimal("18.00")),
    ]


def _post(ledger: LedgerPoster, ref: str = "SV-1", lines=None) -> Voucher:
    return ledger.post_voucher(
        ref,
        lines if lines is not None else _sale_lines(),
        business_id="B1",
        voucher_type=VoucherType.SALES,
        voucher_date=date(2024, 6, 15),
        narration="Invoice INV-2024-0001",
    )


# ── Posting ──────────────────────────────────────────────────────────


def test_balanced_voucher_is_posted(ledger: LedgerPoster):
    voucher = _post(ledger)
    assert voucher.total_amount == Decimal("236.00")
    entries = ledger.entries_for("SV-1")
    assert [e.account_name for e in entries] == [
        "Ravi Stores (Customer)", "Sales Revenue", "CGST Payable", "SGST Payable",
    ]
    assert ledger.is_balanced("SV-1")


def test_zero_lines_are_dropped(ledger: LedgerPoster):
    lines = _sale_lines() + [debit("Discount Allowed", AccountClass.EXPENSE, Decimal("0"))]
    _post(ledger, lines=lines)
    assert len(ledger.entries_for("SV-1")) == 4


def test_unbalanced_voucher_writes_nothing(ledger: LedgerPoster, store, caplog):
    with caplog.at_level(logging.ERROR, logger="posting_engine.ledger"):
        with pytest.raises(BalanceError) as exc:
            _post(ledger, lines=_sale_lines("235.99"))
    assert exc.value.total_debit == Decimal("235.99")
    assert exc.value.total_credit == Decimal("236.00")
    assert not exc.value.user_visible
    assert "could not be completed" in exc.value.user_message
    assert ledger.get_voucher("SV-1") is None
    assert store.query(LedgerEntry, voucher_ref="SV-1") == []
    assert "Rejected unbalanced voucher SV-1" in caplog.text


def test_duplicate_reference_rejected(ledger: LedgerPoster):
    _post(ledger)
    with pytest.raises(DuplicateVoucherError):
        _post(ledger)
    assert len(ledger.entries_for("SV-1")) == 4


def test_empty_voucher_rejected(ledger: LedgerPoster):
    with pytest.raises(ValidationError):
        _post(ledger, lines=[])


def test_negative_amount_rejected(ledger: LedgerPoster):
    lines = [
        debit("Cash in Hand", AccountClass.ASSET, Decimal("-10")),
        credit("Sales Revenue", AccountClass.INCOME, Decimal("-10")),
    ]
    with pytest.raises(ValidationError):
        _post(ledger, lines=lines)


# ── Reversal ─────────────────────────────────────────────────────────


def test_reversal_swaps_sides(ledger: LedgerPoster):
    _post(ledger)
    reversal = ledger.reverse_voucher("SV-1", voucher_date=date(2024, 6, 20))
    assert reversal.ref == "REV-SV-1"
    assert reversal.voucher_type is VoucherType.REVERSAL
    original = ledger.entries_for("SV-1")
    reversed_entries = ledger.entries_for("REV-SV-1")
    assert [(e.debit, e.credit) for e in reversed_entries] == [
        (e.credit, e.debit) for e in original
    ]
    assert ledger.get_voucher("SV-1").reversed_by == "REV-SV-1"


def test_voucher_reversed_only_once(ledger: LedgerPoster):
    _post(ledger)
    ledger.reverse_voucher("SV-1")
    with pytest.raises(DuplicateVoucherError):
        ledger.reverse_voucher("SV-1", "REV-2")


def test_reversing_unknown_voucher(ledger: LedgerPoster):
    with pytest.raises(ValidationError):
        ledger.reverse_voucher("SV-404")


def test_discard_removes_voucher_and_entries(ledger: LedgerPoster, store):
    _post(ledger)
    ledger.discard_voucher("SV-1")
    assert ledger.get_voucher("SV-1") is None
    assert store.query(LedgerEntry, voucher_ref="SV-1") == []


# ── User messages ────────────────────────────────────────────────────


def test_user_messages():
    assert user_message(DuplicateVoucherError("SV-1")) == "Voucher SV-1 has already been posted"
    assert user_message(BalanceError("SV-1", Decimal("1"), Decimal("2"))) == GENERIC_FAILURE_MESSAGE
    assert user_message(RuntimeError("disk on fire")) == GENERIC_FAILURE_MESSAGE
