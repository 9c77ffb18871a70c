"""
Double-entry ledger poster.

A voucher is a named batch of ledger lines whose debits equal its
credits. Posting validates the balance before anything is written and
refuses a voucher reference that has been used before. Posted entries
are never edited; corrections are offsetting reversal vouchers.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Iterable, Optional

from posting_engine.errors import BalanceError, DuplicateVoucherError, ValidationError
from posting_engine.models import (
    ZERO,
    AccountClass,
    LedgerEntry,
    Voucher,
    VoucherType,
    money,
)
from posting_engine.saga import unit_of_work
from posting_engine.store import RecordStore

logger = logging.getLogger(__name__)


@dataclass
class PostingLine:
    """One side of a voucher before it is posted."""

    account_name: str
    account_class: AccountClass
    debit: Decimal = ZERO
    credit: Decimal = ZERO
    description: str = ""


def debit(account: str, account_class: AccountClass, amount, description: str = "") -> PostingLine:
    return PostingLine(account, account_class, debit=money(amount), description=description)


def credit(account: str, account_class: AccountClass, amount, description: str = "") -> PostingLine:
    return PostingLine(account, account_class, credit=money(amount), description=description)


class LedgerPoster:
    """Validates and appends balanced vouchers to the store."""

    def __init__(
        self,
        store: RecordStore,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.clock = clock or datetime.now

    def post_voucher(
        self,
        voucher_ref: str,
        lines: Iterable[PostingLine],
        *,
        business_id: str,
        voucher_type: VoucherType,
        voucher_date: Optional[date] = None,
        invoice_id: Optional[str] = None,
        party_id: Optional[str] = None,
        narration: str = "",
    ) -> Voucher:
        """
        Post a balanced voucher.

        Raises BalanceError if debits and credits differ, and
        DuplicateVoucherError if the reference was already posted. In
        both cases nothing is written.
        """
        lines = [line for line in lines if line.debit or line.credit]
        if not voucher_ref:
            raise ValidationError("voucher_ref")
        if not lines:
            raise ValidationError("entries", f"Voucher {voucher_ref} has no entries")

        total_debit = sum((money(l.debit) for l in lines), ZERO)
        total_credit = sum((money(l.credit) for l in lines), ZERO)
        for line in lines:
            if line.debit < 0 or line.credit < 0:
                raise ValidationError(
                    "entries", f"Negative amount on {line.account_name} in {voucher_ref}"
                )
        if total_debit != total_credit:
            error = BalanceError(voucher_ref, total_debit, total_credit, lines)
            logger.error(
                "Rejected unbalanced voucher %s: debit=%s credit=%s lines=%r",
                voucher_ref, total_debit, total_credit, lines,
            )
            raise error

        posted_at = self.clock()
        day = voucher_date or posted_at.date()
        voucher = Voucher(
            ref=voucher_ref,
            business_id=business_id,
            voucher_type=voucher_type,
            voucher_date=day,
            total_amount=total_debit,
            invoice_id=invoice_id,
            party_id=party_id,
            narration=narration,
            posted_at=posted_at,
        )

        with unit_of_work(self.store, f"voucher {voucher_ref}") as saga:
            if not self.store.add(voucher):
                raise DuplicateVoucherError(voucher_ref)
            saga.add(f"voucher header {voucher_ref}", lambda: self.store.remove(voucher))
            for i, line in enumerate(lines):
                entry = LedgerEntry(
                    id=f"{voucher_ref}:{i:03d}",
                    voucher_ref=voucher_ref,
                    business_id=business_id,
                    account_name=line.account_name,
                    account_class=line.account_class,
                    debit=money(line.debit),
                    credit=money(line.credit),
                    entry_date=day,
                    description=line.description or narration,
                )
                self.store.save(entry)
                saga.add(f"entry {entry.id}", lambda e=entry: self.store.remove(e))

        logger.info(
            "Posted %s voucher %s (%d lines, %s)",
            voucher_type.value, voucher_ref, len(lines), total_debit,
        )
        return voucher

    def entries_for(self, voucher_ref: str) -> list[LedgerEntry]:
        entries = self.store.query(LedgerEntry, voucher_ref=voucher_ref)
        return sorted(entries, key=lambda e: e.id)

    def get_voucher(self, voucher_ref: str) -> Optional[Voucher]:
        return self.store.load(Voucher, voucher_ref)

    def reverse_voucher(
        self,
        voucher_ref: str,
        reversal_ref: Optional[str] = None,
        voucher_date: Optional[date] = None,
        narration: str = "",
    ) -> Voucher:
        """Post an offsetting voucher that swaps every debit and credit."""
        original = self.get_voucher(voucher_ref)
        if original is None:
            raise ValidationError("voucher_ref", f"Voucher {voucher_ref} not found")
        if original.reversed_by:
            raise DuplicateVoucherError(original.reversed_by)

        reversal_ref = reversal_ref or f"REV-{voucher_ref}"
        lines = [
            PostingLine(
                e.account_name,
                e.account_class,
                debit=e.credit,
                credit=e.debit,
                description=f"Reversal: {e.description}",
            )
            for e in self.entries_for(voucher_ref)
        ]
        reversal = self.post_voucher(
            reversal_ref,
            lines,
            business_id=original.business_id,
            voucher_type=VoucherType.REVERSAL,
            voucher_date=voucher_date,
            invoice_id=original.invoice_id,
            party_id=original.party_id,
            narration=narration or f"Reversal of {voucher_ref}",
        )
        original.reversed_by = reversal_ref
        self.store.save(original)
        return reversal

    def discard_voucher(self, voucher_ref: str) -> None:
        """
        Remove a voucher that belongs to an unfinished unit of work.

        Only compensations and the recovery sweep call this; committed
        vouchers are corrected with reverse_voucher instead.
        """
        for entry in self.entries_for(voucher_ref):
            self.store.remove(entry)
        self.store.delete(Voucher.collection, voucher_ref)
        logger.warning("Discarded uncommitted voucher %s", voucher_ref)

    def is_balanced(self, voucher_ref: str) -> bool:
        entries = self.entries_for(voucher_ref)
        return sum((e.debit for e in entries), ZERO) == sum(
            (e.credit for e in entries), ZERO
        )
