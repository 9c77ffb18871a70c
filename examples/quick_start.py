#!/usr/bin/env python3
"""
Quick Start Example
===================

Sets up a business in Karnataka, India, sells two units of a product to
a customer in the same state, takes a part payment and prints the
invoice, the posted voucher and the readiness score for the month.

Usage:
    python examples/quick_start.py
"""

from datetime import date
from decimal import Decimal

from posting_engine import PostingEngine
from posting_engine.models import Business, Customer, InventoryItem, Period


def main() -> None:
    # In-memory engine with the bundled rule tables
    engine = PostingEngine()

    engine.register(
        Business(
            id="B1",
            name="Acme Traders",
            jurisdiction="IN",
            location="KA",
            registration_id="29ABCDE1234F1Z5",
        )
    )
    engine.register(Customer(id="C1", business_id="B1", name="Ravi Stores", location="KA"))
    engine.register(
        InventoryItem(
            product_id="P1",
            business_id="B1",
            name="Steel Bottle",
            current_stock=Decimal("50"),
            selling_price=Decimal("100"),
            tax_rate=Decimal("18"),
        )
    )

    # Two bottles, intra-state, so GST splits into CGST and SGST
    invoice = engine.create_invoice(
        {
            "business_id": "B1",
            "customer_id": "C1",
            "issue_date": date.today().isoformat(),
            "items": [{"product_id": "P1", "quantity": 2, "rate": "100"}],
        }
    )
    invoice = engine.record_payment(invoice.id, "100")

    print(f"Invoice:        {invoice.number}")
    print(f"Subtotal:       {invoice.subtotal:,.2f}")
    for code, amount in sorted(invoice.tax_components.items()):
        print(f"{code + ':':<16}{amount:,.2f}")
    print(f"Total:          {invoice.total:,.2f}")
    print(f"Paid:           {invoice.paid_amount:,.2f}")
    print(f"Balance Due:    {invoice.balance_due:,.2f}")
    print(f"Status:         {invoice.status.value}")
    print(f"Stock left:     {engine.inventory.get_stock('P1')}")

    print("\nSales voucher:")
    for entry in engine.ledger.entries_for(invoice.voucher_ref):
        print(f"  {entry.account_name:<24} Dr {entry.debit:>10,.2f}  Cr {entry.credit:>10,.2f}")

    today = date.today()
    report = engine.score_readiness("B1", Period.parse(f"{today.year}-{today.month:02d}"))
    print(f"\nReadiness:      {report.score}/100 ({report.grade})")


if __name__ == "__main__":
    main()
