"""
Report generator.

Produces:
- Tax summaries by direction and tax type for a period
- Tax liability (output tax less input tax) with the return due date
- Per-voucher ledger balance checks
- Readiness reports for the compliance screen
- CSV and JSON export
"""

from __future__ import annotations

import json
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional

import pandas as pd

from posting_engine.filings import due_date_for
from posting_engine.models import (
    ZERO,
    Direction,
    LedgerEntry,
    Period,
    TaxTransaction,
    Vendor,
)
from posting_engine.readiness import ReadinessReport
from posting_engine.store import RecordStore


class _DecimalEncoder(json.JSONEncoder):
    """JSON encoder that handles Decimal and date objects."""

    def default(self, o: Any) -> Any:
        if isinstance(o, Decimal):
            return float(o)
        if isinstance(o, date):
            return o.isoformat()
        return super().default(o)


def _decimal_to_float(obj: Any) -> Any:
    """Recursively convert Decimal values to float for serialization."""
    if isinstance(obj, dict):
        return {k: _decimal_to_float(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_decimal_to_float(i) for i in obj]
    if isinstance(obj, Decimal):
        return float(obj)
    if isinstance(obj, date):
        return obj.isoformat()
    return obj


def _dsum(series: pd.Series) -> Decimal:
    return sum(series, ZERO)


class ReportGenerator:
    """
    Builds period reports from the records the engine posts.

    Reports are plain dicts suitable for display, and can be exported to
    JSON or CSV files under ``output_dir``.
    """

    def __init__(self, store: RecordStore, output_dir: Optional[str] = None) -> None:
        self.store = store
        self.output_dir = Path(output_dir) if output_dir else Path("reports")

    # ------------------------------------------------------------------
    # Frames
    # ------------------------------------------------------------------

    def _tax_frame(self, business_id: str, period: Period) -> pd.DataFrame:
        rows = [
            {
                "voucher_ref": t.voucher_ref,
                "direction": t.direction.value,
                "tax_type": t.tax_type,
                "party_id": t.party_id,
                "transaction_date": t.transaction_date,
                "taxable_amount": t.taxable_amount,
                "tax_amount": t.tax_amount,
                "components": t.components,
            }
            for t in self.store.query(TaxTransaction, business_id=business_id)
            if period.contains(t.transaction_date)
        ]
        return pd.DataFrame(
            rows,
            columns=[
                "voucher_ref", "direction", "tax_type", "party_id",
                "transaction_date", "taxable_amount", "tax_amount", "components",
            ],
        )

    # ------------------------------------------------------------------
    # Tax summary
    # ------------------------------------------------------------------

    def tax_summary(self, business_id: str, period: Period) -> dict[str, Any]:
        """Totals of taxable value and tax by direction and tax type."""
        df = self._tax_frame(business_id, period)
        breakdown: list[dict[str, Any]] = []
        components: dict[str, dict[str, Decimal]] = {}

        if not df.empty:
            grouped = (
                df.groupby(["direction", "tax_type"], sort=True)
                .agg(
                    transaction_count=("voucher_ref", "count"),
                    taxable_amount=("taxable_amount", _dsum),
                    tax_amount=("tax_amount", _dsum),
                )
                .reset_index()
            )
            breakdown = [
                {
                    "direction": row.direction,
                    "tax_type": row.tax_type,
                    "transaction_count": int(row.transaction_count),
                    "taxable_amount": row.taxable_amount,
                    "tax_amount": row.tax_amount,
                }
                for row in grouped.itertuples(index=False)
            ]

            for direction, parts in df.groupby("direction")["components"]:
                totals: dict[str, Decimal] = {}
                for mapping in parts:
                    for code, amount in mapping.items():
                        totals[code] = totals.get(code, ZERO) + amount
                components[direction] = dict(sorted(totals.items()))

        return {
            "report_type": "tax_summary",
            "business_id": business_id,
            "period": period.label,
            "generated_date": date.today().isoformat(),
            "summary": {
                "total_transactions": len(df),
                "total_taxable": _dsum(df["taxable_amount"]),
                "total_tax": _dsum(df["tax_amount"]),
            },
            "breakdown": breakdown,
            "components": components,
        }

    def tax_liability(self, business_id: str, period: Period) -> dict[str, Any]:
        """
        Net tax position for a period.

        Output tax on sales less input tax on purchases. A positive net
        is PAYABLE, a negative one REFUNDABLE. Input tax from vendors
        without a registration id is shown separately as unclaimable and
        left out of the credit.
        """
        df = self._tax_frame(business_id, period)
        sales = df[df["direction"] == Direction.SALE.value]
        purchases = df[df["direction"] == Direction.PURCHASE.value]

        registered = {
            v.id for v in self.store.query(Vendor, business_id=business_id)
            if v.registration_id
        }
        claimable = purchases[purchases["party_id"].isin(sorted(registered))]

        output_tax = _dsum(sales["tax_amount"])
        input_tax = _dsum(claimable["tax_amount"])
        unclaimable = _dsum(purchases["tax_amount"]) - input_tax
        net = output_tax - input_tax

        return {
            "report_type": "tax_liability",
            "business_id": business_id,
            "period": period.label,
            "output_tax": output_tax,
            "input_tax": input_tax,
            "unclaimable_input_tax": unclaimable,
            "net_liability": net,
            "status": "PAYABLE" if net >= 0 else "REFUNDABLE",
            "due_date": due_date_for(period.end).isoformat(),
        }

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    def voucher_balance_report(
        self, business_id: str, period: Optional[Period] = None
    ) -> dict[str, Any]:
        """Debit and credit totals per voucher, flagging any that disagree."""
        rows = [
            {
                "voucher_ref": e.voucher_ref,
                "account_name": e.account_name,
                "debit": e.debit,
                "credit": e.credit,
            }
            for e in self.store.query(LedgerEntry, business_id=business_id)
            if period is None or period.contains(e.entry_date)
        ]
        df = pd.DataFrame(rows, columns=["voucher_ref", "account_name", "debit", "credit"])
        vouchers: list[dict[str, Any]] = []
        if not df.empty:
            grouped = (
                df.groupby("voucher_ref", sort=True)
                .agg(debit=("debit", _dsum), credit=("credit", _dsum))
                .reset_index()
            )
            vouchers = [
                {
                    "voucher_ref": row.voucher_ref,
                    "debit": row.debit,
                    "credit": row.credit,
                    "balanced": row.debit == row.credit,
                }
                for row in grouped.itertuples(index=False)
            ]

        unbalanced = [v["voucher_ref"] for v in vouchers if not v["balanced"]]
        return {
            "report_type": "voucher_balance",
            "business_id": business_id,
            "period": period.label if period else "all",
            "voucher_count": len(vouchers),
            "total_debit": _dsum(df["debit"]),
            "total_credit": _dsum(df["credit"]),
            "unbalanced_vouchers": unbalanced,
            "vouchers": vouchers,
        }

    def account_balances(self, business_id: str) -> list[dict[str, Any]]:
        """Net debit/credit per account across all posted vouchers."""
        rows = [
            {"account_name": e.account_name, "debit": e.debit, "credit": e.credit}
            for e in self.store.query(LedgerEntry, business_id=business_id)
        ]
        if not rows:
            return []
        grouped = (
            pd.DataFrame(rows)
            .groupby("account_name", sort=True)
            .agg(debit=("debit", _dsum), credit=("credit", _dsum))
            .reset_index()
        )
        return [
            {
                "account_name": row.account_name,
                "debit": row.debit,
                "credit": row.credit,
                "balance": row.debit - row.credit,
            }
            for row in grouped.itertuples(index=False)
        ]

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    def readiness_report(self, report: ReadinessReport) -> dict[str, Any]:
        return {
            "report_type": "tax_readiness",
            "business_id": report.business_id,
            "period": report.period.label,
            "as_of": report.as_of.isoformat(),
            "score": report.score,
            "grade": report.grade,
            "filing_ready": report.filing_ready,
            "issues": {
                kind: [
                    {
                        "reference": i.reference,
                        "message": i.message,
                        "date": i.on,
                        "amount": i.amount,
                        "expected": i.expected,
                    }
                    for i in found
                ]
                for kind, found in report.issues.items()
            },
            "recommendations": [
                {
                    "priority": r.priority.value,
                    "issue": r.issue,
                    "action": r.action,
                    "impact": r.impact,
                }
                for r in report.recommendations
            ],
            "warnings": report.warnings,
        }

    # ------------------------------------------------------------------
    # Export methods
    # ------------------------------------------------------------------

    def _write(self, filename: str, text: str) -> Path:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        path = self.output_dir / filename
        path.write_text(text, encoding="utf-8")
        return path

    def to_json(
        self,
        report: dict[str, Any],
        filename: Optional[str] = None,
    ) -> str:
        """Export a report to JSON. Returns the JSON string."""
        serializable = _decimal_to_float(report)
        json_str = json.dumps(serializable, indent=2, cls=_DecimalEncoder)
        if filename:
            self._write(filename, json_str)
        return json_str

    def to_csv(
        self,
        report: dict[str, Any],
        section: str,
        filename: Optional[str] = None,
    ) -> str:
        """
        Export one list section of a report (e.g. "breakdown") to CSV.

        Returns an empty string when the section has no rows.
        """
        rows = report.get(section) or []
        if not rows:
            return ""
        csv_str = pd.DataFrame(_decimal_to_float(rows)).to_csv(index=False)
        if filename:
            self._write(filename, csv_str)
        return csv_str
