"""
Command-line interface for the Transaction Posting Engine.

Provides subcommands for tax calculation, rule lookup, master data
loading, invoicing, payments, purchases, readiness scoring, sweeps and
tax summaries against a SQLite database.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich import box

from posting_engine.calculator import TaxCalculator, TaxContext
from posting_engine.config import EngineConfig, configure_logging
from posting_engine.engine import PostingEngine
from posting_engine.errors import PostingError, user_message
from posting_engine.models import Direction, Invoice, PaymentMethod, Period
from posting_engine.rates import GenericRule, GstRule, SalesTaxRule, VatRule

console = Console()
logger = logging.getLogger(__name__)

_PRIORITY_COLORS = {"CRITICAL": "red", "HIGH": "yellow", "MEDIUM": "blue", "LOW": "white"}
_GRADE_COLORS = {"A": "green", "B": "green", "C": "yellow", "D": "yellow", "F": "red"}


def _read_json(path: str) -> dict:
    json_path = Path(path)
    if not json_path.exists():
        console.print(f"[red]File not found: {path}[/red]")
        sys.exit(1)
    return json.loads(json_path.read_text(encoding="utf-8"))


def _config(args: argparse.Namespace) -> EngineConfig:
    config = EngineConfig.from_env()
    if getattr(args, "db", None):
        config.database_path = args.db
    if getattr(args, "rules", None):
        config.rules_path = args.rules
    return config


def _engine(args: argparse.Namespace) -> PostingEngine:
    return PostingEngine.open(config=_config(args))


def _invoice_panel(invoice: Invoice) -> Panel:
    components = ", ".join(
        f"{code} {amount:,.2f}" for code, amount in sorted(invoice.tax_components.items())
    )
    return Panel(
        f"[bold]Number:[/bold] {invoice.number}\n"
        f"[bold]Invoice ID:[/bold] {invoice.id}\n"
        f"[bold]Issued / Due:[/bold] {invoice.issue_date} / {invoice.due_date}\n"
        f"[bold]Subtotal:[/bold] {invoice.subtotal:,.2f}\n"
        f"[bold]Tax:[/bold] {invoice.tax_amount:,.2f} ({components or 'none'})\n"
        f"[bold]Discount:[/bold] {invoice.discount:,.2f}\n"
        f"[bold]Total:[/bold] {invoice.total:,.2f} {invoice.currency}\n"
        f"[bold]Paid:[/bold] {invoice.paid_amount:,.2f}\n"
        f"[bold]Balance Due:[/bold] {invoice.balance_due:,.2f}\n"
        f"[bold]Status:[/bold] {invoice.status.value}",
        title=f"Invoice {invoice.number}",
        border_style="green",
    )


# -----------------------------------------------------------------------
# Subcommand: calculate
# -----------------------------------------------------------------------


def cmd_calculate(args: argparse.Namespace) -> None:
    """Calculate tax for a single amount in a jurisdiction."""
    calc = TaxCalculator(_config(args).load_rules())
    result = calc.calculate(
        TaxContext(
            amount=Decimal(args.amount),
            jurisdiction=args.jurisdiction.upper(),
            direction=Direction(args.direction.upper()),
            business_location=args.business_location,
            counterpart_location=args.counterpart_location,
            rate=Decimal(args.rate) if args.rate else None,
            category=args.category,
            state=args.state,
            city=args.city,
        )
    )

    components = "\n".join(
        f"  {code}: {amount:,.2f}" for code, amount in result.components.items()
    )
    console.print(
        Panel(
            f"[bold]Jurisdiction:[/bold] {args.jurisdiction.upper()} ({result.tax_type})\n"
            f"[bold]Taxable Amount:[/bold] {result.taxable_amount:,.2f}\n"
            f"[bold]Rate:[/bold] {result.tax_rate}%\n"
            f"[bold]Mode:[/bold] {result.tax_mode.value if result.tax_mode else '-'}\n"
            f"[bold]Tax:[/bold] {result.tax_amount:,.2f}\n"
            f"[bold]Components:[/bold]\n{components or '  none'}\n"
            f"[bold]Total w/ Tax:[/bold] {result.total_with_tax:,.2f}\n"
            f"[bold]Exempt:[/bold] {'Yes - ' + result.exemption_reason if result.is_exempt else 'No'}",
            title="Tax Calculation",
            border_style="blue",
        )
    )

    for w in result.warnings:
        console.print(f"[yellow]Warning: {w}[/yellow]")


# -----------------------------------------------------------------------
# Subcommand: rules
# -----------------------------------------------------------------------


def _split_policy(rule) -> str:
    if isinstance(rule, GstRule):
        intra = "/".join(rule.intra_components) if rule.split_intra else rule.intra_components[0]
        return f"intra {intra}, inter {'/'.join(rule.inter_components)}"
    if isinstance(rule, (VatRule, SalesTaxRule)):
        return rule.component
    if isinstance(rule, GenericRule):
        return ", ".join(
            f"{c.code} {'variable' if c.is_variable else str(c.effective_rate) + '%'}"
            for c in rule.components
        )
    return "-"


def cmd_rules(args: argparse.Namespace) -> None:
    """Display jurisdiction rules."""
    rules = _config(args).load_rules()
    on = date.fromisoformat(args.on) if args.on else None

    if args.jurisdiction:
        rule = rules.get(args.jurisdiction, on)
        if rule is None:
            console.print(f"[red]Unknown jurisdiction: {args.jurisdiction}[/red]")
            sys.exit(1)
        console.print(
            Panel(
                f"[bold]Jurisdiction:[/bold] {rule.name} ({rule.code})\n"
                f"[bold]Tax Type:[/bold] {rule.tax_type.value}\n"
                f"[bold]Standard Rate:[/bold] "
                f"{str(rule.standard_rate) + '%' if rule.standard_rate is not None else 'caller supplied'}\n"
                f"[bold]Reduced Rates:[/bold] {', '.join(str(r) + '%' for r in rule.reduced_rates) or 'None'}\n"
                f"[bold]Components:[/bold] {_split_policy(rule)}\n"
                f"[bold]Registration Threshold:[/bold] "
                f"{f'{rule.registration_threshold:,.0f}' if rule.registration_threshold else 'None'}\n"
                f"[bold]Filing:[/bold] {rule.filing_cadence.value} ({', '.join(rule.return_forms) or '-'})\n"
                f"[bold]Currency:[/bold] {rule.currency or '-'}",
                title=f"{rule.name} Tax Profile",
                border_style="cyan",
            )
        )
        return

    table = Table(
        title=f"Jurisdiction Rules (versions: {', '.join(rules.versions)})",
        box=box.ROUNDED,
    )
    table.add_column("Code", style="bold")
    table.add_column("Name")
    table.add_column("Type")
    table.add_column("Rate", justify="right")
    table.add_column("Threshold", justify="right")
    table.add_column("Filing")

    for rule in rules.all_rules(on):
        table.add_row(
            rule.code,
            rule.name,
            rule.tax_type.value,
            f"{rule.standard_rate}%" if rule.standard_rate is not None else "-",
            f"{rule.registration_threshold:,.0f}" if rule.registration_threshold else "-",
            rule.filing_cadence.value,
        )
    console.print(table)


# -----------------------------------------------------------------------
# Subcommands: load, invoice, pay, cancel, purchase
# -----------------------------------------------------------------------


def cmd_load(args: argparse.Namespace) -> None:
    """Load businesses, customers, vendors and products from JSON."""
    engine = _engine(args)
    try:
        counts = engine.load_master_file(args.file)
    finally:
        engine.close()
    for section, count in counts.items():
        console.print(f"[green]{count} {section} loaded[/green]")


def cmd_invoice(args: argparse.Namespace) -> None:
    """Create an invoice from a JSON request."""
    engine = _engine(args)
    try:
        invoice = engine.create_invoice(_read_json(args.file))
    finally:
        engine.close()
    console.print(_invoice_panel(invoice))

    table = Table(title="Line Items", box=box.SIMPLE)
    table.add_column("#", style="dim")
    table.add_column("Description")
    table.add_column("Qty", justify="right")
    table.add_column("Rate", justify="right")
    table.add_column("Subtotal", justify="right")
    table.add_column("Tax", justify="right")
    table.add_column("Total", justify="right", style="bold")
    for i, item in enumerate(invoice.items, start=1):
        table.add_row(
            str(i),
            item.description,
            str(item.quantity),
            f"{item.rate:,.2f}",
            f"{item.subtotal:,.2f}",
            f"{item.tax_amount:,.2f}" if not item.exemption_reason else "exempt",
            f"{item.total:,.2f}",
        )
    console.print(table)


def cmd_pay(args: argparse.Namespace) -> None:
    """Record a payment against an invoice."""
    engine = _engine(args)
    try:
        invoice = engine.record_payment(
            args.invoice_id,
            args.amount,
            PaymentMethod(args.method),
            reference=args.reference or "",
        )
    finally:
        engine.close()
    console.print(_invoice_panel(invoice))


def cmd_cancel(args: argparse.Namespace) -> None:
    """Cancel an unpaid invoice."""
    engine = _engine(args)
    try:
        invoice = engine.cancel_invoice(args.invoice_id, args.reason or "")
    finally:
        engine.close()
    console.print(f"[yellow]Invoice {invoice.number} cancelled.[/yellow]")


def cmd_purchase(args: argparse.Namespace) -> None:
    """Record a vendor bill from a JSON request."""
    engine = _engine(args)
    try:
        result = engine.record_purchase(_read_json(args.file))
    finally:
        engine.close()
    credit = ", ".join(f"{k} {v:,.2f}" for k, v in result.input_credit.items())
    console.print(
        Panel(
            f"[bold]Voucher:[/bold] {result.voucher_ref}\n"
            f"[bold]Subtotal:[/bold] {result.subtotal:,.2f}\n"
            f"[bold]Input Tax:[/bold] {result.tax_amount:,.2f} ({credit or 'none'})\n"
            f"[bold]Total:[/bold] {result.total:,.2f}\n"
            f"[bold]Claimable:[/bold] {'Yes' if result.claimable else 'No - vendor not registered'}",
            title="Purchase Recorded",
            border_style="green",
        )
    )


# -----------------------------------------------------------------------
# Subcommand: readiness
# -----------------------------------------------------------------------


def cmd_readiness(args: argparse.Namespace) -> None:
    """Score a business's tax readiness for a period."""
    engine = _engine(args)
    try:
        period = Period.parse(args.period)
        as_of = date.fromisoformat(args.as_of) if args.as_of else None
        report = engine.score_readiness(args.business_id, period, as_of)
        color = _GRADE_COLORS.get(report.grade, "white")
        console.print(
            Panel(
                f"[bold]Score:[/bold] {report.score}/100\n"
                f"[bold]Grade:[/bold] [{color}]{report.grade}[/{color}]\n"
                f"[bold]Filing Ready:[/bold] {'Yes' if report.filing_ready else 'No'}\n"
                f"[bold]Issues:[/bold] {report.issue_count}",
                title=f"Tax Readiness - {period.label}",
                border_style=color,
            )
        )

        if report.issue_count:
            table = Table(title="Issues", box=box.ROUNDED, show_lines=True)
            table.add_column("Class", style="bold")
            table.add_column("Reference", style="dim")
            table.add_column("Detail")
            for kind, found in report.issues.items():
                for issue in found:
                    table.add_row(kind, issue.reference, issue.message)
            console.print(table)

        for rec in report.recommendations:
            color = _PRIORITY_COLORS.get(rec.priority.value, "white")
            console.print(
                Panel(
                    f"{rec.action}\n\n[bold]Impact:[/bold] {rec.impact}",
                    title=f"[{color}]{rec.priority.value}[/{color}] - {rec.issue}",
                    border_style=color,
                )
            )

        for w in report.warnings:
            console.print(f"[yellow]Warning: {w}[/yellow]")

        if args.export_json:
            rg = engine.reports
            if args.output_dir:
                rg.output_dir = Path(args.output_dir)
            rg.to_json(rg.readiness_report(report), args.export_json)
            console.print(f"[green]Report exported to {args.export_json}[/green]")
    finally:
        engine.close()


# -----------------------------------------------------------------------
# Subcommands: sweep, summary
# -----------------------------------------------------------------------


def cmd_sweep(args: argparse.Namespace) -> None:
    """Repair incomplete postings and flag overdue invoices."""
    engine = _engine(args)
    try:
        as_of = date.fromisoformat(args.as_of) if args.as_of else None
        overdue, recovery = engine.sweep(as_of)
    finally:
        engine.close()

    console.print(
        f"Recovery: {len(recovery.rolled_back_invoices)} invoice(s) rolled back, "
        f"{len(recovery.orphan_vouchers)} orphan voucher(s), "
        f"{len(recovery.reconciled_customers)} balance(s) reconciled"
    )
    if not overdue:
        console.print("[green]No newly overdue invoices.[/green]")
        return
    table = Table(title="Newly Overdue Invoices", box=box.ROUNDED, border_style="yellow")
    table.add_column("Number", style="bold")
    table.add_column("Customer")
    table.add_column("Due", justify="right")
    table.add_column("Balance Due", justify="right")
    for inv in overdue:
        table.add_row(inv.number, inv.customer_id, inv.due_date.isoformat(), f"{inv.balance_due:,.2f}")
    console.print(table)


def cmd_summary(args: argparse.Namespace) -> None:
    """Show the tax summary and net liability for a period."""
    engine = _engine(args)
    try:
        period = Period.parse(args.period)
        rg = engine.reports
        summary = rg.tax_summary(args.business_id, period)
        liability = rg.tax_liability(args.business_id, period)
    finally:
        engine.close()

    table = Table(title=f"Tax Summary - {period.label}", box=box.ROUNDED)
    table.add_column("Direction", style="bold")
    table.add_column("Tax Type")
    table.add_column("Count", justify="right")
    table.add_column("Taxable", justify="right")
    table.add_column("Tax", justify="right", style="bold")
    for row in summary["breakdown"]:
        table.add_row(
            row["direction"],
            row["tax_type"],
            str(row["transaction_count"]),
            f"{row['taxable_amount']:,.2f}",
            f"{row['tax_amount']:,.2f}",
        )
    console.print(table)

    color = "red" if liability["status"] == "PAYABLE" else "green"
    console.print(
        Panel(
            f"[bold]Output Tax:[/bold] {liability['output_tax']:,.2f}\n"
            f"[bold]Input Tax Credit:[/bold] {liability['input_tax']:,.2f}\n"
            f"[bold]Unclaimable Input Tax:[/bold] {liability['unclaimable_input_tax']:,.2f}\n"
            f"[bold]Net:[/bold] {liability['net_liability']:,.2f} ({liability['status']})\n"
            f"[bold]Due:[/bold] {liability['due_date']}",
            title="Tax Liability",
            border_style=color,
        )
    )

    if args.export_json:
        if args.output_dir:
            rg.output_dir = Path(args.output_dir)
        rg.to_json({"summary": summary, "liability": liability}, args.export_json)
        console.print(f"[green]Report exported to {args.export_json}[/green]")
    if args.export_csv:
        if args.output_dir:
            rg.output_dir = Path(args.output_dir)
        rg.to_csv(summary, "breakdown", args.export_csv)
        console.print(f"[green]CSV exported to {args.export_csv}[/green]")


# -----------------------------------------------------------------------
# Argument parser
# -----------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="posting-engine",
        description="Transaction Posting & Tax Engine - invoicing, double-entry posting, multi-jurisdiction tax and readiness scoring",
    )
    parser.add_argument("--db", help="SQLite database path (default: POSTING_ENGINE_DATABASE or posting_engine.db)")
    parser.add_argument("--rules", help="JSON rule table to use instead of the bundled one")
    parser.add_argument("--log-level", help="Logging level (default: INFO)")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # calculate
    calc_p = subparsers.add_parser("calculate", help="Calculate tax for an amount")
    calc_p.add_argument("--amount", required=True, help="Taxable amount")
    calc_p.add_argument("--jurisdiction", "-j", required=True, help="Jurisdiction code, e.g. IN, GB")
    calc_p.add_argument("--direction", default="SALE", help="SALE or PURCHASE")
    calc_p.add_argument("--business-location", help="Business state/region")
    calc_p.add_argument("--counterpart-location", help="Customer or vendor state/region")
    calc_p.add_argument("--rate", help="Explicit rate in percent")
    calc_p.add_argument("--category", help="Item category for exemption check")
    calc_p.add_argument("--state", help="Sales tax state annotation")
    calc_p.add_argument("--city", help="Sales tax city annotation")
    calc_p.set_defaults(func=cmd_calculate)

    # rules
    rules_p = subparsers.add_parser("rules", help="View jurisdiction rules")
    rules_p.add_argument("--jurisdiction", "-j", help="Jurisdiction code to look up")
    rules_p.add_argument("--on", help="Effective date (YYYY-MM-DD)")
    rules_p.set_defaults(func=cmd_rules)

    # load
    load_p = subparsers.add_parser("load", help="Load master data from JSON")
    load_p.add_argument("--file", "-f", required=True, help="JSON with businesses/customers/vendors/products")
    load_p.set_defaults(func=cmd_load)

    # invoice
    inv_p = subparsers.add_parser("invoice", help="Create an invoice")
    inv_p.add_argument("--file", "-f", required=True, help="JSON invoice request")
    inv_p.set_defaults(func=cmd_invoice)

    # pay
    pay_p = subparsers.add_parser("pay", help="Record a payment")
    pay_p.add_argument("invoice_id", help="Invoice id")
    pay_p.add_argument("--amount", required=True, help="Payment amount")
    pay_p.add_argument(
        "--method", default="cash", choices=[m.value for m in PaymentMethod], help="Payment method"
    )
    pay_p.add_argument("--reference", help="Payment reference")
    pay_p.set_defaults(func=cmd_pay)

    # cancel
    cancel_p = subparsers.add_parser("cancel", help="Cancel an unpaid invoice")
    cancel_p.add_argument("invoice_id", help="Invoice id")
    cancel_p.add_argument("--reason", help="Cancellation reason")
    cancel_p.set_defaults(func=cmd_cancel)

    # purchase
    pur_p = subparsers.add_parser("purchase", help="Record a vendor bill")
    pur_p.add_argument("--file", "-f", required=True, help="JSON purchase request")
    pur_p.set_defaults(func=cmd_purchase)

    # readiness
    ready_p = subparsers.add_parser("readiness", help="Score tax readiness")
    ready_p.add_argument("business_id", help="Business id")
    ready_p.add_argument("--period", "-p", required=True, help="YYYY, YYYY-MM or START:END")
    ready_p.add_argument("--as-of", help="Evaluation date (default: today)")
    ready_p.add_argument("--export-json", help="Export report to JSON")
    ready_p.add_argument("--output-dir", help="Output directory")
    ready_p.set_defaults(func=cmd_readiness)

    # sweep
    sweep_p = subparsers.add_parser("sweep", help="Run recovery and overdue sweeps")
    sweep_p.add_argument("--as-of", help="Evaluation date (default: today)")
    sweep_p.set_defaults(func=cmd_sweep)

    # summary
    sum_p = subparsers.add_parser("summary", help="Tax summary and liability")
    sum_p.add_argument("business_id", help="Business id")
    sum_p.add_argument("--period", "-p", required=True, help="YYYY, YYYY-MM or START:END")
    sum_p.add_argument("--export-json", help="Export to JSON filename")
    sum_p.add_argument("--export-csv", help="Export breakdown to CSV filename")
    sum_p.add_argument("--output-dir", help="Output directory")
    sum_p.set_defaults(func=cmd_summary)

    return parser


def main(argv: Optional[list[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(0)

    configure_logging(args.log_level or _config(args).log_level)
    try:
        args.func(args)
    except PostingError as e:
        if not e.user_visible:
            logger.error("%s failed: %s", args.command, e)
        console.print(f"[red]{user_message(e)}[/red]")
        sys.exit(1)
