"""
Jurisdiction-aware tax calculation engine.

Handles:
- Category exemptions (education, healthcare, staple food, books, press)
- GST with intra-region split and inter-region single component
- Flat-rate VAT
- Nexus-based sales tax with caller-supplied rates
- Generic component tables with variable-rate components skipped

Component amounts are rounded individually and the tax amount is their
sum, so components always add up to the tax amount exactly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Optional

from posting_engine.errors import NotFoundError, ValidationError
from posting_engine.models import ZERO, Direction, TaxMode, money
from posting_engine.rates import (
    GenericRule,
    GstRule,
    RuleStore,
    SalesTaxRule,
    TaxRule,
    VatRule,
)

logger = logging.getLogger(__name__)


class ExemptionCategory(Enum):
    """Product categories exempt from tax regardless of jurisdiction."""

    EDUCATION = "EDUCATION"
    HEALTHCARE = "HEALTHCARE"
    BASIC_FOOD = "BASIC_FOOD"
    BOOKS = "BOOKS"
    NEWSPAPERS = "NEWSPAPERS"


# Map common item categories to exemption categories
_CATEGORY_MAP: dict[str, ExemptionCategory] = {
    "education": ExemptionCategory.EDUCATION,
    "educational": ExemptionCategory.EDUCATION,
    "healthcare": ExemptionCategory.HEALTHCARE,
    "health": ExemptionCategory.HEALTHCARE,
    "medical": ExemptionCategory.HEALTHCARE,
    "basic_food": ExemptionCategory.BASIC_FOOD,
    "staple_food": ExemptionCategory.BASIC_FOOD,
    "books": ExemptionCategory.BOOKS,
    "book": ExemptionCategory.BOOKS,
    "newspapers": ExemptionCategory.NEWSPAPERS,
    "newspaper": ExemptionCategory.NEWSPAPERS,
    "press": ExemptionCategory.NEWSPAPERS,
}


def exemption_for(category: Optional[str]) -> Optional[ExemptionCategory]:
    if not category:
        return None
    return _CATEGORY_MAP.get(category.strip().lower())


@dataclass
class TaxContext:
    """Everything the calculator needs to tax one amount."""

    amount: Decimal
    jurisdiction: str
    direction: Direction = Direction.SALE
    business_location: Optional[str] = None
    counterpart_location: Optional[str] = None
    rate: Optional[Decimal] = None  # percent, overrides the standard rate
    category: Optional[str] = None
    state: Optional[str] = None  # sales-tax annotation
    city: Optional[str] = None
    on: Optional[date] = None


@dataclass
class TaxResult:
    """Result of a tax calculation for a single amount."""

    taxable_amount: Decimal
    tax_amount: Decimal
    tax_rate: Decimal
    tax_type: str
    components: dict[str, Decimal] = field(default_factory=dict)
    exemption_reason: Optional[str] = None
    tax_mode: Optional[TaxMode] = None
    jurisdiction: dict[str, str] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_exempt(self) -> bool:
        return self.exemption_reason is not None

    @property
    def total_with_tax(self) -> Decimal:
        return self.taxable_amount + self.tax_amount


def decide_tax_mode(
    business_location: Optional[str], counterpart_location: Optional[str]
) -> TaxMode:
    """Same location on both sides is intra-state; anything else is inter-state."""
    if (
        business_location
        and counterpart_location
        and business_location.strip().upper() == counterpart_location.strip().upper()
    ):
        return TaxMode.INTRA_STATE
    return TaxMode.INTER_STATE


def _percent_of(amount: Decimal, rate: Decimal) -> Decimal:
    return money(amount * rate / Decimal("100"))


def combine_results(results: list[TaxResult]) -> TaxResult:
    """
    Fold per-line results into one document-level result.

    Exempt lines are left out of the taxable base. When every taxed line
    shares a rate that rate is kept; otherwise the blended effective
    rate is reported.
    """
    taxed = [r for r in results if not r.is_exempt]
    taxable = sum((r.taxable_amount for r in taxed), ZERO)
    components: dict[str, Decimal] = {}
    for r in results:
        for code, amount in r.components.items():
            components[code] = components.get(code, ZERO) + amount
    tax = sum(components.values(), ZERO)

    rates = {r.tax_rate for r in taxed}
    if len(rates) == 1:
        rate = rates.pop()
    elif taxable:
        rate = (tax * Decimal("100") / taxable).quantize(Decimal("0.0001"))
    else:
        rate = Decimal("0")

    exemption = results[0].exemption_reason if results and not taxed else None
    return TaxResult(
        taxable_amount=taxable,
        tax_amount=tax,
        tax_rate=rate,
        tax_type=results[0].tax_type if results else "",
        components=components,
        exemption_reason=exemption,
        tax_mode=next((r.tax_mode for r in results if r.tax_mode), None),
        warnings=[w for r in results for w in r.warnings],
    )


# -----------------------------------------------------------------------
# Strategies, one per rule variant
# -----------------------------------------------------------------------


def _gst(ctx: TaxContext, rule: GstRule, taxable: Decimal) -> TaxResult:
    rate = ctx.rate if ctx.rate is not None else rule.standard_rate
    if rate is None:
        raise ValidationError("rate", f"No GST rate configured for {rule.code}")
    rate = Decimal(str(rate))

    mode = decide_tax_mode(ctx.business_location, ctx.counterpart_location)
    tax = _percent_of(taxable, rate)

    components: dict[str, Decimal] = {}
    if mode is TaxMode.INTRA_STATE and rule.split_intra and len(rule.intra_components) >= 2:
        first, second = rule.intra_components[:2]
        half = money(tax / 2)
        components[first] = half
        components[second] = tax - half
    elif mode is TaxMode.INTRA_STATE:
        components[rule.intra_components[0]] = tax
    else:
        components[rule.inter_components[0]] = tax

    return TaxResult(
        taxable_amount=taxable,
        tax_amount=sum(components.values(), ZERO),
        tax_rate=rate,
        tax_type=rule.tax_type.value,
        components=components,
        tax_mode=mode,
    )


def _vat(ctx: TaxContext, rule: VatRule, taxable: Decimal) -> TaxResult:
    rate = ctx.rate if ctx.rate is not None else rule.standard_rate
    if rate is None:
        raise ValidationError("rate", f"No VAT rate configured for {rule.code}")
    rate = Decimal(str(rate))
    tax = _percent_of(taxable, rate)
    return TaxResult(
        taxable_amount=taxable,
        tax_amount=tax,
        tax_rate=rate,
        tax_type=rule.tax_type.value,
        components={rule.component: tax},
    )


def _sales_tax(ctx: TaxContext, rule: SalesTaxRule, taxable: Decimal) -> TaxResult:
    # State and city rate lookup lives outside the engine.
    if ctx.rate is None:
        raise ValidationError(
            "rate", f"A sales tax rate must be supplied for {rule.code} transactions"
        )
    rate = Decimal(str(ctx.rate))
    tax = _percent_of(taxable, rate)
    jurisdiction = {}
    if ctx.state:
        jurisdiction["state"] = ctx.state
    if ctx.city:
        jurisdiction["city"] = ctx.city
    return TaxResult(
        taxable_amount=taxable,
        tax_amount=tax,
        tax_rate=rate,
        tax_type=rule.tax_type.value,
        components={rule.component: tax},
        jurisdiction=jurisdiction,
    )


def _generic(ctx: TaxContext, rule: GenericRule, taxable: Decimal) -> TaxResult:
    components: dict[str, Decimal] = {}
    warnings: list[str] = []
    total_rate = Decimal("0")

    for component in rule.components:
        rate = component.effective_rate
        if rate is None:
            warnings.append(f"Skipped variable-rate component {component.code}")
            continue
        components[component.code] = _percent_of(taxable, rate)
        total_rate += rate

    if not rule.components and ctx.rate is not None:
        rate = Decimal(str(ctx.rate))
        components["TAX"] = _percent_of(taxable, rate)
        total_rate = rate

    return TaxResult(
        taxable_amount=taxable,
        tax_amount=sum(components.values(), ZERO),
        tax_rate=total_rate,
        tax_type=rule.tax_type.value,
        components=components,
        warnings=warnings,
    )


_STRATEGIES = {
    GstRule: _gst,
    VatRule: _vat,
    SalesTaxRule: _sales_tax,
    GenericRule: _generic,
}


class JurisdictionCalculator:
    """A calculator bound to one jurisdiction's rule and strategy."""

    def __init__(self, rule: TaxRule) -> None:
        self.rule = rule
        self._strategy = _STRATEGIES[type(rule)]

    @property
    def tax_type(self) -> str:
        return self.rule.tax_type.value

    def calculate(self, ctx: TaxContext) -> TaxResult:
        taxable = money(ctx.amount)
        if taxable < 0:
            raise ValidationError("amount", "Taxable amount cannot be negative")

        exemption = exemption_for(ctx.category)
        if exemption is not None:
            return TaxResult(
                taxable_amount=taxable,
                tax_amount=ZERO,
                tax_rate=Decimal("0"),
                tax_type=self.tax_type,
                exemption_reason=f"EXEMPT_CATEGORY:{exemption.value}",
            )

        return self._strategy(ctx, self.rule, taxable)


class TaxCalculator:
    """
    Tax calculation front end over a rule store.

    Resolves the jurisdiction's rule and dispatches to the matching
    strategy. Use ``bind`` to select the strategy once for a business.
    """

    def __init__(self, rules: Optional[RuleStore] = None) -> None:
        self.rules = rules or RuleStore()

    def bind(self, jurisdiction: str, on: Optional[date] = None) -> JurisdictionCalculator:
        rule = self.rules.get(jurisdiction, on)
        if rule is None:
            raise NotFoundError("jurisdiction", jurisdiction)
        return JurisdictionCalculator(rule)

    def calculate(self, ctx: TaxContext) -> TaxResult:
        """
        Calculate tax for a single amount.

        An unknown jurisdiction yields zero tax with a warning rather
        than an error.
        """
        rule = self.rules.get(ctx.jurisdiction, ctx.on)
        if rule is None:
            logger.warning("No tax rule for jurisdiction %s", ctx.jurisdiction)
            taxable = money(ctx.amount)
            return TaxResult(
                taxable_amount=taxable,
                tax_amount=ZERO,
                tax_rate=Decimal("0"),
                tax_type="UNKNOWN",
                warnings=[f"Unknown jurisdiction: {ctx.jurisdiction}"],
            )
        return JurisdictionCalculator(rule).calculate(ctx)
