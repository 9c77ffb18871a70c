"""
Jurisdiction tax rule store.

Each jurisdiction declares exactly one rule variant:

    GstRule       - GST with an intra/inter-region component split
    VatRule       - flat single-component VAT
    SalesTaxRule  - nexus-based sales tax; the rate comes from the caller
    GenericRule   - a list of declared components, some possibly variable

Rules are immutable and grouped into versioned rule sets. A RuleStore
may hold several versions and resolves the one effective on a date, so
rate changes are data updates rather than code changes.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, ClassVar, Mapping, Optional, Union


class TaxType(Enum):
    GST = "GST"
    VAT = "VAT"
    SALES_TAX = "SALES_TAX"
    GENERIC = "GENERIC"


class FilingCadence(Enum):
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    ANNUAL = "ANNUAL"
    VARIES = "VARIES"


@dataclass(frozen=True)
class TaxComponent:
    """A named component of a generic jurisdiction's tax."""

    code: str
    name: str = ""
    rate: Optional[Decimal] = None  # percent; None means variable
    employer_rate: Optional[Decimal] = None
    employee_rate: Optional[Decimal] = None

    @property
    def is_variable(self) -> bool:
        return self.effective_rate is None

    @property
    def effective_rate(self) -> Optional[Decimal]:
        if self.rate is not None:
            return self.rate
        if self.employer_rate is not None or self.employee_rate is not None:
            return (self.employer_rate or Decimal("0")) + (
                self.employee_rate or Decimal("0")
            )
        return None


@dataclass(frozen=True)
class JurisdictionRule:
    """Fields shared by every rule variant."""

    tax_type: ClassVar[TaxType] = TaxType.GENERIC

    code: str
    name: str
    standard_rate: Optional[Decimal] = None  # percent
    reduced_rates: tuple[Decimal, ...] = ()
    registration_threshold: Optional[Decimal] = None
    filing_cadence: FilingCadence = FilingCadence.QUARTERLY
    return_forms: tuple[str, ...] = ()
    currency: str = ""


@dataclass(frozen=True)
class GstRule(JurisdictionRule):
    tax_type: ClassVar[TaxType] = TaxType.GST

    intra_components: tuple[str, ...] = ("CGST", "SGST")
    inter_components: tuple[str, ...] = ("IGST",)
    split_intra: bool = True


@dataclass(frozen=True)
class VatRule(JurisdictionRule):
    tax_type: ClassVar[TaxType] = TaxType.VAT

    component: str = "VAT"


@dataclass(frozen=True)
class SalesTaxRule(JurisdictionRule):
    tax_type: ClassVar[TaxType] = TaxType.SALES_TAX

    component: str = "SALES_TAX"
    nexus: bool = True


@dataclass(frozen=True)
class GenericRule(JurisdictionRule):
    tax_type: ClassVar[TaxType] = TaxType.GENERIC

    components: tuple[TaxComponent, ...] = ()


TaxRule = Union[GstRule, VatRule, SalesTaxRule, GenericRule]

_RULE_CLASSES: dict[str, type] = {
    TaxType.GST.value: GstRule,
    TaxType.VAT.value: VatRule,
    TaxType.SALES_TAX.value: SalesTaxRule,
    TaxType.GENERIC.value: GenericRule,
}


# ---------------------------------------------------------------------------
# Default rule tables
# ---------------------------------------------------------------------------

DEFAULT_VERSION = "2024.1"
DEFAULT_EFFECTIVE_FROM = date(2024, 1, 1)

_DEFAULT_RULES: dict[str, dict] = {
    "IN": {
        "type": "GST",
        "name": "India",
        "standard_rate": 18,
        "reduced_rates": [5, 12],
        "registration_threshold": 4000000,
        "filing_cadence": "MONTHLY",
        "return_forms": ["GSTR-1", "GSTR-3B", "GSTR-9"],
        "currency": "INR",
        "intra_components": ["CGST", "SGST"],
        "inter_components": ["IGST"],
    },
    "AU": {
        "type": "GST",
        "name": "Australia",
        "standard_rate": 10,
        "registration_threshold": 75000,
        "filing_cadence": "QUARTERLY",
        "return_forms": ["BAS"],
        "currency": "AUD",
        "intra_components": ["GST"],
        "inter_components": ["GST"],
        "split_intra": False,
    },
    "GB": {
        "type": "VAT",
        "name": "United Kingdom",
        "standard_rate": 20,
        "reduced_rates": [5],
        "registration_threshold": 85000,
        "filing_cadence": "QUARTERLY",
        "return_forms": ["VAT_RETURN"],
        "currency": "GBP",
    },
    "DE": {
        "type": "VAT",
        "name": "Germany",
        "standard_rate": 19,
        "reduced_rates": [7],
        "registration_threshold": 22000,
        "filing_cadence": "MONTHLY",
        "return_forms": ["UStVA"],
        "currency": "EUR",
        "component": "MWST",
    },
    "US": {
        "type": "SALES_TAX",
        "name": "United States",
        "filing_cadence": "VARIES",
        "return_forms": ["STATE_SPECIFIC"],
        "currency": "USD",
    },
    "CH": {
        "type": "GENERIC",
        "name": "Switzerland",
        "standard_rate": 8.1,
        "reduced_rates": [2.6, 3.8],
        "registration_threshold": 100000,
        "filing_cadence": "QUARTERLY",
        "return_forms": ["MWST_RETURN"],
        "currency": "CHF",
        "components": [
            {"code": "MWST", "name": "Value added tax", "rate": 8.1},
            {"code": "LEVY", "name": "Cantonal levy", "rate": None},
        ],
    },
}


def _dec(value: Any) -> Optional[Decimal]:
    return None if value is None else Decimal(str(value))


def build_rule(code: str, data: Mapping[str, Any]) -> TaxRule:
    """Build a rule variant from a plain mapping (as found in JSON)."""
    type_name = str(data.get("type", "GENERIC")).upper()
    rule_cls = _RULE_CLASSES.get(type_name)
    if rule_cls is None:
        raise ValueError(f"Unknown tax type for {code}: {type_name}")

    common: dict[str, Any] = {
        "code": code.upper(),
        "name": data.get("name", code.upper()),
        "standard_rate": _dec(data.get("standard_rate")),
        "reduced_rates": tuple(Decimal(str(r)) for r in data.get("reduced_rates", [])),
        "registration_threshold": _dec(data.get("registration_threshold")),
        "filing_cadence": FilingCadence(data.get("filing_cadence", "QUARTERLY")),
        "return_forms": tuple(data.get("return_forms", [])),
        "currency": data.get("currency", ""),
    }

    if rule_cls is GstRule:
        extra = {
            "intra_components": tuple(data.get("intra_components", ("CGST", "SGST"))),
            "inter_components": tuple(data.get("inter_components", ("IGST",))),
            "split_intra": bool(data.get("split_intra", True)),
        }
    elif rule_cls is VatRule:
        extra = {"component": data.get("component", "VAT")}
    elif rule_cls is SalesTaxRule:
        extra = {
            "component": data.get("component", "SALES_TAX"),
            "nexus": bool(data.get("nexus", True)),
        }
    else:
        extra = {
            "components": tuple(
                TaxComponent(
                    code=c["code"],
                    name=c.get("name", ""),
                    rate=_dec(c.get("rate")),
                    employer_rate=_dec(c.get("employer_rate")),
                    employee_rate=_dec(c.get("employee_rate")),
                )
                for c in data.get("components", [])
            )
        }
    return rule_cls(**common, **extra)


@dataclass(frozen=True)
class RuleSet:
    """One immutable, versioned table of jurisdiction rules."""

    version: str
    effective_from: date
    rules: Mapping[str, TaxRule] = field(default_factory=dict)

    def get(self, code: str) -> Optional[TaxRule]:
        return self.rules.get(code.upper())

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RuleSet":
        return cls(
            version=str(data.get("version", DEFAULT_VERSION)),
            effective_from=date.fromisoformat(
                data.get("effective_from", DEFAULT_EFFECTIVE_FROM.isoformat())
            ),
            rules={
                code.upper(): build_rule(code, rule)
                for code, rule in data.get("rules", {}).items()
            },
        )


def default_rule_set() -> RuleSet:
    return RuleSet(
        version=DEFAULT_VERSION,
        effective_from=DEFAULT_EFFECTIVE_FROM,
        rules={code: build_rule(code, data) for code, data in _DEFAULT_RULES.items()},
    )


class RuleStore:
    """
    Lookup of jurisdiction rules across rule-set versions.

    The newest rule set whose effective date is on or before the lookup
    date wins; a jurisdiction missing from that set falls back to older
    sets. A date earlier than every set holding the jurisdiction gets the
    oldest of them, so back-dated documents still price.
    """

    def __init__(self, rule_sets: Optional[list[RuleSet]] = None) -> None:
        sets = rule_sets if rule_sets is not None else [default_rule_set()]
        self._sets = sorted(sets, key=lambda s: s.effective_from, reverse=True)

    @classmethod
    def from_json(cls, path: Union[str, Path]) -> "RuleStore":
        """
        Load rule sets from a JSON document.

        The document is either a single rule set object or a list of them:
        {"version": "...", "effective_from": "YYYY-MM-DD", "rules": {...}}
        """
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        if isinstance(raw, dict):
            raw = [raw]
        return cls([RuleSet.from_dict(item) for item in raw])

    @property
    def versions(self) -> list[str]:
        return [s.version for s in self._sets]

    def get(self, code: str, on: Optional[date] = None) -> Optional[TaxRule]:
        """Return the rule for a jurisdiction as of a date, or None if unknown."""
        oldest = None
        for rule_set in self._sets:
            rule = rule_set.get(code)
            if rule is None:
                continue
            if on is None or rule_set.effective_from <= on:
                return rule
            oldest = rule
        return oldest

    def jurisdictions(self) -> list[str]:
        codes: set[str] = set()
        for rule_set in self._sets:
            codes.update(rule_set.rules)
        return sorted(codes)

    def all_rules(self, on: Optional[date] = None) -> list[TaxRule]:
        """Return every jurisdiction's effective rule sorted by code."""
        rules = []
        for code in self.jurisdictions():
            rule = self.get(code, on)
            if rule is not None:
                rules.append(rule)
        return rules
