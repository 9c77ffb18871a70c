"""Tests for the jurisdiction RuleStore."""

import json
from datetime import date
from decimal import Decimal

import pytest

from posting_engine.rates import (
    FilingCadence,
    GenericRule,
    GstRule,
    RuleSet,
    RuleStore,
    SalesTaxRule,
    TaxComponent,
    TaxType,
    VatRule,
    build_rule,
)


@pytest.fixture
def rules() -> RuleStore:
    return RuleStore()


# ── Bundled tables ───────────────────────────────────────────────────


def test_india_is_gst_with_split(rules: RuleStore):
    rule = rules.get("IN")
    assert isinstance(rule, GstRule)
    assert rule.standard_rate == Decimal("18")
    assert rule.intra_components == ("CGST", "SGST")
    assert rule.inter_components == ("IGST",)
    assert rule.registration_threshold == Decimal("4000000")
    assert rule.filing_cadence is FilingCadence.MONTHLY


def test_uk_is_flat_vat(rules: RuleStore):
    rule = rules.get("GB")
    assert isinstance(rule, VatRule)
    assert rule.tax_type is TaxType.VAT
    assert rule.standard_rate == Decimal("20")
    assert rule.component == "VAT"


def test_us_sales_tax_has_no_standard_rate(rules: RuleStore):
    rule = rules.get("US")
    assert isinstance(rule, SalesTaxRule)
    assert rule.standard_rate is None
    assert rule.filing_cadence is FilingCadence.VARIES


def test_generic_rule_has_variable_component(rules: RuleStore):
    rule = rules.get("CH")
    assert isinstance(rule, GenericRule)
    levy = [c for c in rule.components if c.code == "LEVY"][0]
    assert levy.is_variable


def test_lookup_is_case_insensitive(rules: RuleStore):
    assert rules.get("in") is rules.get("IN")


def test_unknown_jurisdiction_returns_none(rules: RuleStore):
    assert rules.get("ZZ") is None


def test_all_rules_sorted_by_code(rules: RuleStore):
    codes = [r.code for r in rules.all_rules()]
    assert codes == sorted(codes)
    assert {"IN", "AU", "GB", "DE", "US", "CH"} <= set(codes)


# ── Components ───────────────────────────────────────────────────────


def test_component_sums_employer_and_employee_rates():
    component = TaxComponent(
        code="SOC", employer_rate=Decimal("5"), employee_rate=Decimal("3.5")
    )
    assert component.effective_rate == Decimal("8.5")
    assert not component.is_variable


def test_component_without_rates_is_variable():
    assert TaxComponent(code="LEVY").is_variable


def test_build_rule_rejects_unknown_type():
    with pytest.raises(ValueError):
        build_rule("XX", {"type": "POLL_TAX"})


# ── Versioning ───────────────────────────────────────────────────────


def _rule_set(version: str, effective: date, rate: int) -> RuleSet:
    return RuleSet.from_dict(
        {
            "version": version,
            "effective_from": effective.isoformat(),
            "rules": {"GB": {"type": "VAT", "name": "United Kingdom", "standard_rate": rate}},
        }
    )


def test_newest_effective_version_wins():
    store = RuleStore(
        [_rule_set("old", date(2020, 1, 1), 17), _rule_set("new", date(2024, 1, 1), 20)]
    )
    assert store.get("GB", date(2023, 6, 1)).standard_rate == Decimal("17")
    assert store.get("GB", date(2024, 6, 1)).standard_rate == Decimal("20")
    assert store.get("GB").standard_rate == Decimal("20")
    assert store.versions == ["new", "old"]


def test_lookup_before_first_version_uses_oldest():
    store = RuleStore(
        [_rule_set("old", date(2020, 1, 1), 17), _rule_set("new", date(2024, 1, 1), 20)]
    )
    assert store.get("GB", date(2019, 1, 1)).standard_rate == Decimal("17")
    assert store.get("FR", date(2019, 1, 1)) is None


def test_missing_code_falls_back_to_older_set():
    older = RuleSet.from_dict(
        {
            "version": "v1",
            "effective_from": "2020-01-01",
            "rules": {"DE": {"type": "VAT", "standard_rate": 19}},
        }
    )
    newer = _rule_set("v2", date(2024, 1, 1), 20)
    store = RuleStore([older, newer])
    assert store.get("DE", date(2024, 6, 1)).standard_rate == Decimal("19")


def test_rules_load_from_json(tmp_path):
    path = tmp_path / "rules.json"
    path.write_text(
        json.dumps(
            {
                "version": "2025.1",
                "effective_from": "2025-01-01",
                "rules": {
                    "IN": {"type": "GST", "standard_rate": 12},
                    "NZ": {"type": "GST", "standard_rate": 15, "split_intra": False,
                           "intra_components": ["GST"], "inter_components": ["GST"]},
                },
            }
        )
    )
    store = RuleStore.from_json(path)
    assert store.versions == ["2025.1"]
    assert store.get("IN").standard_rate == Decimal("12")
    assert store.get("NZ").split_intra is False
