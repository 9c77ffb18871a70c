"""Tests for the PostingEngine facade and EngineConfig."""

import json
from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest

from posting_engine.config import EngineConfig
from posting_engine.engine import PostingEngine
from posting_engine.errors import ValidationError
from posting_engine.invoicing import InvoiceRequest, LineInput
from posting_engine.models import Business, InventoryItem, InvoiceStatus
from posting_engine.store import SQLiteStore

DATA_DIR = Path(__file__).parent.parent / "data"


# ── Configuration ────────────────────────────────────────────────────


def test_config_defaults():
    config = EngineConfig.from_env({})
    assert config.default_payment_terms_days == 30
    assert config.orchestration_timeout is None
    assert config.low_stock_alerts
    assert config.recovery_grace == 300.0


def test_config_from_env():
    config = EngineConfig.from_env(
        {
            "POSTING_ENGINE_PAYMENT_TERMS_DAYS": "45",
            "POSTING_ENGINE_CURRENCY": "gbp",
            "POSTING_ENGINE_TIMEOUT": "2.5",
            "POSTING_ENGINE_LOW_STOCK_ALERTS": "off",
            "POSTING_ENGINE_LOG_LEVEL": "debug",
            "POSTING_ENGINE_RECOVERY_GRACE": "60",
            "UNRELATED": "x",
        }
    )
    assert config.default_payment_terms_days == 45
    assert config.default_currency == "GBP"
    assert config.orchestration_timeout == 2.5
    assert not config.low_stock_alerts
    assert config.log_level == "DEBUG"
    assert config.recovery_grace == 60.0


def test_config_rules_path(tmp_path):
    path = tmp_path / "rules.json"
    path.write_text(
        json.dumps(
            {
                "version": "custom",
                "effective_from": "2020-01-01",
                "rules": {"IN": {"type": "GST", "standard_rate": 5}},
            }
        )
    )
    engine = PostingEngine(config=EngineConfig(rules_path=str(path)))
    assert engine.rules.versions == ["custom"]
    assert engine.calculator.rules.get("IN").standard_rate == Decimal("5")


# ── Master data ──────────────────────────────────────────────────────


def test_load_master_file(memory_store):
    engine = PostingEngine(memory_store)
    counts = engine.load_master_file(DATA_DIR / "master.json")
    assert counts == {"businesses": 1, "customers": 2, "vendors": 2, "products": 2}
    assert memory_store.load(Business, "B1").annual_turnover == Decimal("2500000")
    assert memory_store.load(InventoryItem, "P2").category == "books"


@pytest.mark.parametrize(
    "data",
    [
        {"businesses": [{"id": "B9"}]},
        {"businesses": [{"id": "B9", "name": "X", "jurisdiction": "IN", "annual_turnover": "lots"}]},
    ],
)
def test_load_rejects_bad_rows(memory_store, data):
    with pytest.raises(ValidationError):
        PostingEngine(memory_store).load_master_data(data)


# ── Engine lifecycle ─────────────────────────────────────────────────


def test_open_persists_to_sqlite_file(tmp_path):
    db = tmp_path / "books.db"
    engine = PostingEngine.open(db)
    assert isinstance(engine.store, SQLiteStore)
    engine.load_master_file(DATA_DIR / "master.json")
    invoice = engine.create_invoice(
        InvoiceRequest(
            business_id="B1",
            customer_id="C2",
            items=[LineInput(quantity=Decimal("1"), rate=Decimal("100"), product_id="P1")],
        )
    )
    engine.close()

    reopened = PostingEngine.open(config=EngineConfig(database_path=str(db)))
    try:
        stored = reopened.invoices.get_invoice(invoice.id)
        assert stored.tax_components == {"IGST": Decimal("18.00")}
        assert reopened.inventory.get_stock("P1") == Decimal("49")
    finally:
        reopened.close()


def test_sweep_flags_overdue(engine):
    invoice = engine.create_invoice(
        InvoiceRequest(
            business_id="B1",
            customer_id="C1",
            items=[LineInput(quantity=Decimal("1"), rate=Decimal("100"), product_id="P1")],
            issue_date=date(2024, 4, 1),
        )
    )
    overdue, recovery = engine.sweep(as_of=date(2024, 6, 15))
    assert [i.id for i in overdue] == [invoice.id]
    assert overdue[0].status is InvoiceStatus.OVERDUE
    assert not recovery.repaired

    again, _ = engine.sweep(as_of=date(2024, 6, 15))
    assert again == []
