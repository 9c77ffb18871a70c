"""
Engine configuration and logging setup.

EngineConfig holds the tunables the orchestrators read (payment terms,
numbering, retries, timeouts). ``from_env`` builds one from
POSTING_ENGINE_* environment variables so the CLI and embedding
applications share a single source of settings.
"""

from __future__ import annotations

import logging.config
import os
from dataclasses import dataclass
from decimal import Decimal
from typing import Mapping, Optional

from posting_engine.rates import RuleStore

ENV_PREFIX = "POSTING_ENGINE_"


def _flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class EngineConfig:
    """Settings shared by the orchestrators and the CLI."""

    default_payment_terms_days: int = 30
    default_currency: str = "INR"
    invoice_prefix: str = "INV"
    invoice_sequence_width: int = 4
    read_retries: int = 3
    orchestration_timeout: Optional[float] = None  # seconds
    recovery_grace: float = 300.0  # seconds a PENDING invoice is left alone by recovery
    low_stock_alerts: bool = True
    tolerance: Decimal = Decimal("0.01")
    database_path: str = "posting_engine.db"
    log_level: str = "INFO"
    rules_path: Optional[str] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EngineConfig":
        env = os.environ if environ is None else environ
        config = cls()
        for suffix, (attr, convert) in _ENV_FIELDS.items():
            value = env.get(ENV_PREFIX + suffix)
            if value:
                setattr(config, attr, convert(value))
        return config

    def load_rules(self) -> RuleStore:
        """Rule store from ``rules_path`` if set, else the bundled tables."""
        if self.rules_path:
            return RuleStore.from_json(self.rules_path)
        return RuleStore()


# Environment variable suffix -> (attribute, converter)
_ENV_FIELDS = {
    "PAYMENT_TERMS_DAYS": ("default_payment_terms_days", int),
    "CURRENCY": ("default_currency", str.upper),
    "INVOICE_PREFIX": ("invoice_prefix", str),
    "INVOICE_SEQUENCE_WIDTH": ("invoice_sequence_width", int),
    "READ_RETRIES": ("read_retries", int),
    "TIMEOUT": ("orchestration_timeout", float),
    "RECOVERY_GRACE": ("recovery_grace", float),
    "LOW_STOCK_ALERTS": ("low_stock_alerts", _flag),
    "DATABASE": ("database_path", str),
    "LOG_LEVEL": ("log_level", str.upper),
    "RULES": ("rules_path", str),
}


def configure_logging(level: str = "INFO", rich_tracebacks: bool = False) -> None:
    """Route engine logs through a rich console handler."""
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "console": {"format": "%(name)s: %(message)s", "datefmt": "[%X]"},
            },
            "handlers": {
                "console": {
                    "class": "rich.logging.RichHandler",
                    "formatter": "console",
                    "rich_tracebacks": rich_tracebacks,
                    "show_path": False,
                },
            },
            "loggers": {
                "posting_engine": {
                    "handlers": ["console"],
                    "level": level.upper(),
                    "propagate": False,
                },
            },
        }
    )
