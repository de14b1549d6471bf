"""
Position ledger and capital-gains tax engine for b3_tax_ledger.

This package replays buy/sell/deposit/withdraw/dividend operations into
weighted-average positions and builds monthly tax reports that separate
day trades from swing trades, apply exemption thresholds and carry losses
forward across months.
"""

from tax_engine.exceptions import (
    ConfigurationError, InsufficientQuantityError, TaxEngineError, ValidationError
)
from tax_engine.models import AssetType, Operation, OperationKind, TradeType
from tax_engine.report_builder import TaxCalculationResult
from tax_engine.tax_engine import TaxEngine, parse_month
from tax_engine.tax_rules import TaxRule, TaxRuleTable

__version__ = "1.0.0"
__author__ = "b3_tax_ledger team"

__all__ = [
    "AssetType",
    "ConfigurationError",
    "InsufficientQuantityError",
    "Operation",
    "OperationKind",
    "TaxCalculationResult",
    "TaxEngine",
    "TaxEngineError",
    "TaxRule",
    "TaxRuleTable",
    "TradeType",
    "ValidationError",
    "parse_month",
]
