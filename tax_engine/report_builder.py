"""
Monthly tax report assembly.

Collects the per-asset-class details, the month's operation detail, the
loss balance snapshot after the month and the grand totals into a single
TaxCalculationResult, serializable to the JSON shape served to the
presentation layer.
"""

import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional

import pandas as pd

from tax_engine.models import (
    AssetType, Diagnostic, MonthlyTypeDetail, RealizedGain, Summary, ZERO, money
)

# Configure logging
logger = logging.getLogger(__name__)


@dataclass
class TaxCalculationResult:
    """Tax report for one month."""
    month: str
    by_type: Dict[AssetType, MonthlyTypeDetail]
    operations: List[RealizedGain]
    accumulated_losses: Dict[AssetType, Decimal]
    summary: Summary
    dividends: Dict[AssetType, Decimal] = field(default_factory=dict)
    diagnostics: List[Diagnostic] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return bool(self.diagnostics)

    def to_dict(self) -> Dict:
        """Convert to the JSON report structure."""
        return {
            'month': self.month,
            'summary': self.summary.to_dict(),
            'byType': {t.value: d.to_dict() for t, d in self.by_type.items()},
            'operations': [op.to_dict() for op in self.operations],
            'accumulatedLosses': {t.value: money(b) for t, b in self.accumulated_losses.items()},
            'dividends': {t.value: money(a) for t, a in self.dividends.items()},
            'diagnostics': [d.to_dict() for d in self.diagnostics],
        }

    def to_json(self, indent: Optional[int] = 2) -> str:
        """Deterministic JSON rendering (sorted keys)."""
        return json.dumps(self.to_dict(), indent=indent, sort_keys=True, ensure_ascii=False)

    def operations_frame(self) -> pd.DataFrame:
        """Operation detail as a DataFrame (one row per sale)."""
        columns = ['operationId', 'assetId', 'assetName', 'ticker', 'assetType', 'tradeType',
                   'date', 'quantity', 'sellPrice', 'avgPrice', 'saleTotal', 'gain', 'fees',
                   'sourceWithheld']
        return pd.DataFrame([op.to_dict() for op in self.operations], columns=columns)


class ReportBuilder:
    """Assemble a TaxCalculationResult from the aggregator's output."""

    def build(self, month: str,
              by_type: Mapping[AssetType, MonthlyTypeDetail],
              realized_gains: Iterable[RealizedGain],
              accumulated_losses: Mapping[AssetType, Decimal],
              dividends: Optional[Mapping[AssetType, Decimal]] = None,
              diagnostics: Optional[Iterable[Diagnostic]] = None) -> TaxCalculationResult:
        """
        Build the report for one month.

        Args:
            month: Month key 'YYYY-MM'
            by_type: Details of every asset class computed for the month
            realized_gains: Classified gains (only the month's gains of computed asset classes are kept)
            accumulated_losses: Loss balances after the month
            dividends: Dividend income of the month per asset class
            diagnostics: Failures recorded while computing

        Returns:
            TaxCalculationResult
        """
        operations = sorted((r for r in realized_gains
                             if r.month_key == month and r.asset_type in by_type),
                            key=lambda r: (r.date, r.operation_id))

        summary = Summary()
        darf_codes = set()
        for detail in by_type.values():
            summary.total_sales += detail.sales
            summary.total_gains += detail.swing_trade.gains + detail.day_trade.gains
            summary.total_losses += detail.swing_trade.losses + detail.day_trade.losses
            summary.net_result += detail.net
            summary.gross_tax += detail.gross_tax
            summary.irrf += detail.irrf
            summary.tax_payable += detail.tax_due
            if detail.tax_due > 0 and detail.darf_code:
                darf_codes.add(detail.darf_code)
        summary.darf_codes = sorted(darf_codes)

        result = TaxCalculationResult(
            month=month,
            by_type=dict(by_type),
            operations=operations,
            accumulated_losses=dict(accumulated_losses),
            summary=summary,
            dividends={t: a for t, a in (dividends or {}).items() if a != ZERO},
            diagnostics=list(diagnostics or []),
        )

        logger.info(f"Tax report {month}: sales R$ {summary.total_sales:,.2f}, "
                    f"net R$ {summary.net_result:,.2f}, payable R$ {summary.tax_payable:,.2f}"
                    + (f", DARF {', '.join(summary.darf_codes)}" if summary.darf_codes else "")
                    + (f", {len(result.diagnostics)} diagnostics" if result.diagnostics else ""))
        return result
