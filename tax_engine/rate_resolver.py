"""
Rate & exemption resolver.

Turns a month's sales volume and taxable base into an exemption decision and
a tax amount, using the injected rule table:
- Day trades are never exempt
- Swing trades are exempt when the asset class defines a positive monthly
  threshold and the month's sales do not exceed it
- Withholding (IRRF) expected from the rate table is only a cross-check;
  the amount credited always comes from the operation records
"""

import logging
from decimal import Decimal
from typing import Optional

from tax_engine.models import AssetType, TradeType, ZERO
from tax_engine.tax_rules import TaxRule, TaxRuleTable

# Configure logging
logger = logging.getLogger(__name__)


class RateResolver:
    """Resolve exemptions, tax amounts and expected withholding per asset class."""

    def __init__(self, tax_rules: TaxRuleTable, irrf_tolerance: Decimal = Decimal("0.01")):
        """
        Args:
            tax_rules: Injected rule table
            irrf_tolerance: Largest difference between withheld and expected IRRF tolerated silently
        """
        self.tax_rules = tax_rules
        self.irrf_tolerance = irrf_tolerance

    def rule_for(self, asset_type: AssetType) -> TaxRule:
        """Return the rule for an asset class (raises ConfigurationError when missing)."""
        return self.tax_rules.get(asset_type)

    def is_exempt(self, asset_type: AssetType, trade_type: TradeType,
                  swing_sales: Decimal, total_sales: Optional[Decimal] = None) -> bool:
        """
        Check whether a month's result for a trade type is exempt.

        Args:
            asset_type: Asset class
            trade_type: Trade modality
            swing_sales: Month's swing-trade sales for the asset class
            total_sales: Month's swing + day sales (used by 'total_sales' exemption basis)

        Returns:
            bool: True if exempt
        """
        if trade_type is TradeType.DAY_TRADE:
            return False

        rule = self.rule_for(asset_type)
        if not rule.has_exemption:
            return False

        basis = swing_sales
        if rule.exemption_basis == "total_sales" and total_sales is not None:
            basis = total_sales

        exempt = basis <= rule.exemption_threshold_monthly
        if exempt:
            logger.debug(f"Swing trade exemption applied for {asset_type.value}: "
                         f"sales R$ {basis:,.2f} <= R$ {rule.exemption_threshold_monthly:,.2f}")
        return exempt

    def calculate_tax(self, asset_type: AssetType, trade_type: TradeType,
                      taxable_base: Decimal, exempt: bool = False) -> Decimal:
        """
        Tax owed on a taxable base.

        Returns 0 for exempt swing trades and for non-positive bases.
        """
        if exempt and trade_type is TradeType.SWING_TRADE:
            return ZERO
        if taxable_base <= 0:
            return ZERO
        return taxable_base * self.rule_for(asset_type).rate_for(trade_type)

    def expected_irrf(self, asset_type: AssetType, trade_type: TradeType, sales: Decimal) -> Decimal:
        """Withholding the rate table predicts for a month's sales."""
        if sales <= 0:
            return ZERO
        return sales * self.rule_for(asset_type).irrf_rate_for(trade_type)

    def cross_check_irrf(self, asset_type: AssetType, trade_type: TradeType,
                         sales: Decimal, withheld: Decimal, month_key: str = "") -> Decimal:
        """
        Compare withheld IRRF against the rate table and log discrepancies.

        Returns:
            Decimal: Expected withholding
        """
        expected = self.expected_irrf(asset_type, trade_type, sales)
        if abs(expected - withheld) > self.irrf_tolerance:
            logger.info(f"IRRF mismatch for {asset_type.value} {trade_type.value} {month_key}: "
                        f"withheld R$ {withheld:,.2f}, rate table expects R$ {expected:,.2f}")
        return expected
