"""
Monthly aggregation of realized gains into per-asset-class tax details.

For a target month the aggregator:
1. Keeps the realized gains dated in that month
2. Groups them by (asset class, trade type) and sums sales, gains and losses
3. Resolves the swing-trade exemption
4. Applies the loss carryforward ledger to get each taxable base
5. Resolves the tax per trade type and credits the withheld IRRF
"""

import logging
from collections import OrderedDict
from decimal import ROUND_HALF_UP
from typing import Dict, Iterable, List, Tuple

from tax_engine.exceptions import ConfigurationError
from tax_engine.loss_manager import LossCarryforwardManager
from tax_engine.models import (
    AssetType, CENT, Diagnostic, MonthlyTypeDetail, RealizedGain, TradeType, TradeTypeAggregate, ZERO
)
from tax_engine.rate_resolver import RateResolver

# Configure logging
logger = logging.getLogger(__name__)


def month_key(year: int, month: int) -> str:
    return f"{year:04d}-{month:02d}"


class MonthlyAggregator:
    """Turn a month of classified realized gains into MonthlyTypeDetail objects."""

    def __init__(self, resolver: RateResolver, loss_manager: LossCarryforwardManager):
        self.resolver = resolver
        self.loss_manager = loss_manager

    @staticmethod
    def group(realized_gains: Iterable[RealizedGain],
              month: str) -> Dict[AssetType, Dict[TradeType, TradeTypeAggregate]]:
        """
        Sum a month's realized gains by asset class and trade type.

        Args:
            realized_gains: Classified gains (any month)
            month: Month key 'YYYY-MM'

        Returns:
            {asset_type: {trade_type: TradeTypeAggregate}} in asset type declaration order
        """
        groups: Dict[AssetType, Dict[TradeType, TradeTypeAggregate]] = {}
        for realized in realized_gains:
            if realized.month_key != month:
                continue
            if realized.trade_type is None:
                raise ValueError(f"Realized gain {realized.operation_id} has not been classified")

            by_trade = groups.setdefault(realized.asset_type, {
                TradeType.SWING_TRADE: TradeTypeAggregate(TradeType.SWING_TRADE),
                TradeType.DAY_TRADE: TradeTypeAggregate(TradeType.DAY_TRADE),
            })
            by_trade[realized.trade_type].add(realized)

        return OrderedDict((t, groups[t]) for t in AssetType if t in groups)

    def aggregate(self, realized_gains: Iterable[RealizedGain],
                  month: str) -> Tuple[Dict[AssetType, MonthlyTypeDetail], List[Diagnostic]]:
        """
        Compute the tax details of one month.

        The loss carryforward ledger is advanced for every asset class with
        sales in the month, so months must be aggregated in chronological order.

        Args:
            realized_gains: Classified gains
            month: Month key 'YYYY-MM'

        Returns:
            Tuple containing:
            - Dict of MonthlyTypeDetail per asset class
            - List of diagnostics for asset classes that could not be computed
        """
        details: Dict[AssetType, MonthlyTypeDetail] = OrderedDict()
        diagnostics: List[Diagnostic] = []

        for asset_type, by_trade in self.group(realized_gains, month).items():
            try:
                details[asset_type] = self._aggregate_asset_type(asset_type, by_trade, month)
            except ConfigurationError as e:
                logger.warning(f"Skipping {asset_type.value} for {month}: {e}")
                diagnostics.append(Diagnostic.from_exception(e, 'asset_type', asset_type.value, month))

        return details, diagnostics

    def _aggregate_asset_type(self, asset_type: AssetType,
                              by_trade: Dict[TradeType, TradeTypeAggregate],
                              month: str) -> MonthlyTypeDetail:
        rule = self.resolver.rule_for(asset_type)
        swing = by_trade[TradeType.SWING_TRADE]
        day = by_trade[TradeType.DAY_TRADE]
        total_sales = swing.sales + day.sales

        swing.exempt = self.resolver.is_exempt(asset_type, TradeType.SWING_TRADE,
                                               swing.sales, total_sales)
        day.exempt = False

        offset = self.loss_manager.apply_month(
            asset_type, month,
            nets={TradeType.SWING_TRADE: swing.net, TradeType.DAY_TRADE: day.net},
            exempt={TradeType.SWING_TRADE: swing.exempt},
        )

        irrf_expected = ZERO
        for aggregate in (swing, day):
            trade_type = aggregate.trade_type
            aggregate.taxable_base = offset.taxable_base.get(trade_type, ZERO)
            aggregate.loss_used = offset.loss_used.get(trade_type, ZERO)
            aggregate.tax_rate = rule.rate_for(trade_type)
            # Tax amounts are kept in cents
            aggregate.tax = self.resolver.calculate_tax(
                asset_type, trade_type, aggregate.taxable_base, aggregate.exempt
            ).quantize(CENT, rounding=ROUND_HALF_UP)
            if aggregate.count:
                irrf_expected += self.resolver.cross_check_irrf(asset_type, trade_type,
                                                                aggregate.sales, aggregate.irrf, month)

        irrf = swing.irrf + day.irrf
        tax_due = max(ZERO, swing.tax + day.tax - irrf).quantize(CENT, rounding=ROUND_HALF_UP)

        detail = MonthlyTypeDetail(
            asset_type=asset_type,
            swing_trade=swing,
            day_trade=day,
            accumulated_loss_used=offset.total_used,
            accumulated_loss_remaining=offset.closing_balance,
            irrf=irrf,
            irrf_expected=irrf_expected,
            tax_due=tax_due,
            darf_code=rule.darf_code,
            label=rule.label,
        )

        logger.info(f"{month} {asset_type.value}: swing sales R$ {swing.sales:,.2f} "
                    f"net R$ {swing.net:,.2f}{' (exempt)' if swing.exempt else ''}, "
                    f"day sales R$ {day.sales:,.2f} net R$ {day.net:,.2f}, "
                    f"tax due R$ {tax_due:,.2f}")
        return detail
