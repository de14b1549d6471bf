"""
Day trade / swing trade classification.

Brazilian Day Trade Classification Rules (simplified):
1. Dates are compared on the market's local calendar (America/Sao_Paulo)
2. Day Trade (DT): the asset was also acquired on the sale's calendar date
3. Swing: anything that is not DT
4. The whole sale takes one classification; it is not split between
   same-day and carried-over lots
"""

import dataclasses
import logging
from collections import defaultdict
from datetime import date, datetime
from typing import Dict, Iterable, List, Set

import pytz

from tax_engine.models import Operation, RealizedGain, TradeType

# Configure logging
logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = 'America/Sao_Paulo'


class TradeClassifier:
    """Tag realized gains as day trades or swing trades."""

    def __init__(self, timezone: str = DEFAULT_TIMEZONE):
        """
        Args:
            timezone: Market timezone that defines the canonical calendar
        """
        self.timezone = pytz.timezone(timezone)

    def localize(self, moment: datetime) -> datetime:
        """
        Express a datetime in the market timezone.

        Naive datetimes are taken as already being market local time.
        """
        if moment.tzinfo is None:
            return self.timezone.localize(moment)
        return moment.astimezone(self.timezone)

    def calendar_date(self, moment: datetime) -> date:
        """Market-local calendar date of a datetime."""
        return self.localize(moment).date()

    def acquisition_dates(self, operations: Iterable[Operation]) -> Dict[str, Set[date]]:
        """
        Build {asset_id: {calendar dates with a buy or deposit}}.
        """
        dates: Dict[str, Set[date]] = defaultdict(set)
        for op in operations:
            if op.kind.is_acquisition:
                dates[op.asset_id].add(self.calendar_date(op.date))
        return dates

    def classify(self, realized: RealizedGain, acquisition_dates: Set[date]) -> RealizedGain:
        """
        Return a copy of the realized gain tagged with its trade type.

        Args:
            realized: Realized gain to classify
            acquisition_dates: Calendar dates on which the same asset was acquired
        """
        sale_day = self.calendar_date(realized.date)
        trade_type = TradeType.DAY_TRADE if sale_day in acquisition_dates else TradeType.SWING_TRADE
        return dataclasses.replace(realized, trade_type=trade_type)

    def classify_all(self, realized_gains: Iterable[RealizedGain],
                     operations: Iterable[Operation]) -> List[RealizedGain]:
        """
        Classify every realized gain against the full operation history.

        Args:
            realized_gains: Gains emitted by the position ledgers
            operations: Operations of the same assets (buys on the sale date make a day trade)

        Returns:
            List of classified gains in the input order
        """
        dates = self.acquisition_dates(operations)
        classified = [self.classify(r, dates.get(r.asset_id, set())) for r in realized_gains]

        day_trades = sum(1 for r in classified if r.trade_type is TradeType.DAY_TRADE)
        logger.debug(f"Classified {len(classified)} sales: {day_trades} day trades, "
                     f"{len(classified) - day_trades} swing trades")
        return classified
