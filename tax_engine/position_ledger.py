"""
Position ledger with weighted-average cost basis.

One ledger tracks one asset. Its state is fully determined by replaying the
asset's operations in chronological order (ties kept in insertion order):
- Buys raise the average cost by quantity x price; fees are tracked apart
- Sells realize qty x (price - average cost) and reduce the cost basis
  proportionally, leaving the average cost of the remaining lot unchanged
- Deposits and withdrawals are quantity-1 buys and sells at the operation amount
- Dividends are recorded as income and leave the position untouched
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple

from tax_engine.exceptions import InsufficientQuantityError
from tax_engine.models import (
    AssetType, Operation, OperationKind, Position, RealizedGain, ZERO, to_decimal
)

# Configure logging
logger = logging.getLogger(__name__)

ONE = Decimal("1")


def chronological(operations: Iterable[Operation]) -> List[Operation]:
    """Sort operations by date, keeping insertion order for same-date ties."""
    indexed = list(enumerate(operations))
    indexed.sort(key=lambda pair: (pair[1].date, pair[0]))
    return [op for _, op in indexed]


class PositionLedger:
    """
    Weighted-average cost tracker for a single asset.

    The position is owned by the ledger; other components only read it and
    the realized gains it emits.
    """

    def __init__(self, asset_id: str, asset_type: AssetType,
                 asset_name: str = "", ticker: Optional[str] = None):
        self.asset_id = asset_id
        self.asset_type = AssetType.validate(asset_type)
        self.asset_name = asset_name
        self.ticker = ticker
        self.position = Position(asset_id=asset_id, asset_type=self.asset_type)
        self.realized_gains: List[RealizedGain] = []
        self.dividend_history: List[Tuple[datetime, Decimal]] = []

    @classmethod
    def replay(cls, operations: Iterable[Operation]) -> "PositionLedger":
        """
        Rebuild a ledger from an asset's full operation history.

        Args:
            operations: Operations of a single asset, in any order

        Returns:
            PositionLedger: Ledger after applying every operation chronologically

        Raises:
            ValueError: If operations is empty or mixes assets
            InsufficientQuantityError: If a sale exceeds the position at that point
        """
        ordered = chronological(operations)
        if not ordered:
            raise ValueError("Cannot replay an empty operation history")

        first = ordered[0]
        ledger = cls(first.asset_id, first.asset_type, first.asset_name, first.ticker)
        for operation in ordered:
            ledger.apply(operation)

        logger.debug(f"Replayed {len(ordered)} operations for {ledger.asset_id}: "
                     f"qty {ledger.position.quantity}, avg R$ {ledger.position.average_cost:,.2f}, "
                     f"{len(ledger.realized_gains)} sales")
        return ledger

    def apply(self, operation: Operation) -> Optional[RealizedGain]:
        """
        Apply one operation to the position.

        Returns:
            RealizedGain for sells and withdrawals, None otherwise
        """
        if operation.asset_id != self.asset_id:
            raise ValueError(f"Operation {operation.id} belongs to {operation.asset_id}, "
                             f"not {self.asset_id}")

        kind = operation.kind
        if kind is OperationKind.BUY:
            self.record_buy(operation.quantity, operation.unit_price, operation.fees, operation.date)
            return None
        if kind is OperationKind.DEPOSIT:
            self.record_deposit(operation.amount, operation.fees, operation.date)
            return None
        if kind is OperationKind.SELL:
            return self.record_sell(operation.quantity, operation.unit_price, operation.fees,
                                    operation.date, operation=operation)
        if kind is OperationKind.WITHDRAW:
            return self.record_withdraw(operation.amount, operation.fees, operation.date,
                                        operation=operation)
        if kind is OperationKind.DIVIDEND:
            self.record_dividend(operation.amount, operation.date)
            return None
        raise ValueError(f"Unsupported operation kind: {kind}")

    def record_buy(self, quantity, price, fees=ZERO, trade_date: Optional[datetime] = None) -> None:
        """Add units at a price; fees are kept out of the cost basis."""
        quantity = to_decimal(quantity, "quantity")
        price = to_decimal(price, "price")
        fees = to_decimal(fees, "fees", ZERO)
        if quantity <= 0:
            raise ValueError("Buy quantity must be positive")

        pos = self.position
        pos.quantity += quantity
        pos.total_cost += quantity * price
        pos.total_fees += fees
        pos.last_update = trade_date

        logger.debug(f"Buy {quantity} {self.asset_id} @ R$ {price:,.2f} -> "
                     f"qty {pos.quantity}, avg R$ {pos.average_cost:,.4f}")

    def record_sell(self, quantity, price, fees=ZERO, trade_date: Optional[datetime] = None,
                    operation: Optional[Operation] = None) -> RealizedGain:
        """
        Remove units at a price and realize the gain against the average cost.

        Raises:
            InsufficientQuantityError: If quantity exceeds the position (state left unchanged)
        """
        quantity = to_decimal(quantity, "quantity")
        price = to_decimal(price, "price")
        fees = to_decimal(fees, "fees", ZERO)
        if quantity <= 0:
            raise ValueError("Sell quantity must be positive")

        pos = self.position
        operation_id = operation.id if operation is not None else None
        if quantity > pos.quantity:
            raise InsufficientQuantityError(self.asset_id, quantity, pos.quantity, operation_id)

        average_cost = pos.average_cost
        sale_value = quantity * price
        gain = sale_value - average_cost * quantity

        pos.quantity -= quantity
        pos.total_cost -= average_cost * quantity
        pos.total_fees += fees
        pos.last_update = trade_date
        if pos.quantity == 0:
            pos.total_cost = ZERO

        realized = RealizedGain(
            operation_id=operation_id or f"{self.asset_id}_SELL_{len(self.realized_gains) + 1}",
            asset_id=self.asset_id,
            asset_type=self.asset_type,
            date=trade_date if trade_date is not None else datetime.min,
            quantity_sold=quantity,
            average_cost_at_sale=average_cost,
            sale_value=sale_value,
            gain=gain,
            unit_price=price,
            fees=fees,
            source_withheld=operation.source_withheld if operation is not None else ZERO,
            asset_name=self.asset_name,
            ticker=self.ticker,
        )
        self.realized_gains.append(realized)

        logger.debug(f"Sell {quantity} {self.asset_id} @ R$ {price:,.2f} "
                     f"(avg R$ {average_cost:,.4f}): gain R$ {gain:,.2f}")
        return realized

    def record_deposit(self, amount, fees=ZERO, trade_date: Optional[datetime] = None) -> None:
        """Deposit into a non-unitized position as a quantity-1 buy."""
        self.record_buy(ONE, amount, fees, trade_date)

    def record_withdraw(self, amount, fees=ZERO, trade_date: Optional[datetime] = None,
                        operation: Optional[Operation] = None) -> RealizedGain:
        """Withdraw from a non-unitized position as a quantity-1 sell."""
        return self.record_sell(ONE, amount, fees, trade_date, operation=operation)

    def record_dividend(self, amount, trade_date: Optional[datetime] = None) -> None:
        """Record dividend income; the position is not altered."""
        amount = to_decimal(amount, "amount")
        self.position.dividends += amount
        self.dividend_history.append((trade_date, amount))
        logger.debug(f"Dividend for {self.asset_id}: R$ {amount:,.2f}")
