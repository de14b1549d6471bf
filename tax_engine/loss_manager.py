"""
Loss Carryforward Manager for Brazilian capital-gains taxation

Per-asset-class tracking of unconsumed historical losses:
- One signed balance per asset class (never positive)
- Months applied in strictly increasing order per asset class
- Gains offset against the opening balance, swing trades first by default
- Exempt swing-trade results neither consume nor grow the balance
- Perpetual carryforward with an audit trail of every change
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

import yaml

from tax_engine.models import AssetType, TradeType, ZERO, money, to_decimal

# Configure logging
logger = logging.getLogger(__name__)

DEFAULT_OFFSET_ORDER = (TradeType.SWING_TRADE, TradeType.DAY_TRADE)


@dataclass
class LossRecord:
    """A month's net loss added to the carryforward balance."""
    month: str
    amount: Decimal
    asset_type: AssetType
    trade_type: TradeType
    balance_after: Decimal

    def to_dict(self) -> Dict:
        """Convert to dictionary for serialization."""
        return {
            'month': self.month,
            'amount': str(self.amount),
            'asset_type': self.asset_type.value,
            'trade_type': self.trade_type.value,
            'balance_after': str(self.balance_after),
        }


@dataclass
class LossApplication:
    """Record of loss application for audit trail."""
    month: str
    applied_amount: Decimal
    asset_type: AssetType
    trade_type: Optional[TradeType]
    remaining_loss: Decimal
    application_reason: str = ""

    def to_dict(self) -> Dict:
        """Convert to dictionary for serialization."""
        return {
            'month': self.month,
            'applied_amount': str(self.applied_amount),
            'asset_type': self.asset_type.value,
            'trade_type': self.trade_type.value if self.trade_type else None,
            'remaining_loss': str(self.remaining_loss),
            'application_reason': self.application_reason,
        }


@dataclass
class MonthOffset:
    """Outcome of applying one month of one asset class to the balance."""
    asset_type: AssetType
    month: str
    opening_balance: Decimal
    closing_balance: Decimal
    taxable_base: Dict[TradeType, Decimal] = field(default_factory=dict)
    loss_used: Dict[TradeType, Decimal] = field(default_factory=dict)
    loss_added: Decimal = ZERO

    @property
    def total_used(self) -> Decimal:
        return sum(self.loss_used.values(), ZERO)


class LossCarryforwardManager:
    """
    Per-asset-class loss carryforward ledger.

    Balances are stored as signed amounts: a balance of -1000 means R$ 1,000
    of losses available to offset future taxable gains.
    """

    def __init__(self, offset_order: Sequence[TradeType] = DEFAULT_OFFSET_ORDER,
                 opening_balances: Optional[Mapping[AssetType, Decimal]] = None):
        """
        Args:
            offset_order: Trade types in the order they consume the opening balance
            opening_balances: Balances carried in from a previous computation
        """
        order = tuple(TradeType.validate(t) for t in offset_order)
        if sorted(t.value for t in order) != sorted(t.value for t in TradeType):
            raise ValueError(f"Offset order must list each trade type once, got {[t.value for t in order]}")
        self.offset_order = order

        self.balances: Dict[AssetType, Decimal] = defaultdict(lambda: ZERO)
        self.last_applied_month: Dict[AssetType, str] = {}

        # Audit trail
        self.loss_history: List[LossRecord] = []
        self.application_history: List[LossApplication] = []

        for asset_type, amount in (opening_balances or {}).items():
            self.set_balance(asset_type, amount, reason="opening balance")

        logger.info(f"Loss Carryforward Manager initialized "
                    f"(offset order: {' > '.join(t.value for t in self.offset_order)})")

    def get_balance(self, asset_type: AssetType) -> Decimal:
        """Current signed balance for an asset class (zero when never touched)."""
        return self.balances.get(asset_type, ZERO)

    def snapshot(self, asset_types: Optional[Iterable[AssetType]] = None) -> Dict[AssetType, Decimal]:
        """
        Copy of the balances, optionally restricted to (and filled for) given asset classes.
        """
        if asset_types is None:
            return {t: b for t, b in self.balances.items()}
        return {t: self.get_balance(t) for t in asset_types}

    def set_balance(self, asset_type: AssetType, amount, reason: str = "manual correction") -> None:
        """
        Explicitly correct the balance of an asset class.

        Raises:
            ValueError: If the amount is positive
        """
        asset_type = AssetType.validate(asset_type)
        amount = to_decimal(amount, "loss balance")
        if amount > 0:
            raise ValueError(f"Loss balance must not be positive, got {amount}")

        previous = self.get_balance(asset_type)
        self.balances[asset_type] = amount
        self.application_history.append(LossApplication(
            month=self.last_applied_month.get(asset_type, ""),
            applied_amount=amount - previous,
            asset_type=asset_type,
            trade_type=None,
            remaining_loss=amount,
            application_reason=reason,
        ))
        logger.info(f"Loss balance for {asset_type.value} set to R$ {amount:,.2f} ({reason})")

    def apply_month(self, asset_type: AssetType, month: str,
                    nets: Mapping[TradeType, Decimal],
                    exempt: Optional[Mapping[TradeType, bool]] = None) -> MonthOffset:
        """
        Apply one month's preliminary net results of an asset class.

        Args:
            asset_type: Asset class
            month: Month key 'YYYY-MM'
            nets: Net result per trade type (gains minus losses)
            exempt: Exemption flag per trade type (exempt results are left out)

        Returns:
            MonthOffset with the taxable base and loss used per trade type

        Raises:
            ValueError: If the month is not later than the last month applied for the asset class
        """
        last = self.last_applied_month.get(asset_type)
        if last is not None and month <= last:
            raise ValueError(f"Month {month} for {asset_type.value} must come after {last}; "
                             f"loss carryforward is applied in chronological order")
        exempt = exempt or {}

        opening = self.get_balance(asset_type)
        balance = opening
        offset = MonthOffset(asset_type=asset_type, month=month,
                             opening_balance=opening, closing_balance=opening)

        # Gains consume the opening balance in the configured order
        for trade_type in self.offset_order:
            net = nets.get(trade_type, ZERO)
            offset.loss_used[trade_type] = ZERO
            offset.taxable_base[trade_type] = ZERO
            if exempt.get(trade_type, False) or net <= 0:
                continue

            used = min(-balance, net)
            offset.taxable_base[trade_type] = net - used
            if used > 0:
                offset.loss_used[trade_type] = used
                balance += used
                self.application_history.append(LossApplication(
                    month=month,
                    applied_amount=used,
                    asset_type=asset_type,
                    trade_type=trade_type,
                    remaining_loss=balance,
                    application_reason=f"offset {trade_type.value} gain of R$ {net:,.2f}",
                ))

        # Then the month's own losses accrue
        for trade_type in self.offset_order:
            net = nets.get(trade_type, ZERO)
            if exempt.get(trade_type, False) or net >= 0:
                continue
            balance += net
            offset.loss_added += -net
            self.loss_history.append(LossRecord(
                month=month,
                amount=-net,
                asset_type=asset_type,
                trade_type=trade_type,
                balance_after=balance,
            ))

        self.balances[asset_type] = balance
        self.last_applied_month[asset_type] = month
        offset.closing_balance = balance

        logger.info(f"Loss carryforward {asset_type.value} {month}: "
                    f"opening R$ {opening:,.2f}, used R$ {offset.total_used:,.2f}, "
                    f"added R$ {offset.loss_added:,.2f}, closing R$ {balance:,.2f}")
        return offset

    def get_loss_summary(self) -> Dict:
        """Get loss summary for reporting."""
        return {
            'balances': {t.value: money(b) for t, b in sorted(self.balances.items(), key=lambda i: i[0].value)},
            'total_cumulative_loss': money(sum(self.balances.values(), ZERO)),
            'total_losses_recorded': len(self.loss_history),
            'total_applications': len(self.application_history),
            'offset_order': [t.value for t in self.offset_order],
            'last_applied_month': {t.value: m for t, m in sorted(self.last_applied_month.items(),
                                                                 key=lambda i: i[0].value)},
        }

    def export_audit_trail(self, filepath: str) -> None:
        """
        Export the audit trail to a YAML file.

        Args:
            filepath: Path to export audit trail
        """
        audit_data = {
            'loss_records': [loss.to_dict() for loss in self.loss_history],
            'application_history': [app.to_dict() for app in self.application_history],
            'summary': self.get_loss_summary(),
            'export_date': datetime.now().isoformat(),
        }

        with open(filepath, 'w') as f:
            yaml.safe_dump(audit_data, f, indent=2, sort_keys=False)

        logger.info(f"Audit trail exported to {filepath}")
