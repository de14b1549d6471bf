"""
Domain model for the position ledger and capital-gains tax engine.

Contents:
- Closed enumerations for asset classes, trade types and operation kinds
- Immutable operation and realized-gain records
- Mutable position state owned by the position ledger
- Per-month aggregates produced by the monthly aggregator
- Decimal conversion helpers shared by every component
"""

import math
from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

import pandas as pd

from tax_engine.exceptions import ValidationError

ZERO = Decimal("0")
CENT = Decimal("0.01")


def to_decimal(value: Any, field_name: str = "value", default: Optional[Decimal] = None) -> Decimal:
    """
    Convert a numeric input to Decimal without going through binary floats.

    Args:
        value: int, float, str or Decimal (None or NaN fall back to default)
        field_name: Name used in error messages
        default: Value used when the input is missing

    Returns:
        Decimal: Finite decimal value

    Raises:
        ValidationError: If the value is missing without default, or is not a finite number
    """
    if value is None:
        if default is None:
            raise ValidationError(f"{field_name} is required")
        return default

    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be numeric, got {value!r}")

    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise ValidationError(f"{field_name} must be numeric, got {value!r}")

    if not result.is_finite():
        raise ValidationError(f"{field_name} must be finite, got {value!r}")
    return result


def money(value: Decimal) -> float:
    """Round a Decimal amount to cents for JSON output."""
    return float(value.quantize(CENT, rounding=ROUND_HALF_UP))


def to_datetime(value: Any, field_name: str = "date") -> datetime:
    """Normalize dates, datetimes, pandas timestamps and ISO strings to datetime."""
    if value is None or (isinstance(value, float) and math.isnan(value)):
        raise ValidationError(f"{field_name} is required")
    if isinstance(value, pd.Timestamp):
        if pd.isna(value):
            raise ValidationError(f"{field_name} is required")
        return value.to_pydatetime()
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, time())
    try:
        parsed = pd.Timestamp(value)
    except (ValueError, TypeError):
        raise ValidationError(f"{field_name} is not a valid date: {value!r}")
    if pd.isna(parsed):
        raise ValidationError(f"{field_name} is not a valid date: {value!r}")
    return parsed.to_pydatetime()


class AssetType(Enum):
    """
    Asset classes known to the engine.

    Which classes are taxed, and how, is decided by the injected rule table;
    an asset class without a rule is reported as a configuration error.
    """
    STOCK = "stock"
    ETF = "etf"
    FII = "fii"
    BDR = "bdr"
    CRYPTO = "crypto"
    OPTION = "option"
    FUTURE = "future"
    BOND = "bond"

    @classmethod
    def validate(cls, asset_type: Any) -> "AssetType":
        """
        Validate and normalize an asset type.

        Args:
            asset_type: AssetType member or case-insensitive string value

        Returns:
            AssetType: Normalized member

        Raises:
            ValidationError: If asset_type is not a valid enum value
        """
        if isinstance(asset_type, cls):
            return asset_type
        try:
            return cls(str(asset_type).strip().lower())
        except ValueError:
            valid_types = [e.value for e in cls]
            raise ValidationError(f"Invalid asset_type '{asset_type}'. Valid types: {valid_types}")


class TradeType(Enum):
    """Brazilian trade modalities."""
    DAY_TRADE = "day_trade"
    SWING_TRADE = "swing_trade"

    @classmethod
    def validate(cls, trade_type: Any) -> "TradeType":
        if isinstance(trade_type, cls):
            return trade_type
        try:
            return cls(str(trade_type).strip().lower())
        except ValueError:
            raise ValidationError(f"Invalid trade_type '{trade_type}'. Valid types: {[e.value for e in cls]}")


class OperationKind(Enum):
    """Kinds of ledger operations."""
    BUY = "buy"
    SELL = "sell"
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    DIVIDEND = "dividend"

    @classmethod
    def validate(cls, kind: Any) -> "OperationKind":
        if isinstance(kind, cls):
            return kind
        try:
            return cls(str(kind).strip().lower())
        except ValueError:
            raise ValidationError(f"Invalid operation kind '{kind}'. Valid kinds: {[e.value for e in cls]}")

    @property
    def is_acquisition(self) -> bool:
        """Buys and deposits both open or increase a position."""
        return self in (OperationKind.BUY, OperationKind.DEPOSIT)

    @property
    def is_disposal(self) -> bool:
        """Sells and withdrawals both realize a gain or loss."""
        return self in (OperationKind.SELL, OperationKind.WITHDRAW)


# Accepted spellings for raw record keys (snake_case first, then the
# camelCase names used by the persistence layer)
_FIELD_ALIASES: Dict[str, tuple] = {
    'id': ('id', 'operation_id', 'operationId'),
    'asset_id': ('asset_id', 'assetId', 'investment_id', 'investmentId'),
    'asset_type': ('asset_type', 'assetType'),
    'kind': ('kind', 'operation_type', 'operationType', 'type'),
    'quantity': ('quantity', 'qty'),
    'unit_price': ('unit_price', 'unitPrice', 'price'),
    'total_value': ('total_value', 'totalValue', 'total'),
    'fees': ('fees', 'fee'),
    'source_withheld': ('source_withheld', 'sourceWithheld', 'irrf'),
    'date': ('date', 'datetime', 'timestamp'),
    'asset_name': ('asset_name', 'assetName', 'investment_name', 'investmentName', 'name'),
    'ticker': ('ticker',),
}


def _pick(record: Mapping[str, Any], name: str) -> Any:
    for key in _FIELD_ALIASES[name]:
        if key in record:
            return record[key]
    return None


@dataclass(frozen=True)
class Operation:
    """
    A single recorded operation on an asset, already decrypted.

    Numeric fields are converted to Decimal and validated on construction,
    so an Operation instance is always well formed.
    """
    id: str
    asset_id: str
    asset_type: AssetType
    kind: OperationKind
    quantity: Decimal
    unit_price: Decimal
    date: datetime
    total_value: Optional[Decimal] = None
    fees: Decimal = ZERO
    source_withheld: Decimal = ZERO
    asset_name: str = ""
    ticker: Optional[str] = None

    def __post_init__(self):
        if self.id is None or str(self.id).strip() == "":
            raise ValidationError("Operation id must be a non-empty string")
        if self.asset_id is None or str(self.asset_id).strip() == "":
            raise ValidationError(f"Operation {self.id}: asset_id must be a non-empty string")

        object.__setattr__(self, 'id', str(self.id))
        object.__setattr__(self, 'asset_id', str(self.asset_id))
        object.__setattr__(self, 'asset_type', AssetType.validate(self.asset_type))
        object.__setattr__(self, 'kind', OperationKind.validate(self.kind))
        object.__setattr__(self, 'date', to_datetime(self.date))

        quantity = self._non_negative(self.quantity, 'quantity', ZERO)
        unit_price = self._non_negative(self.unit_price, 'unit_price', ZERO)
        if self.total_value is None:
            total_value = quantity * unit_price
        else:
            total_value = self._non_negative(self.total_value, 'total_value', ZERO)

        object.__setattr__(self, 'quantity', quantity)
        object.__setattr__(self, 'unit_price', unit_price)
        object.__setattr__(self, 'total_value', total_value)
        object.__setattr__(self, 'fees', self._non_negative(self.fees, 'fees', ZERO))
        object.__setattr__(self, 'source_withheld',
                           self._non_negative(self.source_withheld, 'source_withheld', ZERO))

        if self.kind in (OperationKind.BUY, OperationKind.SELL) and quantity <= 0:
            raise ValidationError(f"Operation {self.id}: {self.kind.value} quantity must be positive")
        if self.kind in (OperationKind.DEPOSIT, OperationKind.WITHDRAW) and self.amount <= 0:
            raise ValidationError(f"Operation {self.id}: {self.kind.value} amount must be positive")

    def _non_negative(self, value: Any, field_name: str, default: Decimal) -> Decimal:
        result = to_decimal(value, f"Operation {self.id}: {field_name}", default)
        if result < 0:
            raise ValidationError(f"Operation {self.id}: {field_name} must be non-negative, got {result}")
        return result

    @property
    def amount(self) -> Decimal:
        """Monetary amount of deposits, withdrawals and dividends."""
        if self.total_value and self.total_value > 0:
            return self.total_value
        return self.unit_price

    @classmethod
    def from_dict(cls, record: Mapping[str, Any]) -> "Operation":
        """
        Build an Operation from a raw record.

        Both snake_case and the persistence layer's camelCase keys are accepted.

        Raises:
            ValidationError: If the record is malformed
        """
        if not isinstance(record, Mapping):
            raise ValidationError(f"Operation record must be a mapping, got {type(record).__name__}")

        return cls(
            id=_pick(record, 'id'),
            asset_id=_pick(record, 'asset_id'),
            asset_type=_pick(record, 'asset_type'),
            kind=_pick(record, 'kind'),
            quantity=_pick(record, 'quantity'),
            unit_price=_pick(record, 'unit_price'),
            date=_pick(record, 'date'),
            total_value=_pick(record, 'total_value'),
            fees=_pick(record, 'fees'),
            source_withheld=_pick(record, 'source_withheld'),
            asset_name=_pick(record, 'asset_name') or "",
            ticker=_pick(record, 'ticker'),
        )

    def to_dict(self) -> Dict:
        """Convert to dictionary for serialization."""
        return {
            'id': self.id,
            'assetId': self.asset_id,
            'assetType': self.asset_type.value,
            'kind': self.kind.value,
            'quantity': str(self.quantity),
            'unitPrice': str(self.unit_price),
            'totalValue': str(self.total_value),
            'fees': str(self.fees),
            'sourceWithheld': str(self.source_withheld),
            'date': self.date.isoformat(),
            'assetName': self.asset_name,
            'ticker': self.ticker,
        }


@dataclass
class Position:
    """Weighted-average position state for one asset."""
    asset_id: str
    asset_type: AssetType
    quantity: Decimal = ZERO
    total_cost: Decimal = ZERO
    total_fees: Decimal = ZERO
    dividends: Decimal = ZERO
    last_update: Optional[datetime] = None

    @property
    def average_cost(self) -> Decimal:
        """Average acquisition cost per unit (zero for an empty position)."""
        if self.quantity == 0:
            return ZERO
        return self.total_cost / self.quantity

    @property
    def is_open(self) -> bool:
        return self.quantity > 0


@dataclass(frozen=True)
class RealizedGain:
    """Gain or loss realized by a single sale or withdrawal."""
    operation_id: str
    asset_id: str
    asset_type: AssetType
    date: datetime
    quantity_sold: Decimal
    average_cost_at_sale: Decimal
    sale_value: Decimal
    gain: Decimal
    unit_price: Decimal = ZERO
    fees: Decimal = ZERO
    source_withheld: Decimal = ZERO
    trade_type: Optional[TradeType] = None
    asset_name: str = ""
    ticker: Optional[str] = None

    @property
    def month_key(self) -> str:
        return self.date.strftime('%Y-%m')

    def to_dict(self) -> Dict:
        """Convert to dictionary for serialization."""
        return {
            'operationId': self.operation_id,
            'assetId': self.asset_id,
            'assetName': self.asset_name,
            'ticker': self.ticker,
            'assetType': self.asset_type.value,
            'tradeType': self.trade_type.value if self.trade_type else None,
            'date': self.date.date().isoformat(),
            'quantity': float(self.quantity_sold),
            'sellPrice': money(self.unit_price),
            'avgPrice': float(self.average_cost_at_sale.quantize(Decimal("0.000001"), rounding=ROUND_HALF_UP)),
            'saleTotal': money(self.sale_value),
            'gain': money(self.gain),
            'fees': money(self.fees),
            'sourceWithheld': money(self.source_withheld),
        }


@dataclass
class TradeTypeAggregate:
    """Monthly totals for one trade type within one asset class."""
    trade_type: TradeType
    sales: Decimal = ZERO
    gains: Decimal = ZERO
    losses: Decimal = ZERO
    exempt: bool = False
    tax_rate: Decimal = ZERO
    taxable_base: Decimal = ZERO
    loss_used: Decimal = ZERO
    tax: Decimal = ZERO
    irrf: Decimal = ZERO
    count: int = 0

    @property
    def net(self) -> Decimal:
        return self.gains - self.losses

    def add(self, realized: RealizedGain) -> None:
        self.sales += realized.sale_value
        if realized.gain > 0:
            self.gains += realized.gain
        else:
            self.losses += -realized.gain
        self.irrf += realized.source_withheld
        self.count += 1

    def to_dict(self) -> Dict:
        return {
            'sales': money(self.sales),
            'gains': money(self.gains),
            'losses': money(self.losses),
            'net': money(self.net),
            'exempt': self.exempt,
            'taxRate': float(self.tax_rate),
            'taxableBase': money(self.taxable_base),
            'lossUsed': money(self.loss_used),
            'tax': money(self.tax),
            'irrf': money(self.irrf),
            'count': self.count,
        }


@dataclass
class MonthlyTypeDetail:
    """Tax computation for one asset class in one month."""
    asset_type: AssetType
    swing_trade: TradeTypeAggregate
    day_trade: TradeTypeAggregate
    accumulated_loss_used: Decimal = ZERO
    accumulated_loss_remaining: Decimal = ZERO
    irrf: Decimal = ZERO
    irrf_expected: Decimal = ZERO
    tax_due: Decimal = ZERO
    darf_code: str = ""
    label: str = ""

    @property
    def gross_tax(self) -> Decimal:
        return self.swing_trade.tax + self.day_trade.tax

    @property
    def sales(self) -> Decimal:
        return self.swing_trade.sales + self.day_trade.sales

    @property
    def net(self) -> Decimal:
        return self.swing_trade.net + self.day_trade.net

    def aggregate(self, trade_type: TradeType) -> TradeTypeAggregate:
        if trade_type is TradeType.DAY_TRADE:
            return self.day_trade
        return self.swing_trade

    def to_dict(self) -> Dict:
        return {
            'assetType': self.asset_type.value,
            'typeName': self.label,
            'swingTrade': self.swing_trade.to_dict(),
            'dayTrade': self.day_trade.to_dict(),
            'accumulatedLossUsed': money(self.accumulated_loss_used),
            'accumulatedLossRemaining': money(self.accumulated_loss_remaining),
            'irrf': money(self.irrf),
            'irrfExpected': money(self.irrf_expected),
            'taxDue': money(self.tax_due),
            'darfCode': self.darf_code,
        }


@dataclass(frozen=True)
class Diagnostic:
    """A per-operation, per-asset or per-asset-class failure report."""
    error: str
    scope: str  # 'operation', 'asset' or 'asset_type'
    subject: str
    message: str
    month: Optional[str] = None

    @classmethod
    def from_exception(cls, exc: Exception, scope: str, subject: str,
                       month: Optional[str] = None) -> "Diagnostic":
        return cls(error=type(exc).__name__, scope=scope, subject=subject,
                   message=str(exc), month=month)

    def to_dict(self) -> Dict:
        return {
            'error': self.error,
            'scope': self.scope,
            'subject': self.subject,
            'message': self.message,
            'month': self.month,
        }


@dataclass
class Summary:
    """Grand totals of one monthly report."""
    total_sales: Decimal = ZERO
    total_gains: Decimal = ZERO
    total_losses: Decimal = ZERO
    net_result: Decimal = ZERO
    gross_tax: Decimal = ZERO
    irrf: Decimal = ZERO
    tax_payable: Decimal = ZERO
    darf_codes: List[str] = field(default_factory=list)

    @property
    def has_tax_due(self) -> bool:
        return self.tax_payable > 0

    def to_dict(self) -> Dict:
        return {
            'totalSales': money(self.total_sales),
            'totalGains': money(self.total_gains),
            'totalLosses': money(self.total_losses),
            'netResult': money(self.net_result),
            'taxDue': money(self.gross_tax),
            'irrf': money(self.irrf),
            'taxPayable': money(self.tax_payable),
            'hasTaxDue': self.has_tax_due,
            'darfCodes': list(self.darf_codes),
        }
