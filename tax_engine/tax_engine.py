"""
Capital-gains tax engine facade.

Orchestrates one full computation over a user's operation history:
- Validates raw operations (malformed ones are skipped with a diagnostic)
- Replays every asset's history through its position ledger
- Classifies sales as day trades or swing trades
- Aggregates every month with sales, in chronological order, so the loss
  carryforward balance reaching the target month is exact
- Builds the report, isolating failures per asset and per asset class

Every call recomputes from the full history; identical inputs give
identical reports.
"""

import dataclasses
import logging
import re
from collections import OrderedDict, defaultdict
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from tax_engine.exceptions import ConfigurationError, InsufficientQuantityError, ValidationError
from tax_engine.loss_manager import DEFAULT_OFFSET_ORDER, LossCarryforwardManager
from tax_engine.models import AssetType, Diagnostic, Operation, RealizedGain, TradeType, ZERO, to_decimal
from tax_engine.monthly_aggregator import MonthlyAggregator, month_key
from tax_engine.position_ledger import PositionLedger, chronological
from tax_engine.rate_resolver import RateResolver
from tax_engine.report_builder import ReportBuilder, TaxCalculationResult
from tax_engine.tax_rules import TaxRuleTable, load_config
from tax_engine.trade_classifier import DEFAULT_TIMEZONE, TradeClassifier

# Configure logging
logger = logging.getLogger(__name__)

MONTH_PATTERN = re.compile(r"^(\d{4})-(0[1-9]|1[0-2])$")

OperationInput = Union[Operation, Mapping[str, Any]]


def parse_month(value: str) -> Tuple[int, int]:
    """
    Parse a 'YYYY-MM' month parameter.

    Raises:
        ValidationError: If the value is not a valid month
    """
    match = MONTH_PATTERN.match(str(value).strip())
    if not match:
        raise ValidationError(f"Month must be formatted YYYY-MM, got {value!r}")
    return int(match.group(1)), int(match.group(2))


@dataclasses.dataclass
class _Replay:
    """Intermediate state of one computation, shared by every month."""
    operations: List[Operation]
    realized_gains: List[RealizedGain]
    dividends: Dict[str, Dict[AssetType, Decimal]]
    failed_from: Dict[AssetType, str]
    diagnostics: List[Diagnostic]


class TaxEngine:
    """
    Position ledger and monthly capital-gains tax engine.

    The rule table is injected; nothing about tax law is hard-coded here.
    """

    def __init__(self, tax_rules: TaxRuleTable, timezone: str = DEFAULT_TIMEZONE,
                 loss_offset_order: Sequence[Any] = DEFAULT_OFFSET_ORDER,
                 irrf_tolerance: Any = Decimal("0.01")):
        """
        Args:
            tax_rules: Rule table keyed by asset class
            timezone: Market timezone defining calendar dates and months
            loss_offset_order: Trade types in the order they consume carried losses
            irrf_tolerance: Tolerance of the IRRF cross-check
        """
        if not isinstance(tax_rules, TaxRuleTable):
            raise ConfigurationError("tax_rules must be a TaxRuleTable")

        self.tax_rules = tax_rules
        self.classifier = TradeClassifier(timezone)
        self.loss_offset_order = tuple(TradeType.validate(t) for t in loss_offset_order)
        self.resolver = RateResolver(tax_rules, to_decimal(irrf_tolerance, "irrf_tolerance"))
        self.report_builder = ReportBuilder()

        logger.info(f"Tax engine initialized with {len(tax_rules)} tax rules "
                    f"(timezone: {timezone}, offset order: "
                    f"{' > '.join(t.value for t in self.loss_offset_order)})")

    @classmethod
    def from_config(cls, config_path: str = "config/settings.yaml") -> "TaxEngine":
        """
        Build an engine from a YAML configuration file.

        Args:
            config_path: Path with 'engine' and 'tax_rules' sections
        """
        config = load_config(config_path)
        engine_config = config.get('engine', {}) or {}
        return cls(
            tax_rules=TaxRuleTable.from_dict(config.get('tax_rules', {})),
            timezone=engine_config.get('timezone', DEFAULT_TIMEZONE),
            loss_offset_order=engine_config.get('loss_offset_order',
                                                [t.value for t in DEFAULT_OFFSET_ORDER]),
            irrf_tolerance=engine_config.get('irrf_tolerance', '0.01'),
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def calculate_month(self, operations: Iterable[OperationInput],
                        year: Union[int, str], month: Optional[int] = None,
                        loss_manager: Optional[LossCarryforwardManager] = None) -> TaxCalculationResult:
        """
        Compute the tax report of one month.

        Args:
            operations: All operations of the user (Operation objects or raw records)
            year: Year, or a 'YYYY-MM' string when month is omitted
            month: Month number (1-12)
            loss_manager: Fresh ledger to record the carryforward into (kept by the caller for auditing)

        Returns:
            TaxCalculationResult for the month
        """
        target = self._target_key(year, month)
        return self.calculate_months(operations, target, months=[target],
                                     loss_manager=loss_manager)[target]

    def calculate_months(self, operations: Iterable[OperationInput], through: Union[str, Tuple[int, int]],
                         months: Optional[Iterable[str]] = None,
                         loss_manager: Optional[LossCarryforwardManager] = None) -> Dict[str, TaxCalculationResult]:
        """
        Compute reports for several months in a single pass.

        Args:
            operations: All operations of the user
            through: Last month to replay ('YYYY-MM' or (year, month))
            months: Months to report (default: every month with sales up to `through`)
            loss_manager: Ledger to apply the months to; it may carry opening balances for
                history that is not part of `operations`, and must not have applied later months

        Returns:
            Ordered dict of month key to TaxCalculationResult
        """
        if isinstance(through, tuple):
            through_key = self._target_key(*through)
        else:
            through_key = self._target_key(through)

        requested = sorted({self._target_key(m) for m in months}) if months is not None else None
        if requested and requested[-1] > through_key:
            raise ValidationError(f"Requested month {requested[-1]} is after {through_key}")

        replay = self._replay(operations, through_key)

        sale_months = {r.month_key for r in replay.realized_gains}
        process = sorted(sale_months | set(requested or []))
        report_months = set(requested) if requested is not None else sale_months

        if loss_manager is None:
            loss_manager = LossCarryforwardManager(self.loss_offset_order)
        aggregator = MonthlyAggregator(self.resolver, loss_manager)

        results: Dict[str, TaxCalculationResult] = OrderedDict()
        for key in process:
            excluded = {t for t, failed in replay.failed_from.items() if failed <= key}
            gains = [r for r in replay.realized_gains
                     if r.month_key == key and r.asset_type not in excluded]

            details, month_diagnostics = aggregator.aggregate(gains, key)
            if key not in report_months:
                continue

            snapshot_types = [t for t in self.tax_rules.asset_types() if t not in excluded]
            diagnostics = [d for d in replay.diagnostics if d.month is None or d.month <= key]
            diagnostics.extend(month_diagnostics)

            results[key] = self.report_builder.build(
                month=key,
                by_type=details,
                realized_gains=gains,
                accumulated_losses=loss_manager.snapshot(snapshot_types),
                dividends={t: a for t, a in replay.dividends.get(key, {}).items() if t not in excluded},
                diagnostics=diagnostics,
            )

        return results

    def calculate_year(self, operations: Iterable[OperationInput], year: int,
                       loss_manager: Optional[LossCarryforwardManager] = None) -> List[TaxCalculationResult]:
        """
        Compute the twelve monthly reports of a calendar year.
        """
        months = [month_key(year, m) for m in range(1, 13)]
        results = self.calculate_months(operations, months[-1], months=months, loss_manager=loss_manager)
        return [results[m] for m in months]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _target_key(year: Union[int, str], month: Optional[int] = None) -> str:
        if month is None:
            parsed_year, parsed_month = parse_month(year)
            return month_key(parsed_year, parsed_month)
        if not isinstance(year, int) or not isinstance(month, int) or not 1 <= month <= 12:
            raise ValidationError(f"Invalid target month: year={year!r}, month={month!r}")
        return month_key(year, month)

    def _validate(self, operations: Iterable[OperationInput]) -> Tuple[List[Operation], List[Diagnostic]]:
        """
        Convert raw inputs to Operation objects expressed in market time.

        Malformed operations are skipped and reported.
        """
        valid: List[Operation] = []
        diagnostics: List[Diagnostic] = []

        for index, raw in enumerate(operations):
            try:
                op = raw if isinstance(raw, Operation) else Operation.from_dict(raw)
                valid.append(dataclasses.replace(op, date=self.classifier.localize(op.date)))
            except ValidationError as e:
                subject = self._raw_id(raw, index)
                logger.warning(f"Skipping malformed operation {subject}: {e}")
                diagnostics.append(Diagnostic.from_exception(e, 'operation', subject))

        return valid, diagnostics

    @staticmethod
    def _raw_id(raw: Any, index: int) -> str:
        if isinstance(raw, Operation):
            return raw.id
        if isinstance(raw, Mapping):
            for key in ('id', 'operation_id', 'operationId'):
                if raw.get(key) not in (None, ""):
                    return str(raw[key])
        return f"#{index}"

    def _replay(self, operations: Iterable[OperationInput], through_key: str) -> _Replay:
        """
        Validate, replay and classify every operation up to the end of `through_key`.
        """
        valid, diagnostics = self._validate(operations)
        valid = [op for op in valid if op.date.strftime('%Y-%m') <= through_key]

        by_asset: Dict[str, List[Operation]] = OrderedDict()
        for op in valid:
            by_asset.setdefault(op.asset_id, []).append(op)

        realized: List[RealizedGain] = []
        dividends: Dict[str, Dict[AssetType, Decimal]] = defaultdict(lambda: defaultdict(lambda: ZERO))
        failed_from: Dict[AssetType, str] = {}
        unconfigured = set()
        replayed: List[Operation] = []

        for asset_id, asset_ops in by_asset.items():
            asset_types = {op.asset_type for op in asset_ops}
            if len(asset_types) > 1:
                e = ValidationError(f"Asset {asset_id} has operations with several asset types: "
                                    f"{sorted(t.value for t in asset_types)}")
                logger.warning(str(e))
                diagnostics.append(Diagnostic.from_exception(e, 'asset', asset_id))
                for asset_type in asset_types:
                    self._mark_failed(failed_from, asset_type, min(op.date for op in asset_ops))
                continue

            asset_type = asset_ops[0].asset_type
            if asset_type not in self.tax_rules:
                if asset_type not in unconfigured:
                    e = ConfigurationError(f"No tax rule configured for asset type '{asset_type.value}'")
                    logger.warning(f"Skipping asset type {asset_type.value}: {e}")
                    diagnostics.append(Diagnostic.from_exception(e, 'asset_type', asset_type.value))
                    unconfigured.add(asset_type)
                continue

            first = asset_ops[0]
            ledger = PositionLedger(asset_id, asset_type, first.asset_name, first.ticker)
            for op in chronological(asset_ops):
                try:
                    ledger.apply(op)
                except InsufficientQuantityError as e:
                    failed_month = op.date.strftime('%Y-%m')
                    logger.warning(f"Aborting {asset_id} at operation {op.id} ({failed_month}): {e}")
                    diagnostics.append(Diagnostic.from_exception(e, 'asset', asset_id, failed_month))
                    self._mark_failed(failed_from, asset_type, op.date)
                    break

            realized.extend(ledger.realized_gains)
            for when, amount in ledger.dividend_history:
                dividends[when.strftime('%Y-%m')][asset_type] += amount
            replayed.extend(asset_ops)

        classified = self.classifier.classify_all(realized, replayed)

        logger.info(f"Replayed {len(replayed)} operations across {len(by_asset)} assets "
                    f"through {through_key}: {len(classified)} sales, {len(diagnostics)} diagnostics")
        return _Replay(
            operations=replayed,
            realized_gains=classified,
            dividends=dividends,
            failed_from=failed_from,
            diagnostics=diagnostics,
        )

    @staticmethod
    def _mark_failed(failed_from: Dict[AssetType, str], asset_type: AssetType, when) -> None:
        key = when.strftime('%Y-%m')
        if asset_type not in failed_from or key < failed_from[asset_type]:
            failed_from[asset_type] = key
