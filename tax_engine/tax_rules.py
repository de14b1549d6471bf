"""
Tax rule table for the capital-gains engine.

The rule table is plain configuration: one entry per asset class with the
monthly exemption threshold, the capital-gains rates per trade type, the
source withholding (IRRF) rates used for cross-checking and the DARF code
used to group payments. Tables are built from YAML or from a mapping and
injected into the engine, so rule updates never require code changes.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterator, Mapping, Optional

import yaml

from tax_engine.exceptions import ConfigurationError, ValidationError
from tax_engine.models import AssetType, TradeType, ZERO, to_decimal

# Configure logging
logger = logging.getLogger(__name__)

EXEMPTION_BASES = ("swing_sales", "total_sales")


@dataclass(frozen=True)
class TaxRule:
    """
    Tax parameters for one asset class.

    Attributes:
        asset_type: Asset class the rule applies to
        exemption_threshold_monthly: Monthly sales ceiling for swing-trade exemption (0 = no exemption)
        swing_tax_rate: Capital-gains rate for swing trades
        day_tax_rate: Capital-gains rate for day trades
        irrf_rate_swing: Withholding rate on swing-trade sales (cross-check only)
        irrf_rate_day: Withholding rate on day-trade sales (cross-check only)
        darf_code: Payment code for the asset class
        label: Display name
        exemption_basis: 'swing_sales' or 'total_sales' (swing + day) compared to the threshold
    """
    asset_type: AssetType
    exemption_threshold_monthly: Decimal
    swing_tax_rate: Decimal
    day_tax_rate: Decimal
    irrf_rate_swing: Decimal = ZERO
    irrf_rate_day: Decimal = ZERO
    darf_code: str = ""
    label: str = ""
    exemption_basis: str = "swing_sales"

    def rate_for(self, trade_type: TradeType) -> Decimal:
        if trade_type is TradeType.DAY_TRADE:
            return self.day_tax_rate
        return self.swing_tax_rate

    def irrf_rate_for(self, trade_type: TradeType) -> Decimal:
        if trade_type is TradeType.DAY_TRADE:
            return self.irrf_rate_day
        return self.irrf_rate_swing

    @property
    def has_exemption(self) -> bool:
        return self.exemption_threshold_monthly > 0

    @classmethod
    def from_dict(cls, asset_type: Any, values: Mapping[str, Any]) -> "TaxRule":
        """
        Build a rule from a configuration mapping.

        Raises:
            ConfigurationError: If a value is missing, not numeric, or out of range
        """
        try:
            asset = AssetType.validate(asset_type)
        except ValidationError as e:
            raise ConfigurationError(str(e))

        if not isinstance(values, Mapping):
            raise ConfigurationError(f"Tax rule for '{asset.value}' must be a mapping")

        def rate(key: str, required: bool = True) -> Decimal:
            raw = values.get(key)
            if raw is None and not required:
                return ZERO
            try:
                result = to_decimal(raw, f"tax_rules.{asset.value}.{key}")
            except ValidationError as e:
                raise ConfigurationError(str(e))
            if result < 0:
                raise ConfigurationError(f"tax_rules.{asset.value}.{key} must be non-negative")
            return result

        rule = cls(
            asset_type=asset,
            exemption_threshold_monthly=rate('exemption_threshold_monthly', required=False),
            swing_tax_rate=rate('swing_tax_rate'),
            day_tax_rate=rate('day_tax_rate'),
            irrf_rate_swing=rate('irrf_rate_swing', required=False),
            irrf_rate_day=rate('irrf_rate_day', required=False),
            darf_code=str(values.get('darf_code', '')),
            label=str(values.get('label', asset.value)),
            exemption_basis=str(values.get('exemption_basis', 'swing_sales')),
        )

        if rule.swing_tax_rate > 1 or rule.day_tax_rate > 1:
            raise ConfigurationError(f"Tax rates for '{asset.value}' must be fractions between 0 and 1")
        if rule.exemption_basis not in EXEMPTION_BASES:
            raise ConfigurationError(
                f"tax_rules.{asset.value}.exemption_basis must be one of {list(EXEMPTION_BASES)}"
            )
        return rule

    def to_dict(self) -> Dict:
        return {
            'exemption_threshold_monthly': str(self.exemption_threshold_monthly),
            'swing_tax_rate': str(self.swing_tax_rate),
            'day_tax_rate': str(self.day_tax_rate),
            'irrf_rate_swing': str(self.irrf_rate_swing),
            'irrf_rate_day': str(self.irrf_rate_day),
            'darf_code': self.darf_code,
            'label': self.label,
            'exemption_basis': self.exemption_basis,
        }


class TaxRuleTable:
    """
    Immutable lookup of tax rules keyed by asset class.
    """

    def __init__(self, rules: Optional[Mapping[AssetType, TaxRule]] = None):
        self._rules: Dict[AssetType, TaxRule] = dict(rules or {})

    @classmethod
    def from_dict(cls, mapping: Mapping[str, Any]) -> "TaxRuleTable":
        """
        Build a table from ``{asset_type: {field: value}}``.

        Raises:
            ConfigurationError: If any rule is malformed
        """
        if mapping is None:
            mapping = {}
        if not isinstance(mapping, Mapping):
            raise ConfigurationError("tax_rules must be a mapping of asset type to rule")

        rules = {}
        for asset_type, values in mapping.items():
            rule = TaxRule.from_dict(asset_type, values)
            rules[rule.asset_type] = rule
        return cls(rules)

    @classmethod
    def from_yaml(cls, config_path: str = "config/settings.yaml") -> "TaxRuleTable":
        """
        Load the ``tax_rules`` section of a YAML configuration file.

        Args:
            config_path: Path to configuration file

        Returns:
            TaxRuleTable: Loaded table
        """
        config = load_config(config_path)
        table = cls.from_dict(config.get('tax_rules', {}))
        logger.info(f"Loaded {len(table)} tax rules from {config_path}: "
                    f"{', '.join(t.value for t in table.asset_types())}")
        return table

    def get(self, asset_type: AssetType) -> TaxRule:
        """
        Return the rule for an asset class.

        Raises:
            ConfigurationError: If the asset class has no rule
        """
        rule = self._rules.get(asset_type)
        if rule is None:
            raise ConfigurationError(f"No tax rule configured for asset type '{asset_type.value}'")
        return rule

    def asset_types(self):
        """Configured asset classes, in enum declaration order."""
        return [t for t in AssetType if t in self._rules]

    def __contains__(self, asset_type: AssetType) -> bool:
        return asset_type in self._rules

    def __iter__(self) -> Iterator[TaxRule]:
        return iter(self._rules[t] for t in self.asset_types())

    def __len__(self) -> int:
        return len(self._rules)

    def to_dict(self) -> Dict:
        return {rule.asset_type.value: rule.to_dict() for rule in self}


def load_config(config_path: str) -> Dict:
    """Load a YAML configuration file with error handling."""
    try:
        with open(config_path, 'r', encoding='utf-8') as file:
            config = yaml.safe_load(file) or {}
        if not isinstance(config, dict):
            raise ConfigurationError(f"Configuration in {config_path} must be a mapping")
        logger.info(f"Configuration loaded from {config_path}")
        return config
    except FileNotFoundError:
        logger.error(f"Configuration file not found: {config_path}")
        raise
    except yaml.YAMLError as e:
        logger.error(f"Invalid YAML configuration: {str(e)}")
        raise
