"""
Load operation histories for the tax engine.

This module provides functionality to:
- Read operations from CSV files (values kept as text so amounts reach
  Decimal without passing through binary floats)
- Read operations from JSON, either as a flat list of records or as a list
  of investments each carrying its own operations
- Normalize missing values to None before validation
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Union

import numpy as np
import pandas as pd

from tax_engine.models import Operation

# Configure logging
logger = logging.getLogger(__name__)


class OperationLoader:
    """
    Load raw operation records from files or in-memory structures.

    Records are returned as dictionaries; validation into Operation objects
    happens in the engine so malformed rows become diagnostics instead of
    aborting the load.
    """

    def __init__(self, default_asset_type: str = None):
        """
        Args:
            default_asset_type: Asset type used for records that carry none
        """
        self.default_asset_type = default_asset_type

    def load(self, path: Union[str, Path]) -> List[Dict[str, Any]]:
        """Load a CSV or JSON file depending on its extension."""
        path = Path(path)
        suffix = path.suffix.lower()
        if suffix == '.csv':
            return self.load_csv(path)
        if suffix == '.json':
            return self.load_json(path)
        raise ValueError(f"Unsupported operations file format: {path.suffix} (use .csv or .json)")

    def load_csv(self, path: Union[str, Path]) -> List[Dict[str, Any]]:
        """
        Load operations from a CSV file with one operation per row.

        Args:
            path: CSV path; column names may be snake_case or camelCase

        Returns:
            List of raw operation records
        """
        path = Path(path)
        if not path.exists():
            logger.error(f"Operations file not found: {path}")
            raise FileNotFoundError(f"Operations file not found: {path}")

        frame = pd.read_csv(path, dtype=str, skipinitialspace=True)
        frame.columns = [str(c).strip() for c in frame.columns]
        records = self.load_frame(frame)
        logger.info(f"Loaded {len(records)} operations from {path}")
        return records

    def load_frame(self, frame: pd.DataFrame) -> List[Dict[str, Any]]:
        """Convert a DataFrame of operations to raw records (NaN becomes None)."""
        cleaned = frame.astype(object).replace({np.nan: None})
        records = cleaned.to_dict(orient='records')
        return [self._with_defaults(r) for r in records]

    def load_json(self, path: Union[str, Path]) -> List[Dict[str, Any]]:
        """
        Load operations from a JSON file.

        Accepted layouts:
        - [ {operation}, ... ]
        - {"operations": [ {operation}, ... ]}
        - [ {investment with "operations": [...]}, ... ] or {"investments": [...]}
        """
        path = Path(path)
        if not path.exists():
            logger.error(f"Operations file not found: {path}")
            raise FileNotFoundError(f"Operations file not found: {path}")

        with open(path, 'r', encoding='utf-8') as f:
            payload = json.load(f, parse_float=str)

        records = self.load_records(payload)
        logger.info(f"Loaded {len(records)} operations from {path}")
        return records

    def load_records(self, payload: Any) -> List[Dict[str, Any]]:
        """Flatten an in-memory payload into raw operation records."""
        if isinstance(payload, Mapping):
            if 'investments' in payload:
                payload = payload['investments']
            elif 'operations' in payload:
                payload = payload['operations']
            else:
                raise ValueError("JSON payload must be a list or contain 'operations' or 'investments'")

        if not isinstance(payload, list):
            raise ValueError("Operations payload must be a list")

        records: List[Dict[str, Any]] = []
        for item in payload:
            if isinstance(item, Mapping) and isinstance(item.get('operations'), list):
                records.extend(self._flatten_investment(item))
            elif isinstance(item, Mapping):
                records.append(self._with_defaults(dict(item)))
            else:
                # Left to the engine to report as malformed
                records.append(item)
        return records

    def _flatten_investment(self, investment: Mapping[str, Any]) -> Iterable[Dict[str, Any]]:
        """
        Expand an investment record into its operations.

        Investment-level fields (id, type, name, ticker) fill the asset fields
        of each operation; the operation's own 'type' is its kind.
        """
        for op in investment['operations']:
            if not isinstance(op, Mapping):
                yield op
                continue
            record = dict(op)
            if 'kind' not in record and 'type' in record:
                record['kind'] = record.pop('type')
            record.setdefault('asset_id', record.get('investmentId', investment.get('id')))
            record.setdefault('asset_type', investment.get('type'))
            record.setdefault('asset_name', investment.get('name', ''))
            record.setdefault('ticker', investment.get('ticker'))
            yield self._with_defaults(record)

    def _with_defaults(self, record: Dict[str, Any]) -> Dict[str, Any]:
        if self.default_asset_type and not (record.get('asset_type') or record.get('assetType')):
            record['asset_type'] = self.default_asset_type
        return record

    @staticmethod
    def to_frame(operations: Iterable[Operation]) -> pd.DataFrame:
        """Tabulate validated operations for inspection."""
        return pd.DataFrame([op.to_dict() for op in operations])
