"""
Error types raised by the tax engine components.

Every error derives from ValueError so callers that already guard input
validation with ``except ValueError`` keep working.
"""

from typing import Optional


class TaxEngineError(ValueError):
    """Base class for tax engine errors."""


class InsufficientQuantityError(TaxEngineError):
    """A sale or withdrawal exceeds the quantity held for an asset."""

    def __init__(self, asset_id: str, requested, available,
                 operation_id: Optional[str] = None):
        self.asset_id = asset_id
        self.requested = requested
        self.available = available
        self.operation_id = operation_id
        super().__init__(
            f"Cannot sell {requested} of {asset_id}: only {available} held"
            + (f" (operation {operation_id})" if operation_id else "")
        )


class ConfigurationError(TaxEngineError):
    """An asset class has no usable tax rule."""


class ValidationError(TaxEngineError):
    """A malformed operation or request parameter."""
