"""
Amount reconciliation for CryptoPayLink.

Converts USD prices into expected crypto amounts and decides whether an observed
on-chain amount satisfies an expected one.
"""

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Context, Decimal, InvalidOperation
from typing import Any, Optional

from . import config
from .exceptions import InvalidPrice, ValidationError

logger = logging.getLogger(__name__)

# Expected amounts are kept at 18 fractional digits (wei precision)
FULL_PRECISION = 18

_QUANTUM = Decimal(1).scaleb(-FULL_PRECISION)
_CONTEXT = Context(prec=60)


@dataclass(frozen=True)
class Quote:
    """A USD price converted to an asset amount at a fixed rate."""

    product_price: Decimal
    asset_price: Decimal
    expected_amount: Decimal
    display_amount: Decimal


def _as_price(value: Any, label: str) -> Decimal:
    try:
        price = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidPrice(f"{label} is not a number", price=value)
    if not price.is_finite() or price <= 0:
        raise InvalidPrice(f"{label} must be a positive finite number", price=str(price))
    return price


class AmountReconciler:
    """
    Quotes and matches crypto amounts with Decimal arithmetic.

    ``matches`` accepts any observed amount at or above
    ``expected * (1 - tolerance)``; overpayment is always accepted.
    """

    def __init__(self, tolerance: Optional[Decimal] = None, display_precision: Optional[int] = None):
        tolerance = config.AMOUNT_TOLERANCE if tolerance is None else Decimal(str(tolerance))
        if not tolerance.is_finite() or tolerance < 0 or tolerance >= 1:
            raise ValidationError(
                "Tolerance must be between 0 (inclusive) and 1 (exclusive)",
                field="tolerance",
                value=str(tolerance),
                constraints={"min": 0, "max_exclusive": 1},
            )
        precision = config.DISPLAY_PRECISION if display_precision is None else display_precision
        if not isinstance(precision, int) or precision < 0 or precision > FULL_PRECISION:
            raise ValidationError(
                f"Display precision must be an integer between 0 and {FULL_PRECISION}",
                field="display_precision",
                value=precision,
            )
        self.tolerance = tolerance
        self.display_precision = precision

    def quote(self, product_price: Any, asset_price: Any) -> Quote:
        """Convert a USD product price into the asset amount the buyer must send."""
        product_price = _as_price(product_price, "Product price")
        asset_price = _as_price(asset_price, "Asset price")
        expected = _CONTEXT.divide(product_price, asset_price).quantize(_QUANTUM, rounding=ROUND_HALF_UP, context=_CONTEXT)
        display = self.to_display(expected)
        logger.debug("Quoted %s USD at %s USD/unit: expected %s (display %s)", product_price, asset_price, expected, display)
        return Quote(
            product_price=product_price,
            asset_price=asset_price,
            expected_amount=expected,
            display_amount=display,
        )

    def to_display(self, amount: Decimal) -> Decimal:
        """Round an amount for display to the buyer."""
        return amount.quantize(Decimal(1).scaleb(-self.display_precision), rounding=ROUND_HALF_UP, context=_CONTEXT)

    def minimum_acceptable(self, expected: Decimal) -> Decimal:
        return expected * (Decimal(1) - self.tolerance)

    def matches(self, expected: Decimal, observed: Decimal) -> bool:
        """Return True when the observed amount pays the expected amount within tolerance."""
        if not isinstance(observed, Decimal):
            observed = Decimal(str(observed))
        return observed >= self.minimum_acceptable(expected)
