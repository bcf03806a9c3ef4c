"""
MONETARY AMOUNTS

Decimal handling for funding figures:
1. Strict parsing of user input (never coerced to zero)
2. Two-place rounding at storage boundaries
3. Conversion to/from MongoDB Decimal128
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Union, Optional, Any
from bson import Decimal128
import logging

from funding_engine.errors import ValidationError

logger = logging.getLogger(__name__)

DECIMAL_PLACES = 2
QUANTIZE_PATTERN = Decimal('0.01')

Numeric = Union[int, float, str, Decimal, Decimal128]


def to_decimal(value: Numeric) -> Decimal:
    """
    Convert a numeric value to Decimal without rounding.
    Raises ValidationError for anything that is not a finite number.
    """
    if isinstance(value, bool):
        raise ValidationError(f"Not a monetary amount: {value!r}", value=str(value))
    if isinstance(value, Decimal128):
        value = value.to_decimal()
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float)):
        # via str to avoid binary float artefacts
        result = Decimal(str(value))
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation:
            raise ValidationError(f"Not a monetary amount: {value!r}", value=value)
    else:
        raise ValidationError(f"Cannot convert {type(value).__name__} to an amount")

    if not result.is_finite():
        raise ValidationError(f"Not a monetary amount: {value!r}", value=str(value))
    return result


def round_financial(value: Numeric) -> Decimal:
    """Round to 2 decimal places (half up). Call only at boundaries."""
    try:
        return to_decimal(value).quantize(QUANTIZE_PATTERN, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        # more digits than the context precision can hold at two places
        raise ValidationError(f"Amount out of range: {value!r}", value=str(value))


def parse_amount(raw: Optional[Any]) -> Optional[Decimal]:
    """
    Parse an optional amount from request input.

    None or a blank string means "no amount". Anything else must parse as a
    number with at most two decimal places; a negative amount is rejected.
    """
    if raw is None:
        return None
    if isinstance(raw, str) and not raw.strip():
        return None
    if to_decimal(raw).normalize().as_tuple().exponent < -DECIMAL_PLACES:
        raise ValidationError(
            f"Amount has more than {DECIMAL_PLACES} decimal places: {raw}",
            value=str(raw)
        )
    amount = round_financial(raw)
    if amount < Decimal('0'):
        raise ValidationError(f"Amount cannot be negative: {raw}", value=str(raw))
    return amount


def amounts_equal(a: Optional[Decimal], b: Optional[Decimal]) -> bool:
    """Exact comparison of two present amounts at storage precision."""
    return round_financial(a) == round_financial(b)


def to_storage(value: Optional[Decimal]) -> Optional[Decimal128]:
    """Convert Decimal to Decimal128 for MongoDB storage."""
    if value is None:
        return None
    return Decimal128(round_financial(value))


def from_storage(value: Any) -> Any:
    """Convert Decimal128 read from MongoDB back to Decimal."""
    if isinstance(value, Decimal128):
        return value.to_decimal()
    return value


def to_float(value: Optional[Decimal]) -> Optional[float]:
    """Convert Decimal to float for JSON responses. None stays None."""
    if value is None:
        return None
    return float(round_financial(value))
