from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from .errors import ValidationError

CENT = Decimal("0.01")
QUANTITY_STEP = Decimal("0.001")


def to_decimal(value, *, field: str = "value") -> Decimal:
    """Coerce int/float/str/Decimal to Decimal (floats go through str to avoid binary noise)."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} must be a number")
    try:
        if isinstance(value, float):
            return Decimal(str(value))
        return Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{field} must be a number")


def quantize_money(value) -> Decimal:
    """Round to cents, half-up."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def quantize_quantity(value) -> Decimal:
    return to_decimal(value, field="quantity").quantize(QUANTITY_STEP, rounding=ROUND_HALF_UP)


def as_json_number(value) -> str | None:
    """Serialize Decimals as strings so JSON never loses precision."""
    if value is None:
        return None
    return str(value)
