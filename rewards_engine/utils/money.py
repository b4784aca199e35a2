# rewards_engine/utils/money.py
"""
Fixed-point helpers. Amounts are rounded half-up to the cent when computed.
"""
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation

from rewards_engine.config.ranks import CENT, HUNDRED
from rewards_engine.errors import ValidationFailure


def toDecimal(value) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    try:
        # float -> str keeps the value the database actually returned
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValidationFailure(f"Not a monetary value: {value!r}") from e


def toMoney(value) -> Decimal:
    """Quantize to cents, half-up."""
    return toDecimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def percentOf(amount, percentage) -> Decimal:
    return toMoney(toDecimal(amount) * toDecimal(percentage) / HUNDRED)
