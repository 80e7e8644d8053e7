"""
Module: billing_kernel.db.types
Responsibility: Money coercion, rounding and precision helpers.
    Centralizes precision and rounding so every model and service uses
    identical definitions.
Architecture position: Kernel > DB.  May be imported by models, engines and
    services.  MUST NOT import from any of those layers.

Invariants enforced:
    - No floats anywhere in billing.  All monetary amounts use Decimal.
    - round_money() is the ONLY sanctioned rounding function for money.
    - check_money_precision() rejects amounts finer than the settlement
      currency's minor unit instead of silently rounding them away, so
      that a payment amount is conserved exactly through allocation.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from billing_kernel.exceptions import ValidationError

MONEY_DECIMAL_PLACES = 2
DEFAULT_ROUNDING = ROUND_HALF_UP
ZERO = Decimal("0")


def to_decimal(value, field: str) -> Decimal:
    """
    Coerce an int, str or Decimal into a Decimal.

    Floats are accepted only via their ``str()`` form so that binary
    representation error never leaks into stored amounts.

    Raises:
        ValidationError: If the value is not numeric or not finite.
    """
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool) or value is None:
        raise ValidationError(field, f"expected a number, got {value!r}")
    elif isinstance(value, (int, str)):
        try:
            result = Decimal(value.strip() if isinstance(value, str) else value)
        except InvalidOperation:
            raise ValidationError(field, f"not a number: {value!r}") from None
    elif isinstance(value, float):
        result = Decimal(str(value))
    else:
        raise ValidationError(field, f"expected a number, got {type(value).__name__}")

    if not result.is_finite():
        raise ValidationError(field, f"must be finite, got {value!r}")
    return result


def round_money(
    value: Decimal,
    decimal_places: int = MONEY_DECIMAL_PLACES,
    rounding: str = DEFAULT_ROUNDING,
) -> Decimal:
    """
    Round a monetary value to the given number of decimal places.

    This is the ONLY sanctioned rounding function for money in billing.
    """
    quantum = Decimal(1).scaleb(-decimal_places)
    return value.quantize(quantum, rounding=rounding)


def check_money_precision(
    value: Decimal,
    field: str,
    decimal_places: int = MONEY_DECIMAL_PLACES,
) -> Decimal:
    """
    Reject amounts with more precision than the currency's minor unit.

    Returns the value unchanged (but normalised to ``decimal_places``) when
    rounding would not alter it.

    Raises:
        ValidationError: If rounding would change the amount, or the amount
            has more digits than the decimal context can hold.
    """
    try:
        rounded = round_money(value, decimal_places)
    except InvalidOperation:
        raise ValidationError(field, f"{value} is out of range") from None
    if rounded != value:
        raise ValidationError(
            field,
            f"{value} has more than {decimal_places} decimal places",
        )
    return rounded
