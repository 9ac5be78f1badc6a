"""
Module: ledger_kernel.db.types
Responsibility: Precision constants and coercion helpers for quantity and
    price columns.  Centralizes precision and rounding so that every model and
    service uses identical definitions.
Architecture position: Kernel > DB.  May be imported by models/, domain/,
    services/, and selectors/.  MUST NOT import from any of those layers.

Invariants enforced:
    - No floats anywhere in the ledger.  Quantities and prices are Decimal
      with explicit precision; ``to_quantity`` refuses float input.
    - ``round_quantity`` / ``round_value`` are the only sanctioned rounding
      functions for stored quantities and monetary line totals.

Failure modes:
    - InvalidQuantityError on float or non-numeric input to to_quantity().
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from ledger_kernel.exceptions import InvalidQuantityError

QUANTITY_DECIMAL_PLACES = 3
VALUE_DECIMAL_PLACES = 2
DEFAULT_ROUNDING = ROUND_HALF_UP

ZERO = Decimal("0")


def to_quantity(
    value: Decimal | int | str,
    decimal_places: int | None = None,
) -> Decimal:
    """
    Coerce caller input into a Decimal quantity.

    Floats are rejected: binary floating point cannot represent most decimal
    quantities exactly, and a silent conversion would break exact reversal.
    With ``decimal_places`` set, finer input is rejected rather than rounded.

    Raises:
        InvalidQuantityError: on float, bool, unparseable or too precise input.
    """
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool) or isinstance(value, float):
        raise InvalidQuantityError(value, "quantities must be Decimal, int or str, not float")
    elif isinstance(value, (int, str)):
        try:
            result = Decimal(value)
        except InvalidOperation:
            raise InvalidQuantityError(value, "not a number") from None
    else:
        raise InvalidQuantityError(value, f"unsupported type {type(value).__name__}")
    if not result.is_finite():
        raise InvalidQuantityError(value, "not a finite number")
    if decimal_places is not None and result.normalize().as_tuple().exponent < -decimal_places:
        raise InvalidQuantityError(
            value, f"at most {decimal_places} decimal places are allowed"
        )
    return result


def round_quantity(
    value: Decimal,
    decimal_places: int = QUANTITY_DECIMAL_PLACES,
    rounding: str = DEFAULT_ROUNDING,
) -> Decimal:
    """Round a quantity to the configured number of decimal places."""
    return value.quantize(Decimal(1).scaleb(-decimal_places), rounding=rounding)


def round_value(
    value: Decimal,
    decimal_places: int = VALUE_DECIMAL_PLACES,
    rounding: str = DEFAULT_ROUNDING,
) -> Decimal:
    """Round a monetary value (quantity x unit price) for display totals."""
    return value.quantize(Decimal(1).scaleb(-decimal_places), rounding=rounding)
