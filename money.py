from contextlib import contextmanager
from decimal import Decimal, InvalidOperation, Overflow, getcontext
from typing import Any, Iterator

from errors import InvalidDecimalError

ZERO = Decimal("0")


def to_decimal(value: Any, field: str = "value", non_negative: bool = False) -> Decimal:
    """
    coerce `value` into an exact Decimal.

    - Decimal / int pass through unchanged
    - float goes through repr() so 0.3 becomes Decimal("0.3"), not the binary expansion
    - str is parsed as-is (surrounding whitespace stripped)

    anything else, NaN/Infinity, a magnitude outside the decimal context's
    exponent range, or a negative number when `non_negative` is set raises
    InvalidDecimalError naming the field and the raw value.
    """
    # bool is an int subclass, never a valid amount
    if isinstance(value, bool):
        raise InvalidDecimalError(field, value, "booleans are not amounts")

    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, float):
        result = Decimal(repr(value))
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation:
            raise InvalidDecimalError(field, value, "cannot be parsed") from None
    else:
        raise InvalidDecimalError(field, value, f"unsupported type {type(value).__name__}")

    if not result.is_finite():
        raise InvalidDecimalError(field, value)

    context = getcontext()
    if result and not context.Etiny() <= result.adjusted() <= context.Emax:
        raise InvalidDecimalError(field, value, "out of range")

    if non_negative and result < ZERO:
        raise InvalidDecimalError(field, value, "must not be negative")

    return result


@contextmanager
def amount_guard(field: str, value: Any) -> Iterator[None]:
    """
    turn a Decimal overflow inside the block into InvalidDecimalError for `field`.
    inputs that are each in range can still multiply past Emax.
    """
    try:
        yield
    except (Overflow, InvalidOperation):
        raise InvalidDecimalError(field, value, "out of range") from None
