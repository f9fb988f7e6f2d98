from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy.types import BigInteger, TypeDecorator

from .errors import ValidationError


# Quantities carry at most 4 decimal places and are stored as integer
# ten-thousandths (like cents), so database comparisons are exact.
QUANTITY_DECIMALS = 4
QUANTITY_SCALE = Decimal("0.0001")
ZERO = Decimal("0")


def to_storage_units(value: Decimal | int) -> int:
    """Decimal quantity -> integer ten-thousandths (2.5 -> 25000)."""
    return int(Decimal(value).scaleb(QUANTITY_DECIMALS).to_integral_value())


def from_storage_units(units: int) -> Decimal:
    """Integer ten-thousandths -> Decimal quantity (25000 -> 2.5000)."""
    return Decimal(int(units)).scaleb(-QUANTITY_DECIMALS).quantize(QUANTITY_SCALE)


class Quantity(TypeDecorator):
    """
    Decimal on the Python side, BIGINT ten-thousandths in the database.

    Bound values in comparisons and arithmetic against a Quantity column
    (``quantity_on_hand >= :q``, ``quantity_on_hand + :q``) are scaled the
    same way, so conditional balance updates run on integers.
    """
    impl = BigInteger
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return to_storage_units(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return from_storage_units(value)


def to_quantity(value: Any, field: str = "quantity") -> Decimal:
    """
    Coerce API/service input into a Decimal quantity.

    Accepts int, Decimal and numeric strings. Floats are accepted through
    their repr so 1.5 stays 1.5. Booleans, blanks and NaN/Infinity are
    rejected.
    """
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} must be a number", field=field)

    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, float):
        result = Decimal(repr(value))
    elif isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be a number", field=field)
        try:
            result = Decimal(stripped)
        except InvalidOperation:
            raise ValidationError(f"{field} must be a number", field=field)
    else:
        raise ValidationError(f"{field} must be a number", field=field)

    if not result.is_finite():
        raise ValidationError(f"{field} must be a finite number", field=field)
    if result != result.quantize(QUANTITY_SCALE):
        raise ValidationError(f"{field} supports at most 4 decimal places", field=field)
    return result.quantize(QUANTITY_SCALE)


def format_quantity(value: Decimal | int | None) -> str | None:
    """Plain decimal string without exponent or trailing zeros ("10", "2.5")."""
    if value is None:
        return None
    text = format(Decimal(value), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return "0" if text in ("-0", "") else text
