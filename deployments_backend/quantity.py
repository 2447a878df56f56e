"""
Conversion of cluster resource quantities to bounded integers.

Quantities arrive from the API as strings such as ``"2Gi"`` or ``"500m"``.
They are parsed to :class:`~decimal.Decimal` and narrowed to the 32-bit
range used by the status payloads. Values that do not fit are rejected,
never clamped.
"""
import math
from decimal import Decimal
from typing import Optional, Union

from kubernetes.utils.quantity import parse_quantity

from deployments_backend.errors import QuantityConversionError

INT32_MIN = -(2 ** 31)
INT32_MAX = 2 ** 31 - 1
INT64_MIN = -(2 ** 63)
INT64_MAX = 2 ** 63 - 1

Quantity = Union[str, int, Decimal]


def to_decimal(quantity: Optional[Quantity]) -> Decimal:
    """Parse a quantity; a missing quantity is zero."""
    if quantity is None:
        return Decimal(0)
    try:
        return parse_quantity(quantity)
    except ValueError as e:
        raise QuantityConversionError(quantity, "decimal") from e


def as_int64(dec: Decimal) -> Optional[int]:
    """Return the exact 64-bit integer value of ``dec``, or None if it has none."""
    if not dec.is_finite() or dec != dec.to_integral_value():
        return None
    value = int(dec)
    if value < INT64_MIN or value > INT64_MAX:
        return None
    return value


def int64_to_int32(num: int) -> int:
    if num > INT32_MAX or num < INT32_MIN:
        raise QuantityConversionError(num, "32-bit")
    return num


def dec_to_int32(dec: Decimal) -> int:
    """Narrow the unscaled value of ``dec`` to 32 bits.

    The unscaled value is the digit string without its decimal point, so
    ``Decimal("1.5")`` yields 15.
    """
    if not dec.is_finite():
        raise QuantityConversionError(dec, "64-bit")
    sign, digits, exponent = dec.as_tuple()
    unscaled = int("".join(str(d) for d in digits) or "0")
    if exponent > 0:
        unscaled *= 10 ** exponent
    if sign:
        unscaled = -unscaled
    if unscaled < INT64_MIN or unscaled > INT64_MAX:
        raise QuantityConversionError(dec, "64-bit")
    return int64_to_int32(unscaled)


def quantity_to_int32(quantity: Optional[Quantity]) -> int:
    dec = to_decimal(quantity)
    val64 = as_int64(dec)
    if val64 is not None:
        return int64_to_int32(val64)
    return dec_to_int32(dec)


def milli_value(quantity: Optional[Quantity]) -> int:
    """Return the quantity in thousandths, rounded up."""
    dec = to_decimal(quantity)
    if not dec.is_finite():
        raise QuantityConversionError(quantity, "64-bit")
    return math.ceil(dec * 1000)
