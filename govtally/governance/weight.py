"""
Decimal Weight Arithmetic

Vote weights and quorum thresholds are exact fixed-point decimals carrying
``WEIGHT_DECIMALS`` fractional digits (7 by default, one stroop). They are
never binary floats: a vote landing exactly on the quorum boundary must
compare exactly.

Averages and ratios are the only lossy operations. They all go through
``round_half_up`` so every reported figure uses the same rounding rule.
"""

from decimal import (
    ROUND_HALF_UP,
    Decimal,
    DecimalException,
    InvalidOperation,
    localcontext,
)
from typing import Iterable, Union

from ..constants import WEIGHT_DECIMALS
from ..exceptions import GovernanceError

WeightInput = Union[str, int, Decimal]

ZERO = Decimal("0")

# Enough significant digits for any weight the store can hold
# (integer unit columns are 64-bit) plus headroom for sums and averages.
_PRECISION = 60

# Weights are persisted as integer smallest units in a signed 64-bit column
MAX_UNITS = 2**63 - 1


class InvalidWeight(GovernanceError, ValueError):
    """Raised when a weight or quorum value is malformed or out of range."""

    def __init__(self, value, reason: str):
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid weight {value!r}: {reason}")


def quantum(decimals: int = WEIGHT_DECIMALS) -> Decimal:
    """Smallest representable step, e.g. Decimal('0.0000001') for 7 digits."""
    return Decimal(1).scaleb(-decimals)


def round_half_up(value: Decimal, places: int) -> Decimal:
    """
    Canonical rounding rule for reported averages and ratios.

    Always ROUND_HALF_UP, independent of the ambient decimal context.
    """
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return value.quantize(quantum(places), rounding=ROUND_HALF_UP)


def parse_weight(value: WeightInput, decimals: int = WEIGHT_DECIMALS) -> Decimal:
    """
    Parse *value* into a non-negative weight with exactly *decimals* digits.

    Accepts decimal strings, ints and Decimals. Floats are refused: they have
    already lost exactness by the time they get here.

    Raises:
        InvalidWeight: malformed, non-finite, negative, or more precise
            than *decimals* fractional digits.
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise InvalidWeight(value, "must be a decimal string, int or Decimal")

    if isinstance(value, Decimal):
        parsed = value
    elif isinstance(value, int):
        parsed = Decimal(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            raise InvalidWeight(value, "empty value")
        try:
            parsed = Decimal(text)
        except InvalidOperation:
            raise InvalidWeight(value, "not a decimal number") from None
    else:
        raise InvalidWeight(value, f"unsupported type {type(value).__name__}")

    if not parsed.is_finite():
        raise InvalidWeight(value, "must be finite")
    if parsed < 0:
        raise InvalidWeight(value, "must not be negative")

    try:
        with localcontext() as ctx:
            ctx.prec = _PRECISION
            ctx.traps[InvalidOperation] = True
            quantized = parsed.quantize(quantum(decimals))
    except DecimalException:
        raise InvalidWeight(value, "out of range") from None

    if quantized != parsed:
        raise InvalidWeight(value, f"more than {decimals} fractional digits")
    if to_units(quantized, decimals) > MAX_UNITS:
        raise InvalidWeight(value, "exceeds the maximum storable weight")
    # Normalise Decimal('-0')
    return quantized.copy_abs()


def parse_positive_weight(value: WeightInput, decimals: int = WEIGHT_DECIMALS) -> Decimal:
    """Like parse_weight, but zero is also rejected."""
    weight = parse_weight(value, decimals)
    if weight <= 0:
        raise InvalidWeight(value, "must be greater than zero")
    return weight


def to_units(weight: Decimal, decimals: int = WEIGHT_DECIMALS) -> int:
    """Exact conversion to integer smallest units."""
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return int(weight.scaleb(decimals))


def from_units(units: int, decimals: int = WEIGHT_DECIMALS) -> Decimal:
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return Decimal(units).scaleb(-decimals).quantize(quantum(decimals))


def sum_weights(weights: Iterable[Decimal], decimals: int = WEIGHT_DECIMALS) -> Decimal:
    """Exact sum; the result keeps the weight scale even when empty."""
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        total = sum(weights, ZERO)
        return total.quantize(quantum(decimals))


def ratio(numerator, denominator, places: int) -> Decimal:
    """
    numerator / denominator rounded with the canonical rule.

    A zero denominator yields zero rather than an error (an empty store has a
    participation rate of 0).
    """
    if not denominator:
        return round_half_up(ZERO, places)
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        exact = Decimal(numerator) / Decimal(denominator)
    return round_half_up(exact, places)


def average(total: Decimal, count: int, places: int) -> Decimal:
    return ratio(total, count, places)


def format_weight(weight: Decimal) -> str:
    """Plain notation, never exponent form ('1E+3' becomes '1000')."""
    return format(weight, "f")
