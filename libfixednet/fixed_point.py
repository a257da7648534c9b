"""Saturating Q(W,F) fixed-point arithmetic shared by every engine.

A Q(W,F) value is a signed W-bit integer read as ``value / 2**F``.  All
operations here accept Python ints or NumPy integer arrays and never raise
on numeric input: out-of-range results are clamped to the representable
bounds instead of wrapping.

Division by the constant denominators the network needs (6 for the hard
activations, H*W for average pooling) is done by reciprocal multiplication::

    q = (numerator * reciprocal + 2**(shift - 1)) >> shift

using the precomputed pairs in ``RECIPROCAL_TABLE``.  Denominators without
a pair fall back to rounded integer division.
"""

import math
from dataclasses import dataclass

import numpy as np

from ._constants import (
    ACCUMULATOR_MARGIN,
    DEFAULT_DATA_WIDTH,
    DEFAULT_FRAC_BITS,
    MAX_ACCUMULATOR_WIDTH,
    RECIPROCAL_TABLE,
)

__all__ = [
    "QFormat",
    "saturate",
    "saturating_add",
    "saturating_mul_shift",
    "reciprocal_divide",
    "accumulator_width",
    "check_accumulator_width",
    "validate_array",
]


@dataclass(frozen=True)
class QFormat:
    """Signed fixed-point format: ``width`` total bits, ``frac_bits`` fractional."""
    width: int = DEFAULT_DATA_WIDTH
    frac_bits: int = DEFAULT_FRAC_BITS

    def __post_init__(self):
        if self.width < 2:
            raise ValueError(f"width must be >= 2, got {self.width}")
        if self.frac_bits < 0 or self.frac_bits >= self.width:
            raise ValueError(
                f"frac_bits must be in [0, {self.width - 1}], got {self.frac_bits}"
            )

    @property
    def min_value(self) -> int:
        return -(1 << (self.width - 1))

    @property
    def max_value(self) -> int:
        return (1 << (self.width - 1)) - 1

    @property
    def one(self) -> int:
        """Fixed-point encoding of 1.0."""
        return 1 << self.frac_bits

    def is_saturated(self, values) -> bool:
        """True if any element sits on either saturation bound."""
        arr = np.asarray(values)
        return bool(np.any((arr == self.min_value) | (arr == self.max_value)))


def _as_int(values):
    if isinstance(values, (int, np.integer)):
        return int(values)
    return np.asarray(values, dtype=np.int64)


def validate_array(name: str, values, fmt: QFormat, shape=None) -> np.ndarray:
    """Check that ``values`` are W-bit integers (of ``shape``, if given).

    Used for parameters and for every tensor entering an engine: floats are
    rejected rather than truncated, out-of-range integers rather than
    clamped.

    Returns:
        The values as a fresh int64 array.

    Raises:
        ValueError: On shape mismatch, non-integer dtype or values outside
            the format's range.
    """
    arr = np.asarray(values)
    if shape is not None and arr.shape != tuple(shape):
        raise ValueError(f"{name}: expected shape {tuple(shape)}, got {arr.shape}")
    if arr.size and not np.issubdtype(arr.dtype, np.integer):
        raise ValueError(f"{name}: expected integer Q({fmt.width},{fmt.frac_bits}) "
                         f"values, got dtype {arr.dtype}")
    arr = arr.astype(np.int64)
    if arr.size and (arr.min() < fmt.min_value or arr.max() > fmt.max_value):
        raise ValueError(
            f"{name}: values must lie in [{fmt.min_value}, {fmt.max_value}], "
            f"got [{arr.min()}, {arr.max()}]"
        )
    return arr


def saturate(values, fmt: QFormat):
    """Clamp to ``[-2**(W-1), 2**(W-1) - 1]``.

    Python ints come back as ints, arrays as int64 arrays.
    """
    values = _as_int(values)
    if isinstance(values, int):
        return min(max(values, fmt.min_value), fmt.max_value)
    return np.clip(values, fmt.min_value, fmt.max_value)


def saturating_add(a, b, fmt: QFormat):
    """Add two Q(W,F) operands and clamp the sum."""
    return saturate(_as_int(a) + _as_int(b), fmt)


def saturating_mul_shift(a, b, shift: int, fmt: QFormat):
    """Multiply into a 2W-bit product, shift right arithmetically, clamp.

    ``>>`` on negative operands floors, matching an arithmetic shifter.
    """
    product = _as_int(a) * _as_int(b)
    return saturate(product >> shift, fmt)


def reciprocal_divide(numerator, denominator: int, extra_shift: int = 0):
    """Round ``numerator / (denominator * 2**extra_shift)`` to the nearest integer.

    Uses the reciprocal-multiply pair for ``denominator`` when one is
    precomputed, otherwise integer division.  The result is not saturated.

    Args:
        numerator: int or int64 array.
        denominator: Positive constant divisor.
        extra_shift: Additional power-of-two divisor folded into the shift,
            used to realign a 2F-scaled product back to F fractional bits.

    Returns:
        Quotient with the same kind (int or array) as ``numerator``.
    """
    if denominator <= 0:
        raise ValueError(f"denominator must be > 0, got {denominator}")
    numerator = _as_int(numerator)
    pair = RECIPROCAL_TABLE.get(denominator)
    if pair is not None:
        reciprocal, shift = pair
        shift += extra_shift
        return (numerator * reciprocal + (1 << (shift - 1))) >> shift
    divisor = denominator << extra_shift
    # floor(n / d + 1/2), the same rounding as the reciprocal path
    return (2 * numerator + divisor) // (2 * divisor)


def accumulator_width(fmt: QFormat, reduction_count: int,
                      margin: int = ACCUMULATOR_MARGIN) -> int:
    """Bits needed to sum ``reduction_count`` 2W-bit products without overflow."""
    if reduction_count < 1:
        raise ValueError(f"reduction_count must be >= 1, got {reduction_count}")
    return 2 * fmt.width + math.ceil(math.log2(reduction_count)) + margin


def check_accumulator_width(fmt: QFormat, reduction_count: int) -> int:
    """Return the accumulator width, rejecting widths an int64 cannot hold."""
    width = accumulator_width(fmt, reduction_count)
    if width > MAX_ACCUMULATOR_WIDTH:
        raise ValueError(
            f"Accumulator needs {width} bits for Q({fmt.width},{fmt.frac_bits}) "
            f"over {reduction_count} terms; at most {MAX_ACCUMULATOR_WIDTH} supported"
        )
    return width
