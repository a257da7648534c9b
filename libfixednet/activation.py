"""Piecewise activation functions in Q(W,F) and the activation stage.

All four functions are total over the representable input range:

- ``relu(x)     = max(x, 0)``
- ``relu6(x)    = clamp(x, 0, 6 * 2**F)``
- ``hswish(x)   = saturate(x * relu6(x + 3 * 2**F) / 6 >> F)``
- ``hsigmoid(x) = clamp(relu6(x + 3 * 2**F) / 6, 0, 2**F)``

The ReLU6 clamp of ``x + 3`` happens in fixed point before the multiply,
and the divide-by-6 is the reciprocal multiply from ``fixed_point``.
"""

from enum import Enum

import numpy as np

from ._base import StagedPipeline
from ._constants import MAX_ACCUMULATOR_WIDTH, RECIPROCAL_TABLE
from .fixed_point import QFormat, reciprocal_divide, saturate, validate_array

__all__ = ["ActivationKind", "Activation", "relu", "relu6", "hswish", "hsigmoid",
           "product_width"]


def relu(x, fmt: QFormat):
    return saturate(np.maximum(x, 0), fmt)


def relu6(x, fmt: QFormat):
    # 6.0 is not representable when F > W - 4
    return saturate(np.clip(x, 0, 6 * fmt.one), fmt)


def _offset_relu6(x, fmt: QFormat):
    """relu6(x + 3) computed before saturation to W bits."""
    return np.clip(np.asarray(x, dtype=np.int64) + 3 * fmt.one, 0, 6 * fmt.one)


def hswish(x, fmt: QFormat):
    """Hard swish: multiply by relu6(x + 3), then divide by 6 and realign."""
    x = np.asarray(x, dtype=np.int64)
    product = x * _offset_relu6(x, fmt)
    return saturate(reciprocal_divide(product, 6, extra_shift=fmt.frac_bits), fmt)


def hsigmoid(x, fmt: QFormat):
    """Hard sigmoid, always in ``[0, 1.0]`` regardless of the W-bit bounds."""
    gate = reciprocal_divide(_offset_relu6(x, fmt), 6)
    return np.clip(saturate(gate, fmt), 0, fmt.one)


class ActivationKind(Enum):
    RELU = "relu"
    RELU6 = "relu6"
    HSWISH = "hswish"
    HSIGMOID = "hsigmoid"


def product_width(fmt: QFormat) -> int:
    """Bits of the hswish intermediate ``x * relu6(x + 3) * reciprocal(6)``.

    W bits of ``x``, F + 3 bits of ``relu6`` (at most 6.0) and the
    reciprocal's ``shift - 2`` bits, plus one for the rounding add.
    """
    _, shift = RECIPROCAL_TABLE[6]
    return fmt.width + (fmt.frac_bits + 3) + (shift - 2) + 1


_FUNCTIONS = {
    ActivationKind.RELU: relu,
    ActivationKind.RELU6: relu6,
    ActivationKind.HSWISH: hswish,
    ActivationKind.HSIGMOID: hsigmoid,
}


class Activation(StagedPipeline):
    """Element-wise activation stage (latency 1).

    Args:
        kind: ``ActivationKind`` or its string value (``"relu"``,
            ``"relu6"``, ``"hswish"``, ``"hsigmoid"``).
        fmt: Fixed-point format of input and output.
        name: Diagnostic label.
    """

    def __init__(self, kind, fmt: QFormat, name: str = "") -> None:
        try:
            self.kind = ActivationKind(kind)
        except ValueError:
            raise ValueError(
                f"activation must be one of {[k.value for k in ActivationKind]}, "
                f"got {kind!r}"
            ) from None
        if self.kind in (ActivationKind.HSWISH, ActivationKind.HSIGMOID):
            width = product_width(fmt)
            if width > MAX_ACCUMULATOR_WIDTH:
                raise ValueError(
                    f"{self.kind.value} needs a {width}-bit intermediate for "
                    f"Q({fmt.width},{fmt.frac_bits}); at most {MAX_ACCUMULATOR_WIDTH} supported"
                )
        self.fmt = fmt
        self._fn = _FUNCTIONS[self.kind]
        super().__init__([self._apply], name=name or self.kind.value)

    def _apply(self, x):
        x = validate_array(f"{self.name} input", x, self.fmt)
        return np.asarray(self._fn(x, self.fmt), dtype=np.int64)
