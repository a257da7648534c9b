"""Fully-connected engine: dense matrix-vector product with bias.

Four pipeline stages:

0. register the input vector and form the widened dot product of every
   weight row with it;
1. add the sign-extended bias, aligned to the product's 2F scale;
2. shift right by F and saturate to W bits;
3. output register.

Used for the classifier head and for both transforms inside
squeeze-and-excite.
"""

import numpy as np

from ._base import StagedPipeline
from .fixed_point import QFormat, check_accumulator_width, saturate, validate_array

__all__ = ["Linear"]


class Linear(StagedPipeline):
    """``y = saturate((W @ x + (b << F)) >> F)`` with weights ``[out][in]``.

    Args:
        in_features: Input vector length.
        out_features: Output vector length.
        fmt: Fixed-point format of inputs, weights, bias and outputs.
        name: Diagnostic label.
    """

    def __init__(self, in_features: int, out_features: int,
                 fmt: QFormat = QFormat(), name: str = "linear") -> None:
        if in_features <= 0 or out_features <= 0:
            raise ValueError(
                f"{name}: in_features and out_features must be > 0, "
                f"got {in_features}, {out_features}"
            )
        self.in_features = in_features
        self.out_features = out_features
        self.fmt = fmt
        self.accumulator_width = check_accumulator_width(fmt, in_features)
        self.weight = np.zeros((out_features, in_features), dtype=np.int64)
        self.bias = np.zeros(out_features, dtype=np.int64)
        super().__init__(
            [self._dot, self._add_bias, self._requantize, self._output], name=name)

    def set_parameters(self, weight, bias) -> None:
        self.weight[...] = validate_array(
            f"{self.name}.weight", weight, self.fmt, self.weight.shape)
        self.bias[...] = validate_array(
            f"{self.name}.bias", bias, self.fmt, self.bias.shape)

    def parameters(self):
        return {"weight": self.weight, "bias": self.bias}

    def _dot(self, x) -> np.ndarray:
        x = validate_array(f"{self.name} input", x, self.fmt, (self.in_features,))
        return self.weight @ x

    def _add_bias(self, acc) -> np.ndarray:
        return acc + (self.bias << self.fmt.frac_bits)

    def _requantize(self, acc) -> np.ndarray:
        return saturate(acc >> self.fmt.frac_bits, self.fmt)

    def _output(self, y) -> np.ndarray:
        return y
