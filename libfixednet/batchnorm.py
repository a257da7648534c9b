"""Fused batch-norm: a per-channel affine map applied in one stage.

The scale and shift are folded offline (see ``_quantize.fuse_batchnorm``);
this unit never sees running statistics.
"""

import numpy as np

from ._base import StagedPipeline
from .fixed_point import QFormat, saturate, validate_array

__all__ = ["FusedBatchNorm"]


class FusedBatchNorm(StagedPipeline):
    """``y = saturate(((x * effective_weight[c]) >> F) + effective_bias[c])``.

    Works on ``(H, W, C)`` tensors and ``(C,)`` vectors alike; the channel
    is always the last axis.  Parameters default to the identity map
    (weight 1.0, bias 0).

    Args:
        channels: Number of channels C.
        fmt: Fixed-point format.
        name: Diagnostic label.
    """

    def __init__(self, channels: int, fmt: QFormat, name: str = "bn") -> None:
        if channels <= 0:
            raise ValueError(f"channels must be > 0, got {channels}")
        self.channels = channels
        self.fmt = fmt
        self.effective_weight = np.full(channels, min(fmt.one, fmt.max_value),
                                        dtype=np.int64)
        self.effective_bias = np.zeros(channels, dtype=np.int64)
        super().__init__([self._apply], name=name)

    def set_parameters(self, effective_weight, effective_bias) -> None:
        # Copy in place: the weight loader holds views of these arrays.
        self.effective_weight[...] = validate_array(
            f"{self.name}.effective_weight", effective_weight, self.fmt, (self.channels,))
        self.effective_bias[...] = validate_array(
            f"{self.name}.effective_bias", effective_bias, self.fmt, (self.channels,))

    def parameters(self):
        return {"effective_weight": self.effective_weight,
                "effective_bias": self.effective_bias}

    def _apply(self, x):
        if np.shape(x)[-1:] != (self.channels,):
            raise ValueError(
                f"{self.name}: expected {self.channels} channels, got shape {np.shape(x)}"
            )
        x = validate_array(f"{self.name} input", x, self.fmt)
        scaled = (x * self.effective_weight) >> self.fmt.frac_bits
        return saturate(scaled + self.effective_bias, self.fmt)
