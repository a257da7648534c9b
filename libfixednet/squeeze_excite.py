"""Squeeze-and-excite: rescale a tensor by a gate computed from its own mean.

::

    x --+--> pool -> fc_reduce -> bn -> relu -> fc_expand -> bn -> hsigmoid --+
        |                                                                     v
        +------------------------- delay line --------------------------> scale -> y

``scale`` multiplies every channel of the *original* tensor by its gate and
shifts right by F.  It does not saturate: the gate lies in ``[0, 1.0]`` so
the product of two W-bit values already fits after the shift.
"""

from collections import OrderedDict

import numpy as np

from ._base import Chain, DelayLine, PipelineComponent, StagedPipeline
from .activation import Activation
from .batchnorm import FusedBatchNorm
from .fixed_point import QFormat
from .linear import Linear
from .pooling import AdaptiveAvgPool

__all__ = ["SqueezeExcite"]


class SqueezeExcite(PipelineComponent):
    """Channel-attention sub-pipeline over an ``(H, W, C)`` tensor.

    Latency is the gate path (pool 2 + linear 4 + bn 1 + relu 1 + linear 4
    + bn 1 + hsigmoid 1 = 14) plus one scale stage.

    Args:
        height, width, channels: Shape of the tensor being rescaled.
        squeeze_channels: Width of the reduced hidden vector.
        fmt: Fixed-point format.
        name: Diagnostic label.
    """

    def __init__(self, height: int, width: int, channels: int, squeeze_channels: int,
                 fmt: QFormat = QFormat(), name: str = "se") -> None:
        if squeeze_channels <= 0:
            raise ValueError(f"{name}: squeeze_channels must be > 0, got {squeeze_channels}")
        self.name = name
        self.channels = channels
        self.squeeze_channels = squeeze_channels
        self.fmt = fmt

        self.pool = AdaptiveAvgPool(height, width, channels, 1, fmt, name="pool")
        self.fc_reduce = Linear(channels, squeeze_channels, fmt, name="fc_reduce")
        self.bn_reduce = FusedBatchNorm(squeeze_channels, fmt, name="bn_reduce")
        self.relu = Activation("relu", fmt, name="relu")
        self.fc_expand = Linear(squeeze_channels, channels, fmt, name="fc_expand")
        self.bn_expand = FusedBatchNorm(channels, fmt, name="bn_expand")
        self.hsigmoid = Activation("hsigmoid", fmt, name="hsigmoid")

        self._gate = Chain([self.pool, self.fc_reduce, self.bn_reduce, self.relu,
                            self.fc_expand, self.bn_expand, self.hsigmoid], name="gate")
        self._skip = DelayLine(self._gate.latency, name="skip")
        self._scale = StagedPipeline([self._rescale], name="scale")

    @property
    def latency(self) -> int:
        return self._gate.latency + self._scale.latency

    @property
    def in_flight(self) -> int:
        return self._gate.in_flight + self._scale.in_flight

    def step(self, valid_in: bool, data_in=None):
        state = self.snapshot()
        try:
            gate_valid, gate = self._gate.step(valid_in, data_in)
            skip_valid, original = self._skip.step(valid_in, data_in)
            if gate_valid != skip_valid:
                raise RuntimeError(f"{self.name}: gate and skip paths out of step")
            return self._scale.step(gate_valid, (original, gate))
        except Exception:
            self.restore(state)
            raise

    def reset(self) -> None:
        self._gate.reset()
        self._skip.reset()
        self._scale.reset()

    def snapshot(self):
        return (self._gate.snapshot(), self._skip.snapshot(), self._scale.snapshot())

    def restore(self, state) -> None:
        gate, skip, scale = state
        self._gate.restore(gate)
        self._skip.restore(skip)
        self._scale.restore(scale)

    def parameters(self):
        params = OrderedDict()
        for layer in (self.fc_reduce, self.bn_reduce, self.fc_expand, self.bn_expand):
            for key, value in layer.parameters().items():
                params[f"{layer.name}.{key}"] = value
        return params

    def _rescale(self, operands):
        x, gate = operands
        return (np.asarray(x, dtype=np.int64) * gate) >> self.fmt.frac_bits
