"""Inverted-residual block: expand -> depthwise -> project, plus shortcut.

Main path::

    pointwise expand -> BN -> act -> depthwise(k, stride, pad=k//2) -> BN -> act
        -> pointwise project -> BN -> [squeeze-excite]

The shortcut is chosen once, at construction:

==========================================  ==========================
condition                                   shortcut
==========================================  ==========================
stride == 1 and in_channels == out_channels  IDENTITY (raw input)
stride == 1 and in_channels != out_channels  PROJECTION (1x1 conv + BN)
stride != 1                                  NONE (no residual add)
==========================================  ==========================

The shortcut path is padded with a delay line so both operands of the
saturating residual add belong to the same token.
"""

from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ._base import Chain, DelayLine, PipelineComponent, StagedPipeline
from .activation import Activation, ActivationKind
from .batchnorm import FusedBatchNorm
from .conv import DepthwiseConv2d, PointwiseConv2d
from .fixed_point import QFormat, saturating_add
from .squeeze_excite import SqueezeExcite

__all__ = ["BlockConfig", "ShortcutKind", "InvertedResidual",
           "select_shortcut", "make_divisible"]

_BLOCK_ACTIVATIONS = (ActivationKind.RELU, ActivationKind.HSWISH)


def make_divisible(v: float, divisor: int = 8, min_value: Optional[int] = None) -> int:
    """Round a channel count to a multiple of ``divisor``, losing at most 10%."""
    if min_value is None:
        min_value = divisor
    new_v = max(min_value, int(v + divisor / 2) // divisor * divisor)
    if new_v < 0.9 * v:
        new_v += divisor
    return new_v


@dataclass(frozen=True)
class BlockConfig:
    """Static configuration of one inverted-residual block."""
    kernel_size: int
    expand_channels: int
    out_channels: int
    use_se: bool
    activation: str   # "relu" or "hswish"
    stride: int


class ShortcutKind(Enum):
    IDENTITY = "identity"
    PROJECTION = "projection"
    NONE = "none"


def select_shortcut(in_channels: int, out_channels: int, stride: int) -> ShortcutKind:
    if stride != 1:
        return ShortcutKind.NONE
    if in_channels == out_channels:
        return ShortcutKind.IDENTITY
    return ShortcutKind.PROJECTION


class InvertedResidual(PipelineComponent):
    """One parameterized block of the network.

    Args:
        in_channels: Channels of the block input.
        height, width: Spatial size of the block input.
        config: ``BlockConfig`` for this block.
        fmt: Fixed-point format.
        name: Diagnostic label.
    """

    def __init__(self, in_channels: int, height: int, width: int, config: BlockConfig,
                 fmt: QFormat = QFormat(), name: str = "block") -> None:
        try:
            kind = ActivationKind(config.activation)
        except ValueError:
            kind = None
        if kind not in _BLOCK_ACTIVATIONS:
            raise ValueError(
                f"{name}: block activation must be 'relu' or 'hswish', "
                f"got {config.activation!r}"
            )
        self.name = name
        self.config = config
        self.fmt = fmt
        self.in_channels = in_channels
        self.height = height
        self.width = width

        exp, out, k = config.expand_channels, config.out_channels, config.kernel_size
        self.expand = PointwiseConv2d(in_channels, exp, height, width, fmt, name="expand")
        self.expand_bn = FusedBatchNorm(exp, fmt, name="expand_bn")
        self.expand_act = Activation(kind, fmt, name="expand_act")
        self.depthwise = DepthwiseConv2d(exp, height, width, k, config.stride, k // 2,
                                         fmt, name="depthwise")
        self.out_height = self.depthwise.out_height
        self.out_width = self.depthwise.out_width
        self.depthwise_bn = FusedBatchNorm(exp, fmt, name="depthwise_bn")
        self.depthwise_act = Activation(kind, fmt, name="depthwise_act")
        self.project = PointwiseConv2d(exp, out, self.out_height, self.out_width, fmt,
                                       name="project")
        self.project_bn = FusedBatchNorm(out, fmt, name="project_bn")
        self.se = None
        if config.use_se:
            self.se = SqueezeExcite(self.out_height, self.out_width, out,
                                    make_divisible(out // 4), fmt, name="se")

        stages = [self.expand, self.expand_bn, self.expand_act,
                  self.depthwise, self.depthwise_bn, self.depthwise_act,
                  self.project, self.project_bn]
        if self.se is not None:
            stages.append(self.se)
        self._main = Chain(stages, name="main")

        self.shortcut_kind = select_shortcut(in_channels, out, config.stride)
        self.shortcut_conv = None
        self.shortcut_bn = None
        if self.shortcut_kind is ShortcutKind.IDENTITY:
            self._shortcut = DelayLine(self._main.latency, name="shortcut")
        elif self.shortcut_kind is ShortcutKind.PROJECTION:
            self.shortcut_conv = PointwiseConv2d(in_channels, out, height, width, fmt,
                                                 name="shortcut")
            self.shortcut_bn = FusedBatchNorm(out, fmt, name="shortcut_bn")
            pad = self._main.latency - self.shortcut_conv.latency - self.shortcut_bn.latency
            self._shortcut = Chain([self.shortcut_conv, self.shortcut_bn,
                                    DelayLine(pad, name="shortcut_delay")],
                                   name="shortcut")
        else:
            self._shortcut = None
        self._add = (StagedPipeline([self._residual_add], name="residual_add")
                     if self._shortcut is not None else None)

    @property
    def out_channels(self) -> int:
        return self.config.out_channels

    @property
    def output_shape(self):
        return (self.out_height, self.out_width, self.config.out_channels)

    @property
    def main_path(self) -> Chain:
        return self._main

    @property
    def latency(self) -> int:
        return self._main.latency + (self._add.latency if self._add is not None else 0)

    @property
    def in_flight(self) -> int:
        count = self._main.in_flight
        if self._add is not None:
            count += self._add.in_flight
        return count

    def step(self, valid_in: bool, data_in=None):
        if self._shortcut is None:
            return self._main.step(valid_in, data_in)
        state = self.snapshot()
        try:
            main_valid, main = self._main.step(valid_in, data_in)
            short_valid, short = self._shortcut.step(valid_in, data_in)
            if main_valid != short_valid:
                raise RuntimeError(f"{self.name}: shortcut path out of step with main path")
            return self._add.step(main_valid, (main, short))
        except Exception:
            self.restore(state)
            raise

    def reset(self) -> None:
        self._main.reset()
        if self._shortcut is not None:
            self._shortcut.reset()
            self._add.reset()

    def snapshot(self):
        if self._shortcut is None:
            return (self._main.snapshot(),)
        return (self._main.snapshot(), self._shortcut.snapshot(), self._add.snapshot())

    def restore(self, state) -> None:
        self._main.restore(state[0])
        if self._shortcut is not None:
            self._shortcut.restore(state[1])
            self._add.restore(state[2])

    def parameters(self):
        layers = [self.expand, self.expand_bn, self.depthwise, self.depthwise_bn,
                  self.project, self.project_bn]
        if self.shortcut_conv is not None:
            layers += [self.shortcut_conv, self.shortcut_bn]
        params = OrderedDict()
        for layer in layers:
            for key, value in layer.parameters().items():
                params[f"{layer.name}.{key}"] = value
        if self.se is not None:
            for key, value in self.se.parameters().items():
                params[f"se.{key}"] = value
        return params

    def _residual_add(self, operands):
        main, shortcut = operands
        return saturating_add(main, shortcut, self.fmt)
