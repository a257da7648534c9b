"""MobileNetV3-Small-shaped network built from fixed-point pipeline stages.

Usage::

    from libfixednet import Network, WeightLoader

    net = Network()                       # 224x224x3 -> 1000 scores, Q(8,4)
    loader = WeightLoader(net)
    loader.load_parameters(params)        # {name: int array}
    scores = net.infer(image)             # int64 (1000,)

    # Or drive the clock directly, one image per tick:
    for tick, image in enumerate(images):
        valid, scores = net.step(True, image)

Data flows strictly forward::

    image -> stem conv/BN/hswish -> 11 inverted-residual blocks
          -> 1x1 conv/BN/hswish -> global pool -> linear/BN/hswish -> linear

Every stage is a fixed-latency pipeline, so the whole network has a
statically known latency (``Network.latency``); results come out in the
order images went in.
"""

import sys
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, Optional, Tuple

import numpy as np

from ._base import Chain, PipelineComponent
from .activation import Activation
from .batchnorm import FusedBatchNorm
from .conv import Conv2d, PointwiseConv2d
from .fixed_point import QFormat, validate_array
from .inverted_residual import BlockConfig, InvertedResidual
from .linear import Linear
from .pooling import AdaptiveAvgPool

__all__ = ["Network", "NetworkConfig", "OverflowMonitor", "MOBILENET_V3_SMALL_BLOCKS"]

# kernel, expand, out, SE, activation, stride
MOBILENET_V3_SMALL_BLOCKS: Tuple[BlockConfig, ...] = (
    BlockConfig(3, 16, 16, True, "relu", 2),
    BlockConfig(3, 72, 24, False, "relu", 2),
    BlockConfig(3, 88, 24, False, "relu", 1),
    BlockConfig(5, 96, 40, True, "hswish", 2),
    BlockConfig(5, 240, 40, True, "hswish", 1),
    BlockConfig(5, 240, 40, True, "hswish", 1),
    BlockConfig(5, 120, 48, True, "hswish", 1),
    BlockConfig(5, 144, 48, True, "hswish", 1),
    BlockConfig(5, 288, 96, True, "hswish", 2),
    BlockConfig(5, 576, 96, True, "hswish", 1),
    BlockConfig(5, 576, 96, True, "hswish", 1),
)


@dataclass(frozen=True)
class NetworkConfig:
    """Construction-time shape of the network.

    Defaults describe MobileNetV3-Small on 224x224 RGB input.
    """
    input_size: int = 224
    in_channels: int = 3
    stem_channels: int = 16
    stem_stride: int = 2
    blocks: Tuple[BlockConfig, ...] = MOBILENET_V3_SMALL_BLOCKS
    last_channels: int = 576
    hidden_features: int = 1024
    num_classes: int = 1000
    fmt: QFormat = QFormat()


class OverflowMonitor:
    """Counts stage outputs that hit a saturation bound.

    Informational only: one increment per valid output tensor containing at
    least one element equal to the format's minimum or maximum, and
    ``last_stage`` names the most recent such stage.
    """

    def __init__(self, fmt: QFormat) -> None:
        self.fmt = fmt
        self.count = 0
        self.last_stage: Optional[str] = None

    def observe(self, stage: str, data) -> None:
        if self.fmt.is_saturated(data):
            self.count += 1
            self.last_stage = stage

    def reset(self) -> None:
        self.count = 0
        self.last_stage = None


class Network(PipelineComponent):
    """Full inference pipeline over one ``(S, S, C_in)`` image per token.

    Args:
        config: ``NetworkConfig``; defaults to MobileNetV3-Small at 224x224.
        verbose: Print per-stage min/max of every valid output to stderr.
    """

    def __init__(self, config: Optional[NetworkConfig] = None,
                 verbose: bool = False) -> None:
        if config is None:
            config = NetworkConfig()
        if not config.blocks:
            raise ValueError("NetworkConfig.blocks must contain at least one block")
        self.config = config
        self.fmt = fmt = config.fmt
        self.name = "network"
        self._verbose = verbose

        size = config.input_size
        self.stem = Conv2d(config.in_channels, config.stem_channels, size, size,
                           kernel_size=3, stride=config.stem_stride, padding=1,
                           fmt=fmt, name="stem")
        self.stem_bn = FusedBatchNorm(config.stem_channels, fmt, name="stem_bn")
        self.stem_act = Activation("hswish", fmt, name="stem_act")

        channels = config.stem_channels
        height, width = self.stem.out_height, self.stem.out_width
        self.blocks = []
        for i, block_config in enumerate(config.blocks):
            block = InvertedResidual(channels, height, width, block_config, fmt,
                                     name=f"blocks.{i}")
            self.blocks.append(block)
            channels = block.out_channels
            height, width = block.out_height, block.out_width

        self.last_conv = PointwiseConv2d(channels, config.last_channels, height, width,
                                         fmt, name="last_conv")
        self.last_bn = FusedBatchNorm(config.last_channels, fmt, name="last_bn")
        self.last_act = Activation("hswish", fmt, name="last_act")
        self.pool = AdaptiveAvgPool(height, width, config.last_channels, 1, fmt,
                                    name="pool")
        self.classifier_fc = Linear(config.last_channels, config.hidden_features, fmt,
                                    name="classifier_fc")
        self.classifier_bn = FusedBatchNorm(config.hidden_features, fmt,
                                            name="classifier_bn")
        self.classifier_act = Activation("hswish", fmt, name="classifier_act")
        self.head = Linear(config.hidden_features, config.num_classes, fmt, name="head")

        self._pipeline = Chain(
            [self.stem, self.stem_bn, self.stem_act, *self.blocks,
             self.last_conv, self.last_bn, self.last_act, self.pool,
             self.classifier_fc, self.classifier_bn, self.classifier_act, self.head],
            name="network", observer=self._observe,
        )
        self.monitor = OverflowMonitor(fmt)
        self.tick_count = 0
        self._intermediates: Dict[str, np.ndarray] = {}

    # ── Clock ─────────────────────────────────────────────────────────────

    @property
    def latency(self) -> int:
        return self._pipeline.latency

    @property
    def in_flight(self) -> int:
        return self._pipeline.in_flight

    @property
    def stages(self):
        """Top-level pipeline members in dataflow order."""
        return self._pipeline.components

    def step(self, valid_in: bool, data_in=None):
        """Advance every stage by one tick (the global clock).

        A rejected input raises without advancing any stage or the tick count.
        """
        out = self._pipeline.step(valid_in, data_in)
        self.tick_count += 1
        return out

    def reset(self) -> None:
        """Drop every in-flight token and clear instrumentation."""
        self._pipeline.reset()
        self.monitor.reset()
        self.tick_count = 0
        self._intermediates.clear()

    def snapshot(self):
        return self._pipeline.snapshot()

    def restore(self, state) -> None:
        self._pipeline.restore(state)

    # ── Inference helpers ─────────────────────────────────────────────────

    def infer(self, image) -> np.ndarray:
        """Run one image through the pipeline and return its class scores."""
        return self(image)

    def stream(self, images: Iterable) -> Iterator[np.ndarray]:
        """Accept one image per tick and yield results in input order.

        Raises:
            ValueError: If tokens are already in flight; their results would
                be indistinguishable from those of ``images``.
        """
        if self.in_flight:
            raise ValueError(
                f"stream() needs an idle pipeline, {self.in_flight} token(s) in flight; "
                f"drain with step(False) or call reset() first"
            )
        return self._stream(images)

    def _stream(self, images: Iterable) -> Iterator[np.ndarray]:
        pending = 0
        for image in images:
            valid, scores = self.step(True, image)
            pending += 1
            if valid:
                pending -= 1
                yield scores
        while pending:
            valid, scores = self.step(False)
            if valid:
                pending -= 1
                yield scores

    # ── Parameters ────────────────────────────────────────────────────────

    def parameters(self) -> "OrderedDict[str, np.ndarray]":
        """All parameter arrays by dotted name, in dataflow order.

        The arrays are the live storage of the engines; writing into them
        (as ``WeightLoader`` does) changes the next inference.
        """
        params = OrderedDict()
        layers = [self.stem, self.stem_bn, *self.blocks, self.last_conv, self.last_bn,
                  self.classifier_fc, self.classifier_bn, self.head]
        for layer in layers:
            for key, value in layer.parameters().items():
                params[f"{layer.name}.{key}"] = value
        return params

    def load_parameters(self, mapping: Dict[str, np.ndarray]) -> None:
        """Copy named Q(W,F) arrays into the engines after validating them.

        Raises:
            ValueError: On unknown names, wrong shapes or out-of-range values.
        """
        params = self.parameters()
        unknown = [name for name in mapping if name not in params]
        if unknown:
            raise ValueError(f"Unknown parameter names: {unknown[:5]}")
        for name, values in mapping.items():
            target = params[name]
            target[...] = validate_array(name, values, self.fmt, target.shape)

    # ── Instrumentation ───────────────────────────────────────────────────

    def _observe(self, stage: str, data) -> None:
        self.monitor.observe(stage, data)
        self._intermediates[stage] = data
        if self._verbose:
            arr = np.asarray(data)
            print(f"[libfixednet] tick {self.tick_count} {stage}: shape={arr.shape} "
                  f"min={arr.min()} max={arr.max()}", file=sys.stderr)

    def get_intermediates(self) -> Dict[str, np.ndarray]:
        """Most recent valid output of every top-level stage, by stage name."""
        return dict(self._intermediates)
