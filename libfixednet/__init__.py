"""libfixednet: cycle-level fixed-point MobileNetV3-Small inference pipeline."""

from .fixed_point import QFormat
from .activation import Activation, ActivationKind
from .batchnorm import FusedBatchNorm
from .conv import Conv2d, DepthwiseConv2d, PointwiseConv2d
from .linear import Linear
from .pooling import AdaptiveAvgPool
from .squeeze_excite import SqueezeExcite
from .inverted_residual import BlockConfig, InvertedResidual, ShortcutKind
from .network import Network, NetworkConfig, OverflowMonitor, MOBILENET_V3_SMALL_BLOCKS
from .weight_loader import WeightLoader

__all__ = ["QFormat", "Activation", "ActivationKind", "FusedBatchNorm", "Conv2d",
           "DepthwiseConv2d", "PointwiseConv2d", "Linear", "AdaptiveAvgPool",
           "SqueezeExcite", "BlockConfig", "InvertedResidual", "ShortcutKind",
           "Network", "NetworkConfig", "OverflowMonitor", "MOBILENET_V3_SMALL_BLOCKS",
           "WeightLoader"]
