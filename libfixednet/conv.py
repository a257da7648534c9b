"""Bias-free fixed-point convolution engines.

All three engines share a two-stage pipeline:

- stage 0 accumulates the receptive field into a widened accumulator
  (``2W + ceil(log2(n)) + 6`` bits, held in int64);
- stage 1 shifts right by F and saturates back to W bits.

The engines have no bias term; the fused batch-norm stage after every
convolution supplies it.

Tensors are ``(H, W, C)``.  The per-element loops of the hardware are
expressed as per-tap NumPy slices, which computes the same sums.
"""

from typing import Tuple

import numpy as np

from ._base import StagedPipeline
from .fixed_point import QFormat, check_accumulator_width, saturate, validate_array

__all__ = ["Conv2d", "DepthwiseConv2d", "PointwiseConv2d", "conv_output_size"]


def conv_output_size(size: int, kernel_size: int, stride: int, padding: int) -> int:
    return (size + 2 * padding - kernel_size) // stride + 1


class _ConvEngine(StagedPipeline):
    """Shared construction checks, parameter storage and requantize stage."""

    def __init__(self, in_channels: int, out_channels: int, height: int, width: int,
                 kernel_size: int, stride: int, padding: int, fmt: QFormat,
                 weight_shape: Tuple[int, ...], reduction_count: int, name: str) -> None:
        for label, value in (("in_channels", in_channels), ("out_channels", out_channels),
                             ("height", height), ("width", width),
                             ("kernel_size", kernel_size), ("stride", stride)):
            if value <= 0:
                raise ValueError(f"{name}: {label} must be > 0, got {value}")
        if padding < 0:
            raise ValueError(f"{name}: padding must be >= 0, got {padding}")
        if kernel_size > height + 2 * padding or kernel_size > width + 2 * padding:
            raise ValueError(
                f"{name}: kernel {kernel_size}x{kernel_size} is larger than the padded "
                f"input {height + 2 * padding}x{width + 2 * padding}"
            )

        self.in_channels = in_channels
        self.out_channels = out_channels
        self.height = height
        self.width = width
        self.kernel_size = kernel_size
        self.stride = stride
        self.padding = padding
        self.fmt = fmt
        self.out_height = conv_output_size(height, kernel_size, stride, padding)
        self.out_width = conv_output_size(width, kernel_size, stride, padding)
        self.accumulator_width = check_accumulator_width(fmt, reduction_count)
        self.weight = np.zeros(weight_shape, dtype=np.int64)
        super().__init__([self._accumulate, self._requantize], name=name)

    @property
    def input_shape(self) -> Tuple[int, int, int]:
        return (self.height, self.width, self.in_channels)

    @property
    def output_shape(self) -> Tuple[int, int, int]:
        return (self.out_height, self.out_width, self.out_channels)

    def set_weights(self, weight) -> None:
        # In place: the weight loader holds a view of this array.
        self.weight[...] = validate_array(
            f"{self.name}.weight", weight, self.fmt, self.weight.shape)

    def parameters(self):
        return {"weight": self.weight}

    def _check_input(self, x) -> np.ndarray:
        return validate_array(f"{self.name} input", x, self.fmt, self.input_shape)

    def _accumulate(self, x) -> np.ndarray:
        raise NotImplementedError

    def _requantize(self, acc) -> np.ndarray:
        return saturate(acc >> self.fmt.frac_bits, self.fmt)


class Conv2d(_ConvEngine):
    """Full K x K convolution, weights ``[out_ch][in_ch][kh][kw]``.

    Padding is handled by bounds arithmetic: for each tap only the output
    positions whose input coordinate falls inside the image are updated,
    so out-of-bounds taps contribute zero without a padded copy.
    """

    def __init__(self, in_channels: int, out_channels: int, height: int, width: int,
                 kernel_size: int = 3, stride: int = 1, padding: int = 0,
                 fmt: QFormat = QFormat(), name: str = "conv") -> None:
        super().__init__(in_channels, out_channels, height, width, kernel_size,
                         stride, padding, fmt,
                         (out_channels, in_channels, kernel_size, kernel_size),
                         in_channels * kernel_size * kernel_size, name)

    def _tap_range(self, tap: int, size: int, out_size: int) -> Tuple[int, int]:
        """Output index range [lo, hi) whose input ``o*s - p + tap`` is in bounds."""
        s, p = self.stride, self.padding
        lo = max(0, -((tap - p) // s))
        hi = min(out_size, (size - 1 + p - tap) // s + 1)
        return lo, hi

    def _accumulate(self, x) -> np.ndarray:
        x = self._check_input(x)
        s, p = self.stride, self.padding
        acc = np.zeros(self.output_shape, dtype=np.int64)
        for ky in range(self.kernel_size):
            oy0, oy1 = self._tap_range(ky, self.height, self.out_height)
            if oy0 >= oy1:
                continue
            iy0 = oy0 * s - p + ky
            rows = slice(iy0, iy0 + (oy1 - oy0 - 1) * s + 1, s)
            for kx in range(self.kernel_size):
                ox0, ox1 = self._tap_range(kx, self.width, self.out_width)
                if ox0 >= ox1:
                    continue
                ix0 = ox0 * s - p + kx
                cols = slice(ix0, ix0 + (ox1 - ox0 - 1) * s + 1, s)
                acc[oy0:oy1, ox0:ox1, :] += x[rows, cols, :] @ self.weight[:, :, ky, kx].T
        return acc


class DepthwiseConv2d(_ConvEngine):
    """Per-channel K x K convolution, weights ``[ch][1][kh][kw]``.

    The input is first copied into an explicit zero-padded buffer; the
    sliding-window sum then needs no bounds checks.
    """

    def __init__(self, channels: int, height: int, width: int,
                 kernel_size: int = 3, stride: int = 1, padding: int = 0,
                 fmt: QFormat = QFormat(), name: str = "depthwise") -> None:
        super().__init__(channels, channels, height, width, kernel_size,
                         stride, padding, fmt,
                         (channels, 1, kernel_size, kernel_size),
                         kernel_size * kernel_size, name)

    def _accumulate(self, x) -> np.ndarray:
        x = self._check_input(x)
        p, s = self.padding, self.stride
        padded = np.pad(x, ((p, p), (p, p), (0, 0)), mode="constant", constant_values=0)
        row_span = s * (self.out_height - 1) + 1
        col_span = s * (self.out_width - 1) + 1
        acc = np.zeros(self.output_shape, dtype=np.int64)
        for ky in range(self.kernel_size):
            for kx in range(self.kernel_size):
                window = padded[ky:ky + row_span:s, kx:kx + col_span:s, :]
                acc += window * self.weight[:, 0, ky, kx]
        return acc


class PointwiseConv2d(_ConvEngine):
    """1 x 1 convolution: a per-pixel matrix-vector product, weights ``[out_ch][in_ch]``."""

    def __init__(self, in_channels: int, out_channels: int, height: int, width: int,
                 fmt: QFormat = QFormat(), name: str = "pointwise") -> None:
        super().__init__(in_channels, out_channels, height, width, 1, 1, 0, fmt,
                         (out_channels, in_channels), in_channels, name)

    def _accumulate(self, x) -> np.ndarray:
        x = self._check_input(x)
        return x @ self.weight.T
