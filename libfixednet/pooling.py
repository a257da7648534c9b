"""Global / adaptive average pooling.

Stage 0 sums each pooling bin per channel into a widened accumulator;
stage 1 divides by the bin's element count with the reciprocal multiply
(keyed on the count, e.g. 49 for a 7x7 map) and saturates to W bits.
Counts without a precomputed reciprocal use rounded integer division.
"""

from typing import List, Tuple

import numpy as np

from ._base import StagedPipeline
from .fixed_point import (
    QFormat,
    check_accumulator_width,
    reciprocal_divide,
    saturate,
    validate_array,
)

__all__ = ["AdaptiveAvgPool", "adaptive_bins"]


def adaptive_bins(size: int, out_size: int) -> List[Tuple[int, int]]:
    """Bin ``i`` spans ``[floor(i*size/out), ceil((i+1)*size/out))``."""
    return [(i * size // out_size, -(-(i + 1) * size // out_size))
            for i in range(out_size)]


class AdaptiveAvgPool(StagedPipeline):
    """Average pooling to a fixed output grid (latency 2).

    With ``output_size == 1`` (the only case the network uses) the output is
    a ``(C,)`` vector; otherwise it is an ``(oh, ow, C)`` grid.

    Args:
        height, width, channels: Input tensor shape.
        output_size: int or ``(oh, ow)``.
        fmt: Fixed-point format.
        name: Diagnostic label.
    """

    def __init__(self, height: int, width: int, channels: int, output_size=1,
                 fmt: QFormat = QFormat(), name: str = "pool") -> None:
        if isinstance(output_size, int):
            output_size = (output_size, output_size)
        out_h, out_w = output_size
        if min(height, width, channels) <= 0:
            raise ValueError(
                f"{name}: input shape must be positive, got ({height}, {width}, {channels})"
            )
        if not (0 < out_h <= height and 0 < out_w <= width):
            raise ValueError(
                f"{name}: output size {output_size} must be within the input "
                f"size ({height}, {width})"
            )
        self.height = height
        self.width = width
        self.channels = channels
        self.output_size = (out_h, out_w)
        self.fmt = fmt
        self._row_bins = adaptive_bins(height, out_h)
        self._col_bins = adaptive_bins(width, out_w)
        largest_bin = (max(e - s for s, e in self._row_bins)
                       * max(e - s for s, e in self._col_bins))
        self.accumulator_width = check_accumulator_width(fmt, largest_bin)
        super().__init__([self._accumulate, self._divide], name=name)

    @property
    def is_global(self) -> bool:
        return self.output_size == (1, 1)

    def _accumulate(self, x):
        x = validate_array(f"{self.name} input", x, self.fmt,
                           (self.height, self.width, self.channels))
        sums = np.zeros(self.output_size + (self.channels,), dtype=np.int64)
        for i, (r0, r1) in enumerate(self._row_bins):
            for j, (c0, c1) in enumerate(self._col_bins):
                sums[i, j] = x[r0:r1, c0:c1, :].sum(axis=(0, 1))
        return sums

    def _divide(self, sums):
        out = np.zeros_like(sums)
        for i, (r0, r1) in enumerate(self._row_bins):
            for j, (c0, c1) in enumerate(self._col_bins):
                count = (r1 - r0) * (c1 - c0)
                out[i, j] = reciprocal_divide(sums[i, j], count)
        out = saturate(out, self.fmt)
        return out[0, 0] if self.is_global else out
