"""Shared constants for the libfixednet package.

Values fixed by the fixed-point datapath rather than by any single engine.
"""

# Default Q(W,F) format: 8-bit signed words with 4 fractional bits.
DEFAULT_DATA_WIDTH = 8
DEFAULT_FRAC_BITS = 4

# Guard bits added on top of 2W + ceil(log2(n)) for every accumulator.
ACCUMULATOR_MARGIN = 6

# Accumulators are held in int64; one bit is the sign.
MAX_ACCUMULATOR_WIDTH = 63

# Reciprocal-multiply division constants: denominator -> (reciprocal, shift),
# with reciprocal = round(2**shift / denominator).  Denominators are the
# hswish/hsigmoid divisor and the 7x7 .. 112x112 spatial pool sizes.
RECIPROCAL_TABLE = {
    6: (10923, 16),
    49: (21400, 20),
    196: (21400, 22),
    784: (21400, 24),
    3136: (21400, 26),
    12544: (21400, 28),
}
