"""Float <-> fixed-point conversion and batch-norm fusion.

Used by tooling and tests to prepare parameters; the pipeline itself only
ever sees integers.
"""

import numpy as np

from .fixed_point import QFormat

__all__ = ["to_fixed", "to_float", "fuse_batchnorm"]


def to_fixed(values, fmt: QFormat) -> np.ndarray:
    """Quantize floats to Q(W,F).

    q = clamp(round(value * 2**F), -2**(W-1), 2**(W-1) - 1)

    Args:
        values: Float scalar or array.
        fmt: Target fixed-point format.

    Returns:
        numpy int64 array.
    """
    scaled = np.round(np.asarray(values, dtype=np.float64) * fmt.one)
    return np.clip(scaled, fmt.min_value, fmt.max_value).astype(np.int64)


def to_float(values, fmt: QFormat) -> np.ndarray:
    """Interpret Q(W,F) integers as float64."""
    return np.asarray(values, dtype=np.float64) / fmt.one


def fuse_batchnorm(gamma, beta, mean, var, fmt: QFormat, eps: float = 1e-3):
    """Fold inference batch-norm statistics into a per-channel affine map.

    effective_weight = gamma / sqrt(var + eps)
    effective_bias   = beta - mean * effective_weight

    Args:
        gamma, beta, mean, var: Per-channel float arrays of shape (C,).
        fmt: Format of the returned parameters.
        eps: Variance epsilon (Keras default 1e-3).

    Returns:
        (effective_weight, effective_bias) as Q(W,F) int64 arrays.

    Raises:
        ValueError: If the arrays disagree in shape or var + eps <= 0.
    """
    gamma = np.asarray(gamma, dtype=np.float64)
    beta = np.asarray(beta, dtype=np.float64)
    mean = np.asarray(mean, dtype=np.float64)
    var = np.asarray(var, dtype=np.float64)
    if not (gamma.shape == beta.shape == mean.shape == var.shape):
        raise ValueError(
            f"Batch-norm parameter shapes differ: gamma={gamma.shape} "
            f"beta={beta.shape} mean={mean.shape} var={var.shape}"
        )
    denom = var + eps
    if np.any(denom <= 0):
        raise ValueError("var + eps must be > 0 for every channel")
    weight = gamma / np.sqrt(denom)
    bias = beta - mean * weight
    return to_fixed(weight, fmt), to_fixed(bias, fmt)
