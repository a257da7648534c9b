"""Floating-point reference model for the fixed-point activations and batch-norm.

These are the mathematical definitions the integer engines approximate;
tests compare the two within one ULP (``2**-F``).
"""

import numpy as np

__all__ = ["calc_relu", "calc_relu6", "calc_hswish", "calc_hsigmoid", "calc_batchnorm"]


def calc_relu(x):
    return np.maximum(np.asarray(x, dtype=np.float64), 0.0)


def calc_relu6(x):
    return np.minimum(np.maximum(np.asarray(x, dtype=np.float64), 0.0), 6.0)


def calc_hswish(x):
    """x * relu6(x + 3) / 6"""
    x = np.asarray(x, dtype=np.float64)
    return x * calc_relu6(x + 3.0) / 6.0


def calc_hsigmoid(x):
    """relu6(x + 3) / 6"""
    return calc_relu6(np.asarray(x, dtype=np.float64) + 3.0) / 6.0


def calc_batchnorm(x, gamma, beta, mean, var, eps=1e-3):
    """Inference batch-norm over the last axis."""
    x = np.asarray(x, dtype=np.float64)
    return gamma * (x - mean) / np.sqrt(var + eps) + beta
