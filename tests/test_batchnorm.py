"""Tests for the fused batch-norm stage."""

import numpy as np
import pytest

from libfixednet._quantize import fuse_batchnorm, to_fixed, to_float
from libfixednet.batchnorm import FusedBatchNorm
from libfixednet.reference import calc_batchnorm


class TestFusedBatchNorm:

    def test_identity_by_default(self, fmt):
        bn = FusedBatchNorm(4, fmt)
        x = np.arange(-64, 64).reshape(4, 8, 4)
        np.testing.assert_array_equal(bn(x), x)

    def test_per_channel_affine(self, fmt):
        bn = FusedBatchNorm(3, fmt)
        # scales 2.0, 0.5, -1.0; biases 0, 1.0, -0.25
        bn.set_parameters([32, 8, -16], [0, 16, -4])
        x = np.array([[[16, 16, 16]]])   # 1.0 everywhere
        np.testing.assert_array_equal(bn(x), [[[32, 24, -20]]])

    def test_vector_input(self, fmt):
        bn = FusedBatchNorm(2, fmt)
        bn.set_parameters([16, 16], [5, -5])
        np.testing.assert_array_equal(bn(np.array([1, 1])), [6, -4])

    def test_saturates(self, fmt):
        bn = FusedBatchNorm(2, fmt)
        bn.set_parameters([127, 127], [127, -128])
        out = bn(np.array([127, -128]))
        np.testing.assert_array_equal(out, [127, -128])

    def test_shift_floors(self, fmt):
        bn = FusedBatchNorm(1, fmt)
        bn.set_parameters([8], [0])      # x * 0.5
        np.testing.assert_array_equal(bn(np.array([[-1], [1], [3]])), [[-1], [0], [1]])

    def test_zero_in_zero_out_with_zero_bias(self, fmt):
        bn = FusedBatchNorm(16, fmt)
        bn.set_parameters(np.full(16, 77), np.zeros(16, dtype=np.int64))
        assert not bn(np.zeros((4, 4, 16), dtype=np.int64)).any()

    def test_latency_one(self, fmt):
        assert FusedBatchNorm(1, fmt).latency == 1

    def test_parameters_updated_in_place(self, fmt):
        bn = FusedBatchNorm(2, fmt)
        storage = bn.parameters()["effective_weight"]
        bn.set_parameters([3, 4], [0, 0])
        np.testing.assert_array_equal(storage, [3, 4])

    def test_wrong_channel_count(self, fmt):
        bn = FusedBatchNorm(3, fmt)
        with pytest.raises(ValueError):
            bn(np.zeros((2, 2, 4), dtype=np.int64))

    @pytest.mark.parametrize("x", [
        np.full((2, 2, 2), 0.5),               # float
        np.full((2, 2, 2), 200),               # out of range
    ])
    def test_bad_input_rejected(self, fmt, x):
        with pytest.raises(ValueError):
            FusedBatchNorm(2, fmt)(x)

    @pytest.mark.parametrize("weight,bias", [
        ([16, 16], [0]),               # shape
        ([16, 200], [0, 0]),           # range
        ([0.5, 1.0], [0, 0]),          # dtype
    ])
    def test_bad_parameters_rejected(self, fmt, weight, bias):
        with pytest.raises(ValueError):
            FusedBatchNorm(2, fmt).set_parameters(weight, bias)


class TestFusedAgainstFloat:

    def test_tracks_float_batchnorm(self, fmt):
        rng = np.random.default_rng(11)
        gamma = rng.uniform(0.8, 1.2, 8)
        beta = rng.normal(0.0, 0.2, 8)
        mean = rng.normal(0.0, 0.2, 8)
        var = rng.uniform(0.7, 1.3, 8)
        weight, bias = fuse_batchnorm(gamma, beta, mean, var, fmt)
        bn = FusedBatchNorm(8, fmt)
        bn.set_parameters(weight, bias)

        x = to_fixed(rng.uniform(-2.0, 2.0, (4, 4, 8)), fmt)
        got = to_float(bn(x), fmt)
        ref = calc_batchnorm(to_float(x, fmt), gamma, beta, mean, var)
        # weight/bias rounding plus the flooring shift
        assert np.max(np.abs(got - ref)) <= 0.25
