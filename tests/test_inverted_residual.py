"""Tests for the inverted-residual block and its shortcut selection."""

import numpy as np
import pytest

from libfixednet.inverted_residual import (
    BlockConfig,
    InvertedResidual,
    ShortcutKind,
    make_divisible,
    select_shortcut,
)


# ── Helpers ───────────────────────────────────────────────────────────────

class TestMakeDivisible:

    @pytest.mark.parametrize("value,expected", [(4, 8), (10, 16), (12, 16), (24, 24), (144, 144)])
    def test_rounding(self, value, expected):
        assert make_divisible(value) == expected


class TestSelectShortcut:

    def test_identity(self):
        assert select_shortcut(16, 16, 1) is ShortcutKind.IDENTITY

    def test_projection(self):
        assert select_shortcut(40, 48, 1) is ShortcutKind.PROJECTION

    def test_none_when_strided(self):
        assert select_shortcut(16, 16, 2) is ShortcutKind.NONE
        assert select_shortcut(24, 40, 2) is ShortcutKind.NONE


# ── Block ─────────────────────────────────────────────────────────────────

class TestInvertedResidual:

    def test_identity_shortcut_passes_input_bit_exact(self, fmt):
        block = InvertedResidual(16, 4, 4, BlockConfig(3, 32, 16, True, "hswish", 1), fmt)
        assert block.shortcut_kind is ShortcutKind.IDENTITY
        x = np.arange(-128, 128).reshape(4, 4, 16)
        np.testing.assert_array_equal(block(x), x)

    def test_strided_block_has_no_residual(self, fmt):
        block = InvertedResidual(16, 8, 8, BlockConfig(3, 16, 16, True, "relu", 2), fmt)
        assert block.shortcut_kind is ShortcutKind.NONE
        assert block.output_shape == (4, 4, 16)
        out = block(np.full((8, 8, 16), 50))
        assert out.shape == (4, 4, 16)
        assert not out.any()

    def test_projection_shortcut(self, fmt):
        block = InvertedResidual(8, 4, 4, BlockConfig(3, 24, 16, False, "hswish", 1), fmt)
        assert block.shortcut_kind is ShortcutKind.PROJECTION
        w = np.zeros((16, 8), dtype=np.int64)
        w[np.arange(8), np.arange(8)] = fmt.one
        block.shortcut_conv.set_weights(w)
        x = np.arange(-64, 64).reshape(4, 4, 8)
        out = block(x)
        np.testing.assert_array_equal(out[:, :, :8], x)
        assert not out[:, :, 8:].any()

    def test_residual_add_saturates(self, fmt):
        block = InvertedResidual(8, 2, 2, BlockConfig(3, 8, 8, False, "relu", 1), fmt)
        block.project_bn.set_parameters(np.zeros(8, dtype=np.int64), np.full(8, 100))
        out = block(np.full((2, 2, 8), 100))
        assert (out == 127).all()

    @pytest.mark.parametrize("config,latency", [
        (BlockConfig(3, 16, 16, True, "relu", 2), 26),     # SE, no shortcut
        (BlockConfig(3, 72, 24, False, "relu", 2), 11),    # bare main path
        (BlockConfig(3, 88, 16, False, "relu", 1), 12),    # identity add
        (BlockConfig(5, 96, 16, True, "hswish", 1), 27),   # SE and identity add
    ])
    def test_latency(self, fmt, config, latency):
        assert InvertedResidual(16, 8, 8, config, fmt).latency == latency

    def test_main_path_latency(self, fmt):
        block = InvertedResidual(16, 8, 8, BlockConfig(3, 16, 24, False, "relu", 1), fmt)
        assert block.main_path.latency == 11
        assert block.latency == 12

    def test_depthwise_padding_keeps_size(self, fmt):
        block = InvertedResidual(16, 7, 7, BlockConfig(5, 32, 24, False, "hswish", 1), fmt)
        assert block.output_shape == (7, 7, 24)

    def test_overlapping_tokens(self, fmt):
        block = InvertedResidual(16, 4, 4, BlockConfig(3, 32, 16, True, "hswish", 1), fmt)
        rng = np.random.default_rng(0)
        for name, array in block.parameters().items():
            if name.endswith("weight") and "bn" not in name:
                array[...] = rng.integers(-3, 4, size=array.shape)
        images = [rng.integers(-64, 64, size=(4, 4, 16)) for _ in range(3)]
        expected = [block(x) for x in images]
        block.reset()
        results = []
        for tick in range(len(images) + block.latency):
            x = images[tick] if tick < len(images) else None
            valid, data = block.step(x is not None, x)
            if valid:
                results.append(data)
        assert len(results) == 3
        for got, want in zip(results, expected):
            np.testing.assert_array_equal(got, want)

    def test_identity_shortcut_owns_its_copy(self, fmt):
        block = InvertedResidual(16, 4, 4, BlockConfig(3, 32, 16, False, "relu", 1), fmt)
        buffer = np.arange(-128, 128).reshape(4, 4, 16)
        expected = buffer.copy()
        block.step(True, buffer)
        buffer[...] = 0
        for _ in range(block.latency - 1):
            block.step(False)
        valid, out = block.step(False)
        assert valid
        np.testing.assert_array_equal(out, expected)

    def test_rejected_input_rolls_back(self, fmt):
        block = InvertedResidual(16, 4, 4, BlockConfig(3, 32, 16, True, "hswish", 1), fmt)
        x = np.arange(-128, 128).reshape(4, 4, 16)
        block.step(True, x)
        with pytest.raises(ValueError):
            block.step(True, np.zeros((4, 4, 8), dtype=np.int64))
        results = []
        for _ in range(block.latency + 2):
            valid, data = block.step(False)
            if valid:
                results.append(data)
        assert len(results) == 1
        np.testing.assert_array_equal(results[0], x)

    def test_parameter_names(self, fmt):
        block = InvertedResidual(8, 4, 4, BlockConfig(3, 24, 16, True, "hswish", 1), fmt)
        names = list(block.parameters())
        assert names[0] == "expand.weight"
        assert "shortcut.weight" in names
        assert "shortcut_bn.effective_bias" in names
        assert names[-1] == "se.bn_expand.effective_bias"

    @pytest.mark.parametrize("activation", ["relu6", "hsigmoid", "gelu"])
    def test_unsupported_activation_rejected(self, fmt, activation):
        with pytest.raises(ValueError, match="block activation"):
            InvertedResidual(16, 8, 8, BlockConfig(3, 16, 16, False, activation, 1), fmt)
