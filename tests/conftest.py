"""Pytest configuration and shared fixtures for libfixednet tests."""

import numpy as np
import pytest

from libfixednet import BlockConfig, NetworkConfig, QFormat


def pytest_addoption(parser):
    parser.addoption(
        "--run-slow", action="store_true", default=False,
        help="Run full-size (224x224) network tests",
    )


def pytest_configure(config):
    config.addinivalue_line("markers", "slow: full-size network, several seconds")


def pytest_collection_modifyitems(config, items):
    if not config.getoption("--run-slow"):
        skip_slow = pytest.mark.skip(reason="needs --run-slow option to run")
        for item in items:
            if "slow" in item.keywords:
                item.add_marker(skip_slow)


@pytest.fixture
def fmt():
    return QFormat(8, 4)


@pytest.fixture
def tiny_config():
    """A 16x16 network covering every shortcut kind, with and without SE."""
    return NetworkConfig(
        input_size=16,
        in_channels=3,
        stem_channels=8,
        blocks=(
            BlockConfig(3, 16, 8, True, "relu", 2),      # no shortcut, SE
            BlockConfig(3, 24, 16, False, "hswish", 1),  # projection
            BlockConfig(3, 32, 16, True, "hswish", 1),   # identity, SE
            BlockConfig(5, 32, 24, True, "hswish", 2),   # no shortcut, k=5
        ),
        last_channels=32,
        hidden_features=32,
        num_classes=10,
    )


@pytest.fixture
def make_parameters():
    """Return ``f(network, seed)`` -> random in-range parameters for ``network``.

    Weights are small so activations stay mostly unsaturated; batch-norm
    scales hover around 1.0.
    """
    def _make(network, seed=0):
        rng = np.random.default_rng(seed)
        one = network.fmt.one
        params = {}
        for name, array in network.parameters().items():
            if name.endswith("effective_weight"):
                values = rng.integers(one // 2, one + one // 2 + 1, size=array.shape)
            elif name.endswith("bias"):
                values = rng.integers(-one // 4, one // 4 + 1, size=array.shape)
            else:
                values = rng.integers(-3, 4, size=array.shape)
            params[name] = values.astype(np.int64)
        return params
    return _make
