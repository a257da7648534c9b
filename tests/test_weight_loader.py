"""Tests for the address-mapped weight loader."""

import numpy as np
import pytest

from libfixednet import Network, WeightLoader


@pytest.fixture
def net(tiny_config):
    return Network(tiny_config)


@pytest.fixture
def loader(net):
    return WeightLoader(net)


# ── Address map ───────────────────────────────────────────────────────────

class TestAddressMap:

    def test_contiguous_and_complete(self, net, loader):
        expected = 0
        for name, (base, size) in loader.address_map().items():
            assert base == expected
            assert size == net.parameters()[name].size
            expected += size
        assert expected == loader.depth

    def test_order_follows_network(self, net, loader):
        assert loader.names == list(net.parameters())
        assert loader.address_of("stem.weight") == 0

    def test_unknown_name(self, loader):
        with pytest.raises(KeyError):
            loader.span_of("nope.weight")


# ── Bus protocol ──────────────────────────────────────────────────────────

class TestProtocol:

    def test_full_load_sets_done(self, net, loader, make_parameters):
        params = make_parameters(net, seed=4)
        assert loader.load_parameters(params)
        assert loader.load_done and not loader.load_error
        for name, values in params.items():
            np.testing.assert_array_equal(net.parameters()[name], values)

    def test_partial_load_not_done(self, loader):
        loader.start()
        loader.load_array("head.bias", np.arange(10))
        assert not loader.load_done
        assert not loader.load_error

    def test_words_land_in_engine_storage(self, net, loader):
        loader.start()
        base = loader.address_of("head.bias")
        loader.write(base + 3, -17)
        assert net.head.bias[3] == -17

    def test_row_major_layout(self, net, loader):
        loader.start()
        base, size = loader.span_of("stem.weight")
        loader.write_burst(base, np.arange(size) % 7)
        np.testing.assert_array_equal(net.stem.weight.reshape(-1), np.arange(size) % 7)

    def test_burst_across_tensors(self, net, loader):
        loader.start()
        loader.write_burst(0, np.ones(loader.depth, dtype=np.int64))
        assert loader.load_done
        assert (net.stem_bn.effective_bias == 1).all()
        assert (net.head.weight == 1).all()

    def test_write_enable_low_is_ignored(self, net, loader):
        loader.start()
        loader.write(0, 5, write_enable=False)
        assert net.stem.weight.reshape(-1)[0] == 0
        assert not loader.load_error

    def test_restart_clears_flags(self, loader):
        loader.start()
        loader.write(loader.depth, 0)
        assert loader.load_error
        with pytest.warns(UserWarning):
            loader.start()
        assert not loader.load_error
        assert loader.error_reason is None

    def test_restart_warns_on_incomplete_session(self, loader):
        loader.start()
        loader.write(0, 1)
        with pytest.warns(UserWarning, match="restarted"):
            loader.start()

    def test_overwrite_before_done(self, net, loader):
        loader.start()
        loader.write(0, 1)
        loader.write(0, 2)
        assert net.stem.weight.reshape(-1)[0] == 2
        assert not loader.load_done


# ── Faults ────────────────────────────────────────────────────────────────

class TestFaults:

    def test_address_out_of_range(self, loader):
        loader.start()
        loader.write(loader.depth, 0)
        assert loader.load_error
        assert "address" in loader.error_reason

    def test_negative_address(self, loader):
        loader.start()
        loader.write(-1, 0)
        assert loader.load_error

    def test_data_out_of_range(self, net, loader):
        loader.start()
        loader.write(0, 200)
        assert loader.load_error
        assert net.stem.weight.reshape(-1)[0] == 0

    def test_non_integer_data(self, loader):
        loader.start()
        loader.write_burst(0, [0.5])
        assert loader.load_error

    def test_write_before_start(self, loader):
        loader.write(0, 1)
        assert loader.load_error
        assert "session" in loader.error_reason

    def test_size_mismatch(self, loader):
        loader.start()
        loader.load_array("head.bias", np.zeros(9, dtype=np.int64))
        assert loader.load_error

    def test_check_raises(self, loader):
        loader.write(0, 1)
        with pytest.raises(RuntimeError, match="Weight load failed"):
            loader.check()

    def test_check_passes_when_clean(self, loader):
        loader.start()
        loader.check()

    def test_verbose(self, net, capsys):
        loader = WeightLoader(net, verbose=True)
        loader.start()
        loader.write(-5, 0)
        err = capsys.readouterr().err
        assert "[libfixednet] load start" in err
        assert "load error" in err
