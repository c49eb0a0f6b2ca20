"""Tests for the composite fluid + chemistry state vector."""

import numpy as np
import pytest

from core.state import NFLUID, StateVector

from conftest import run_ranks


def filled(shape=(2, 3, 2), nchem=4, seed=0):
    y = StateVector(shape, nchem)
    y.data[...] = np.random.default_rng(seed).normal(size=y.data.size)
    return y


class TestLayout:
    def test_views_share_one_buffer(self):
        y = StateVector((2, 3, 4), 3)
        assert y.data.size == 24*(NFLUID + 3)
        y["et"][...] = 2.0
        y.species(1)[...] = 5.0
        assert np.count_nonzero(y.data == 2.0) == 24
        np.testing.assert_array_equal(y.chem_flat().reshape(24, 3)[:, 1], 5.0)

    def test_fluid_only(self):
        y = StateVector((2, 2, 2))
        assert y.chem is None
        assert y.nfields == NFLUID
        assert y.chem_flat().size == 0
        with pytest.raises(IndexError):
            y.species(0)
        with pytest.raises(IndexError):
            y.field(NFLUID)

    def test_lookup_errors(self):
        y = StateVector((1, 1, 1), 2)
        assert y.field(NFLUID) is y.chem
        with pytest.raises(KeyError):
            y["pressure"]
        with pytest.raises(IndexError):
            y.species(2)

    def test_wrong_buffer_size(self):
        with pytest.raises(ValueError):
            StateVector((2, 2, 2), 1, data=np.zeros(7))

    def test_transport_fields_round_trip(self):
        y = filled()
        arr = y.transport_fields()
        assert arr.shape == (NFLUID + 4, 2, 3, 2)
        np.testing.assert_array_equal(arr[NFLUID + 2], y.species(2))
        z = y.clone_empty()
        z.set_transport_fields(arr)
        np.testing.assert_array_equal(z.data, y.data)

    def test_copy_keeps_scaling_flag(self):
        y = filled()
        y.chem_physical = True
        z = y.copy()
        assert z.chem_physical and z.clone_empty().chem_physical
        z.data[0] += 1.0
        assert z.data[0] != y.data[0]


class TestAlgebra:
    def test_in_place_ops(self):
        x, y = filled(seed=1), filled(seed=2)
        z = x.clone_empty().linear_sum(2.0, x, -1.0, y)
        np.testing.assert_allclose(z.data, 2.0*x.data - y.data)
        z.assign(x).axpy(3.0, y).scale(0.5)
        np.testing.assert_allclose(z.data, 0.5*(x.data + 3.0*y.data))
        assert np.all(z.const(4.0).data == 4.0)

    def test_local_reductions(self):
        x = filled(seed=3)
        w = x.clone_empty().const(0.5)
        assert x.dot(x) == pytest.approx(float(np.sum(x.data**2)))
        assert x.max_norm() == pytest.approx(float(np.abs(x.data).max()))
        assert x.wrms_norm(w) == pytest.approx(0.5*np.sqrt(np.mean(x.data**2)))

    def test_reductions_span_ranks(self):
        def work(c):
            x = StateVector((2, 1, 1), 1)
            x.const(float(c.rank + 1))
            w = x.clone_empty().const(1.0)
            return x.dot(x, c), x.max_norm(c), x.wrms_norm(w, c)

        n = 2*(NFLUID + 1)
        results = run_ranks(3, work)
        for dot, mx, wrms in results:
            assert dot == pytest.approx(n*(1 + 4 + 9))
            assert mx == 3.0
            assert wrms == pytest.approx(np.sqrt((1 + 4 + 9)/3.0))
