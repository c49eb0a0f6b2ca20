"""Tests for the grid description and the Cartesian rank tiling."""

import numpy as np
import pytest

from core.decomposition import (BC_PERIODIC, BC_REFLECTING, Decomposition, Grid,
                                balanced_factors, parse_bc, split_extent)
from core.errors import ConfigurationError, DecompositionError

from conftest import make_contexts, run_ranks


def make_grid(shape=(8, 8, 8), bc=0):
    bcs = {f: bc for f in ("xl", "xr", "yl", "yr", "zl", "zr")}
    return Grid(*shape, (0.0, 1.0, 0.0, 2.0, 0.0, 1.0), bcs)


class TestSplitExtent:
    @pytest.mark.parametrize("n,p", [(8, 1), (8, 3), (7, 7), (13, 4), (5, 2)])
    def test_counts_sum_and_offsets_contiguous(self, n, p):
        parts = [split_extent(n, p, c) for c in range(p)]
        assert sum(cnt for cnt, _ in parts) == n
        for c in range(1, p):
            assert parts[c][1] == parts[c - 1][1] + parts[c - 1][0]

    def test_first_ranks_take_the_remainder(self):
        counts = [split_extent(10, 4, c)[0] for c in range(4)]
        assert counts == [3, 3, 2, 2]


class TestBalancedFactors:
    def test_cube(self):
        assert balanced_factors(8, (32, 32, 32)) == (2, 2, 2)

    def test_product_matches(self):
        for nprocs in (1, 2, 6, 12, 17):
            px, py, pz = balanced_factors(nprocs, (24, 24, 24))
            assert px*py*pz == nprocs

    def test_prefers_long_axis(self):
        px, py, pz = balanced_factors(4, (64, 8, 8))
        assert px == 4

    def test_avoids_tiles_thinner_than_halo(self):
        # (2, 1, 1) has the smaller surface but would leave 2-cell x tiles
        assert balanced_factors(2, (5, 16, 4)) == (1, 2, 1)
        for p, n in zip(balanced_factors(8, (12, 12, 5)), (12, 12, 5)):
            assert p == 1 or n // p >= 3


class TestGrid:
    def test_spacing(self):
        g = make_grid((4, 8, 2))
        np.testing.assert_allclose(g.spacing, (0.25, 0.25, 0.5))

    def test_one_sided_periodic_rejected(self):
        bcs = {f: 0 for f in ("xl", "xr", "yl", "yr", "zl", "zr")}
        bcs["xr"] = 1
        with pytest.raises(ConfigurationError, match="periodic"):
            Grid(4, 4, 4, (0, 1, 0, 1, 0, 1), bcs)

    def test_bc_names_and_codes(self):
        assert parse_bc("periodic") == BC_PERIODIC
        assert parse_bc("3") == BC_REFLECTING
        assert parse_bc(3) == BC_REFLECTING
        with pytest.raises(ConfigurationError):
            parse_bc("sticky")


class TestDecomposition:
    @pytest.mark.parametrize("dims", [(1, 1, 1), (2, 3, 1), (3, 2, 2)])
    def test_partition_complete(self, dims):
        """Every global cell belongs to exactly one rank."""
        grid = make_grid((7, 5, 4))
        owner = np.zeros(grid.shape, dtype=int)
        nprocs = dims[0]*dims[1]*dims[2]
        for rank in range(nprocs):
            d = Decomposition(grid, dims, rank)
            i, j, k = d.offsets
            nx, ny, nz = d.local_shape
            owner[i:i + nx, j:j + ny, k:k + nz] += 1
        assert np.all(owner == 1)

    def test_periodic_neighbors_wrap(self):
        grid = make_grid(bc=0)
        d = Decomposition(grid, (2, 1, 1), 0)
        assert d.neighbors["xl"] == 1
        assert d.neighbors["xr"] == 1
        assert d.neighbors["yl"] == 0

    def test_open_edges_have_no_neighbor(self):
        grid = make_grid(bc=3)
        d = Decomposition(grid, (2, 1, 1), 0)
        assert d.neighbors["xl"] is None
        assert d.neighbors["xr"] == 1
        assert d.neighbors["zl"] is None

    def test_zero_size_tile_rejected(self):
        grid = make_grid((2, 2, 2))
        ctx = make_contexts(3)[0]
        with pytest.raises(DecompositionError):
            Decomposition.create(grid, ctx, (3, 1, 1))

    def test_thin_tile_rejected_on_every_rank(self):
        # 5 cells over 2 ranks gives a 2-cell tile, thinner than the halo
        grid = make_grid((5, 4, 4))

        def work(c):
            with pytest.raises(DecompositionError, match="halo"):
                Decomposition.create(grid, c, (2, 1, 1))
            return True

        assert run_ranks(2, work) == [True, True]

    def test_thin_tile_error_precedes_halo_exchange(self):
        from core.boundary import exchange_halos

        grid = make_grid((5, 4, 4))

        def work(c):
            try:
                d = Decomposition.create(grid, c, (2, 1, 1))
            except DecompositionError:
                return "rejected"
            exchange_halos(np.zeros((5,) + d.local_shape), d, c)
            return "exchanged"

        assert run_ranks(2, work) == ["rejected", "rejected"]

    def test_halo_thick_tiles_accepted(self):
        grid = make_grid((6, 4, 4))
        assert Decomposition.create(grid, make_contexts(2)[1], (2, 1, 1)).local_shape == (3, 4, 4)

    def test_tiling_must_match_rank_count(self):
        grid = make_grid()
        ctx = make_contexts(2)[0]
        with pytest.raises(DecompositionError):
            Decomposition.create(grid, ctx, (2, 2, 1))

    def test_tile_matches_rank_view(self):
        grid = make_grid((9, 6, 5))
        dims = (3, 2, 1)
        d0 = Decomposition(grid, dims, 0)
        for rank in range(6):
            d = Decomposition(grid, dims, rank)
            (ox, nx), (oy, ny), (oz, nz) = d0.tile(rank)
            assert (ox, oy, oz) == d.offsets
            assert (nx, ny, nz) == d.local_shape
