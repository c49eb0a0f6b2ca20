"""Tests for the per-rank Newton solvers and the collective block-diagonal wrapper."""

import numpy as np
import pytest
import scipy.sparse as sp

from core.errors import (CONV_FAIL, LSETUP_FAIL_RECOV, LSETUP_FAIL_UNREC, LSOLVE_FAIL_RECOV,
                         LSOLVE_FAIL_UNREC, PSOLVE_FAIL_UNREC, SUCCESS, ConfigurationError,
                         RecoverableError)
from core.linear_solver import (BlockDiagonalSolver, DenseBlockSolver, LocalLinearSolver,
                                MatrixFreeGMRES, SparseDirectSolver, make_local_solver)
from core.state import StateVector

from conftest import run_ranks

NCELLS = 4
NCHEM = 10
GAMMA = 0.1


def random_blocks(ncells=NCELLS, nchem=NCHEM, seed=0):
    rng = np.random.default_rng(seed)
    return rng.normal(0.0, 1.0, (ncells, nchem, nchem))


def reference_solve(blocks, gamma, b):
    n = blocks.shape[0]*blocks.shape[1]
    full = np.eye(n) - gamma*sp.block_diag(list(blocks)).toarray()
    return np.linalg.solve(full, b)


class LinearNetwork:
    """Chemistry stand-in with f(y) = A y."""
    xp = np

    def __init__(self, A, y0, fail=False):
        self.A = A
        self.fchemcur = A @ y0
        self.fail = fail

    def rhs(self, y):
        if self.fail:
            raise RecoverableError("rhs failed")
        return self.A @ y


class TestLocalSolvers:
    def test_dense_matches_reference(self):
        blocks = random_blocks()
        b = np.random.default_rng(1).normal(size=NCELLS*NCHEM)
        solver = DenseBlockSolver(NCELLS, NCHEM)
        assert solver.setup(solver.newton_matrix(blocks, GAMMA)) == SUCCESS
        x = np.empty_like(b)
        assert solver.solve(x, b) == SUCCESS
        np.testing.assert_allclose(x, reference_solve(blocks, GAMMA, b), rtol=1e-10, atol=1e-12)
        np.testing.assert_allclose(solver.apply_operator(x), b, rtol=1e-10, atol=1e-12)

    def test_sparse_matches_reference(self):
        blocks = random_blocks(seed=2)
        b = np.random.default_rng(3).normal(size=NCELLS*NCHEM)
        solver = SparseDirectSolver(NCELLS, NCHEM)
        jac = sp.block_diag(list(blocks), format="csr")
        assert solver.setup(solver.newton_matrix(jac, GAMMA)) == SUCCESS
        x = np.empty_like(b)
        assert solver.solve(x, b) == SUCCESS
        np.testing.assert_allclose(x, reference_solve(blocks, GAMMA, b), rtol=1e-10, atol=1e-12)

    def test_gmres_matches_reference(self):
        A = sp.block_diag(list(random_blocks(ncells=2, seed=4))).toarray()
        y0 = np.linspace(0.5, 1.5, A.shape[0])
        b = np.random.default_rng(5).normal(size=A.shape[0])
        solver = MatrixFreeGMRES(LinearNetwork(A, y0), maxl=A.shape[0])
        solver.set_linearization(y0, GAMMA, np.ones_like(y0))
        assert solver.setup(solver.newton_matrix(None, GAMMA)) == SUCCESS
        x = np.empty_like(b)
        assert solver.solve(x, b, tol=1e-10) == SUCCESS
        expected = np.linalg.solve(np.eye(A.shape[0]) - GAMMA*A, b)
        np.testing.assert_allclose(x, expected, rtol=1e-6, atol=1e-8)
        assert solver.nfe_dq > 0

    def test_gmres_rhs_failure_is_recoverable(self):
        A = np.eye(6)
        y0 = np.ones(6)
        solver = MatrixFreeGMRES(LinearNetwork(A, y0, fail=True))
        solver.set_linearization(y0, GAMMA, np.ones(6))
        assert solver.solve(np.empty(6), np.ones(6), tol=1e-8) == CONV_FAIL

    def test_gmres_without_linearization(self):
        solver = MatrixFreeGMRES(LinearNetwork(np.eye(3), np.ones(3)))
        assert solver.solve(np.empty(3), np.ones(3), tol=1e-8) == PSOLVE_FAIL_UNREC

    def test_singular_blocks_are_unrecoverable(self):
        eye = np.broadcast_to(np.eye(NCHEM), (NCELLS, NCHEM, NCHEM))
        dense = DenseBlockSolver(NCELLS, NCHEM)
        assert dense.setup(dense.newton_matrix(eye/GAMMA, GAMMA)) == LSETUP_FAIL_UNREC
        assert dense.solve(np.empty(NCELLS*NCHEM), np.ones(NCELLS*NCHEM)) == LSOLVE_FAIL_UNREC

        sparse = SparseDirectSolver(NCELLS, NCHEM)
        jac = sp.identity(NCELLS*NCHEM, format="csr")/GAMMA
        assert sparse.setup(sparse.newton_matrix(jac, GAMMA)) == LSETUP_FAIL_UNREC

    def test_non_finite_matrix(self):
        blocks = random_blocks()
        blocks[1, 2, 3] = np.nan
        dense = DenseBlockSolver(NCELLS, NCHEM)
        assert dense.setup(dense.newton_matrix(blocks, GAMMA)) == LSETUP_FAIL_UNREC

    def test_factory(self):
        assert isinstance(make_local_solver("Dense", 2, NCHEM), DenseBlockSolver)
        assert isinstance(make_local_solver("sparse", 2, NCHEM), SparseDirectSolver)
        with pytest.raises(ConfigurationError, match="network"):
            make_local_solver("gmres", 2, NCHEM)
        with pytest.raises(ConfigurationError):
            make_local_solver("pcg", 2, NCHEM)


class RaisingSolver(LocalLinearSolver):
    def newton_matrix(self, jac, gamma):
        raise RecoverableError("jacobian evaluation failed")


class FailingSolve(DenseBlockSolver):
    """Factors normally, then fails every solve the given way."""

    def __init__(self, ncells, nchem, outcome):
        super().__init__(ncells, nchem)
        self.outcome = outcome

    def solve(self, x, b, tol=None):
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


class TestBlockDiagonalSolver:
    def test_solve_passes_fluid_through(self, ctx):
        blocks = random_blocks(ncells=2)
        solver = BlockDiagonalSolver(DenseBlockSolver(2, NCHEM), ctx)
        b = StateVector((2, 1, 1), NCHEM)
        b.data[...] = np.random.default_rng(6).normal(size=b.data.size)
        x = b.clone_empty()
        assert solver.setup(blocks, GAMMA) == SUCCESS
        assert solver.solve(x, b, 1e-8) == SUCCESS
        np.testing.assert_array_equal(x.fluid, b.fluid)
        np.testing.assert_allclose(x.chem_flat(), reference_solve(blocks, GAMMA, b.chem_flat()),
                                   rtol=1e-10, atol=1e-12)
        np.testing.assert_allclose(solver.apply_operator(x).data, b.data, rtol=1e-10, atol=1e-12)
        assert (solver.nsetups, solver.nsolves, solver.njtimes) == (1, 1, 1)

    def test_without_chemistry(self, ctx):
        solver = BlockDiagonalSolver(None, ctx)
        b = StateVector((3, 2, 1))
        b.fluid[...] = 7.0
        x = b.clone_empty()
        assert solver.setup(None, GAMMA) == SUCCESS
        assert solver.solve(x, b, 1e-8) == SUCCESS
        np.testing.assert_array_equal(x.data, b.data)
        assert not solver.matrix_free
        assert solver.jacobian_format is None

    def test_singular_block_on_one_rank_fails_everywhere(self):
        def work(c):
            blocks = random_blocks(ncells=2, seed=c.rank)
            if c.rank == 1:
                blocks = np.broadcast_to(np.eye(NCHEM), blocks.shape)/GAMMA
            return BlockDiagonalSolver(DenseBlockSolver(2, NCHEM), c).setup(blocks, GAMMA)

        assert run_ranks(2, work) == [LSETUP_FAIL_UNREC, LSETUP_FAIL_UNREC]

    def test_recoverable_status_reaches_every_rank(self):
        def work(c):
            local = RaisingSolver() if c.rank == 0 else DenseBlockSolver(2, NCHEM)
            return BlockDiagonalSolver(local, c).setup(random_blocks(ncells=2), GAMMA)

        assert run_ranks(3, work) == [LSETUP_FAIL_RECOV]*3

    def test_unrecoverable_beats_recoverable(self):
        def work(c):
            if c.rank == 0:
                local, blocks = RaisingSolver(), None
            else:
                local = DenseBlockSolver(2, NCHEM)
                blocks = np.broadcast_to(np.eye(NCHEM), (2, NCHEM, NCHEM))/GAMMA
            return BlockDiagonalSolver(local, c).setup(blocks, GAMMA)

        assert run_ranks(2, work) == [LSETUP_FAIL_UNREC, LSETUP_FAIL_UNREC]

    def test_global_status_ordering(self, ctx):
        solver = BlockDiagonalSolver(None, ctx)
        assert solver.global_status(SUCCESS) == SUCCESS
        assert solver.global_status(CONV_FAIL) == CONV_FAIL
        assert solver.global_status(LSETUP_FAIL_UNREC) == LSETUP_FAIL_UNREC
        assert solver.last_flag == LSETUP_FAIL_UNREC

    @pytest.mark.parametrize("outcome,expected", [
        (LSOLVE_FAIL_RECOV, LSOLVE_FAIL_RECOV),
        (LSOLVE_FAIL_UNREC, LSOLVE_FAIL_UNREC),
        (RecoverableError("block solve diverged"), CONV_FAIL),
        (np.linalg.LinAlgError("singular"), LSOLVE_FAIL_UNREC),
    ])
    def test_solve_failure_on_one_rank_reaches_every_rank(self, outcome, expected):
        def work(c):
            ncells = 2
            if c.rank == 1:
                local = FailingSolve(ncells, NCHEM, outcome)
            else:
                local = DenseBlockSolver(ncells, NCHEM)
            solver = BlockDiagonalSolver(local, c)
            assert solver.setup(random_blocks(ncells=ncells, seed=c.rank), GAMMA) == SUCCESS
            b = StateVector((ncells, 1, 1), NCHEM)
            b.data[...] = 1.0
            return solver.solve(b.clone_empty(), b, 1e-8)

        assert run_ranks(2, work) == [expected, expected]
