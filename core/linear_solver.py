#!/usr/bin/env python3
# core/linear_solver.py
# Block-diagonal Newton linear solves: each rank factors/solves only its own
# chemistry block, then all ranks agree on one pass/fail status.
import numpy as np
import scipy.sparse as sp
import scipy.sparse.linalg as spla

from core.errors import (CONV_FAIL, LSETUP_FAIL_RECOV, LSETUP_FAIL_UNREC, LSOLVE_FAIL_UNREC,
                         PSOLVE_FAIL_UNREC, SUCCESS, ConfigurationError, RecoverableError)
from utils.backend import to_numpy


class LocalLinearSolver:
    """
    Contract for the per-rank solver of (I - gamma*J) x = b on the local
    chemistry block. Methods return SUNDIALS-style int status codes.
    """
    matrix_free = False
    jacobian_format = None

    def __init__(self):
        self.gamma = 0.0

    def set_linearization(self, y, gamma, weights):
        self.gamma = float(gamma)

    def newton_matrix(self, jac, gamma):
        raise NotImplementedError

    def setup(self, matrix):
        raise NotImplementedError

    def solve(self, x, b, tol):
        raise NotImplementedError

    def apply_operator(self, v):
        raise NotImplementedError

    def free(self):
        return SUCCESS


class DenseBlockSolver(LocalLinearSolver):
    """
    Batched factorization of (ncells, nchem, nchem) blocks. The blocks are
    small, so the factor is the batched inverse and a solve is one einsum.
    """
    jacobian_format = "dense"

    def __init__(self, ncells, nchem):
        super().__init__()
        self.ncells, self.nchem = int(ncells), int(nchem)
        self.matrix = None
        self.inv = None

    def newton_matrix(self, jac, gamma):
        jac = to_numpy(jac)
        return np.eye(self.nchem)[None, :, :] - gamma*jac

    def setup(self, matrix):
        matrix = np.asarray(matrix, dtype=np.float64)
        if matrix.shape != (self.ncells, self.nchem, self.nchem):
            raise ValueError(f"dense Newton matrix has shape {matrix.shape}")
        self.matrix = matrix
        self.inv = None
        if not np.all(np.isfinite(matrix)):
            return LSETUP_FAIL_UNREC
        try:
            inv = np.linalg.inv(matrix)
        except np.linalg.LinAlgError:
            return LSETUP_FAIL_UNREC
        if not np.all(np.isfinite(inv)):
            return LSETUP_FAIL_UNREC
        self.inv = inv
        return SUCCESS

    def solve(self, x, b, tol=None):
        if self.inv is None:
            return LSOLVE_FAIL_UNREC
        bb = np.asarray(to_numpy(b)).reshape(self.ncells, self.nchem)
        out = np.einsum("cij,cj->ci", self.inv, bb)
        if not np.all(np.isfinite(out)):
            return LSOLVE_FAIL_UNREC
        x[...] = out.ravel()
        return SUCCESS

    def apply_operator(self, v):
        vv = np.asarray(to_numpy(v)).reshape(self.ncells, self.nchem)
        return np.einsum("cij,cj->ci", self.matrix, vv).ravel()

    def free(self):
        self.matrix = self.inv = None
        return SUCCESS


class SparseDirectSolver(LocalLinearSolver):
    """SuperLU factorization of the block-diagonal CSR Newton matrix."""
    jacobian_format = "csr"

    def __init__(self, ncells, nchem):
        super().__init__()
        self.n = int(ncells)*int(nchem)
        self.matrix = None
        self.lu = None

    def newton_matrix(self, jac, gamma):
        return (sp.identity(self.n, format="csr") - gamma*jac).tocsc()

    def setup(self, matrix):
        self.matrix = matrix
        try:
            self.lu = spla.splu(sp.csc_matrix(matrix))
        except RuntimeError:
            # SuperLU reports an exactly singular factor this way
            self.lu = None
            return LSETUP_FAIL_UNREC
        return SUCCESS

    def solve(self, x, b, tol=None):
        if self.lu is None:
            return LSOLVE_FAIL_UNREC
        out = self.lu.solve(np.asarray(to_numpy(b), dtype=np.float64))
        if not np.all(np.isfinite(out)):
            return LSOLVE_FAIL_UNREC
        x[...] = out
        return SUCCESS

    def apply_operator(self, v):
        return self.matrix @ np.asarray(to_numpy(v))

    def free(self):
        self.matrix = self.lu = None
        return SUCCESS


class MatrixFreeGMRES(LocalLinearSolver):
    """
    GMRES on the divided-difference operator
        z = v - gamma*(f(y + sig*v)*time_units - fchemcur)/sig,  sig = 1/||v||_wrms
    where f is the chemistry RHS and fchemcur the cached f(y)*time_units.
    """
    matrix_free = True

    def __init__(self, network, time_units=1.0, maxl=20, max_restarts=5):
        super().__init__()
        self.network = network
        self.time_units = float(time_units)
        self.maxl = int(maxl)
        self.max_restarts = int(max_restarts)
        self.y = None
        self.weights = None
        self.nfe_dq = 0
        self.nli = 0

    def set_linearization(self, y, gamma, weights):
        super().set_linearization(y, gamma, weights)
        self.y = np.asarray(to_numpy(y), dtype=np.float64).copy()
        self.weights = np.asarray(to_numpy(weights), dtype=np.float64)

    def newton_matrix(self, jac, gamma):
        return None

    def setup(self, matrix):
        return SUCCESS

    def apply_operator(self, v):
        v = np.asarray(v, dtype=np.float64)
        nrm = np.sqrt(np.mean((v*self.weights)**2)) if v.size else 0.0
        if nrm == 0.0:
            return v.copy()
        sig = 1.0/nrm
        xp = self.network.xp
        fpert = to_numpy(self.network.rhs(xp.asarray(self.y + sig*v)))*self.time_units
        self.nfe_dq += 1
        jv = (fpert - to_numpy(self.network.fchemcur))/sig
        return v - self.gamma*jv

    def solve(self, x, b, tol):
        if self.y is None or self.network.fchemcur is None:
            return PSOLVE_FAIL_UNREC
        b = np.asarray(to_numpy(b), dtype=np.float64)
        n = b.size
        op = spla.LinearOperator((n, n), matvec=self.apply_operator, dtype=np.float64)
        bnorm = float(np.linalg.norm(b))
        if bnorm == 0.0:
            x[...] = 0.0
            return SUCCESS
        counter = {"it": 0}

        def _count(_):
            counter["it"] += 1

        try:
            sol, info = spla.gmres(op, b, rtol=float(tol) if tol else 1e-5, atol=0.0,
                                   restart=self.maxl, maxiter=self.max_restarts,
                                   callback=_count, callback_type="pr_norm")
        except RecoverableError:
            return CONV_FAIL
        except (ValueError, ArithmeticError, np.linalg.LinAlgError):
            return PSOLVE_FAIL_UNREC
        self.nli += counter["it"]
        if info < 0 or not np.all(np.isfinite(sol)):
            return PSOLVE_FAIL_UNREC
        x[...] = sol
        return CONV_FAIL if info > 0 else SUCCESS

    def free(self):
        self.y = self.weights = None
        return SUCCESS


def make_local_solver(kind, ncells, nchem, network=None, time_units=1.0, maxl=20):
    key = str(kind).lower()
    if key == "dense":
        return DenseBlockSolver(ncells, nchem)
    if key == "sparse":
        return SparseDirectSolver(ncells, nchem)
    if key == "gmres":
        if network is None:
            raise ConfigurationError("LINEAR_SOLVER='gmres' needs the chemistry network")
        return MatrixFreeGMRES(network, time_units=time_units, maxl=maxl)
    raise ConfigurationError(f"Unknown LINEAR_SOLVER '{kind}' (expected dense, sparse or gmres)")


class BlockDiagonalSolver:
    """
    Newton linear solver over a full StateVector. The fluid part of the
    implicit operator is the identity; the chemistry block is delegated to
    ``local`` (None for runs without chemistry). Every status is
    min-reduced over ranks so that all ranks see the same outcome.
    """

    def __init__(self, local, ctx):
        self.local = local
        self.ctx = ctx
        self.nsetups = 0
        self.nsolves = 0
        self.njtimes = 0
        self.last_flag = SUCCESS

    @property
    def matrix_free(self):
        return self.local is not None and self.local.matrix_free

    @property
    def jacobian_format(self):
        return None if self.local is None else self.local.jacobian_format

    @property
    def nfe_dq(self):
        return getattr(self.local, "nfe_dq", 0)

    def global_status(self, ierr):
        """[ierr, -ierr] min-reduced: most negative code wins, else largest positive."""
        glob = self.ctx.allreduce_array(np.array([ierr, -ierr], dtype=np.int64), op="min")
        if glob[0] < 0:
            self.last_flag = int(glob[0])
        else:
            self.last_flag = int(-glob[1])
        return self.last_flag

    def set_linearization(self, y, gamma, weights):
        if self.local is not None:
            self.local.set_linearization(y.chem_flat(), gamma, weights.chem_flat())

    def setup(self, jac, gamma):
        """Form and factor the local Newton matrix from the chemistry Jacobian."""
        self.nsetups += 1
        if self.local is None:
            return self.global_status(SUCCESS)
        try:
            matrix = self.local.newton_matrix(jac, gamma)
            ierr = self.local.setup(matrix)
        except RecoverableError:
            ierr = LSETUP_FAIL_RECOV
        except (ValueError, ArithmeticError, np.linalg.LinAlgError):
            ierr = LSETUP_FAIL_UNREC
        return self.global_status(ierr)

    def solve(self, x, b, tol):
        """x, b are StateVectors; the fluid block passes through unchanged."""
        self.nsolves += 1
        x.fluid[...] = b.fluid
        if b.chem is None or self.local is None:
            return self.global_status(SUCCESS)
        xc = np.empty(b.chem_flat().shape)
        try:
            ierr = self.local.solve(xc, b.chem_flat(), tol)
        except RecoverableError:
            ierr = CONV_FAIL
        except (ValueError, ArithmeticError, np.linalg.LinAlgError):
            ierr = LSOLVE_FAIL_UNREC
        if ierr == SUCCESS or ierr > 0:
            x.chem_flat()[...] = x.xp.asarray(xc)
        return self.global_status(ierr)

    def apply_operator(self, v):
        self.njtimes += 1
        z = v.copy()
        if v.chem is not None and self.local is not None:
            z.chem_flat()[...] = v.xp.asarray(self.local.apply_operator(to_numpy(v.chem_flat())))
        return z

    def free(self):
        return SUCCESS if self.local is None else self.local.free()
