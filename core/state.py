#!/usr/bin/env python3
# core/state.py
# Composite solution vector: five fluid fields plus an optional chemistry block.
import numpy as np

FLUID_FIELDS = ("rho", "mx", "my", "mz", "et")
NFLUID = len(FLUID_FIELDS)
CHEM_FIELD = NFLUID


class StateVector:
    """
    Owned storage for one solution (or RHS) vector.

    All sub-buffers are views into a single contiguous array ``data``:
      fluid : (5, nxl, nyl, nzl)          rho, mx, my, mz, et
      chem  : (nxl, nyl, nzl, nchem)      species interleaved per cell
    ``chem_physical`` records whether the chemistry block currently holds
    physical (CGS) values or normalized ones.
    """

    def __init__(self, local_shape, nchem=0, data=None, xp=np):
        self.xp = xp
        self.local_shape = tuple(int(n) for n in local_shape)
        self.nchem = int(nchem)
        self.ncells = int(np.prod(self.local_shape))
        size = self.ncells*(NFLUID + self.nchem)
        if data is None:
            data = xp.zeros(size, dtype=np.float64)
        if data.shape != (size,):
            raise ValueError(f"StateVector buffer has shape {data.shape}, expected ({size},)")
        self.data = data
        nf = NFLUID*self.ncells
        self.fluid = data[:nf].reshape((NFLUID,) + self.local_shape)
        if self.nchem > 0:
            self.chem = data[nf:].reshape(self.local_shape + (self.nchem,))
        else:
            self.chem = None
        self.chem_physical = False

    # --- accessors ---
    @property
    def nfields(self):
        return NFLUID + (1 if self.nchem > 0 else 0)

    def field(self, i):
        if i < 0 or i >= self.nfields:
            raise IndexError(f"field index {i} out of range [0, {self.nfields})")
        if i < NFLUID:
            return self.fluid[i]
        return self.chem

    def __getitem__(self, name):
        if name == "chem":
            return self.field(CHEM_FIELD)
        try:
            return self.fluid[FLUID_FIELDS.index(name)]
        except ValueError as exc:
            raise KeyError(name) from exc

    def species(self, idx):
        if self.chem is None:
            raise IndexError("state carries no chemistry block")
        if idx < 0 or idx >= self.nchem:
            raise IndexError(f"species index {idx} out of range [0, {self.nchem})")
        return self.chem[..., idx]

    def chem_flat(self):
        """Chemistry block as a 1D view of length ncells*nchem."""
        if self.chem is None:
            return self.data[:0]
        return self.data[NFLUID*self.ncells:]

    def transport_fields(self):
        """(nvar, nxl, nyl, nzl) copy of everything carried by the flux engine."""
        if self.chem is None:
            return self.xp.ascontiguousarray(self.fluid)
        return self.xp.concatenate((self.fluid, self.xp.moveaxis(self.chem, -1, 0)), axis=0)

    def set_transport_fields(self, arr):
        self.fluid[...] = arr[:NFLUID]
        if self.chem is not None:
            self.chem[...] = self.xp.moveaxis(arr[NFLUID:], 0, -1)

    # --- construction ---
    def clone_empty(self):
        out = StateVector(self.local_shape, self.nchem, xp=self.xp)
        out.chem_physical = self.chem_physical
        return out

    def copy(self):
        out = StateVector(self.local_shape, self.nchem, data=self.data.copy(), xp=self.xp)
        out.chem_physical = self.chem_physical
        return out

    # --- vector algebra (in place) ---
    def const(self, c):
        self.data[...] = c
        return self

    def scale(self, c):
        self.data *= c
        return self

    def assign(self, other):
        self.data[...] = other.data
        self.chem_physical = other.chem_physical
        return self

    def axpy(self, a, x):
        self.data += a*x.data
        return self

    def linear_sum(self, a, x, b, y):
        self.data[...] = a*x.data + b*y.data
        return self

    # --- reductions ---
    def dot(self, other, ctx=None):
        local = float(self.xp.dot(self.data, other.data))
        return ctx.allreduce(local, op="sum") if ctx is not None else local

    def wrms_norm(self, weights, ctx=None):
        local = float(self.xp.sum((self.data*weights.data)**2))
        n = self.data.size
        if ctx is not None:
            local = ctx.allreduce(local, op="sum")
            n = ctx.allreduce(n, op="sum")
        return float(np.sqrt(local/max(n, 1)))

    def max_norm(self, ctx=None):
        local = float(self.xp.max(self.xp.abs(self.data))) if self.data.size else 0.0
        return ctx.allreduce(local, op="max") if ctx is not None else local
