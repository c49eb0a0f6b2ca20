#!/usr/bin/env python3
# core/decomposition.py
# Cluster context, global grid description and the 3D Cartesian rank tiling.
import numpy as np

from core.errors import ConfigurationError, DecompositionError

BC_PERIODIC = 0
BC_NEUMANN = 1
BC_DIRICHLET = 2
BC_REFLECTING = 3

BC_NAMES = {
    "periodic": BC_PERIODIC,
    "neumann": BC_NEUMANN,
    "dirichlet": BC_DIRICHLET,
    "reflecting": BC_REFLECTING,
}

FACES = ("xl", "xr", "yl", "yr", "zl", "zr")
HALO_WIDTH = 3   # WENO5 stencil half-width; split axes need tiles at least this thick


def parse_bc(value):
    if isinstance(value, str):
        key = value.strip().lower()
        if key.isdigit():
            value = int(key)
        elif key in BC_NAMES:
            return BC_NAMES[key]
        else:
            raise ConfigurationError(f"unknown boundary condition '{value}'")
    code = int(value)
    if code not in BC_NAMES.values():
        raise ConfigurationError(f"unknown boundary condition code {code}")
    return code


def _mpi_ops():
    from mpi4py import MPI
    return {"max": MPI.MAX, "min": MPI.MIN, "sum": MPI.SUM}


class ClusterContext:
    """Communicator, rank and reduction ops handed to every component."""

    def __init__(self, comm, ops=None):
        self.comm = comm
        self.rank = comm.Get_rank()
        self.size = comm.Get_size()
        self.ops = ops if ops is not None else _mpi_ops()

    @classmethod
    def world(cls):
        from mpi4py import MPI
        return cls(MPI.COMM_WORLD)

    @property
    def is_root(self):
        return self.rank == 0

    def allreduce(self, value, op="max"):
        return self.comm.allreduce(value, op=self.ops[op])

    def reduce(self, value, op="sum", root=0):
        return self.comm.reduce(value, op=self.ops[op], root=root)

    def allreduce_array(self, arr, op="min"):
        send = np.ascontiguousarray(arr)
        recv = np.empty_like(send)
        self.comm.Allreduce(send, recv, op=self.ops[op])
        return recv

    def bcast(self, obj, root=0):
        return self.comm.bcast(obj, root=root)

    def barrier(self):
        self.comm.Barrier()

    def abort(self, code=1):
        self.comm.Abort(code)


class Grid:
    """Global extents, physical bounds and face boundary conditions."""

    def __init__(self, nx, ny, nz, bounds, bcs):
        self.nx, self.ny, self.nz = int(nx), int(ny), int(nz)
        self.xl, self.xr, self.yl, self.yr, self.zl, self.zr = [float(b) for b in bounds]
        self.bcs = {face: parse_bc(bcs[face]) for face in FACES}
        if min(self.nx, self.ny, self.nz) < 1:
            raise ConfigurationError("grid extents must be positive")
        if self.xr <= self.xl or self.yr <= self.yl or self.zr <= self.zl:
            raise ConfigurationError("domain bounds must satisfy lower < upper on every axis")
        for axis in "xyz":
            lo, hi = self.bcs[axis + "l"], self.bcs[axis + "r"]
            if (lo == BC_PERIODIC) != (hi == BC_PERIODIC):
                raise ConfigurationError(
                    f"{axis}-axis: periodic boundary on one face requires periodic on the other "
                    f"({axis}lbc={lo}, {axis}rbc={hi})")

    @classmethod
    def from_settings(cls, s):
        bounds = (s["XL"], s["XR"], s["YL"], s["YR"], s["ZL"], s["ZR"])
        bcs = {face: s[face.upper() + "BC"] for face in FACES}
        return cls(s["NX"], s["NY"], s["NZ"], bounds, bcs)

    @property
    def shape(self):
        return (self.nx, self.ny, self.nz)

    @property
    def spacing(self):
        return ((self.xr - self.xl) / self.nx,
                (self.yr - self.yl) / self.ny,
                (self.zr - self.zl) / self.nz)

    def periodic(self, axis):
        return self.bcs["xyz"[axis] + "l"] == BC_PERIODIC


def balanced_factors(nprocs, dims):
    """
    Pick (npx, npy, npz) with npx*npy*npz == nprocs that minimizes the
    surface of the local tile. Factorizations that leave a split axis
    thinner than the halo are only used when nothing else exists.
    """
    nx, ny, nz = dims
    best, best_key = None, None
    for px in range(1, nprocs + 1):
        if nprocs % px:
            continue
        rest = nprocs // px
        for py in range(1, rest + 1):
            if rest % py:
                continue
            pz = rest // py
            a, b, c = nx / px, ny / py, nz / pz
            thin = any(p > 1 and n // p < HALO_WIDTH for n, p in zip(dims, (px, py, pz)))
            uneven = (nx % px != 0) + (ny % py != 0) + (nz % pz != 0)
            key = (thin,a*b + b*c + a*c, uneven)
            if best_key is None or key < best_key:
                best, best_key = (px, py, pz), key
    return best


def split_extent(n, p, coord):
    base, rem = divmod(n, p)
    count = base + (1 if coord < rem else 0)
    offset = coord*base + min(coord, rem)
    return count, offset


class Decomposition:
    """Per-rank view of the npx x npy x npz tiling (row-major rank order)."""

    def __init__(self, grid, dims, rank):
        self.grid = grid
        self.npx, self.npy, self.npz = dims
        self.nprocs = self.npx*self.npy*self.npz
        self.rank = rank
        self.coords = self.rank_coords(rank)
        cx, cy, cz = self.coords
        self.nxl, self.is_ = split_extent(grid.nx, self.npx, cx)
        self.nyl, self.js = split_extent(grid.ny, self.npy, cy)
        self.nzl, self.ks = split_extent(grid.nz, self.npz, cz)
        self.neighbors = {}
        for axis in range(3):
            lo_face, hi_face = "xyz"[axis] + "l", "xyz"[axis] + "r"
            self.neighbors[lo_face] = self._neighbor(axis, -1)
            self.neighbors[hi_face] = self._neighbor(axis, +1)

    @classmethod
    def create(cls, grid, ctx, dims=None):
        if dims is None:
            dims = balanced_factors(ctx.size, grid.shape)
        if dims[0]*dims[1]*dims[2] != ctx.size:
            raise DecompositionError(f"process tiling {dims} does not match {ctx.size} ranks")
        # decided from global data only, so every rank raises together
        for n, p, axis in zip(grid.shape, dims, "xyz"):
            if p > 1 and n // p < HALO_WIDTH:
                raise DecompositionError(
                    f"{axis}-axis: {p} ranks for {n} cells leaves local tiles thinner "
                    f"than the halo width {HALO_WIDTH}")
        return cls(grid, dims, ctx.rank)

    @property
    def dims(self):
        return (self.npx, self.npy, self.npz)

    @property
    def local_shape(self):
        return (self.nxl, self.nyl, self.nzl)

    @property
    def offsets(self):
        return (self.is_, self.js, self.ks)

    @property
    def ncells(self):
        return self.nxl*self.nyl*self.nzl

    def rank_coords(self, rank):
        cx, rem = divmod(rank, self.npy*self.npz)
        cy, cz = divmod(rem, self.npz)
        return (cx, cy, cz)

    def coords_rank(self, cx, cy, cz):
        return (cx*self.npy + cy)*self.npz + cz

    def _neighbor(self, axis, step):
        c = list(self.coords)
        p = self.dims[axis]
        c[axis] += step
        if c[axis] < 0 or c[axis] >= p:
            if not self.grid.periodic(axis):
                return None
            c[axis] %= p
        return self.coords_rank(*c)

    def tile(self, rank):
        """(offset, count) per axis for any rank; used for gather/reassembly."""
        cx, cy, cz = self.rank_coords(rank)
        nx, ox = split_extent(self.grid.nx, self.npx, cx)
        ny, oy = split_extent(self.grid.ny, self.npy, cy)
        nz, oz = split_extent(self.grid.nz, self.npz, cz)
        return (ox, nx), (oy, ny), (oz, nz)

    def cell_centers(self):
        dx, dy, dz = self.grid.spacing
        x = self.grid.xl + (self.is_ + np.arange(self.nxl) + 0.5)*dx
        y = self.grid.yl + (self.js + np.arange(self.nyl) + 0.5)*dy
        z = self.grid.zl + (self.ks + np.arange(self.nzl) + 0.5)*dz
        return x, y, z
