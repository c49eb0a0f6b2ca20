#!/usr/bin/env python3
# core/boundary.py
# Ghost-cell (halo) exchange between neighboring ranks plus physical
# boundary synthesis at domain edges.
import numpy as np

from core.decomposition import (BC_DIRICHLET, BC_NEUMANN, BC_PERIODIC, BC_REFLECTING,
                                HALO_WIDTH)
from core.errors import ConfigurationError

NG = HALO_WIDTH


def _sl(axis, s):
    idx = [slice(None)]*4
    idx[axis + 1] = s
    return tuple(idx)


def _local_periodic(pad, axis, n, ng):
    # wraparound within this rank; modular indices also cover n < ng
    lo_src = ng + (np.arange(-ng, 0) % n)
    hi_src = ng + (np.arange(0, ng) % n)
    pad[_sl(axis, slice(0, ng))] = np.take(pad, lo_src, axis=axis + 1)
    pad[_sl(axis, slice(n + ng, n + 2*ng))] = np.take(pad, hi_src, axis=axis + 1)


def _exchange_axis(pad, axis, n, lo, hi, ctx, ng):
    """
    Blocking shift exchange along one axis: first every rank sends its low
    interior slab down and receives its high ghosts from above, then the
    reverse. Neighbors equal to this rank are local periodic copies.
    """
    if lo is None and hi is None:
        return
    if lo == ctx.rank and hi == ctx.rank:
        _local_periodic(pad, axis, n, ng)
        return
    if n < ng:
        raise ConfigurationError(
            f"local extent {n} along axis {axis} is smaller than the halo width {ng}")
    comm = ctx.comm
    tag_down, tag_up = 100 + 2*axis, 101 + 2*axis

    # phase 1: low interior slab -> lo neighbor, hi ghosts <- hi neighbor
    send = np.ascontiguousarray(pad[_sl(axis, slice(ng, 2*ng))])
    recv = np.empty_like(send)
    if lo is not None and hi is not None:
        comm.Sendrecv(sendbuf=send, dest=lo, sendtag=tag_down,
                      recvbuf=recv, source=hi, recvtag=tag_down)
        pad[_sl(axis, slice(n + ng, n + 2*ng))] = recv
    elif lo is not None:
        comm.Send(send, dest=lo, tag=tag_down)
    else:
        comm.Recv(recv, source=hi, tag=tag_down)
        pad[_sl(axis, slice(n + ng, n + 2*ng))] = recv

    # phase 2: high interior slab -> hi neighbor, lo ghosts <- lo neighbor
    send = np.ascontiguousarray(pad[_sl(axis, slice(n, n + ng))])
    recv = np.empty_like(send)
    if lo is not None and hi is not None:
        comm.Sendrecv(sendbuf=send, dest=hi, sendtag=tag_up,
                      recvbuf=recv, source=lo, recvtag=tag_up)
        pad[_sl(axis, slice(0, ng))] = recv
    elif hi is not None:
        comm.Send(send, dest=hi, tag=tag_up)
    else:
        comm.Recv(recv, source=lo, tag=tag_up)
        pad[_sl(axis, slice(0, ng))] = recv


def _fill_face(pad, axis, side, n, bc, ng):
    if bc == BC_PERIODIC:
        return
    nvar = pad.shape[0]
    for k in range(ng):
        src = ng + min(k, n - 1) if side == 0 else ng + n - 1 - min(k, n - 1)
        dst = ng - 1 - k if side == 0 else ng + n + k
        if bc == BC_DIRICHLET:
            pad[_sl(axis, dst)] = 0.0
        elif bc in (BC_NEUMANN, BC_REFLECTING):
            pad[_sl(axis, dst)] = pad[_sl(axis, src)]
            if bc == BC_REFLECTING and nvar > axis + 1:
                pad[axis + 1][_sl(axis, dst)[1:]] *= -1.0
        else:
            raise ConfigurationError(f"unknown boundary condition code {bc}")


def exchange_halos(fields, decomp, ctx, ng=NG):
    """
    fields shape: (nvar, nxl, nyl, nzl); variables 1..3 are the momentum
    components (sign-flipped at reflecting faces), 5.. are passive scalars.
    Returns the padded tile of shape (nvar, nxl+2ng, nyl+2ng, nzl+2ng).
    Axis passes run over the full padded extent of earlier axes, so edge and
    corner ghosts are consistent with the face rules.
    """
    nvar = fields.shape[0]
    nloc = decomp.local_shape
    if tuple(fields.shape[1:]) != tuple(nloc):
        raise ValueError(f"field tile {fields.shape[1:]} does not match local shape {nloc}")
    pad = np.zeros((nvar,) + tuple(n + 2*ng for n in nloc), dtype=fields.dtype)
    pad[:, ng:-ng, ng:-ng, ng:-ng] = fields
    for axis in range(3):
        lo_face, hi_face = "xyz"[axis] + "l", "xyz"[axis] + "r"
        n = nloc[axis]
        _exchange_axis(pad, axis, n, decomp.neighbors[lo_face], decomp.neighbors[hi_face], ctx, ng)
        if decomp.neighbors[lo_face] is None:
            _fill_face(pad, axis, 0, n, decomp.grid.bcs[lo_face], ng)
        if decomp.neighbors[hi_face] is None:
            _fill_face(pad, axis, 1, n, decomp.grid.bcs[hi_face], ng)
    return pad
