#!/usr/bin/env python3
# core/euler_core.py
# Newtonian Euler numerics core: WENO5 reconstruction of conserved variables,
# Rusanov/HLL interface fluxes, RHS accumulation and the CFL wave-speed bound.
import numpy as np
import numba as nb

from core.boundary import NG

# Module-level parameters set by configure() before first JIT call.
GAMMA = 1.4
FLUX_ID = 0     # 0=rusanov, 1=hll
CFL = 0.1
SMALL = 1e-12


def configure(params):
    """Set global parameters read by the Python-level wrappers."""
    global GAMMA, FLUX_ID, CFL
    GAMMA = float(params.get("GAMMA", GAMMA))
    CFL = float(params.get("CFL", CFL))
    flux = str(params.get("FLUX", "rusanov")).lower()
    if flux == "hll":
        FLUX_ID = 1
    elif flux == "rusanov":
        FLUX_ID = 0
    else:
        raise ValueError(f"Unknown FLUX '{flux}' (expected 'rusanov' or 'hll')")


# ------------------------
# Euler helpers (Numba)
# ------------------------
@nb.njit(fastmath=True)
def pressure(rho, mx, my, mz, et, gamma):
    return (gamma - 1.0)*(et - 0.5*(mx*mx + my*my + mz*mz)/rho)


@nb.njit(fastmath=True)
def sound_speed(rho, p, gamma):
    return np.sqrt(gamma*p/rho)


@nb.njit(fastmath=True)
def physical_flux(q, nidx, p, f):
    vn = q[nidx]/q[0]
    for v in range(q.shape[0]):
        f[v] = q[v]*vn
    f[nidx] += p
    f[4] += p*vn


@nb.njit(fastmath=True)
def weno5_left(q_im2, q_im1, q_i, q_ip1, q_ip2):
    # left state at i+1/2
    eps = 1e-12
    IS0 = (13.0/12.0)*(q_im2 - 2.0*q_im1 + q_i)**2 + 0.25*(q_im2 - 4.0*q_im1 + 3.0*q_i)**2
    IS1 = (13.0/12.0)*(q_im1 - 2.0*q_i + q_ip1)**2 + 0.25*(q_im1 - q_ip1)**2
    IS2 = (13.0/12.0)*(q_i - 2.0*q_ip1 + q_ip2)**2 + 0.25*(3.0*q_i - 4.0*q_ip1 + q_ip2)**2
    a0 = 0.1 / (eps + IS0)**2
    a1 = 0.6 / (eps + IS1)**2
    a2 = 0.3 / (eps + IS2)**2
    s = a0 + a1 + a2
    p0 = (1.0/3.0)*q_im2 - (7.0/6.0)*q_im1 + (11.0/6.0)*q_i
    p1 = (-1.0/6.0)*q_im1 + (5.0/6.0)*q_i + (1.0/3.0)*q_ip1
    p2 = (1.0/3.0)*q_i + (5.0/6.0)*q_ip1 - (1.0/6.0)*q_ip2
    return (a0*p0 + a1*p1 + a2*p2)/s


@nb.njit(fastmath=True)
def weno5_right(q_ip2, q_ip1, q_i, q_im1, q_im2):
    # right state at i-1/2 (mirror of weno5_left)
    eps = 1e-12
    IS0 = (13.0/12.0)*(q_ip2 - 2.0*q_ip1 + q_i)**2 + 0.25*(q_ip2 - 4.0*q_ip1 + 3.0*q_i)**2
    IS1 = (13.0/12.0)*(q_ip1 - 2.0*q_i + q_im1)**2 + 0.25*(q_ip1 - q_im1)**2
    IS2 = (13.0/12.0)*(q_i - 2.0*q_im1 + q_im2)**2 + 0.25*(3.0*q_i - 4.0*q_im1 + q_im2)**2
    a0 = 0.1 / (eps + IS0)**2
    a1 = 0.6 / (eps + IS1)**2
    a2 = 0.3 / (eps + IS2)**2
    s = a0 + a1 + a2
    p0 = (1.0/3.0)*q_ip2 - (7.0/6.0)*q_ip1 + (11.0/6.0)*q_i
    p1 = (-1.0/6.0)*q_ip1 + (5.0/6.0)*q_i + (1.0/3.0)*q_im1
    p2 = (1.0/3.0)*q_i + (5.0/6.0)*q_im1 - (1.0/6.0)*q_im2
    return (a0*p0 + a1*p1 + a2*p2)/s


@nb.njit(fastmath=True)
def riemann_flux(qL, qR, nidx, gamma, flux_id, fL, fR, out):
    """Rusanov (flux_id=0) or HLL (flux_id=1) flux; returns False on a bad state."""
    rL, rR = qL[0], qR[0]
    if rL <= 0.0 or rR <= 0.0:
        return False
    pL = pressure(rL, qL[1], qL[2], qL[3], qL[4], gamma)
    pR = pressure(rR, qR[1], qR[2], qR[3], qR[4], gamma)
    if pL <= 0.0 or pR <= 0.0:
        return False
    cL = sound_speed(rL, pL, gamma)
    cR = sound_speed(rR, pR, gamma)
    vL = qL[nidx]/rL
    vR = qR[nidx]/rR
    physical_flux(qL, nidx, pL, fL)
    physical_flux(qR, nidx, pR, fR)
    nvar = qL.shape[0]
    if flux_id == 1:
        sL = min(vL - cL, vR - cR)
        sR = max(vL + cL, vR + cR)
        if sL >= 0.0:
            for v in range(nvar):
                out[v] = fL[v]
        elif sR <= 0.0:
            for v in range(nvar):
                out[v] = fR[v]
        else:
            for v in range(nvar):
                out[v] = (sR*fL[v] - sL*fR[v] + sL*sR*(qR[v] - qL[v]))/(sR - sL + SMALL)
    else:
        smax = max(abs(vL) + cL, abs(vR) + cR)
        for v in range(nvar):
            out[v] = 0.5*(fL[v] + fR[v]) - 0.5*smax*(qR[v] - qL[v])
    return True


@nb.njit(parallel=True, fastmath=True)
def sweep_fluxes(q, ng, nidx, gamma, flux_id):
    """
    Interface fluxes along axis 1 of q.
    q shape: (nvar, n + 2*ng, m1, m2) with transverse axes already trimmed
    to the interior. Returns (flux, nbad) with flux shape (nvar, n+1, m1, m2);
    face f sits between interior cells f-1 and f.
    """
    nvar = q.shape[0]
    n = q.shape[1] - 2*ng
    m1, m2 = q.shape[2], q.shape[3]
    flux = np.zeros((nvar, n + 1, m1, m2))
    bad = np.zeros(m1, dtype=np.int64)
    for j in nb.prange(m1):
        qL = np.empty(nvar)
        qR = np.empty(nvar)
        fL = np.empty(nvar)
        fR = np.empty(nvar)
        fo = np.empty(nvar)
        for k in range(m2):
            for f in range(n + 1):
                c = ng + f - 1
                for v in range(nvar):
                    qL[v] = weno5_left(q[v, c-2, j, k], q[v, c-1, j, k], q[v, c, j, k],
                                       q[v, c+1, j, k], q[v, c+2, j, k])
                    qR[v] = weno5_right(q[v, c+3, j, k], q[v, c+2, j, k], q[v, c+1, j, k],
                                        q[v, c, j, k], q[v, c-1, j, k])
                if riemann_flux(qL, qR, nidx, gamma, flux_id, fL, fR, fo):
                    for v in range(nvar):
                        flux[v, f, j, k] = fo[v]
                else:
                    bad[j] += 1
    return flux, bad.sum()


@nb.njit(parallel=True, fastmath=True)
def max_wave_speed(fields, gamma):
    nx, ny, nz = fields.shape[1], fields.shape[2], fields.shape[3]
    amax_i = np.zeros(nx)
    for i in nb.prange(nx):
        loc = 0.0
        for j in range(ny):
            for k in range(nz):
                rho = fields[0, i, j, k]
                if rho <= 0.0:
                    continue
                p = pressure(rho, fields[1, i, j, k], fields[2, i, j, k],
                             fields[3, i, j, k], fields[4, i, j, k], gamma)
                cs = sound_speed(rho, max(p, 0.0), gamma)
                for a in range(1, 4):
                    s = abs(fields[a, i, j, k]/rho) + cs
                    if s > loc:
                        loc = s
        amax_i[i] = loc
    amax = 0.0
    for i in range(nx):
        if amax_i[i] > amax:
            amax = amax_i[i]
    return amax


# ------------------------
# Python-level drivers
# ------------------------
def _axis_view(pad, axis, ng):
    if axis == 0:
        return pad[:, :, ng:-ng, ng:-ng]
    if axis == 1:
        return pad[:, ng:-ng, :, ng:-ng].transpose(0, 2, 1, 3)
    return pad[:, ng:-ng, ng:-ng, :].transpose(0, 3, 1, 2)


def compute_rhs_weno(pad, spacing, gamma=None, flux_id=None, ng=NG):
    """
    -dF/dx - dG/dy - dH/dz for a haloed tile.
    pad shape: (nvar, nx+2ng, ny+2ng, nz+2ng); variables 0..4 are
    rho, mx, my, mz, et and any further ones are advected densities.
    Returns (rhs, nbad) where nbad counts interfaces whose reconstructed
    state had non-positive density or pressure.
    """
    gamma = GAMMA if gamma is None else gamma
    flux_id = FLUX_ID if flux_id is None else flux_id
    nvar = pad.shape[0]
    nloc = tuple(s - 2*ng for s in pad.shape[1:])
    rhs = np.zeros((nvar,) + nloc)
    nbad = 0
    for axis in range(3):
        q = np.ascontiguousarray(_axis_view(pad, axis, ng))
        flux, bad = sweep_fluxes(q, ng, axis + 1, gamma, flux_id)
        nbad += int(bad)
        div = (flux[:, 1:] - flux[:, :-1])/spacing[axis]
        if axis == 0:
            rhs -= div
        elif axis == 1:
            rhs -= div.transpose(0, 2, 1, 3)
        else:
            rhs -= div.transpose(0, 2, 3, 1)
    return rhs, nbad


def stable_dt(fields, spacing, ctx, cfl=None, gamma=None):
    """CFL step bound from the globally max-reduced wave speed."""
    cfl = CFL if cfl is None else cfl
    gamma = GAMMA if gamma is None else gamma
    amax_local = max_wave_speed(np.ascontiguousarray(fields[:5]), gamma)
    amax = ctx.allreduce(amax_local, op="max")
    return cfl*min(spacing)/max(amax, SMALL), amax


def pressure_field(fields, gamma=None):
    gamma = GAMMA if gamma is None else gamma
    rho, mx, my, mz, et = fields[0], fields[1], fields[2], fields[3], fields[4]
    return (gamma - 1.0)*(et - 0.5*(mx*mx + my*my + mz*mz)/rho)
