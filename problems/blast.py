#!/usr/bin/env python3
# problems/blast.py
# Blast wave through a clumpy, essentially neutral primordial medium.
#
#   rho(X) = rho0*(1 + sum_i s_i*exp(-2*(|X-X_i|/r_i)^2)) + rho0*B_DENSITY*exp(-2*(|X-Xc|/Rb)^2)
#   T(X)   = T0*(1 + B_TEMPERATURE*exp(-2*(|X-Xc|/Rb)^2))
#
# The clump centers/radii/strengths are drawn on rank 0 and broadcast so the
# field does not depend on the tiling, only on the number of ranks.
import numpy as np

from core.chemistry import IDX, KB, MH

CLUMPS_PER_PROC = 10
MIN_CLUMP_RADIUS = 3.0      # cells
MAX_CLUMP_RADIUS = 6.0      # cells
MAX_CLUMP_STRENGTH = 10.0   # density multiplier
T0 = 10.0                   # K
B_DENSITY = 10.0
B_TEMPERATURE = 5.0
B_RADIUS = 0.1              # fraction of the shortest domain side
B_CENTER = (0.5, 0.5, 0.5)  # fraction of the domain
RHO0 = 1.0e2*MH             # g/cm^3
HFRAC = 0.76
TINY = 1.0e-40
SMALL = 1.0e-12

H_WEIGHT = 1.00794*MH
HE_WEIGHT = 4.002602*MH


def draw_clumps(ctx, grid, nclumps):
    """(nclumps, 5) array of [cx, cy, cz, radius_cells, strength], identical on every rank."""
    data = None
    if ctx.is_root:
        rng = np.random.default_rng(ctx.size)
        data = np.empty((nclumps, 5))
        data[:, 0] = rng.uniform(grid.xl, grid.xr, nclumps)
        data[:, 1] = rng.uniform(grid.yl, grid.yr, nclumps)
        data[:, 2] = rng.uniform(grid.zl, grid.zr, nclumps)
        data[:, 3] = rng.uniform(MIN_CLUMP_RADIUS, MAX_CLUMP_RADIUS, nclumps)
        data[:, 4] = rng.uniform(0.0, MAX_CLUMP_STRENGTH, nclumps)
    return ctx.bcast(data, root=0)


def blast_fields(cfg):
    """Physical density (g/cm^3), temperature (K) and the blast-radius ratio on the local tile."""
    decomp, ctx = cfg.decomp, cfg.ctx
    grid = decomp.grid
    per_proc = int(cfg.get("BLAST_CLUMPS_PER_PROC", CLUMPS_PER_PROC))
    clumps = draw_clumps(ctx, grid, per_proc*ctx.size)
    if ctx.is_root:
        print(f"[startup] blast: {len(clumps)} clumps, overdensity={B_DENSITY} "
              f"overtemperature={B_TEMPERATURE} radius={B_RADIUS}", flush=True)

    x, y, z = decomp.cell_centers()
    X, Y, Z = np.meshgrid(x, y, z, indexing="ij")
    dx = grid.spacing[0]
    rho0 = cfg.get("BLAST_RHO0") or RHO0
    t0 = float(cfg.get("BLAST_T0", T0))

    density = np.ones(X.shape)
    for cx, cy, cz, cr, cs in clumps:
        rsq = (X - cx)**2 + (Y - cy)**2 + (Z - cz)**2
        cr = cr*dx
        density += cs*np.exp(-2.0*rsq/(cr*cr))
    density *= rho0

    cx = grid.xl + B_CENTER[0]*(grid.xr - grid.xl)
    cy = grid.yl + B_CENTER[1]*(grid.yr - grid.yl)
    cz = grid.zl + B_CENTER[2]*(grid.zr - grid.zl)
    rb = B_RADIUS*min(grid.xr - grid.xl, grid.yr - grid.yl, grid.zr - grid.zl)
    ratio = ((X - cx)**2 + (Y - cy)**2 + (Z - cz)**2)/(rb*rb)
    bump = np.exp(-2.0*ratio)
    density += rho0*B_DENSITY*bump
    temperature = t0 + t0*B_TEMPERATURE*bump
    return density, temperature, ratio


def species_densities(density, ratio):
    """Mass densities per species: HI/HeI inside the blast, 1e-3 traces outside."""
    inside = ratio < 2.0
    trace = 1.0e-3*density
    rho_s = {
        "H2_1": np.where(inside, TINY*density, trace),
        "H2_2": np.where(inside, TINY*density, trace),
        "H_2": np.where(inside, SMALL*density, trace),
        "H_m0": np.where(inside, TINY*density, trace),
        "He_2": np.where(inside, SMALL*density, trace),
        "He_3": np.where(inside, SMALL*density, trace),
    }
    rho_s["He_1"] = (1.0 - HFRAC)*density - rho_s["He_2"] - rho_s["He_3"]
    rho_s["H_1"] = density - sum(rho_s[k] for k in
                                 ("H2_1", "H2_2", "H_2", "H_m0", "He_1", "He_2", "He_3"))
    weights = {"H2_1": 2*H_WEIGHT, "H2_2": 2*H_WEIGHT, "H_1": H_WEIGHT, "H_2": H_WEIGHT,
               "H_m0": H_WEIGHT, "He_1": HE_WEIGHT, "He_2": HE_WEIGHT, "He_3": HE_WEIGHT}
    return {k: rho_s[k]/weights[k] for k in weights}


def initial_conditions(t0, state, cfg):
    s = cfg.settings
    xp = state.xp
    density, temperature, ratio = blast_fields(cfg)
    n = species_densities(density, ratio)
    ndens = sum(n.values())
    # ge uses the hydro GAMMA so the initial pressure is n*kB*T for the Euler
    # update; the network recovers T with its own H2-aware adiabatic index
    ge = KB*temperature*ndens/(density*(s["GAMMA"] - 1.0))

    # fluid at rest, code units
    state["rho"][...] = xp.asarray(density/s["DENSITY_UNITS"])
    state["mx"][...] = 0.0
    state["my"][...] = 0.0
    state["mz"][...] = 0.0
    state["et"][...] = xp.asarray(density*ge/s["ENERGY_UNITS"])

    if state.chem is not None:
        chem = np.zeros(density.shape + (state.nchem,))
        for name, val in n.items():
            chem[..., IDX[name]] = val
        chem[..., IDX["de"]] = n["H_2"] + n["He_2"] + 2.0*n["He_3"] - n["H_m0"] + n["H2_2"]
        chem[..., IDX["ge"]] = ge
        state.chem[...] = xp.asarray(chem)
        state.chem_physical = True
    return 0


def external_forces(t, forces, cfg):
    forces.const(0.0)
    return 0
