#!/usr/bin/env python3
# tools/chemistry_relax.py
# Single-cell relaxation of the primordial network: linearly implicit Euler
# steps through the same block solver the driver uses.
import argparse
import os
import sys

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

import numpy as np

from core.chemistry import GAMMA_GAS, IDX, KB, NSPECIES, load_network
from core.decomposition import ClusterContext
from core.errors import SUCCESS
from core.linear_solver import make_local_solver
from problems.blast import species_densities
from utils.settings import load_config_file


def initial_cell(rho, T, inside):
    """Physical species for one cell, blast-core (inside) or ambient abundances."""
    density = np.array([rho])
    n = species_densities(density, np.array([0.0 if inside else 4.0]))
    y = np.zeros(NSPECIES)
    for name, val in n.items():
        y[IDX[name]] = val[0]
    y[IDX["de"]] = n["H_2"][0] + n["He_2"][0] + 2.0*n["He_3"][0] - n["H_m0"][0] + n["H2_2"][0]
    y[IDX["ge"]] = KB*T*sum(v[0] for v in n.values())/(rho*(GAMMA_GAS - 1.0))
    return y


def main():
    ap = argparse.ArgumentParser(description="Single-cell primordial chemistry relaxation test.")
    ap.add_argument("--config", help="config JSON/JSON5 (RATE_TABLE_FILE, LINEAR_SOLVER)")
    ap.add_argument("--tables", default=None, help="rate table file (overrides the config)")
    ap.add_argument("--steps", type=int, default=20)
    ap.add_argument("--dt", type=float, default=1.0e9, help="step in seconds")
    ap.add_argument("--rho", type=float, default=1.67e-22, help="g/cm^3")
    ap.add_argument("--T", type=float, default=3000.0, help="K")
    ap.add_argument("--ambient", action="store_true", help="start from the ambient abundances")
    args = ap.parse_args()

    cfg = load_config_file(args.config) if args.config else {}
    tables = args.tables or cfg.get("RATE_TABLE_FILE") or "cvklu_tables.h5"
    kind = cfg.get("LINEAR_SOLVER") or "dense"

    ctx = ClusterContext.world()
    net = load_network(tables, ctx, 1, redshift=float(cfg.get("REDSHIFT", 0.0)))
    lsolver = make_local_solver(kind, 1, NSPECIES, net)

    yp = initial_cell(args.rho, args.T, not args.ambient)
    net.set_scaling(yp)
    y = yp*net.inv_scale.ravel()

    print("step,t,T,H_1,H_2,H2_1,de,ge")
    t = 0.0
    for n in range(args.steps + 1):
        f = net.rhs(y)
        net.fchemcur = f
        phys = y*net.scale.ravel()
        print(f"{n},{t:.6e},{float(net.temperature()[0]):.6e},{phys[IDX['H_1']]:.6e},"
              f"{phys[IDX['H_2']]:.6e},{phys[IDX['H2_1']]:.6e},{phys[IDX['de']]:.6e},"
              f"{phys[IDX['ge']]:.6e}")
        if n == args.steps:
            break
        jac = None
        if lsolver.jacobian_format is not None:
            jac = net.jacobian(y, fmt=lsolver.jacobian_format)
        lsolver.set_linearization(y, args.dt, np.ones_like(y))
        if lsolver.setup(lsolver.newton_matrix(jac, args.dt)) != SUCCESS:
            raise SystemExit(f"[relax] Newton matrix setup failed at step {n}")
        dy = np.empty_like(y)
        if lsolver.solve(dy, args.dt*f, 1e-8) != SUCCESS:
            raise SystemExit(f"[relax] linear solve failed at step {n}")
        y = y + dy
        t += args.dt


if __name__ == "__main__":
    main()
