#!/usr/bin/env python3
# problems/smoke.py
# Uniform state: every flux difference vanishes, so the fluid RHS is zero.

RHO, MX, MY, MZ, ET = 4.0, 0.5, 0.3, 0.1, 2.0


def initial_conditions(t0, state, cfg):
    state["rho"][...] = RHO
    state["mx"][...] = MX
    state["my"][...] = MY
    state["mz"][...] = MZ
    state["et"][...] = ET
    if state.chem is not None:
        for v in range(state.nchem):
            state.chem[..., v] = (v + 1.0)/state.nchem
        state.chem_physical = True
    return 0


def external_forces(t, forces, cfg):
    forces.const(0.0)
    return 0
