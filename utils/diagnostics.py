# utils/diagnostics.py
import numpy as np

from core.state import FLUID_FIELDS

_CONSERVATION = {"mass": None, "energy": None}


def log(ctx, tag, msg):
    if ctx.is_root:
        print(f"[{tag}] {msg}", flush=True)


def reset_conservation():
    _CONSERVATION["mass"] = None
    _CONSERVATION["energy"] = None


def conservation_totals(state, grid, settings, ctx):
    """Global (mass, energy) in grams / ergs, reduced to the root rank (None elsewhere)."""
    xp = state.xp
    dx, dy, dz = grid.spacing
    vol = dx*dy*dz*settings["LENGTH_UNITS"]**3
    local = np.array([float(xp.sum(state["rho"]))*vol*settings["DENSITY_UNITS"],
                      float(xp.sum(state["et"]))*vol*settings["ENERGY_UNITS"]])
    return ctx.reduce(local, op="sum", root=0)


def check_conservation(t, state, grid, settings, ctx):
    """
    First call records and prints the totals; later calls print the
    relative change against them. Returns the (mass, energy) changes on the
    root rank, None elsewhere.
    """
    tot = conservation_totals(state, grid, settings, ctx)
    if not ctx.is_root:
        return None
    mass, energy = float(tot[0]), float(tot[1])
    if _CONSERVATION["mass"] is None:
        _CONSERVATION["mass"], _CONSERVATION["energy"] = mass, energy
        print(f"[diag] t={t:.6e} total mass   = {mass:.16e}", flush=True)
        print(f"[diag] t={t:.6e} total energy = {energy:.16e}", flush=True)
        return 0.0, 0.0
    m0, e0 = _CONSERVATION["mass"], _CONSERVATION["energy"]
    dm = abs(mass - m0)/m0 if m0 != 0.0 else abs(mass)
    de = abs(energy - e0)/e0 if e0 != 0.0 else abs(energy)
    print(f"[diag] t={t:.6e} mass conservation relative change   = {dm:7.2e}", flush=True)
    print(f"[diag] t={t:.6e} energy conservation relative change = {de:7.2e}", flush=True)
    return dm, de


def field_rms(state, grid, ctx, settings=None):
    """
    Global RMS of every fluid field and each species over nx*ny*nz cells.
    With ``settings`` the fluid fields are reported in CGS units.
    """
    xp = state.xp
    factors = [1.0]*len(FLUID_FIELDS)
    if settings is not None:
        mu = settings["MOMENTUM_UNITS"]
        factors = [settings["DENSITY_UNITS"], mu, mu, mu, settings["ENERGY_UNITS"]]
    local = [float(xp.sum((state[name]*f)**2)) for name, f in zip(FLUID_FIELDS, factors)]
    if state.chem is not None:
        sq = xp.sum(state.chem.reshape(-1, state.nchem)**2, axis=0)
        local.extend(float(v) for v in sq)
    tot = ctx.allreduce_array(np.array(local), op="sum")
    n = grid.nx*grid.ny*grid.nz
    return np.sqrt(tot/n)


def print_stats(t, state, grid, ctx, nst, firstlast=1, scientific=True, settings=None):
    """
    Table of per-field RMS values. firstlast=0 prints the header, 2 closes
    the table without a row.
    """
    rms = field_rms(state, grid, ctx, settings) if firstlast < 2 else None
    if not ctx.is_root:
        return rms
    nchem = state.nchem
    if firstlast == 0:
        head = "      t       ||rho||   ||mx||    ||my||    ||mz||    ||et||   "
        head += "".join(f" ||c{v}||   " for v in range(nchem))
        print("\n" + head + "   nst", flush=True)
    if firstlast != 1:
        print("   " + "-"*60 + "-"*10*nchem + "-"*7, flush=True)
    if firstlast < 2:
        fmt = "{:9.1e}" if scientific else "{:9.5f}"
        row = " ".join(fmt.format(v) for v in [t] + list(rms))
        print(f"  {row}  {nst:6d}", flush=True)
    return rms


def print_solver_stats(ctx, stats, title="Overall solver statistics"):
    if not ctx.is_root:
        return
    print(f"[diag] {title}:", flush=True)
    print(f"[diag]    steps = {stats['nst']} (attempted = {stats['nst_a']})", flush=True)
    print(f"[diag]    RHS evals: Fe = {stats['nfe']}, Fi = {stats['nfi']}", flush=True)
    print(f"[diag]    error test failures = {stats['netf']}", flush=True)
    if "nfe_dq" in stats:
        print(f"[diag]    lin RHS evals (DQ) = {stats['nfe_dq']}, lin solves = {stats['nls']}",
              flush=True)
    elif stats["nsetups"] > 0:
        print(f"[diag]    lin solver setups = {stats['nsetups']}, Jac evals = {stats['nje']}",
              flush=True)
    if stats["nni"] > 0:
        print(f"[diag]    nonlin iters = {stats['nni']}, nonlin conv fails = {stats['ncfn']}",
              flush=True)


def has_nonfinite(state, ctx):
    """Globally reduced NaN/Inf check over the whole solution vector."""
    xp = state.xp
    bad = 0 if bool(xp.all(xp.isfinite(state.data))) else 1
    return ctx.allreduce(bad, op="max") > 0
