#!/usr/bin/env python3
# chem_hydro_mpi.py: 3D compressible Euler + primordial chemistry, WENO5 + IMEX ARK(2,2,2)
# MPI 3D Cartesian decomposition, blocking Sendrecv halo exchange, explicit
# hydro / implicit chemistry with a block-diagonal (per-rank) Newton solver.
#
# Usage:
#   python3 -m pip install -e .
#   mpirun -np 4 python3 solvers/chem_hydro_mpi.py --config config/blast.json
#   mpirun -np 4 python3 solvers/chem_hydro_mpi.py --config results/<date>/restart-0005.json

import os, sys, time

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

import numpy as np

from core import euler_core
from core.boundary import exchange_halos
from core.chemistry import IDX, NSPECIES, load_network
from core.decomposition import ClusterContext, Decomposition, Grid
from core.errors import (CHEM_FAIL_RECOV, RHS_FAIL_RECOV, ConfigurationError, IOFailure,
                         RecoverableError, UnrecoverableError)
from core.linear_solver import BlockDiagonalSolver, make_local_solver
from core.state import StateVector
from problems.registry import ProblemSetup, get_problem
from solvers.imex_ark import ArkOptions, ImexArkStepper
from utils import diagnostics as diag
from utils.backend import get_backend, to_numpy
from utils.io_utils import (make_run_dir, read_restart, write_output, write_restart,
                            write_run_config)
from utils.settings import load_settings_collective


def _check_hook(ret, what):
    if ret != 0:
        raise ConfigurationError(f"{what} returned {ret}")


class ChemHydroProblem:
    """
    Integrator callbacks for the coupled system. The chemistry block of every
    vector the integrator hands in is normalized; fexpl/postprocess move it to
    physical units only for as long as they need the gas energy.
    """

    def __init__(self, settings, decomp, ctx, problem, setup, network=None, jac_format=None):
        self.s = settings
        self.decomp = decomp
        self.grid = decomp.grid
        self.ctx = ctx
        self.problem = problem
        self.setup = setup
        self.network = network
        self.jac_format = jac_format
        self.time_units = float(settings["TIME_UNITS"])
        self.energy_units = float(settings["ENERGY_UNITS"])
        # ge [erg/g] <-> internal energy density in code units: e = rho*ge/ge_per_e
        self.ge_per_e = self.energy_units/float(settings["DENSITY_UNITS"])
        self.forces = None

    # ------------------------
    # helpers
    # ------------------------
    def _collective_check(self, local_bad, msg, code):
        # every rank raises together, or none does
        if self.ctx.allreduce(1 if local_bad else 0, op="max"):
            raise RecoverableError(msg, code=code)

    def _sync_energy(self, y):
        """et = rho*ge (code units) + kinetic energy; y's chemistry must be physical."""
        ge = y.species(IDX["ge"])
        rho = y["rho"]
        y["et"][...] = rho*ge/self.ge_per_e + 0.5*(y["mx"]**2 + y["my"]**2 + y["mz"]**2)/rho

    def _gas_energy_tendency(self, y, ydot):
        """
        d(ge)/dt implied by the fluid RHS, ge = (et - |m|^2/(2 rho))*ge_per_e/rho.
        y must hold physical chemistry; result is per code time, in erg/g.
        """
        rho, mx, my, mz = y["rho"], y["mx"], y["my"], y["mz"]
        rdot = ydot["rho"]
        m2 = mx*mx + my*my + mz*mz
        mdotm = mx*ydot["mx"] + my*ydot["my"] + mz*ydot["mz"]
        e = rho*y.species(IDX["ge"])/self.ge_per_e
        edot = ydot["et"] - mdotm/rho + 0.5*m2*rdot/(rho*rho)
        return self.ge_per_e*(edot - e*rdot/rho)/rho

    # ------------------------
    # integrator callbacks
    # ------------------------
    def fexpl(self, t, y, ydot):
        net = self.network
        ydot.const(0.0)
        if self.forces is None:
            self.forces = ydot.clone_empty()
        if net is not None:
            net.apply_scaling(y)
        try:
            if net is not None:
                self._sync_energy(y)
            pad = exchange_halos(to_numpy(y.transport_fields()), self.decomp, self.ctx)
            rhs, nbad = euler_core.compute_rhs_weno(pad, self.grid.spacing)
            bad = nbad > 0 or not np.all(np.isfinite(rhs))
            ydot.set_transport_fields(ydot.xp.asarray(rhs))
            _check_hook(self.problem.external_forces(t, self.forces, self.setup),
                        "external_forces")
            ydot.fluid += self.forces.fluid
            if net is not None and not bad:
                # gas-energy tendency comes from the total energy equation
                chemdot = ydot.chem_flat().reshape(net.ncells, NSPECIES)
                chemdot[:, IDX["ge"]] = self._gas_energy_tendency(y, ydot).reshape(-1)
                chemdot *= net.inv_scale
                ydot["et"][...] = 0.0
        finally:
            if net is not None:
                net.unapply_scaling(y)
        self._collective_check(bad, "WENO reconstruction produced non-positive density/pressure",
                               RHS_FAIL_RECOV)
        return 0

    def fimpl(self, t, y, ydot):
        ydot.const(0.0)
        net = self.network
        if net is None:
            return 0
        err, fc = None, None
        try:
            fc = net.rhs(y.chem_flat())*self.time_units
        except RecoverableError as exc:
            err = exc
        self._collective_check(err is not None,
                               f"chemistry RHS failed: {err or 'on another rank'}", CHEM_FAIL_RECOV)
        ydot.chem_flat()[...] = fc
        net.fchemcur = fc
        return 0

    def jimpl(self, t, y, fy):
        net = self.network
        if net is None:
            return None
        err, jac = None, None
        try:
            jac = net.jacobian(y.chem_flat(), fmt=self.jac_format, factor=self.time_units)
        except RecoverableError as exc:
            err = exc
        self._collective_check(err is not None,
                               f"chemistry Jacobian failed: {err or 'on another rank'}",
                               CHEM_FAIL_RECOV)
        return jac

    def postprocess(self, t, y):
        net = self.network
        if net is None:
            return 0
        net.apply_scaling(y)
        try:
            self._sync_energy(y)
        finally:
            net.unapply_scaling(y)
        return 0

    def stable_dt(self, t, y):
        dt, _ = euler_core.stable_dt(to_numpy(y.fluid), self.grid.spacing, self.ctx)
        return dt


def snapshot(run_dir, iout, y, network, decomp, settings, ctx, t, h):
    out = y.copy()
    if network is not None:
        network.apply_scaling(out)
    fname = write_output(run_dir, iout, out, decomp, settings, t, h)
    if ctx.is_root:
        write_restart(run_dir, iout, settings, decomp, t, h)
    diag.log(ctx, "io", f"wrote {os.path.basename(fname)} (+{ctx.size - 1} ranks) t={t:.6e}")


def run(ctx, argv=None):
    s = load_settings_collective(ctx, argv)
    euler_core.configure(s)
    xp, backend_name = get_backend(s["BACKEND"])
    DEBUG = bool(s["DEBUG"])
    SHOWSTATS = bool(s["SHOWSTATS"])
    CHECK_NAN_EVERY = int(s["CHECK_NAN_EVERY"])

    grid = Grid.from_settings(s)
    dims = None
    if s["NPX"] is not None:
        dims = (int(s["NPX"]), int(s["NPY"]), int(s["NPZ"]))
    decomp = Decomposition.create(grid, ctx, dims)
    nchem = int(s["NCHEM"])

    # --- create output dir (root decides, so timestamps agree) ---
    RUN_DIR = None
    if ctx.is_root:
        RUN_DIR = make_run_dir(base=s["RESULTS_DIR"], unique=s.get("RESULTS_UNIQUE", False))
        write_run_config(RUN_DIR, s)
    RUN_DIR = ctx.bcast(RUN_DIR, root=0)
    diag.log(ctx, "startup", f"run directory: {RUN_DIR}")

    # --- startup banner ---
    diag.log(ctx, "startup", f"ranks={ctx.size} ({decomp.npx} x {decomp.npy} x {decomp.npz}) "
                             f"grid={grid.nx}x{grid.ny}x{grid.nz} nchem={nchem} "
                             f"backend={backend_name} debug={DEBUG}")
    diag.log(ctx, "startup", f"domain [{grid.xl}, {grid.xr}] x [{grid.yl}, {grid.yr}] x "
                             f"[{grid.zl}, {grid.zr}]  bcs={grid.bcs}")
    diag.log(ctx, "startup", f"time ({s['T0']}, {s['TF']}] (cgs: ({s['T0']*s['TIME_UNITS']:.6e}, "
                             f"{s['TF']*s['TIME_UNITS']:.6e}]) dTout={s['DTOUT']:.6e} "
                             f"gamma={s['GAMMA']} cfl={s['CFL']} flux={s['FLUX']}")
    if int(s["FIXEDSTEP"]) > 0:
        diag.log(ctx, "startup", f"fixed step {s['HMAX']} (transient window {s['HTRANS']})")

    # --- chemistry network and state ---
    network = None
    if nchem > 0:
        network = load_network(s["RATE_TABLE_FILE"], ctx, decomp.ncells, redshift=s["REDSHIFT"],
                               xp=xp, temp_iters=s["TEMP_ITERS"], temp_tol=s["TEMP_TOL"])
        diag.log(ctx, "startup", f"rate tables: {s['RATE_TABLE_FILE']} "
                                 f"linear solver: {s['LINEAR_SOLVER']}")
    state = StateVector(decomp.local_shape, nchem, xp=xp)
    problem = get_problem(s["PROBLEM"])
    setup = ProblemSetup(s, decomp, ctx, network)

    opts = ArkOptions.from_settings(s)
    restart = int(s["RESTART"])
    if restart < 0:
        _check_hook(problem.initial_conditions(s["T0"], state, setup), "initial_conditions")
        t0, iout0 = float(s["T0"]), 0
    else:
        restart_dir = s.get("RESTART_DIR") or RUN_DIR
        t0, hsaved = read_restart(restart_dir, restart, state, decomp, s)
        iout0 = restart
        if opts.h0 <= 0.0:
            opts.h0 = hsaved
        diag.log(ctx, "startup", f"restarting from output {restart} in {restart_dir} (t={t0:.6e})")

    if network is not None:
        # state comes out of the problem/restart in physical units
        network.set_scaling(state.chem_flat())
        network.unapply_scaling(state)

    local = None
    if network is not None:
        local = make_local_solver(s["LINEAR_SOLVER"], decomp.ncells, nchem, network,
                                  time_units=s["TIME_UNITS"], maxl=s["GMRES_MAXL"])
    lsolver = BlockDiagonalSolver(local, ctx)
    prob = ChemHydroProblem(s, decomp, ctx, problem, setup, network, lsolver.jacobian_format)
    prob.postprocess(t0, state)

    # --- DEBUG: JIT warm-up ---
    if DEBUG:
        tic = time.time()
        scratch = state.clone_empty()
        prob.fexpl(t0, state.copy(), scratch)
        ctx.barrier()
        diag.log(ctx, "jit", f"WENO kernels compiled and first call done ({time.time() - tic:.2f}s)")

    stepper = ImexArkStepper(prob, state, t0, opts, lsolver, ctx)
    y = stepper.y

    # --- initial outputs ---
    if SHOWSTATS:
        diag.check_conservation(t0, y, grid, s, ctx)
        diag.print_stats(t0, y, grid, ctx, stepper.nst, firstlast=0)
    snapshot(RUN_DIR, iout0, y, network, decomp, s, ctx, t0, opts.h0)

    # --- transient window: adaptive over [t0, t0+htrans], fixed afterwards ---
    if opts.fixedstep == 2:
        stepper.evolve(t0 + opts.htrans)
        diag.print_solver_stats(ctx, stepper.stats(), "transient portion complete")
        if SHOWSTATS:
            diag.print_stats(stepper.t, y, grid, ctx, stepper.nst, firstlast=1)

    # --- output loop ---
    dTout = float(s["DTOUT"])
    tf = float(s["TF"])
    tic = time.time()
    for iout in range(iout0, iout0 + int(s["NOUT"])):
        tout = min(t0 + (iout - iout0 + 1)*dTout, tf)
        if stepper.t >= tout:
            continue
        t = stepper.evolve(tout)

        if ctx.is_root:
            print(f"[rank0] t={t:.6e} h={stepper.hlast:.3e} step={stepper.nst} "
                  f"out={iout + 1} wall={time.time() - tic:.2f}s", flush=True)
        if DEBUG:
            st = stepper.stats()
            diag.log(ctx, "debug", f"nni={st['nni']} ncfn={st['ncfn']} netf={st['netf']} "
                                   f"nsetups={st['nsetups']} nls={st['nls']} "
                                   f"nfe_dq={lsolver.nfe_dq}")

        # optional health check
        if CHECK_NAN_EVERY > 0 and ((iout + 1) % CHECK_NAN_EVERY == 0):
            if diag.has_nonfinite(y, ctx):
                diag.log(ctx, "warn", "NaN/Inf detected in the solution!")
                raise UnrecoverableError(f"NaN/Inf in the solution at t={t:.6e}")

        if SHOWSTATS:
            diag.print_stats(t, y, grid, ctx, stepper.nst, firstlast=1)
        snapshot(RUN_DIR, iout + 1, y, network, decomp, s, ctx, t, stepper.hlast)
        if t >= tf:
            break

    if SHOWSTATS:
        diag.print_stats(stepper.t, y, grid, ctx, stepper.nst, firstlast=2)
    diag.print_solver_stats(ctx, stepper.stats())
    if SHOWSTATS:
        diag.log(ctx, "diag", "conservation check:")
        diag.check_conservation(stepper.t, y, grid, s, ctx)
    lsolver.free()
    diag.log(ctx, "done", f"wall={time.time() - tic:.2f}s")
    return stepper


def main(argv=None):
    ctx = ClusterContext.world()
    try:
        run(ctx, argv)
    except (ConfigurationError, IOFailure, UnrecoverableError) as exc:
        # every raising rank reports: Abort may tear the job down before root gets here
        print(f"[fatal] rank {ctx.rank}: {type(exc).__name__}: {exc}", flush=True)
        ctx.abort(1)
        return 1
    if ctx.is_root:
        print("Done.", flush=True)
    return 0


if __name__ == "__main__":
    main()
