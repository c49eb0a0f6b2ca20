"""Driver-level tests: energy coupling, conservation and output/restart round trips."""

import glob
import json
import os

import numpy as np
import pytest

from core import euler_core
from core.chemistry import IDX, KB, NSPECIES
from core.decomposition import Decomposition, Grid
from core.errors import DecompositionError, RecoverableError
from core.linear_solver import BlockDiagonalSolver
from core.state import StateVector
from problems import blast
from problems.registry import ProblemSetup, get_problem
from solvers import chem_hydro_mpi
from solvers.chem_hydro_mpi import ChemHydroProblem, run
from solvers.imex_ark import ArkOptions, ImexArkStepper
from utils import diagnostics as diag
from utils.io_utils import gather_output, restart_path
from utils.settings import load_settings

from conftest import make_contexts

BLAST_UNITS = dict(LENGTH_UNITS=3.086e18, TIME_UNITS=3.086e13, MASS_UNITS=4.9078e33)


@pytest.fixture(autouse=True)
def fresh_globals():
    saved = (euler_core.GAMMA, euler_core.FLUX_ID, euler_core.CFL)
    diag.reset_conservation()
    yield
    euler_core.GAMMA, euler_core.FLUX_ID, euler_core.CFL = saved
    diag.reset_conservation()


def settings_from(tmp_path, name="run.json", **cfg):
    path = tmp_path/name
    path.write_text(json.dumps(cfg))
    return load_settings(["--config", str(path)])


def build_problem(s, ctx, network=None):
    euler_core.configure(s)
    grid = Grid.from_settings(s)
    decomp = Decomposition.create(grid, ctx)
    problem = get_problem(s["PROBLEM"])
    setup = ProblemSetup(s, decomp, ctx, network)
    state = StateVector(decomp.local_shape, int(s["NCHEM"]))
    assert problem.initial_conditions(s["T0"], state, setup) == 0
    prob = ChemHydroProblem(s, decomp, ctx, problem, setup, network)
    return prob, state


class FakeDecomp:
    grid = None


class TestEnergyCoupling:
    UNITS = {"TIME_UNITS": 2.0, "ENERGY_UNITS": 3.0, "DENSITY_UNITS": 0.5}

    def bare_problem(self):
        # only the unit conversions are needed here
        return ChemHydroProblem(self.UNITS, FakeDecomp(), None, None, None)

    def make_state(self, seed=0):
        rng = np.random.default_rng(seed)
        y = StateVector((3, 2, 2), NSPECIES)
        y["rho"][...] = rng.uniform(0.5, 2.0, y.local_shape)
        for name in ("mx", "my", "mz"):
            y[name][...] = rng.uniform(-1.0, 1.0, y.local_shape)
        y.chem[...] = rng.uniform(0.1, 1.0, y.chem.shape)
        y.chem_physical = True
        return y

    def test_sync_sets_total_energy_from_ge(self):
        prob = self.bare_problem()
        y = self.make_state()
        prob._sync_energy(y)
        rho = y["rho"]
        ke = 0.5*(y["mx"]**2 + y["my"]**2 + y["mz"]**2)/rho
        np.testing.assert_allclose(y["et"], rho*y.species(IDX["ge"])/6.0 + ke, rtol=1e-14)

    def test_ge_tendency_matches_directional_derivative(self):
        prob = self.bare_problem()
        y = self.make_state(1)
        prob._sync_energy(y)
        ydot = y.clone_empty()
        ydot.fluid[...] = np.random.default_rng(2).normal(size=ydot.fluid.shape)

        def gas_energy(v):
            ke = 0.5*(v["mx"]**2 + v["my"]**2 + v["mz"]**2)/v["rho"]
            return (v["et"] - ke)*prob.ge_per_e/v["rho"]

        eps = 1e-6
        plus, minus = y.copy(), y.copy()
        plus.fluid += eps*ydot.fluid
        minus.fluid -= eps*ydot.fluid
        fd = (gas_energy(plus) - gas_energy(minus))/(2.0*eps)
        np.testing.assert_allclose(prob._gas_energy_tendency(y, ydot), fd, rtol=1e-6, atol=1e-8)


class TestExplicitRHS:
    def test_bad_pressure_raises_recoverable(self, tmp_path, ctx):
        s = settings_from(tmp_path, NX=6, NY=6, NZ=6, NCHEM=0, PROBLEM="smoke")
        prob, state = build_problem(s, ctx)
        state["et"][2:5, 2:5, 2:5] = 0.0
        with pytest.raises(RecoverableError):
            prob.fexpl(0.0, state, state.clone_empty())

    def test_uniform_state_with_chemistry_is_steady(self, tmp_path, ctx, rate_table):
        from core.chemistry import PrimordialNetwork

        s = settings_from(tmp_path, NX=6, NY=6, NZ=6, NCHEM=10, PROBLEM="smoke")
        network = PrimordialNetwork(rate_table, 6*6*6)
        prob, state = build_problem(s, ctx, network)
        network.set_scaling(state.chem_flat())
        network.unapply_scaling(state)
        prob.postprocess(0.0, state)
        ydot = state.clone_empty()
        assert prob.fexpl(0.0, state, ydot) == 0
        np.testing.assert_allclose(ydot.data, 0.0, atol=1e-10)
        assert not state.chem_physical


class TestConservation:
    @pytest.mark.parametrize("bc", [0, 3], ids=["periodic", "reflecting"])
    def test_closed_box_blast_conserves_mass_and_energy(self, tmp_path, ctx, bc):
        walls = {f"{f}BC": bc for f in ("XL", "XR", "YL", "YR", "ZL", "ZR")}
        s = settings_from(tmp_path, NX=16, NY=16, NZ=16, TF=0.02, NOUT=1, NCHEM=0,
                          GAMMA=5.0/3.0, PROBLEM="blast", BLAST_CLUMPS_PER_PROC=2,
                          FIXEDSTEP=1, HMAX=0.005, **walls, **BLAST_UNITS)
        prob, state = build_problem(s, ctx)
        grid = prob.grid
        before = diag.conservation_totals(state, grid, s, ctx)
        stepper = ImexArkStepper(prob, state, 0.0, ArkOptions.from_settings(s),
                                 BlockDiagonalSolver(None, ctx), ctx)
        assert stepper.evolve(0.02) == pytest.approx(0.02)
        assert stepper.nst >= 4
        after = diag.conservation_totals(stepper.y, grid, s, ctx)
        np.testing.assert_allclose(after, before, rtol=1e-12)
        # the blast actually moved something
        assert float(np.abs(stepper.y["mx"]).max()) > 0.0
        assert diag.check_conservation(0.0, state, grid, s, ctx) == (0.0, 0.0)
        dm, de = diag.check_conservation(0.02, stepper.y, grid, s, ctx)
        assert dm < 1e-12 and de < 1e-12


class TestRunAndRestart:
    def smoke_config(self, results, table):
        return dict(NX=6, NY=6, NZ=6, T0=0.0, TF=0.004, NOUT=2, NCHEM=10,
                    LINEAR_SOLVER="dense", RATE_TABLE_FILE=table, FIXEDSTEP=1, HMAX=1e-3,
                    PROBLEM="smoke", RESULTS_DIR=results, SHOWSTATS=1, DEBUG=True,
                    CHECK_NAN_EVERY=1)

    def test_outputs_and_restart(self, tmp_path, ctx, rate_table_file):
        cfg_path = tmp_path/"smoke.json"
        cfg_path.write_text(json.dumps(self.smoke_config(str(tmp_path/"results"), rate_table_file)))
        stepper = run(ctx, ["--config", str(cfg_path)])
        assert stepper.t == pytest.approx(0.004)
        assert stepper.nst == 4
        stats = stepper.stats()
        assert stats["nje"] > 0 and stats["nls"] > 0

        (run_dir,) = glob.glob(str(tmp_path/"results"/"*"))
        for i in range(3):
            assert os.path.exists(os.path.join(run_dir, f"output-{i:04d}_rank0000.npz"))
            assert os.path.exists(restart_path(run_dir, i))
        assert os.path.exists(os.path.join(run_dir, "run_config.json"))

        meta, full = gather_output(run_dir, 2)
        assert meta[0] == pytest.approx(0.004)
        assert full["chem"].shape == (6, 6, 6, NSPECIES)
        assert np.all(np.isfinite(full["chem"]))

        # resume from the first output into a separate results tree
        with open(restart_path(run_dir, 1)) as f:
            restart_cfg = json.load(f)
        assert restart_cfg["RESTART"] == 1
        assert restart_cfg["NOUT"] == 1
        restart_cfg["RESULTS_DIR"] = str(tmp_path/"resumed")
        resume_path = tmp_path/"resume.json"
        resume_path.write_text(json.dumps(restart_cfg))
        diag.reset_conservation()
        resumed = run(ctx, ["--config", str(resume_path)])
        assert resumed.t == pytest.approx(0.004)

        (resumed_dir,) = glob.glob(str(tmp_path/"resumed"/"*"))
        meta_r, full_r = gather_output(resumed_dir, 2)
        assert meta_r[0] == pytest.approx(meta[0])
        for name, arr in full.items():
            np.testing.assert_allclose(full_r[name], arr, rtol=1e-6, err_msg=name)


class TestFatalReporting:
    def test_non_root_rank_reports_before_abort(self, monkeypatch, capsys):
        class OneRankOfTwo:
            @staticmethod
            def world():
                return make_contexts(2)[1]

        def failing_run(ctx, argv=None):
            raise DecompositionError("x-axis: 2 ranks for 5 cells")

        monkeypatch.setattr(chem_hydro_mpi, "ClusterContext", OneRankOfTwo)
        monkeypatch.setattr(chem_hydro_mpi, "run", failing_run)
        with pytest.raises(SystemExit):
            chem_hydro_mpi.main([])
        out = capsys.readouterr().out
        assert "[fatal] rank 1: DecompositionError" in out


class TestBlastInitialState:
    @pytest.mark.parametrize("gamma", [1.4, 5.0/3.0])
    def test_initial_pressure_is_ideal_gas_at_hydro_gamma(self, tmp_path, ctx, gamma):
        s = settings_from(tmp_path, NX=8, NY=8, NZ=8, NCHEM=0, GAMMA=gamma, PROBLEM="blast",
                          BLAST_CLUMPS_PER_PROC=2, **BLAST_UNITS)
        prob, state = build_problem(s, ctx)
        density, temperature, ratio = blast.blast_fields(prob.setup)
        ndens = sum(blast.species_densities(density, ratio).values())
        pressure = (gamma - 1.0)*state["et"]*s["ENERGY_UNITS"]
        np.testing.assert_allclose(pressure, KB*temperature*ndens, rtol=1e-12)
