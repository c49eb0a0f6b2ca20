#!/usr/bin/env python3
# core/chemistry.py
# Nine-species primordial H/He/H2 network plus gas energy: temperature
# solve, table-interpolated rates, RHS and the per-cell sparse Jacobian.
# All cell loops are vectorized through the backend array module ``xp``.
import numpy as np

from core.errors import CHEM_FAIL_RECOV, RecoverableError
from core.rate_table import load_rate_tables

SPECIES = ("H2_1", "H2_2", "H_1", "H_2", "H_m0", "He_1", "He_2", "He_3", "de", "ge")
NSPECIES = len(SPECIES)
IDX = {name: i for i, name in enumerate(SPECIES)}

RATE_NAMES = ("k01", "k02", "k03", "k04", "k05", "k06", "k07", "k08", "k09", "k10",
              "k11", "k12", "k13", "k14", "k15", "k16", "k17", "k18", "k19", "k21", "k22")
COOLING_NAMES = (
    "brem_brem", "ceHeI_ceHeI", "ceHeII_ceHeII", "ceHI_ceHI", "cie_cooling_cieco",
    "ciHeI_ciHeI", "ciHeII_ciHeII", "ciHeIS_ciHeIS", "ciHI_ciHI", "compton_comp_",
    "gloverabel08_gael", "gloverabel08_gaH2", "gloverabel08_gaHe", "gloverabel08_gaHI",
    "gloverabel08_gaHp", "gloverabel08_h2lte",
    "h2formation_h2mcool", "h2formation_h2mheat", "h2formation_ncrd1",
    "h2formation_ncrd2", "h2formation_ncrn",
    "reHeII1_reHeII1", "reHeII2_reHeII2", "reHeIII_reHeIII", "reHII_reHII",
)
GAMMA_NAMES = ("gammaH2_1", "dgammaH2_1_dT", "gammaH2_2", "dgammaH2_2_dT")
TABLE_NAMES = RATE_NAMES + COOLING_NAMES + GAMMA_NAMES

# mass weights (in units of mH) used for the mixture mass density
MASS_WEIGHTS = np.array([2.0, 2.0, 1.00794, 1.00794, 1.00794,
                         4.002602, 4.002602, 4.002602, 0.0, 0.0])

KB = 1.3806504e-16
MH = 1.67e-24
GAMMA_GAS = 5.0/3.0
TINY = 1.0e-40
T_SEED = 1000.0

# fixed per-cell sparsity: row -> columns, row-major
JAC_COLS = (
    (0, 1, 2, 3, 4, 8, 9),
    (0, 1, 2, 3, 4, 8, 9),
    (0, 1, 2, 3, 4, 8, 9),
    (0, 1, 2, 3, 4, 8, 9),
    (1, 2, 3, 4, 8, 9),
    (5, 6, 8, 9),
    (5, 6, 7, 8, 9),
    (6, 7, 8, 9),
    (1, 2, 3, 4, 5, 6, 7, 8, 9),
    (0, 2, 3, 5, 6, 7, 8, 9),
)
JAC_ENTRIES = tuple((r, c) for r, cols in enumerate(JAC_COLS) for c in cols)
NNZ_PER_CELL = len(JAC_ENTRIES)
JAC_ROWPTR = np.cumsum([0] + [len(c) for c in JAC_COLS])


def csr_pattern(ncells):
    """(indptr, indices) of the block-diagonal CSR matrix for ncells cells."""
    cols = np.array([c for _, c in JAC_ENTRIES], dtype=np.int64)
    indices = (np.arange(ncells, dtype=np.int64)[:, None]*NSPECIES + cols[None, :]).ravel()
    indptr = (np.arange(ncells, dtype=np.int64)[:, None]*NNZ_PER_CELL
              + JAC_ROWPTR[None, :-1]).ravel()
    indptr = np.append(indptr, ncells*NNZ_PER_CELL)
    return indptr, indices


def load_network(path, ctx, ncells, redshift=0.0, xp=np, temp_iters=10, temp_tol=0.0):
    table = load_rate_tables(path, ctx, TABLE_NAMES)
    return PrimordialNetwork(table, ncells, redshift=redshift, xp=xp,
                             temp_iters=temp_iters, temp_tol=temp_tol)


class PrimordialNetwork:
    """
    Per-rank chemistry workspace and kinetics.

    Solution vectors handed to rhs()/jacobian() are *normalized* species,
    flattened cell-major with NSPECIES entries per cell; physical values are
    y*scale. ``Ts`` persists between calls and seeds the next temperature
    iteration.
    """

    def __init__(self, table, ncells, redshift=0.0, xp=np, temp_iters=10, temp_tol=0.0):
        missing = [n for n in TABLE_NAMES if n not in table]
        if missing:
            raise KeyError(f"rate table is missing {', '.join(missing)}")
        if int(temp_iters) < 1:
            raise ValueError("temp_iters must be >= 1")
        self.table = table
        self.xp = xp
        self._tables = table.to_backend(xp)
        self.ncells = int(ncells)
        self.redshift = float(redshift)
        self.temp_iters = int(temp_iters)
        self.temp_tol = float(temp_tol)

        self.Ts = xp.full(self.ncells, T_SEED)
        self.dTs_ge = xp.zeros(self.ncells)
        self.scale = xp.ones((self.ncells, NSPECIES))
        self.inv_scale = xp.ones((self.ncells, NSPECIES))
        self.mdensity = xp.ones(self.ncells)
        self.inv_mdensity = xp.ones(self.ncells)
        self.cie_oda = xp.ones(self.ncells)
        self.h2_oda = xp.ones(self.ncells)

        self.rs, self.drs = {}, {}
        self._ws_y = None
        self.fchemcur = None
        self._pattern = None

    # ------------------------
    # scaling
    # ------------------------
    def set_scaling(self, chem_physical):
        """Per-entry normalization from a physical-unit chemistry block."""
        xp = self.xp
        c = xp.asarray(chem_physical).reshape(self.ncells, NSPECIES)
        self.scale = xp.maximum(xp.abs(c), TINY)
        self.inv_scale = 1.0/self.scale
        self._setup_extra_variables()
        self._ws_y = None

    def _setup_extra_variables(self):
        # mass density and optical-depth approximations from the reference abundances
        xp = self.xp
        w = xp.asarray(MASS_WEIGHTS)
        mdensity = (self.scale*w[None, :]).sum(axis=1)*MH
        if bool(xp.any(mdensity <= 0.0)):
            raise RecoverableError("non-positive mass density in chemistry scaling",
                                   code=CHEM_FAIL_RECOV)
        tau = xp.maximum((mdensity/3.3e-8)**2.8, 1.0e-5)
        self.mdensity = mdensity
        self.inv_mdensity = 1.0/mdensity
        self.cie_oda = xp.minimum(1.0, (1.0 - xp.exp(-tau))/tau)
        self.h2_oda = xp.minimum(1.0, (mdensity/(1.34e-14))**-0.45)

    def apply_scaling(self, state):
        """Normalized -> physical, in place on state.chem. No-op if already physical."""
        if state.chem is None or state.chem_physical:
            return state
        flat = state.chem_flat().reshape(self.ncells, NSPECIES)
        flat *= self.scale
        state.chem_physical = True
        return state

    def unapply_scaling(self, state):
        """Physical -> normalized, in place on state.chem. No-op if already normalized."""
        if state.chem is None or not state.chem_physical:
            return state
        flat = state.chem_flat().reshape(self.ncells, NSPECIES)
        flat *= self.inv_scale
        state.chem_physical = False
        return state

    # ------------------------
    # temperature and rates
    # ------------------------
    def calculate_temperature(self, y):
        """
        Newton iteration for T(ge) with species-dependent H2 adiabatic
        indices; y is physical, shape (ncells, NSPECIES).
        """
        xp = self.xp
        tab = self.table
        H2_1, H2_2 = y[:, 0], y[:, 1]
        H_1, H_2, H_m0 = y[:, 2], y[:, 3], y[:, 4]
        He_1, He_2, He_3 = y[:, 5], y[:, 6], y[:, 7]
        de, ge = y[:, 8], y[:, 9]

        density = 2.0*H2_1 + 2.0*H2_2 + 1.00794*(H_1 + H_2 + H_m0) + 4.002602*(He_1 + He_2 + He_3)
        if bool(xp.any(density <= 0.0)):
            raise RecoverableError("non-positive mass density in temperature solve",
                                   code=CHEM_FAIL_RECOV)
        rho_mh = density*MH
        mono = (H_1 + H_2 + H_m0 + He_1 + He_2 + He_3 + de)/(GAMMA_GAS - 1.0)

        T = self.Ts.copy()
        dge_dT = None
        for _ in range(self.temp_iters):
            Tl = xp.clip(T, tab.tmin, tab.tmax)
            g, _d = tab.interpolate_many(GAMMA_NAMES, Tl, xp, self._tables)
            gm1_1 = 1.0/(g["gammaH2_1"] - 1.0)
            gm1_2 = 1.0/(g["gammaH2_2"] - 1.0)
            nsum = H2_1*gm1_1 + H2_2*gm1_2 + mono
            dge_dT = (T*KB*(-H2_1*gm1_1*gm1_1*g["dgammaH2_1_dT"]
                            - H2_2*gm1_2*gm1_2*g["dgammaH2_2_dT"])/rho_mh
                      + KB*nsum/rho_mh)
            dge = T*KB*nsum/rho_mh - ge
            Tnew = T - dge/dge_dT
            if self.temp_tol > 0.0:
                rel = float(xp.max(xp.abs(Tnew - T)/xp.abs(Tnew)))
                T = Tnew
                if rel < self.temp_tol:
                    break
            else:
                T = Tnew

        if not bool(xp.all(xp.isfinite(T))):
            raise RecoverableError("non-finite temperature in chemistry network",
                                   code=CHEM_FAIL_RECOV)
        self.Ts = xp.clip(T, tab.tmin, tab.tmax)
        self.dTs_ge = 1.0/dge_dT
        return self.Ts

    def interpolate_rates(self):
        self.rs, self.drs = self.table.interpolate_many(
            RATE_NAMES + COOLING_NAMES, self.Ts, self.xp, self._tables)

    def _physical(self, y):
        return self.xp.asarray(y).reshape(self.ncells, NSPECIES)*self.scale

    def update_workspace(self, y):
        """Temperature, rates and slopes for normalized y; returns physical species."""
        yp = self._physical(y)
        self.calculate_temperature(yp)
        self.interpolate_rates()
        self._ws_y = self.xp.array(y, copy=True).ravel()
        return yp

    def _workspace_for(self, y):
        xp = self.xp
        flat = xp.asarray(y).ravel()
        if self._ws_y is not None and self._ws_y.shape == flat.shape \
                and bool(xp.all(self._ws_y == flat)):
            return self._physical(flat)
        return self.update_workspace(flat)

    # ------------------------
    # RHS
    # ------------------------
    def rhs(self, y, out=None):
        """
        Normalized species time derivative for normalized y (flat,
        ncells*NSPECIES). The ge row is per unit mass density.
        """
        xp = self.xp
        yp = self.update_workspace(y)
        H2_1, H2_2, H_1, H_2, H_m0, He_1, He_2, He_3, de = (yp[:, i] for i in range(9))
        r = self.rs
        k01, k02, k03, k04, k05, k06, k07 = (r[n] for n in RATE_NAMES[:7])
        k08, k09, k10, k11, k12, k13, k14 = (r[n] for n in RATE_NAMES[7:14])
        k15, k16, k17, k18, k19, k21, k22 = (r[n] for n in RATE_NAMES[14:])

        f = xp.empty((self.ncells, NSPECIES))
        f[:, 0] = (k08*H_1*H_m0 + k10*H2_2*H_1 - k11*H2_1*H_2 - k12*H2_1*de - k13*H2_1*H_1
                   + k19*H2_2*H_m0 + k21*H2_1*H_1*H_1 + k22*H_1*H_1*H_1)
        f[:, 1] = (k09*H_1*H_2 - k10*H2_2*H_1 + k11*H2_1*H_2 + k17*H_2*H_m0 - k18*H2_2*de
                   - k19*H2_2*H_m0)
        f[:, 2] = (-k01*H_1*de + k02*H_2*de - k07*H_1*de - k08*H_1*H_m0 - k09*H_1*H_2
                   - k10*H2_2*H_1 + k11*H2_1*H_2 + 2*k12*H2_1*de + 2*k13*H2_1*H_1
                   + k14*H_m0*de + k15*H_1*H_m0 + 2*k16*H_2*H_m0 + 2*k18*H2_2*de
                   + k19*H2_2*H_m0 - 2*k21*H2_1*H_1*H_1 - 2*k22*H_1*H_1*H_1)
        f[:, 3] = (k01*H_1*de - k02*H_2*de - k09*H_1*H_2 + k10*H2_2*H_1 - k11*H2_1*H_2
                   - k16*H_2*H_m0 - k17*H_2*H_m0)
        f[:, 4] = (k07*H_1*de - k08*H_1*H_m0 - k14*H_m0*de - k15*H_1*H_m0 - k16*H_2*H_m0
                   - k17*H_2*H_m0 - k19*H2_2*H_m0)
        f[:, 5] = -k03*He_1*de + k04*He_2*de
        f[:, 6] = k03*He_1*de - k04*He_2*de - k05*He_2*de + k06*He_3*de
        f[:, 7] = k05*He_2*de - k06*He_3*de
        f[:, 8] = (k01*H_1*de - k02*H_2*de + k03*He_1*de - k04*He_2*de + k05*He_2*de
                   - k06*He_3*de - k07*H_1*de + k08*H_1*H_m0 + k14*H_m0*de + k15*H_1*H_m0
                   + k17*H_2*H_m0 - k18*H2_2*de)
        f[:, 9] = self._gas_energy_rate(yp)*self.inv_mdensity

        f *= self.inv_scale
        if not bool(xp.all(xp.isfinite(f))):
            raise RecoverableError("non-finite chemistry RHS", code=CHEM_FAIL_RECOV)
        if out is None:
            return f.ravel()
        out[...] = f.ravel()
        return out

    def _gas_energy_rate(self, yp):
        H2_1, H2_2, H_1, H_2, H_m0, He_1, He_2, He_3, de = (yp[:, i] for i in range(9))
        c = self.rs
        z = self.redshift
        T = self.Ts
        mdensity = self.mdensity
        cie_oda, h2_oda = self.cie_oda, self.h2_oda

        G = (H2_1*c["gloverabel08_gaH2"] + H_1*c["gloverabel08_gaHI"] + H_2*c["gloverabel08_gaHp"]
             + He_1*c["gloverabel08_gaHe"] + de*c["gloverabel08_gael"])
        h2lte = c["gloverabel08_h2lte"]
        Dn = H2_1*c["h2formation_ncrd2"] + H_1*c["h2formation_ncrd1"]
        fn = 1.0/(c["h2formation_ncrn"]/Dn + 1.0)

        atomic = (H_1*(c["ceHI_ceHI"] + c["ciHI_ciHI"]) + H_2*c["reHII_reHII"]
                  + He_1*c["ciHeI_ciHeI"]
                  + He_2*(c["ceHeII_ceHeII"] + c["ciHeII_ciHeII"]
                          + c["reHeII1_reHeII1"] + c["reHeII2_reHeII2"])
                  + He_3*c["reHeIII_reHeIII"]
                  + c["brem_brem"]*(H_2 + He_2 + 4.0*He_3)
                  + c["compton_comp_"]*(z + 1.0)**4*(T - 2.73*z - 2.73))
        return (-2.01588*H2_1*c["cie_cooling_cieco"]*cie_oda*mdensity
                - H2_1*cie_oda*h2lte*h2_oda/(h2lte/G + 1.0)
                - cie_oda*de*atomic
                - cie_oda*He_2*de*de*(c["ceHeI_ceHeI"] + c["ciHeIS_ciHeIS"])
                + 0.5*fn*(-H2_1*H_1*c["h2formation_h2mcool"] + H_1**3*c["h2formation_h2mheat"]))

    # ------------------------
    # Jacobian
    # ------------------------
    def jacobian_values(self, y):
        """
        Nonzero values of every cell's block, shape (ncells, NNZ_PER_CELL),
        ordered as JAC_ENTRIES. Reuses the workspace of the latest rhs() call
        when it was evaluated at the same y.
        """
        xp = self.xp
        yp = self._workspace_for(y)
        H2_1, H2_2, H_1, H_2, H_m0, He_1, He_2, He_3, de = (yp[:, i] for i in range(9))
        r, dr = self.rs, self.drs
        k01, k02, k03, k04, k05, k06, k07 = (r[n] for n in RATE_NAMES[:7])
        k08, k09, k10, k11, k12, k13, k14 = (r[n] for n in RATE_NAMES[7:14])
        k15, k16, k17, k18, k19, k21, k22 = (r[n] for n in RATE_NAMES[14:])
        rk01, rk02, rk03, rk04, rk05, rk06, rk07 = (dr[n] for n in RATE_NAMES[:7])
        rk08, rk09, rk10, rk11, rk12, rk13, rk14 = (dr[n] for n in RATE_NAMES[7:14])
        rk15, rk16, rk17, rk18, rk19, rk21, rk22 = (dr[n] for n in RATE_NAMES[14:])
        Tge = self.dTs_ge

        J = {}
        # H2_1
        J[0, 0] = -k11*H_2 - k12*de - k13*H_1 + k21*H_1**2
        J[0, 1] = k10*H_1 + k19*H_m0
        J[0, 2] = k08*H_m0 + k10*H2_2 - k13*H2_1 + 2*k21*H2_1*H_1 + 3*k22*H_1**2
        J[0, 3] = -k11*H2_1
        J[0, 4] = k08*H_1 + k19*H2_2
        J[0, 8] = -k12*H2_1
        J[0, 9] = (rk08*H_1*H_m0 + rk10*H2_2*H_1 - rk11*H2_1*H_2 - rk12*H2_1*de
                   - rk13*H2_1*H_1 + rk19*H2_2*H_m0 + rk21*H2_1*H_1*H_1 + rk22*H_1**3)*Tge
        # H2_2
        J[1, 0] = k11*H_2
        J[1, 1] = -k10*H_1 - k18*de - k19*H_m0
        J[1, 2] = k09*H_2 - k10*H2_2
        J[1, 3] = k09*H_1 + k11*H2_1 + k17*H_m0
        J[1, 4] = k17*H_2 - k19*H2_2
        J[1, 8] = -k18*H2_2
        J[1, 9] = (rk09*H_1*H_2 - rk10*H2_2*H_1 + rk11*H2_1*H_2 + rk17*H_2*H_m0
                   - rk18*H2_2*de - rk19*H2_2*H_m0)*Tge
        # H_1
        J[2, 0] = k11*H_2 + 2*k12*de + 2*k13*H_1 - 2*k21*H_1**2
        J[2, 1] = -k10*H_1 + 2*k18*de + k19*H_m0
        J[2, 2] = (-k01*de - k07*de - k08*H_m0 - k09*H_2 - k10*H2_2 + 2*k13*H2_1
                   + k15*H_m0 - 4*k21*H2_1*H_1 - 6*k22*H_1**2)
        J[2, 3] = k02*de - k09*H_1 + k11*H2_1 + 2*k16*H_m0
        J[2, 4] = -k08*H_1 + k14*de + k15*H_1 + 2*k16*H_2 + k19*H2_2
        J[2, 8] = -k01*H_1 + k02*H_2 - k07*H_1 + 2*k12*H2_1 + k14*H_m0 + 2*k18*H2_2
        J[2, 9] = (-rk01*H_1*de + rk02*H_2*de - rk07*H_1*de - rk08*H_1*H_m0 - rk09*H_1*H_2
                   - rk10*H2_2*H_1 + rk11*H2_1*H_2 + 2*rk12*H2_1*de + 2*rk13*H2_1*H_1
                   + rk14*H_m0*de + rk15*H_1*H_m0 + 2*rk16*H_2*H_m0 + 2*rk18*H2_2*de
                   + rk19*H2_2*H_m0 - 2*rk21*H2_1*H_1*H_1 - 2*rk22*H_1**3)*Tge
        # H_2
        J[3, 0] = -k11*H_2
        J[3, 1] = k10*H_1
        J[3, 2] = k01*de - k09*H_2 + k10*H2_2
        J[3, 3] = -k02*de - k09*H_1 - k11*H2_1 - k16*H_m0 - k17*H_m0
        J[3, 4] = -k16*H_2 - k17*H_2
        J[3, 8] = k01*H_1 - k02*H_2
        J[3, 9] = (rk01*H_1*de - rk02*H_2*de - rk09*H_1*H_2 + rk10*H2_2*H_1 - rk11*H2_1*H_2
                   - rk16*H_2*H_m0 - rk17*H_2*H_m0)*Tge
        # H_m0
        J[4, 1] = -k19*H_m0
        J[4, 2] = k07*de - k08*H_m0 - k15*H_m0
        J[4, 3] = -k16*H_m0 - k17*H_m0
        J[4, 4] = -k08*H_1 - k14*de - k15*H_1 - k16*H_2 - k17*H_2 - k19*H2_2
        J[4, 8] = k07*H_1 - k14*H_m0
        J[4, 9] = (rk07*H_1*de - rk08*H_1*H_m0 - rk14*H_m0*de - rk15*H_1*H_m0
                   - rk16*H_2*H_m0 - rk17*H_2*H_m0 - rk19*H2_2*H_m0)*Tge
        # He_1
        J[5, 5] = -k03*de
        J[5, 6] = k04*de
        J[5, 8] = -k03*He_1 + k04*He_2
        J[5, 9] = (-rk03*He_1*de + rk04*He_2*de)*Tge
        # He_2
        J[6, 5] = k03*de
        J[6, 6] = -k04*de - k05*de
        J[6, 7] = k06*de
        J[6, 8] = k03*He_1 - k04*He_2 - k05*He_2 + k06*He_3
        J[6, 9] = (rk03*He_1*de - rk04*He_2*de - rk05*He_2*de + rk06*He_3*de)*Tge
        # He_3
        J[7, 6] = k05*de
        J[7, 7] = -k06*de
        J[7, 8] = k05*He_2 - k06*He_3
        J[7, 9] = (rk05*He_2*de - rk06*He_3*de)*Tge
        # de
        J[8, 1] = -k18*de
        J[8, 2] = k01*de - k07*de + k08*H_m0 + k15*H_m0
        J[8, 3] = -k02*de + k17*H_m0
        J[8, 4] = k08*H_1 + k14*de + k15*H_1 + k17*H_2
        J[8, 5] = k03*de
        J[8, 6] = -k04*de + k05*de
        J[8, 7] = -k06*de
        J[8, 8] = (k01*H_1 - k02*H_2 + k03*He_1 - k04*He_2 + k05*He_2 - k06*He_3
                   - k07*H_1 + k14*H_m0 - k18*H2_2)
        J[8, 9] = (rk01*H_1*de - rk02*H_2*de + rk03*He_1*de - rk04*He_2*de + rk05*He_2*de
                   - rk06*He_3*de - rk07*H_1*de + rk08*H_1*H_m0 + rk14*H_m0*de
                   + rk15*H_1*H_m0 + rk17*H_2*H_m0 - rk18*H2_2*de)*Tge
        self._gas_energy_jacobian(yp, J)

        vals = xp.empty((self.ncells, NNZ_PER_CELL))
        for n, (row, col) in enumerate(JAC_ENTRIES):
            vals[:, n] = J[row, col]*self.inv_scale[:, row]*self.scale[:, col]
        if not bool(xp.all(xp.isfinite(vals))):
            raise RecoverableError("non-finite chemistry Jacobian", code=CHEM_FAIL_RECOV)
        return vals

    def _gas_energy_jacobian(self, yp, J):
        H2_1, H_1, H_2 = yp[:, 0], yp[:, 2], yp[:, 3]
        He_1, He_2, He_3, de = yp[:, 5], yp[:, 6], yp[:, 7], yp[:, 8]
        c, dc = self.rs, self.drs
        z = self.redshift
        T = self.Ts
        h2_oda = self.h2_oda
        inv_md = self.inv_mdensity

        gaH2, gaHI, gaHp = c["gloverabel08_gaH2"], c["gloverabel08_gaHI"], c["gloverabel08_gaHp"]
        gaHe, gael, h2lte = c["gloverabel08_gaHe"], c["gloverabel08_gael"], c["gloverabel08_h2lte"]
        h2mcool, h2mheat = c["h2formation_h2mcool"], c["h2formation_h2mheat"]
        ncrd1, ncrd2, ncrn = c["h2formation_ncrd1"], c["h2formation_ncrd2"], c["h2formation_ncrn"]
        brem = c["brem_brem"]

        G = H2_1*gaH2 + H_1*gaHI + H_2*gaHp + He_1*gaHe + de*gael
        lte = h2lte/G + 1.0
        Dn = H2_1*ncrd2 + H_1*ncrd1
        fn = ncrn/Dn + 1.0
        h2form = -H2_1*H_1*h2mcool + H_1**3*h2mheat
        # d/dG of the H2 line-cooling term, per unit of each species' G coefficient
        glover = -H2_1*h2lte**2*h2_oda/(lte**2*G**2)

        J[9, 0] = (gaH2*glover - 0.5*H_1*h2mcool/fn
                   - 2.01588*c["cie_cooling_cieco"]*self.mdensity
                   - h2lte*h2_oda/lte
                   + 0.5*ncrd2*ncrn*fn**-2.0*h2form/Dn**2)*inv_md
        J[9, 2] = (gaHI*glover - c["ceHI_ceHI"]*de - c["ciHI_ciHI"]*de
                   + 0.5*ncrd1*ncrn*fn**-2.0*h2form/Dn**2
                   + 0.5*(-H2_1*h2mcool + 3*H_1**2*h2mheat)/fn)*inv_md
        J[9, 3] = (gaHp*glover - brem*de - de*c["reHII_reHII"])*inv_md
        J[9, 5] = (gaHe*glover - c["ciHeI_ciHeI"]*de)*inv_md
        J[9, 6] = (-brem*de - c["ceHeII_ceHeII"]*de - c["ceHeI_ceHeI"]*de**2
                   - c["ciHeII_ciHeII"]*de - c["ciHeIS_ciHeIS"]*de**2
                   - de*c["reHeII1_reHeII1"] - de*c["reHeII2_reHeII2"])*inv_md
        J[9, 7] = (-4.0*brem*de - de*c["reHeIII_reHeIII"])*inv_md
        J[9, 8] = (gael*glover - H_1*c["ceHI_ceHI"] - H_1*c["ciHI_ciHI"]
                   - H_2*c["reHII_reHII"] - He_1*c["ciHeI_ciHeI"] - He_2*c["ceHeII_ceHeII"]
                   - 2*He_2*c["ceHeI_ceHeI"]*de - He_2*c["ciHeII_ciHeII"]
                   - 2*He_2*c["ciHeIS_ciHeIS"]*de - He_2*c["reHeII1_reHeII1"]
                   - He_2*c["reHeII2_reHeII2"] - He_3*c["reHeIII_reHeIII"]
                   - brem*(H_2 + He_2 + 4.0*He_3)
                   - c["compton_comp_"]*(z + 1.0)**4*(T - 2.73*z - 2.73))*inv_md

        # ge-by-ge keeps only the temperature slopes of the H2 line and
        # H2-formation terms
        dG = (H2_1*dc["gloverabel08_gaH2"] + H_1*dc["gloverabel08_gaHI"]
              + H_2*dc["gloverabel08_gaHp"] + He_1*dc["gloverabel08_gaHe"]
              + de*dc["gloverabel08_gael"])
        dDn = H2_1*dc["h2formation_ncrd2"] + H_1*dc["h2formation_ncrd1"]
        rh2lte = dc["gloverabel08_h2lte"]
        J[9, 9] = (-H2_1*h2lte*h2_oda*(h2lte*dG/G**2 - rh2lte/G)/lte**2
                   - H2_1*h2_oda*rh2lte/lte
                   + 0.5*fn**-2.0*h2form*(ncrn*dDn/Dn**2 - dc["h2formation_ncrn"]/Dn)
                   + 0.5/fn*(-H2_1*H_1*dc["h2formation_h2mcool"]
                             + H_1**3*dc["h2formation_h2mheat"]))*inv_md*self.dTs_ge

    def jacobian(self, y, fmt="csr", factor=1.0):
        """
        Assembled block-diagonal Jacobian of rhs() at y, times ``factor``.
        fmt="csr" gives a scipy.sparse.csr_matrix (host arrays); fmt="dense"
        gives an (ncells, NSPECIES, NSPECIES) block array.
        """
        vals = self.jacobian_values(y)*factor
        if fmt == "dense":
            blocks = self.xp.zeros((self.ncells, NSPECIES, NSPECIES))
            rows = self.xp.asarray([r for r, _ in JAC_ENTRIES])
            cols = self.xp.asarray([c for _, c in JAC_ENTRIES])
            blocks[:, rows, cols] = vals
            return blocks
        if fmt != "csr":
            raise ValueError(f"Unknown Jacobian format '{fmt}'")
        from scipy.sparse import csr_matrix
        from utils.backend import to_numpy

        if self._pattern is None:
            self._pattern = csr_pattern(self.ncells)
        indptr, indices = self._pattern
        n = self.ncells*NSPECIES
        return csr_matrix((to_numpy(vals).ravel(), indices, indptr), shape=(n, n))

    # ------------------------
    # diagnostics
    # ------------------------
    def temperature(self):
        return self.Ts
