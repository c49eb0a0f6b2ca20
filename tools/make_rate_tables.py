#!/usr/bin/env python3
# tools/make_rate_tables.py
# Write a self-consistent set of log-T rate/cooling tables for the primordial
# network (HDF5, one 1D dataset per table). Collisional ionization and
# recombination use Cen (1992)-style fits; the H2 channels use simple
# power-law fits that keep every entry positive and finite.
import argparse
import os
import sys

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

import h5py
import numpy as np

from core.chemistry import TABLE_NAMES
from core.rate_table import NBINS, TMAX, TMIN


def _cen(T):
    return 1.0 + np.sqrt(T/1.0e5)


def _ci(a, eK, T):
    # collisional ionization, T in K
    return a*np.sqrt(T)*np.exp(-eK/T)/_cen(T)


def _rec(T):
    return (T/1.0e3)**-0.2/(1.0 + (T/1.0e6)**0.7)


def _gamma_h2(T, tvib):
    # 5/3 at low T relaxing to 7/5 once rotation is excited, 9/7 with vibration
    x = tvib/T
    ev = np.where(x < 300.0, x*x*np.exp(np.minimum(x, 300.0))/np.expm1(np.minimum(x, 300.0))**2, 0.0)
    cv = 1.5 + 1.0/(1.0 + (85.0/T)**2) + ev
    return 1.0 + 1.0/cv


def build_tables(tmin=TMIN, tmax=TMAX, nbins=NBINS):
    T = np.exp(np.linspace(np.log(tmin), np.log(tmax), nbins + 1))
    t4 = T/1.0e4
    r = {}
    # rates [cm^3/s, cm^6/s for k21/k22]
    r["k01"] = _ci(5.85e-11, 157809.1, T)
    r["k02"] = 2.59e-13*t4**-0.7
    r["k03"] = _ci(2.38e-11, 285335.4, T)
    r["k04"] = 1.50e-10*T**-0.6353
    r["k05"] = _ci(5.68e-12, 631515.0, T)
    r["k06"] = 3.36e-10/np.sqrt(T)*(T/1.0e3)**-0.2/(1.0 + (T/1.0e6)**0.7)
    r["k07"] = 6.77e-15*T**0.8779
    r["k08"] = np.full_like(T, 1.43e-9)
    r["k09"] = 1.85e-23*T**1.8
    r["k10"] = np.full_like(T, 6.0e-10)
    r["k11"] = 3.0e-10*np.exp(-21050.0/T)
    r["k12"] = 4.4e-10*T**0.35*np.exp(-102000.0/T)
    r["k13"] = 1.0670825e-10*T**2.012*np.exp(-52000.0/T)/(1.0 + 2.0e-4*T)**3.5
    r["k14"] = 4.0e-12*T*np.exp(-8750.0/T)
    r["k15"] = 5.3e-20*T**2.17*np.exp(-8750.0/T)
    r["k16"] = 7.0e-8*(T/100.0)**-0.5
    r["k17"] = 1.0e-8*T**-0.4
    r["k18"] = 1.0e-8*T**-0.4*np.exp(-10.0/T)
    r["k19"] = 5.0e-6/np.sqrt(T)
    r["k21"] = 2.8e-31*T**-0.6
    r["k22"] = 5.5e-29/T
    # cooling / heating [erg cm^3/s]
    r["brem_brem"] = 1.43e-27*np.sqrt(T)*1.3
    r["ceHI_ceHI"] = 7.5e-19*np.exp(-118348.0/T)/_cen(T)
    r["ceHeI_ceHeI"] = 9.1e-27*T**-0.1687*np.exp(-13179.0/T)/_cen(T)
    r["ceHeII_ceHeII"] = 5.54e-17*T**-0.397*np.exp(-473638.0/T)/_cen(T)
    r["ciHI_ciHI"] = _ci(1.27e-21, 157809.1, T)
    r["ciHeI_ciHeI"] = _ci(9.38e-22, 285335.4, T)
    r["ciHeII_ciHeII"] = _ci(4.95e-22, 631515.0, T)
    r["ciHeIS_ciHeIS"] = 5.01e-27*T**-0.1687*np.exp(-55338.0/T)/_cen(T)
    r["reHII_reHII"] = 8.7e-27*np.sqrt(T)*_rec(T)
    r["reHeII1_reHeII1"] = 1.55e-26*T**0.3647
    r["reHeII2_reHeII2"] = 1.24e-13*T**-1.5*np.exp(-470000.0/T)*(1.0 + 0.3*np.exp(-94000.0/T))
    r["reHeIII_reHeIII"] = 3.48e-26*np.sqrt(T)*_rec(T)
    r["compton_comp_"] = np.full_like(T, 5.65e-36)
    r["cie_cooling_cieco"] = 1.0e-49*T**4/(1.0 + (T/3.0e4)**4)
    r["gloverabel08_gael"] = 1.0e-24*np.sqrt(T)
    r["gloverabel08_gaH2"] = 1.0e-24*t4**0.5 + 1.0e-30
    r["gloverabel08_gaHe"] = 1.0e-25*t4**0.5 + 1.0e-30
    r["gloverabel08_gaHI"] = 1.0e-24*t4**0.7 + 1.0e-30
    r["gloverabel08_gaHp"] = 1.0e-23*t4**0.3 + 1.0e-30
    r["gloverabel08_h2lte"] = 1.0e-21*np.exp(-512.0/T) + 1.0e-40
    r["h2formation_h2mcool"] = 1.0e-30*np.exp(-52000.0/T)
    r["h2formation_h2mheat"] = 7.18e-32*T**-0.5
    r["h2formation_ncrd1"] = 1.0e-4*T**-0.5
    r["h2formation_ncrd2"] = 1.0e-3*T**-0.5
    r["h2formation_ncrn"] = 1.0e6/np.sqrt(T)
    # H2 / H2+ adiabatic indices and their slopes
    for name, tvib in (("gammaH2_1", 6100.0), ("gammaH2_2", 3300.0)):
        g = _gamma_h2(T, tvib)
        r[name] = g
        r["d" + name + "_dT"] = np.gradient(g, T)
    return T, r


def write_tables(path, tmin=TMIN, tmax=TMAX, nbins=NBINS):
    T, tables = build_tables(tmin, tmax, nbins)
    missing = [n for n in TABLE_NAMES if n not in tables]
    if missing:
        raise KeyError(f"no fit for {missing}")
    with h5py.File(path, "w") as hf:
        for name in TABLE_NAMES:
            hf.create_dataset(name, data=tables[name])
        hf.attrs["tmin"] = tmin
        hf.attrs["tmax"] = tmax
        hf.attrs["nbins"] = nbins
    return path


def main():
    ap = argparse.ArgumentParser(description="Write primordial-chemistry rate tables (HDF5).")
    ap.add_argument("--out", default="cvklu_tables.h5")
    args = ap.parse_args()
    write_tables(args.out)
    print(f"[tables] wrote {len(TABLE_NAMES)} tables x {NBINS + 1} entries to {args.out}")


if __name__ == "__main__":
    main()
