#!/usr/bin/env python3
import argparse
import glob
import os
import sys

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

import numpy as np

from utils.io_utils import gather_output


def latest_run_dir(base="results"):
    runs = sorted([d for d in glob.glob(os.path.join(base, "*")) if os.path.isdir(d)])
    if not runs: raise SystemExit("No results/ runs found.")
    # handles both results/YYYY-MM-DD/ and results/YYYY-MM-DD/HH-MM-SS/
    last = runs[-1]
    subs = sorted([d for d in glob.glob(os.path.join(last, "*")) if os.path.isdir(d)])
    return subs[-1] if subs else last


def latest_output(run_dir):
    files = sorted(glob.glob(os.path.join(run_dir, "output-*_rank0000.npz")))
    if not files: raise SystemExit(f"No outputs in {run_dir}")
    return int(os.path.basename(files[-1])[7:11])


def main():
    ap = argparse.ArgumentParser(description="Summarize one output of a run (all ranks stitched).")
    ap.add_argument("--run-dir", default=None)
    ap.add_argument("--iout", type=int, default=None)
    args = ap.parse_args()

    run_dir = args.run_dir or latest_run_dir()
    iout = latest_output(run_dir) if args.iout is None else args.iout
    meta, f = gather_output(run_dir, iout)
    t, h, nchem = meta[0], meta[1], int(meta[2])
    xl, xr, yl, yr, zl, zr = meta[3:9]
    print(f"[verify] {run_dir} output {iout}: t={t:.6e} h={h:.3e} nchem={nchem} "
          f"grid={f['rho'].shape}")

    rho = f["rho"]
    nx, ny, nz = rho.shape
    # fluid is stored in CGS; volumes here are in code length units
    dv = (xr - xl)*(yr - yl)*(zr - zl)/(nx*ny*nz)
    ke = 0.5*(f["mx"]**2 + f["my"]**2 + f["mz"]**2)/rho
    print(f"[verify] rho  min/max = {rho.min():.6e} / {rho.max():.6e}")
    print(f"[verify] et   min/max = {f['et'].min():.6e} / {f['et'].max():.6e}")
    print(f"[verify] max |v|      = {np.sqrt(2.0*ke/rho).max():.6e}")
    print(f"[verify] sum rho*dV   = {rho.sum()*dv:.16e}")
    print(f"[verify] sum et*dV    = {f['et'].sum()*dv:.16e}")
    if not all(np.all(np.isfinite(v)) for v in f.values()):
        raise SystemExit("[verify] non-finite values in output")
    if nchem:
        chem = f["chem"]
        print(f"[verify] species min  = {chem[..., :-1].min():.6e}")
        print(f"[verify] ge min/max   = {chem[..., -1].min():.6e} / {chem[..., -1].max():.6e}")


if __name__ == "__main__":
    main()
