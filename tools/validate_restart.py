#!/usr/bin/env python3
import argparse
import json
import os
import shutil
import subprocess
import sys

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

import numpy as np

from utils.io_utils import gather_output, restart_path
from utils.settings import load_config_file


def only_run_dir(base):
    for root, dirs, files in os.walk(base):
        if "run_config.json" in files:
            return root
    raise SystemExit(f"[restart-validate] no run directory under {base}")


def run(cmd, dry_run):
    print(f"[restart-validate] {' '.join(cmd)}", flush=True)
    if dry_run:
        return
    proc = subprocess.run(cmd, stdout=sys.stdout, stderr=sys.stderr)
    if proc.returncode != 0:
        raise SystemExit(proc.returncode)


def main():
    ap = argparse.ArgumentParser(description="Full run vs. run restarted from a midway output.")
    ap.add_argument("--python", default="python")
    ap.add_argument("--config", default="config/blast_nochem.json")
    ap.add_argument("--from-output", type=int, default=2)
    ap.add_argument("--tol", type=float, default=1e-4, help="adaptive steps only resume to ~RTOL")
    ap.add_argument("--dry-run", action="store_true")
    args = ap.parse_args()

    cfg = load_config_file(args.config)
    nout = int(cfg.get("NOUT", 10))
    if not (0 < args.from_output < nout):
        raise SystemExit("[restart-validate] --from-output must lie strictly inside the run")

    base = "results/.restart_validate"
    shutil.rmtree(base, ignore_errors=True)
    cfg_full = dict(cfg, RESULTS_DIR=os.path.join(base, "full"), RESULTS_UNIQUE=False)
    tmp_full = os.path.join("config", ".restart_full.json")
    with open(tmp_full, "w") as f:
        json.dump(cfg_full, f, indent=2)
    run([args.python, "solvers/chem_hydro_mpi.py", "--config", tmp_full], args.dry_run)
    if args.dry_run:
        return

    full_dir = only_run_dir(cfg_full["RESULTS_DIR"])
    with open(restart_path(full_dir, args.from_output), "r") as f:
        desc = json.load(f)
    desc["RESULTS_DIR"] = os.path.join(base, "resumed")
    tmp_resume = os.path.join("config", ".restart_resume.json")
    with open(tmp_resume, "w") as f:
        json.dump(desc, f, indent=2)
    run([args.python, "solvers/chem_hydro_mpi.py", "--config", tmp_resume], False)
    resumed_dir = only_run_dir(desc["RESULTS_DIR"])

    _, a = gather_output(full_dir, nout)
    _, b = gather_output(resumed_dir, nout)
    worst = 0.0
    for name in a:
        scale = max(float(np.max(np.abs(a[name]))), 1e-300)
        err = float(np.max(np.abs(a[name] - b[name])))/scale
        print(f"[restart-validate] {name:4s} max rel diff = {err:.3e}")
        worst = max(worst, err)

    for path in (tmp_full, tmp_resume):
        os.remove(path)
    if worst > args.tol:
        raise SystemExit(f"[restart-validate] restarted run differs (max rel diff {worst:.3e})")
    print("[restart-validate] ok")


if __name__ == "__main__":
    main()
