#!/usr/bin/env python3
import argparse
import os
import subprocess
import sys


CASES = [
    "config/smoke.json",
    "config/blast_nochem.json",
    "config/blast.json",
]


def main():
    ap = argparse.ArgumentParser(description="Run all tiny smoke-test configs.")
    ap.add_argument("--dry-run", action="store_true", help="print commands only")
    ap.add_argument("--skip-chem", action="store_true", help="skip cases that need rate tables")
    ap.add_argument("--np", type=int, default=1, help="MPI ranks (>1 runs through mpirun)")
    ap.add_argument("--python", default="python", help="python executable")
    args = ap.parse_args()

    if not args.skip_chem and not os.path.exists("cvklu_tables.h5"):
        cmd = [args.python, "tools/make_rate_tables.py", "--out", "cvklu_tables.h5"]
        print(f"[smoke] {' '.join(cmd)}", flush=True)
        if not args.dry_run:
            subprocess.run(cmd, check=True)

    failed = []
    for cfg in CASES:
        if args.skip_chem and "nochem" not in cfg:
            continue
        cmd = [args.python, "solvers/chem_hydro_mpi.py", "--config", cfg]
        if args.np > 1:
            cmd = ["mpirun", "-np", str(args.np)] + cmd
        print(f"[smoke] {' '.join(cmd)}", flush=True)
        if args.dry_run:
            continue
        proc = subprocess.run(cmd, stdout=sys.stdout, stderr=sys.stderr)
        if proc.returncode != 0:
            failed.append(cfg)

    if failed:
        print(f"[smoke] failed: {failed}")
        raise SystemExit(1)
    print("[smoke] all cases passed")


if __name__ == "__main__":
    main()
