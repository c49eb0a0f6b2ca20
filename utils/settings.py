# utils/settings.py
import argparse
import os

import json5

from core.errors import ConfigurationError

# input-file spellings accepted alongside the upper-case keys
ALIASES = {
    "MASSUNITS": "MASS_UNITS", "LENGTHUNITS": "LENGTH_UNITS", "TIMEUNITS": "TIME_UNITS",
    "RATE_TABLE": "RATE_TABLE_FILE",
}


def default_settings():
    return dict(
        # grid
        NX=32, NY=32, NZ=32,
        XL=0.0, XR=1.0, YL=0.0, YR=1.0, ZL=0.0, ZR=1.0,
        XLBC=0, XRBC=0, YLBC=0, YRBC=0, ZLBC=0, ZRBC=0,   # 0=periodic 1=neumann 2=dirichlet 3=reflecting
        NPX=None, NPY=None, NPZ=None,                     # process tiling; None -> balanced
        # time window / output
        T0=0.0, TF=0.1, NOUT=10, SHOWSTATS=0, RESTART=-1,
        # hydro
        GAMMA=1.4, CFL=0.2, FLUX="rusanov",
        # units (cgs per code unit)
        MASS_UNITS=1.0, LENGTH_UNITS=1.0, TIME_UNITS=1.0,
        # chemistry
        NCHEM=10, RATE_TABLE_FILE=None, REDSHIFT=0.0,
        TEMP_ITERS=10, TEMP_TOL=0.0,
        LINEAR_SOLVER=None, GMRES_MAXL=20,
        # integrator
        FIXEDSTEP=0, HTRANS=0.0, H0=0.0, HMIN=0.0, HMAX=0.0,
        RTOL=1e-5, ATOL=1e-10, MAXNEF=7, MXSTEPS=100000,
        PREDICTOR=0, MAXNITERS=3, NLCONVCOEF=0.1, SAFETY=0.96, GROWTH=20.0,
        # problem
        PROBLEM="blast",
        BLAST_CLUMPS_PER_PROC=10, BLAST_T0=10.0, BLAST_RHO0=None,
        # execution / results
        BACKEND="numpy",
        RESULTS_DIR="results",
        RESULTS_UNIQUE=False,       # False → results/YYYY-MM-DD/, True → results/YYYY-MM-DD/HH-MM-SS/
        # debug
        DEBUG=False, CHECK_NAN_EVERY=0,
    )


def _normalize_keys(cfg):
    out = {}
    for key, val in cfg.items():
        k = str(key).upper()
        out[ALIASES.get(k, k)] = val
    return out


def load_config_file(path):
    if not os.path.exists(path):
        raise ConfigurationError(f"config file not found: {path}")
    with open(path, "r") as f:
        try:
            cfg = json5.load(f)
        except ValueError as exc:
            raise ConfigurationError(f"could not parse {path}: {exc}") from exc
    if not isinstance(cfg, dict):
        raise ConfigurationError(f"{path}: top level must be an object")
    return _normalize_keys(cfg)


def build_parser():
    ap = argparse.ArgumentParser(description="3D Euler + primordial chemistry (WENO5 + IMEX + MPI)")
    ap.add_argument("--config", type=str, help="path to JSON/JSON5 config")
    ap.add_argument("--debug", action="store_true", help="per-step solver counters + JIT warm-up")
    # quick overrides
    ap.add_argument("--nx", type=int); ap.add_argument("--ny", type=int); ap.add_argument("--nz", type=int)
    ap.add_argument("--tf", type=float); ap.add_argument("--nout", type=int)
    ap.add_argument("--problem", type=str)
    ap.add_argument("--restart", type=int, help="output index to restart from")
    ap.add_argument("--showstats", type=int, choices=(0, 1))
    return ap


def derive_units(s):
    L, T = s["LENGTH_UNITS"], s["TIME_UNITS"]
    s["DENSITY_UNITS"] = s["MASS_UNITS"]/L**3
    s["MOMENTUM_UNITS"] = s["DENSITY_UNITS"]*L/T
    s["ENERGY_UNITS"] = s["DENSITY_UNITS"]*L*L/(T*T)
    return s


def validate(s):
    for key in ("NX", "NY", "NZ"):
        if int(s[key]) < 1:
            raise ConfigurationError(f"{key} must be >= 1")
    if not (0.0 < float(s["CFL"]) <= 1.0):
        raise ConfigurationError("CFL should be in (0, 1].")
    if int(s["NOUT"]) < 1:
        raise ConfigurationError("NOUT must be >= 1")
    if float(s["TF"]) <= float(s["T0"]):
        raise ConfigurationError("TF must be larger than T0")
    for key in ("MASS_UNITS", "LENGTH_UNITS", "TIME_UNITS"):
        if float(s[key]) <= 0.0:
            raise ConfigurationError(f"{key} must be positive")
    if str(s["FLUX"]).lower() not in ("rusanov", "hll"):
        raise ConfigurationError(f"FLUX must be 'rusanov' or 'hll' (got {s['FLUX']!r})")

    nchem = int(s["NCHEM"])
    if nchem not in (0, 10):
        raise ConfigurationError(f"NCHEM must be 0 or 10 for the primordial network (got {nchem})")
    if nchem == 0:
        if s["LINEAR_SOLVER"] is not None:
            raise ConfigurationError("LINEAR_SOLVER is set but NCHEM == 0")
        if s["RATE_TABLE_FILE"] is not None:
            raise ConfigurationError("RATE_TABLE_FILE is set but NCHEM == 0")
    else:
        if s["LINEAR_SOLVER"] is None:
            s["LINEAR_SOLVER"] = "dense"
        if s["RATE_TABLE_FILE"] is None:
            s["RATE_TABLE_FILE"] = "cvklu_tables.h5"
        if str(s["LINEAR_SOLVER"]).lower() not in ("dense", "sparse", "gmres"):
            raise ConfigurationError(
                f"LINEAR_SOLVER must be dense, sparse or gmres (got {s['LINEAR_SOLVER']!r})")
    if int(s["TEMP_ITERS"]) < 1:
        raise ConfigurationError("TEMP_ITERS must be >= 1")

    fixed = int(s["FIXEDSTEP"])
    if fixed not in (0, 1, 2):
        raise ConfigurationError("FIXEDSTEP must be 0, 1 or 2")
    if fixed == 1 and float(s["HTRANS"]) > 0.0:
        s["FIXEDSTEP"] = fixed = 2
    if fixed and float(s["HMAX"]) <= 0.0:
        raise ConfigurationError("FIXEDSTEP requires HMAX > 0")
    if fixed == 2 and float(s["HTRANS"]) >= s["DTOUT"]:
        raise ConfigurationError(
            f"HTRANS={s['HTRANS']} must be smaller than the output interval {s['DTOUT']:.6e}")
    if float(s["RTOL"]) <= 0.0 or float(s["ATOL"]) <= 0.0:
        raise ConfigurationError("RTOL and ATOL must be positive")

    tiling = (s["NPX"], s["NPY"], s["NPZ"])
    if any(p is not None for p in tiling) and any(p is None for p in tiling):
        raise ConfigurationError("NPX, NPY and NPZ must be given together")
    return s


def load_settings(argv=None):
    ap = build_parser()
    args = ap.parse_args(argv)

    cfg = load_config_file(args.config) if args.config else {}
    s = {**default_settings(), **cfg}
    if args.debug: s["DEBUG"] = True
    if args.nx is not None: s["NX"] = args.nx
    if args.ny is not None: s["NY"] = args.ny
    if args.nz is not None: s["NZ"] = args.nz
    if args.tf is not None: s["TF"] = args.tf
    if args.nout is not None: s["NOUT"] = args.nout
    if args.problem is not None: s["PROBLEM"] = args.problem
    if args.restart is not None: s["RESTART"] = args.restart
    if args.showstats is not None: s["SHOWSTATS"] = args.showstats
    if args.config:
        s["CONFIG_PATH"] = os.path.abspath(args.config)

    # dependent values
    if int(s["NOUT"]) >= 1:
        s["DTOUT"] = (float(s["TF"]) - float(s["T0"]))/int(s["NOUT"])
    validate(s)
    return derive_units(s)


def load_settings_collective(ctx, argv=None):
    """Parse on the root rank and broadcast; a bad config stops every rank."""
    payload = None
    if ctx.is_root:
        try:
            payload = ("ok", load_settings(argv))
        except ConfigurationError as exc:
            payload = ("error", str(exc))
    status, data = ctx.bcast(payload, root=0)
    if status != "ok":
        raise ConfigurationError(data)
    return data
