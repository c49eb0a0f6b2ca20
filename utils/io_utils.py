# utils/io_utils.py
import glob
import json
import os
from datetime import datetime

import numpy as np

from core.errors import ConfigurationError, IOFailure
from core.state import FLUID_FIELDS
from utils.backend import to_numpy


def make_run_dir(base="results", unique=False):
    """
    Create a run directory:
      unique=False -> results/YYYY-MM-DD/
      unique=True  -> results/YYYY-MM-DD/HH-MM-SS/
    """
    now = datetime.now()
    date = now.strftime("%Y-%m-%d")
    if unique:
        path = os.path.join(base, date, now.strftime("%H-%M-%S"))
    else:
        path = os.path.join(base, date)
    os.makedirs(path, exist_ok=True)
    return path


def write_run_config(run_dir, settings):
    path = os.path.join(run_dir, "run_config.json")
    if os.path.exists(path):
        return path
    try:
        with open(path, "w") as f:
            json.dump(settings, f, indent=2, sort_keys=True, default=str)
    except OSError as exc:
        raise IOFailure(f"could not write {path}: {exc}") from exc
    return path


def output_path(run_dir, iout, rank):
    return os.path.join(run_dir, f"output-{iout:04d}_rank{rank:04d}.npz")


def restart_path(run_dir, iout):
    return os.path.join(run_dir, f"restart-{iout:04d}.json")


def _bounds(grid):
    return [grid.xl, grid.xr, grid.yl, grid.yr, grid.zl, grid.zr]


def write_output(run_dir, iout, state, decomp, settings, t, h):
    """
    Per-rank snapshot in CGS units. The chemistry block must already be in
    physical units (the driver applies the network scaling around this call).
    """
    if state.chem is not None and not state.chem_physical:
        raise ValueError("write_output expects the chemistry block in physical units")
    du, mu, eu = settings["DENSITY_UNITS"], settings["MOMENTUM_UNITS"], settings["ENERGY_UNITS"]
    factors = {"rho": du, "mx": mu, "my": mu, "mz": mu, "et": eu}
    arrays = {name: to_numpy(state[name])*factors[name] for name in FLUID_FIELDS}
    if state.chem is not None:
        arrays["chem"] = to_numpy(state.chem).copy()
    meta = np.array([t, h, state.nchem] + _bounds(decomp.grid), dtype=np.float64)
    path = output_path(run_dir, iout, decomp.rank)
    try:
        np.savez(path, meta=meta,
                 offsets=np.array(decomp.offsets, dtype=np.int64),
                 local_shape=np.array(decomp.local_shape, dtype=np.int64),
                 **arrays)
    except OSError as exc:
        raise IOFailure(f"could not write {path}: {exc}") from exc
    return path


def write_restart(run_dir, iout, settings, decomp, t, h):
    """
    Root-only restart descriptor. It is a complete config: passing it back
    through --config resumes the run from output ``iout``.
    """
    s = {k: v for k, v in settings.items() if k not in ("CONFIG_PATH",)}
    s.update(T0=float(t), H0=float(h), HTRANS=0.0, RESTART=int(iout),
             NOUT=max(int(settings["NOUT"]) - int(iout), 1),
             RESTART_DIR=os.path.abspath(run_dir),
             NPX=decomp.npx, NPY=decomp.npy, NPZ=decomp.npz)
    if int(s["FIXEDSTEP"]) == 2:
        s["FIXEDSTEP"] = 1
    s["RESTART_INFO"] = {
        "t": float(t), "h": float(h), "nchem": int(settings["NCHEM"]),
        "bounds": _bounds(decomp.grid), "extents": list(decomp.grid.shape),
        "tiling": list(decomp.dims),
    }
    path = restart_path(run_dir, iout)
    try:
        with open(path, "w") as f:
            json.dump(s, f, indent=2, sort_keys=True, default=str)
    except OSError as exc:
        raise IOFailure(f"could not write {path}: {exc}") from exc
    return path


def read_restart(run_dir, iout, state, decomp, settings):
    """
    Reload this rank's snapshot into ``state`` (code units for the fluid,
    physical chemistry) and return (t, h).
    """
    path = output_path(run_dir, iout, decomp.rank)
    if not os.path.exists(path):
        raise IOFailure(f"restart file not found: {path}")
    with np.load(path) as data:
        meta = data["meta"]
        if int(meta[2]) != state.nchem:
            raise ConfigurationError(
                f"{path}: restart holds nchem={int(meta[2])}, run expects {state.nchem}")
        if not np.allclose(meta[3:9], _bounds(decomp.grid)):
            raise ConfigurationError(f"{path}: incompatible domain bounds")
        if (tuple(int(v) for v in data["offsets"]) != tuple(decomp.offsets)
                or tuple(int(v) for v in data["local_shape"]) != tuple(decomp.local_shape)):
            raise ConfigurationError(
                f"{path}: tile does not match the current process tiling {decomp.dims}")
        du, mu, eu = (settings["DENSITY_UNITS"], settings["MOMENTUM_UNITS"],
                      settings["ENERGY_UNITS"])
        factors = {"rho": du, "mx": mu, "my": mu, "mz": mu, "et": eu}
        xp = state.xp
        for name in FLUID_FIELDS:
            state[name][...] = xp.asarray(data[name]/factors[name])
        if state.chem is not None:
            state.chem[...] = xp.asarray(data["chem"])
            state.chem_physical = True
        return float(meta[0]), float(meta[1])


def gather_output(run_dir, iout):
    """
    Stitch every rank's snapshot ``iout`` into global arrays. Returns
    (meta, fields) with fields[name] of shape (nx, ny, nz) or (nx, ny, nz, nchem).
    """
    pattern = os.path.join(run_dir, f"output-{iout:04d}_rank*.npz")
    files = sorted(glob.glob(pattern))
    if not files:
        raise IOFailure(f"no files match {pattern}")
    tiles, meta = [], None
    shape = np.zeros(3, dtype=np.int64)
    for path in files:
        with np.load(path) as data:
            if meta is None:
                meta = data["meta"].copy()
            off = tuple(int(v) for v in data["offsets"])
            shape = np.maximum(shape, np.array(off) + data["local_shape"])
            arrays = {k: data[k] for k in data.files if k not in ("meta", "offsets", "local_shape")}
        tiles.append((off, arrays))
    shape = tuple(int(v) for v in shape)
    out = {}
    for (ox, oy, oz), arrays in tiles:
        for name, arr in arrays.items():
            if name not in out:
                out[name] = np.zeros(shape + arr.shape[3:])
            lx, ly, lz = arr.shape[:3]
            out[name][ox:ox + lx, oy:oy + ly, oz:oz + lz] = arr
    return meta, out
