#!/usr/bin/env python3
# core/rate_table.py
# Log-temperature-binned rate/cooling tables: rank-0 HDF5 read, broadcast,
# and linear interpolation with analytic dT slopes.
import os

import numpy as np

from core.errors import IOFailure

TMIN = 1.0
TMAX = 1.0e5
NBINS = 1023


def _read_hdf5_tables(path, names):
    import h5py

    if not os.path.exists(path):
        raise IOFailure(f"rate table file not found: {path}")
    out = {}
    with h5py.File(path, "r") as hf:
        for name in names:
            if name not in hf:
                raise IOFailure(f"dataset '/{name}' missing from {path}")
            out[name] = np.asarray(hf[name][()], dtype=np.float64).ravel()
    return out


def load_rate_tables(path, ctx, names, tmin=TMIN, tmax=TMAX, nbins=NBINS):
    """
    Read the named 1D tables on the root rank and broadcast them.
    A read failure on the root is re-raised on every rank so the whole run
    stops consistently.
    """
    payload = None
    if ctx.is_root:
        try:
            payload = ("ok", _read_hdf5_tables(path, names))
        except (OSError, IOFailure) as exc:
            payload = ("error", str(exc))
    status, data = ctx.bcast(payload, root=0)
    if status != "ok":
        raise IOFailure(data)
    return RateTable(data, tmin=tmin, tmax=tmax, nbins=nbins)


class RateTable:
    """Immutable set of log-T tables sharing one binning."""

    def __init__(self, values, tmin=TMIN, tmax=TMAX, nbins=NBINS):
        self.tmin = float(tmin)
        self.tmax = float(tmax)
        self.nbins = int(nbins)
        self.lnTmin = np.log(self.tmin)
        self.lnTmax = np.log(self.tmax)
        self.dbin = (np.log(self.tmax) - self.lnTmin)/self.nbins
        self.idbin = 1.0/self.dbin
        self._tables = {}
        for name, arr in values.items():
            arr = np.array(arr, dtype=np.float64).ravel()
            if arr.size != self.nbins + 1:
                raise IOFailure(f"table '{name}' has {arr.size} entries, expected {self.nbins + 1}")
            arr.setflags(write=False)
            self._tables[name] = arr

    def __contains__(self, name):
        return name in self._tables

    def names(self):
        return list(self._tables)

    def values(self, name):
        return self._tables[name]

    def to_backend(self, xp):
        """Tables as arrays of the given array module (e.g. device copies)."""
        return {name: xp.asarray(arr) for name, arr in self._tables.items()}

    def locate(self, T, xp=np):
        """Clamped bin index and fractional position of ln T inside the bin."""
        lnT = xp.log(T)
        b = (self.idbin*(lnT - self.lnTmin)).astype(np.int64)
        b = xp.clip(b, 0, self.nbins - 1)
        t1 = self.lnTmin + b*self.dbin
        # last bin edge pinned to ln(tmax) so T == tmax lands on tdef == 1 exactly
        t2 = xp.where(b == self.nbins - 1, self.lnTmax, self.lnTmin + (b + 1)*self.dbin)
        tdef = xp.clip((lnT - t1)/(t2 - t1), 0.0, 1.0)
        tdef = xp.where(T >= self.tmax, 1.0, tdef)
        return b, tdef

    def interpolate(self, name, T, xp=np, table=None):
        """
        Linear interpolation in ln T. Returns (value, dvalue/dT) where the
        slope is the per-bin table slope chain-ruled through ln T.
        """
        r = self._tables[name] if table is None else table
        T = xp.asarray(T, dtype=np.float64)
        b, tdef = self.locate(T, xp)
        lo = r[b]
        hi = r[b + 1]
        delta = hi - lo
        value = xp.where(tdef >= 1.0, hi, lo + tdef*delta)
        # same operation order as interpolate_many so both agree bit for bit
        Tfactor = (1.0/T)*self.idbin
        return value, delta*Tfactor

    def interpolate_many(self, names, T, xp=np, tables=None):
        """Same as interpolate() for several tables sharing one bin lookup."""
        T = xp.asarray(T, dtype=np.float64)
        b, tdef = self.locate(T, xp)
        Tfactor = (1.0/T)*self.idbin
        vals, dvals = {}, {}
        for name in names:
            r = self._tables[name] if tables is None else tables[name]
            lo = r[b]
            hi = r[b + 1]
            delta = hi - lo
            vals[name] = xp.where(tdef >= 1.0, hi, lo + tdef*delta)
            dvals[name] = delta*Tfactor
        return vals, dvals

    def table_temperatures(self):
        return np.exp(self.lnTmin + np.arange(self.nbins + 1)*self.dbin)
