#!/usr/bin/env python3
# utils/backend.py
# Array module for the state and chemistry work arrays. Halo exchange, the
# WENO kernels, the linear solvers and the I/O always run on host copies.
import numpy as np

from core.errors import ConfigurationError

NUMPY_NAMES = ("np", "numpy")
CUPY_NAMES = ("cp", "cupy", "cuda")


def get_backend(name: str):
    """Returns (array module, canonical name) for a BACKEND setting."""
    key = "numpy" if name is None else str(name).lower()
    if key in NUMPY_NAMES:
        return np, "numpy"
    if key in CUPY_NAMES:
        try:
            import cupy as cp
        except ImportError as exc:
            raise ConfigurationError(f"BACKEND={name!r} needs cupy: {exc}") from exc
        return cp, "cupy"
    raise ConfigurationError(f"unknown BACKEND {name!r} (numpy or cupy)")


def to_numpy(arr):
    if isinstance(arr, np.ndarray):
        return arr
    # device arrays copy to the host through .get()
    get = getattr(arr, "get", None)
    if callable(get):
        return get()
    return np.asarray(arr)
