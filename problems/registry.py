#!/usr/bin/env python3
# problems/registry.py
# Name -> problem module lookup and the setup bundle handed to problem hooks.
import importlib

from core.errors import ConfigurationError

PROBLEMS = {
    "blast": "problems.blast",
    "smoke": "problems.smoke",
}


class ProblemSetup:
    """What a problem needs to fill a StateVector: settings, tiling, cluster, network."""

    def __init__(self, settings, decomp, ctx, network=None):
        self.settings = settings
        self.decomp = decomp
        self.ctx = ctx
        self.network = network

    def __getitem__(self, key):
        return self.settings[key]

    def get(self, key, default=None):
        return self.settings.get(key, default)


def get_problem(name):
    key = str(name).lower()
    if key not in PROBLEMS:
        raise ConfigurationError(f"Unknown PROBLEM '{name}' (expected one of {', '.join(PROBLEMS)})")
    return importlib.import_module(PROBLEMS[key])
