#!/usr/bin/env python3
# core/errors.py
# Error taxonomy shared by the solver core, the integrator and the driver.

# Linear/nonlinear solver status codes (SUNDIALS convention:
# 0 = success, >0 = recoverable, <0 = unrecoverable).
SUCCESS = 0
CONV_FAIL = 1
LSETUP_FAIL_RECOV = 2
LSOLVE_FAIL_RECOV = 3
LSETUP_FAIL_UNREC = -2
LSOLVE_FAIL_UNREC = -3
PSOLVE_FAIL_UNREC = -4

# recoverable numerical failures raised by RHS/Jacobian evaluation
RHS_FAIL_RECOV = 1
CHEM_FAIL_RECOV = 2


class ConfigurationError(ValueError):
    """Inconsistent run setup; fatal before integration starts."""


class DecompositionError(ConfigurationError):
    pass


class IOFailure(RuntimeError):
    """File or collective-communication failure; fatal."""


class RecoverableError(RuntimeError):
    """Numerical failure the integrator may retry with a smaller step."""

    def __init__(self, msg, code=RHS_FAIL_RECOV):
        super().__init__(msg)
        self.code = int(code)


class UnrecoverableError(RuntimeError):
    def __init__(self, msg, code=LSOLVE_FAIL_UNREC):
        super().__init__(msg)
        self.code = int(code)
