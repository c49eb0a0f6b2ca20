#!/usr/bin/env python3
# solvers/imex_ark.py
# ARS(2,2,2) IMEX additive Runge-Kutta stepper: explicit hydro, diagonally
# implicit chemistry with a modified Newton iteration whose linear solves go
# through the block-diagonal solver. Step control is a simple embedded
# first-order estimate with halving retries on recoverable failures.
import math

import numpy as np

from core.errors import SUCCESS, RecoverableError, UnrecoverableError

# ARS(2,2,2) coefficients
GAM = 1.0 - 1.0/math.sqrt(2.0)
DELTA = 1.0 - 1.0/(2.0*GAM)


class ArkOptions:
    """Integrator knobs; defaults follow the input-file defaults."""

    def __init__(self, **kw):
        self.fixedstep = int(kw.get("fixedstep", 0))
        self.htrans = float(kw.get("htrans", 0.0))
        self.h0 = float(kw.get("h0", 0.0))
        self.hmin = float(kw.get("hmin", 0.0))
        self.hmax = float(kw.get("hmax", 0.0))
        self.rtol = float(kw.get("rtol", 1e-5))
        self.atol = float(kw.get("atol", 1e-10))
        self.maxnef = int(kw.get("maxnef", 7))
        self.mxsteps = int(kw.get("mxsteps", 100000))
        self.maxniters = int(kw.get("maxniters", 3))
        self.nlconvcoef = float(kw.get("nlconvcoef", 0.1))
        self.predictor = int(kw.get("predictor", 0))
        self.safety = float(kw.get("safety", 0.96))
        self.growth = float(kw.get("growth", 20.0))
        self.eplifac = float(kw.get("eplifac", 0.05))
        if self.fixedstep == 1 and self.htrans > 0.0:
            self.fixedstep = 2

    @classmethod
    def from_settings(cls, s):
        keys = ("fixedstep", "htrans", "h0", "hmin", "hmax", "rtol", "atol", "maxnef",
                "mxsteps", "maxniters", "nlconvcoef", "predictor", "safety", "growth")
        return cls(**{k: s[k.upper()] for k in keys if k.upper() in s})


def _check_status(ret, what):
    if ret is None or ret == SUCCESS:
        return
    if ret > 0:
        raise RecoverableError(f"{what} returned recoverable status {ret}", code=ret)
    raise UnrecoverableError(f"{what} returned status {ret}", code=ret)


class ImexArkStepper:
    """
    Integrates y' = fexpl(t,y) + fimpl(t,y) for a problem object providing
    fexpl, fimpl, jimpl, postprocess and (optionally) stable_dt.
    """

    def __init__(self, problem, y0, t0, opts, lsolver, ctx):
        self.problem = problem
        self.opts = opts
        self.ls = lsolver
        self.ctx = ctx
        self.t = float(t0)
        self.t0 = float(t0)
        self.y = y0.copy()
        self.h = opts.h0
        self.hlast = 0.0

        # scratch vectors
        self.fe = [y0.clone_empty() for _ in range(2)]
        self.fi = [y0.clone_empty() for _ in range(2)]
        self.ewt = y0.clone_empty()
        self.known = y0.clone_empty()
        self.res = y0.clone_empty()
        self.delta = y0.clone_empty()

        self.nst = 0
        self.nst_a = 0
        self.nfe = 0
        self.nfi = 0
        self.nni = 0
        self.ncfn = 0
        self.netf = 0
        self.nje = 0

    # ------------------------
    # helpers
    # ------------------------
    def _fixed(self):
        o = self.opts
        if o.fixedstep == 1:
            return True
        return o.fixedstep == 2 and self.t >= self.t0 + o.htrans

    def _set_weights(self, y):
        xp = y.xp
        self.ewt.data[...] = 1.0/(self.opts.rtol*xp.abs(y.data) + self.opts.atol)

    def _fexpl(self, t, y, out):
        self.nfe += 1
        _check_status(self.problem.fexpl(t, y, out), "fexpl")

    def _fimpl(self, t, y, out):
        self.nfi += 1
        _check_status(self.problem.fimpl(t, y, out), "fimpl")

    def _initial_step(self, tout):
        o = self.opts
        if o.h0 > 0.0:
            h = o.h0
        else:
            h = 0.01*abs(tout - self.t)
            stab = getattr(self.problem, "stable_dt", None)
            if stab is not None:
                h = min(h, stab(self.t, self.y))
        if o.hmax > 0.0:
            h = min(h, o.hmax)
        return max(h, o.hmin)

    # ------------------------
    # implicit stage solve
    # ------------------------
    def _stage_solve(self, t, Y, gh, fi_out):
        """
        Solve Y - known - gh*fimpl(t,Y) = 0 in place on Y (seeded by the
        predictor). Leaves fimpl(t,Y) in fi_out.
        """
        o = self.opts
        ls = self.ls
        if not ls.matrix_free:
            self.nje += 1
            jac = self.problem.jimpl(t, Y, fi_out)
            _check_status(ls.setup(jac, gh), "linear solver setup")
        crate, delp = 1.0, 0.0
        for m in range(o.maxniters):
            self._fimpl(t, Y, fi_out)
            self.nni += 1
            # residual G = Y - known - gh*f(Y); solve A*delta = -G
            self.res.linear_sum(-1.0, Y, 1.0, self.known)
            self.res.axpy(gh, fi_out)
            if ls.matrix_free:
                ls.set_linearization(Y, gh, self.ewt)
            _check_status(ls.solve(self.delta, self.res, o.eplifac*o.nlconvcoef),
                          "linear solver solve")
            Y.axpy(1.0, self.delta)
            dl = self.delta.wrms_norm(self.ewt, self.ctx)
            if m > 0:
                crate = max(0.3*crate, dl/max(delp, 1e-300))
            if dl*min(1.0, crate)/o.nlconvcoef <= 1.0:
                self._fimpl(t, Y, fi_out)
                return
            delp = dl
        self.ncfn += 1
        raise RecoverableError(f"Newton iteration failed to converge in {o.maxniters} iterations")

    # ------------------------
    # one step attempt
    # ------------------------
    def _attempt(self, h):
        """Returns (ynew, errnorm); raises RecoverableError on a failed stage."""
        t, yn = self.t, self.y
        fe1, fe2 = self.fe
        fi2, fi3 = self.fi
        self.nst_a += 1

        self._fexpl(t, yn, fe1)

        # stage 2: Y2 = yn + h*gam*fe1 + h*gam*fi(Y2)
        self.known.assign(yn).axpy(h*GAM, fe1)
        Y2 = self.known.copy() if self.opts.predictor else yn.copy()
        self._stage_solve(t + GAM*h, Y2, h*GAM, fi2)
        self._fexpl(t + GAM*h, Y2, fe2)

        # stage 3 (stiffly accurate): ynew = Y3
        self.known.assign(yn)
        self.known.axpy(h*DELTA, fe1).axpy(h*(1.0 - DELTA), fe2).axpy(h*(1.0 - GAM), fi2)
        Y3 = self.known.copy() if self.opts.predictor else Y2.copy()
        self._stage_solve(t + h, Y3, h*GAM, fi3)

        # first-order companion: yn + h*fe1 + h*fi3
        err = fe2.copy().axpy(-1.0, fe1).scale(h*(1.0 - DELTA))
        err.axpy(h*(1.0 - GAM), fi2).axpy(-h*(1.0 - GAM), fi3)
        errnorm = err.wrms_norm(self.ewt, self.ctx)
        if not np.isfinite(errnorm):
            raise RecoverableError("non-finite local error estimate")
        return Y3, errnorm

    def step(self, tout):
        o = self.opts
        fixed = self._fixed()
        h = o.hmax if fixed else self.h
        stab = getattr(self.problem, "stable_dt", None)
        if not fixed and stab is not None:
            h = min(h, stab(self.t, self.y))
        if o.hmax > 0.0:
            h = min(h, o.hmax)
        h = min(h, tout - self.t)
        self._set_weights(self.y)

        nfail = 0
        while True:
            try:
                ynew, errnorm = self._attempt(h)
            except RecoverableError as exc:
                nfail += 1
                if nfail > o.maxnef:
                    raise UnrecoverableError(
                        f"at t={self.t:.6e}: {nfail} consecutive recoverable failures ({exc})") from exc
                h *= 0.5
            else:
                if fixed or errnorm <= 1.0:
                    break
                self.netf += 1
                nfail += 1
                if nfail > o.maxnef:
                    raise UnrecoverableError(
                        f"at t={self.t:.6e}: error test failed {nfail} times (err={errnorm:.3e})")
                h *= max(0.1, min(0.5, o.safety*errnorm**-0.5))
            if h < o.hmin or h <= 0.0:
                raise UnrecoverableError(f"at t={self.t:.6e}: step size {h:.3e} fell below hmin")

        self.y.assign(ynew)
        self.t += h
        self.hlast = h
        self.nst += 1
        _check_status(self.problem.postprocess(self.t, self.y), "postprocess")
        if not fixed:
            fac = o.growth if errnorm == 0.0 else min(o.growth, max(0.2, o.safety*errnorm**-0.5))
            self.h = h*fac
        return h

    def evolve(self, tout):
        """Advance to exactly tout. Returns the reached time."""
        if self.h <= 0.0:
            self.h = self._initial_step(tout)
        nsteps = 0
        eps = 1e-12*max(1.0, abs(tout))
        while tout - self.t > eps:
            if nsteps >= self.opts.mxsteps:
                raise UnrecoverableError(f"mxsteps={self.opts.mxsteps} reached before t={tout:.6e}")
            self.step(tout)
            nsteps += 1
        self.t = tout if abs(self.t - tout) <= eps else self.t
        return self.t

    def stats(self):
        out = {"nst": self.nst, "nst_a": self.nst_a, "nfe": self.nfe, "nfi": self.nfi,
               "nni": self.nni, "ncfn": self.ncfn, "netf": self.netf, "nje": self.nje,
               "nsetups": self.ls.nsetups, "nls": self.ls.nsolves}
        if self.ls.matrix_free:
            out["nfe_dq"] = self.ls.nfe_dq
        return out
