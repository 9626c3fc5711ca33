"""
Consistent initialization of the algebraic unknowns of a semi-explicit DAE.
"""

from __future__ import annotations

import casadi as ca
import numpy as np

from cymodel.codegen import NumericFunction
from cymodel.parameters import ParameterBuffers

_ROOTFINDER_OPTIONS = {
    "newton": lambda abstol: {"abstol": abstol * 1e-3, "max_iter": 100},
    "kinsol": lambda abstol: {"abstol": abstol * 1e-3},
    "fast_newton": lambda abstol: {"abstol": abstol * 1e-3, "max_iter": 100},
}


class InitializationProblem:
    """
    Solve ``0 = g(x, z, p, t)`` for the algebraic unknowns ``z`` with the
    differential unknowns ``x`` held fixed.

    Args:
        rhs: Compiled right-hand side ``[f; g]``
        diff_idxs: Positions of the differential unknowns
        alge_idxs: Positions of the algebraic unknowns
        solver: CasADi rootfinder plugin
        abstol: Residual tolerance for consistency
        reltol: Residual tolerance relative to the magnitude of ``z``
    """

    def __init__(
        self,
        rhs: NumericFunction,
        diff_idxs: list,
        alge_idxs: list,
        solver: str = "newton",
        abstol: float = 1e-5,
        reltol: float = 1e-3,
    ):
        self.rhs = rhs
        self.diff_idxs = list(diff_idxs)
        self.alge_idxs = list(alge_idxs)
        self.solver = solver
        self.abstol = abstol
        self.reltol = reltol
        self._rootfinder = None

    def residual(self, u, p: ParameterBuffers, t=0.0) -> np.ndarray:
        return self.rhs(u, p, t)[len(self.diff_idxs) :]

    def is_consistent(self, u, p: ParameterBuffers, t=0.0) -> bool:
        g = self.residual(u, p, t)
        return g.size == 0 or bool(np.max(np.abs(g)) <= self.abstol)

    def _build(self) -> ca.Function:
        n_diff = len(self.diff_idxs)
        x = self.rhs.x
        z = ca.vertcat(*[x[i] for i in self.alge_idxs])
        xd = ca.vertcat(*[x[i] for i in self.diff_idxs]) if self.diff_idxs else ca.SX(0, 1)
        params = ca.vertcat(xd, *self.rhs.p, self.rhs.t)
        g = self.rhs.expr[n_diff:]
        opts = {"error_on_fail": False}
        opts.update(_ROOTFINDER_OPTIONS.get(self.solver, lambda abstol: {})(self.abstol))
        return ca.rootfinder("initialization", self.solver, {"x": z, "p": params, "g": g}, opts)

    def solve(self, u, p: ParameterBuffers, t=0.0) -> tuple:
        """
        Returns:
            ``(u, p, success)`` with the algebraic entries of ``u`` replaced by
            the solution.
        """
        u = np.asarray(u, dtype=float).copy()
        if not self.alge_idxs:
            return u, p, True
        if self._rootfinder is None:
            self._rootfinder = self._build()
        params = np.concatenate([u[self.diff_idxs], *p.numeric_buffers(), [float(t)]])
        try:
            sol = self._rootfinder(x0=u[self.alge_idxs], p=params)
        except RuntimeError:
            return u, p, False
        z = np.asarray(sol["x"].full()).reshape(-1)
        if not np.all(np.isfinite(z)):
            return u, p, False
        u[self.alge_idxs] = z
        g = self.residual(u, p, t)
        tol = max(self.abstol, self.reltol * float(np.max(np.abs(z))))
        return u, p, bool(np.max(np.abs(g)) <= tol)
