"""
Compile system expressions to CasADi functions.

Compiled functions take ``(x, *p, t)`` where ``x`` is the unknown vector and
``p`` the numeric parameter buffers in ``reorder_parameters`` order (tunable,
discrete, constants). Non-numeric buffers are not arguments.
"""

from __future__ import annotations

from typing import Optional

import casadi as ca
import numpy as np

from cymodel.index_cache import reorder_parameters
from cymodel.parameters import ParameterBuffers
from cymodel.symbolic import as_sx, flatten_sx, is_symbol
from cymodel.system import System, get_index_cache
from cymodel.types import ParameterIndex, Portion


def unknown_vector_sx(sys: System) -> ca.SX:
    """Unknowns of ``sys`` stacked in index cache order."""
    parts = [u.sx for u in sys.unknowns]
    return ca.vertcat(*parts) if parts else ca.SX(0, 1)


def parameter_buffer_sx(sys: System) -> list:
    """One column of parameter symbols per numeric buffer."""
    ic = get_index_cache(sys)
    buffers = reorder_parameters(ic, sys.parameters)
    n_numeric = len(buffers) - len(ic.nonnumeric_buffer_sizes) if buffers else 0
    result = []
    for buf in buffers[:n_numeric]:
        parts = [p.sx for p in buf if p is not None and p.sx is not None]
        result.append(ca.vertcat(*parts) if parts else ca.SX(0, 1))
    return result


def independent_variable_sx(sys: System) -> ca.SX:
    return sys.iv.sx if sys.iv is not None else ca.SX.sym("t")


def rhs_expression(sys: System) -> ca.SX:
    """
    Right-hand side of the simplified system: ``f`` rows for differential
    equations followed by ``g`` rows for algebraic equations.

    Raises:
        ValueError: if ``sys`` has not been structurally simplified
    """
    if sys._n_differential is None:
        raise ValueError(f"System '{sys.name}' must be structurally simplified before code generation")
    rows = []
    for i, eq in enumerate(sys.equations):
        if i < sys._n_differential:
            rows.append(flatten_sx(eq.rhs))
        else:
            rows.append(flatten_sx(as_sx(eq.rhs) - as_sx(eq.lhs)))
    return ca.vertcat(*rows) if rows else ca.SX(0, 1)


def observed_expression(sys: System, outputs) -> ca.SX:
    """Outputs expressed in unknowns, parameters and the independent variable."""
    observed = {sys.key(eq.lhs): eq.rhs for eq in sys.observed if is_symbol(eq.lhs)}
    rows = []
    for o in outputs:
        key = sys.key(o)
        if key in observed:
            rows.append(flatten_sx(observed[key]))
        else:
            rows.append(flatten_sx(o))
    return ca.vertcat(*rows) if rows else ca.SX(0, 1)


class NumericFunction:
    """
    CasADi function of ``(u, p, t)`` with state and input Jacobians.

    Args:
        name: Function name
        expr: Expression in the unknowns, parameters and independent variable
        sys: Completed system providing the argument layout
    """

    def __init__(self, name: str, expr: ca.SX, sys: System):
        self.name = name
        self.expr = expr
        self.x = unknown_vector_sx(sys)
        self.p = parameter_buffer_sx(sys)
        self.t = independent_variable_sx(sys)
        self._has_tunable = get_index_cache(sys).tunable_buffer_size.length > 0
        args = [self.x, *self.p, self.t]
        self._func = ca.Function(name, args, [expr])
        self._jac_x = ca.Function(f"{name}_jac_x", args, [ca.jacobian(expr, self.x)])
        self._input_jacobians = {}

    @property
    def n_out(self) -> int:
        return int(self.expr.numel())

    def _args(self, u, p: ParameterBuffers, t) -> list:
        u = np.zeros(0) if u is None else np.asarray(u, dtype=float).reshape(-1)
        return [u, *p.numeric_buffers(), float(t)]

    def __call__(self, u, p: ParameterBuffers, t=0.0) -> np.ndarray:
        return np.asarray(self._func(*self._args(u, p, t)).full()).reshape(-1)

    def jacobian(self, u, p: ParameterBuffers, t=0.0) -> np.ndarray:
        """Jacobian with respect to the unknowns."""
        return np.asarray(self._jac_x(*self._args(u, p, t)).full()).reshape(self.n_out, self.x.numel())

    def _input_jacobian_function(self, positions: tuple) -> ca.Function:
        if positions not in self._input_jacobians:
            tunable = self.p[0]
            seed = np.zeros((tunable.numel(), len(positions)))
            for col, pos in enumerate(positions):
                seed[pos, col] = 1.0
            jac = ca.jtimes(self.expr, tunable, ca.SX(ca.DM(seed)))
            self._input_jacobians[positions] = ca.Function(
                f"{self.name}_jac_u", [self.x, *self.p, self.t], [jac]
            )
        return self._input_jacobians[positions]

    def input_jacobian(self, u, p: ParameterBuffers, t, input_idxs: list) -> np.ndarray:
        """
        Jacobian with respect to the tunable parameters at ``input_idxs``,
        computed by forward-mode directional derivatives.
        """
        if not input_idxs:
            return np.zeros((self.n_out, 0))
        positions = []
        for pidx in input_idxs:
            if not isinstance(pidx, ParameterIndex) or pidx.portion is not Portion.TUNABLE:
                raise ValueError(f"Inputs must be tunable parameters, got {pidx}")
            positions.append(int(pidx.idx))
        if not self._has_tunable:
            raise ValueError("System has no tunable parameters to differentiate with respect to")
        func = self._input_jacobian_function(tuple(positions))
        return np.asarray(func(*self._args(u, p, t)).full()).reshape(self.n_out, len(positions))


def generate_rhs(sys: System) -> NumericFunction:
    """Compile the right-hand side ``[f; g]`` of a simplified system."""
    return NumericFunction("rhs", rhs_expression(sys), sys)


def build_explicit_observed_function(sys: System, outputs, name: Optional[str] = None) -> NumericFunction:
    """Compile the outputs ``h(u, p, t)`` of a simplified system."""
    return NumericFunction(name or "observed", observed_expression(sys, outputs), sys)
