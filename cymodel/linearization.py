#!/usr/bin/env python3
"""
Linearization of systems around operating points.

Provides tools for:
- Building a reusable linearization function returning the Jacobian blocks
  of the semi-explicit DAE ``der(x) = f(x, z, u)``, ``0 = g(x, z, u)``,
  ``y = h(x, z, u)``
- Reducing the blocks to a state-space model ``(A, B, C, D)``, numerically
  or symbolically
- State-space coordinate changes (similarity transforms, reordering)

Example:
    >>> lsys, ssys = linearize(closed_loop, [filt.u], [plant.x])
    >>> lsys.A
    array([[-2.,  0.],
           [ 1., -2.]])
"""

import collections.abc
import warnings
from typing import Any, NamedTuple

import casadi as ca
import numpy as np
from scipy import linalg

from cymodel.codegen import (
    NumericFunction,
    build_explicit_observed_function,
    generate_rhs,
    observed_expression,
    rhs_expression,
    unknown_vector_sx,
)
from cymodel.initialization import InitializationProblem
from cymodel.parameters import ParameterBuffers
from cymodel.simplification import io_preprocessing
from cymodel.symbolic import (
    NAMESPACE_SEPARATOR,
    as_sx,
    collect,
    flatten_sx,
    getdefault,
    getname,
    is_symbol,
    substitute,
)
from cymodel.system import System, missing_variable_defaults


class LinearizationBlocks(NamedTuple):
    """Jacobian blocks of ``f``, ``g`` and ``h`` at an operating point."""

    f_x: Any
    f_z: Any
    g_x: Any
    g_z: Any
    f_u: Any
    g_u: Any
    h_x: Any
    h_z: Any
    h_u: Any


class LinearSystem(NamedTuple):
    """State-space model ``dx = A x + B u``, ``y = C x + D u``."""

    A: Any
    B: Any
    C: Any
    D: Any


class SymbolicLinearization(NamedTuple):
    """Symbolic state-space model together with the blocks it was reduced from."""

    A: ca.SX
    B: ca.SX
    C: ca.SX
    D: ca.SX
    f_x: ca.SX
    f_z: ca.SX
    g_x: ca.SX
    g_z: ca.SX
    f_u: ca.SX
    g_u: ca.SX
    h_x: ca.SX
    h_z: ca.SX
    h_u: ca.SX


def _flatten_io(syms) -> list:
    if syms is None:
        return []
    if is_symbol(syms) or isinstance(syms, str):
        syms = [syms]
    result = []
    for s in syms:
        result.extend(collect(s) if is_symbol(s) else [s])
    return result


# ---------------------------------------------------------------------------
# Operating points
# ---------------------------------------------------------------------------
def _merge(*mappings) -> dict:
    merged = {}
    for m in mappings:
        if m:
            merged.update(m.items() if isinstance(m, dict) else m)
    return merged


def _lookup(values: dict, sys: System, sym):
    """Value of ``sym`` in a canonical-name keyed mapping; array elements fall back to their array."""
    key = sys.key(sym)
    if key in values:
        return values[key]
    parent = getattr(sym, "parent", None)
    if parent is not None and sys.key(parent) in values:
        value = values[sys.key(parent)]
        if is_symbol(value) or isinstance(value, ca.SX):
            return flatten_sx(value)[sym.flat_index]
        arr = np.asarray(value)
        return arr.item() if arr.ndim == 0 else arr[sym.indices]
    return getdefault(sym)


def operating_point_vector(sys: System, op, p: ParameterBuffers) -> np.ndarray:
    """
    Numeric unknown vector of ``sys`` from ``op`` merged over the defaults.

    Values may be expressions of parameters and of other unknowns.
    """
    values = sys.canonicalize_mapping(_merge(missing_variable_defaults(sys), sys.defaults, op))
    unknowns = sys.unknowns
    resolved = {}

    def resolve(u, stack):
        key = sys.key(u)
        if key in resolved:
            return resolved[key]
        if key in stack:
            raise ValueError(f"Cyclic operating point values involving {sorted(stack)}")
        value = _lookup(values, sys, u)
        if value is None:
            value = 0.0
        if is_symbol(value) or isinstance(value, ca.SX):
            expr = as_sx(value)
            subs = {v: resolve(v, stack | {key}) for v in unknowns if ca.depends_on(expr, v.sx)}
            value = p.evaluate(substitute(expr, subs))
        resolved[key] = float(np.asarray(value, dtype=float).reshape(-1)[0])
        return resolved[key]

    return np.array([resolve(u, frozenset()) for u in unknowns], dtype=float)


def _warn_unknown_keys(sys: System, op) -> None:
    unknown = [k for k in (op or {}) if sys.lookup(k) is None]
    if unknown:
        warnings.warn(
            f"Operating point entries {[getname(k) for k in unknown]} are not variables or parameters "
            f"of system '{sys.name}' and will be ignored"
        )


# ---------------------------------------------------------------------------
# Linearization function
# ---------------------------------------------------------------------------
class LinearizationFunction:
    """
    Callable ``lin_fun(u, p, t)`` returning the ``LinearizationBlocks`` of a
    simplified system at the unknowns ``u``.

    ``p`` may be ``ParameterBuffers``, a ``{parameter: value}`` mapping applied
    over the defaults, or ``None`` for the defaults.
    """

    def __init__(
        self,
        ssys: System,
        outputs: list,
        diff_idxs: list,
        alge_idxs: list,
        input_idxs: list,
        parameters: ParameterBuffers,
        initialize: bool = True,
        initialization_solver_alg: str = "newton",
        initialization_abstol: float = 1e-5,
        initialization_reltol: float = 1e-3,
    ):
        self.system = ssys
        self.outputs = outputs
        self.diff_idxs = diff_idxs
        self.alge_idxs = alge_idxs
        self.input_idxs = input_idxs
        self.parameters = parameters
        self.initialize = initialize
        self.rhs: NumericFunction = generate_rhs(ssys)
        self.h: NumericFunction = build_explicit_observed_function(ssys, outputs)
        self.initialization = InitializationProblem(
            self.rhs,
            diff_idxs,
            alge_idxs,
            solver=initialization_solver_alg,
            abstol=initialization_abstol,
            reltol=initialization_reltol,
        )

    @property
    def n_inputs(self) -> int:
        return len(self.input_idxs)

    def _parameters(self, p) -> ParameterBuffers:
        if isinstance(p, ParameterBuffers):
            return p
        ps = self.parameters.copy()
        if p is not None:
            ps.update(p)
        return ps

    def __call__(self, u, p=None, t=0.0) -> LinearizationBlocks:
        ps = self._parameters(p)
        n_unknowns = len(self.system.unknowns)
        u = np.zeros(0) if u is None else np.asarray(u, dtype=float).reshape(-1)
        if u.size != n_unknowns:
            raise ValueError(
                f"Number of unknown variables ({n_unknowns}) does not match the number "
                f"of input unknowns ({u.size})"
            )
        if n_unknowns > 0:
            if self.initialize and not self.initialization.is_consistent(u, ps, t):
                u, ps, success = self.initialization.solve(u, ps, t)
                if not success:
                    raise RuntimeError(
                        f"Initialization algorithm {self.initialization.solver} failed with u = {u} and p = {ps}"
                    )
            fg_xz = self.rhs.jacobian(u, ps, t)
            h_xz = self.h.jacobian(u, ps, t)
            fg_u = self.rhs.input_jacobian(u, ps, t, self.input_idxs)
        else:
            fg_xz = np.zeros((0, 0))
            h_xz = np.zeros((self.h.n_out, 0))
            fg_u = np.zeros((0, self.n_inputs))
        h_u = self.h.input_jacobian(u, ps, t, self.input_idxs)

        d = np.asarray(self.diff_idxs, dtype=int)
        a = np.asarray(self.alge_idxs, dtype=int)
        return LinearizationBlocks(
            f_x=fg_xz[np.ix_(d, d)],
            f_z=fg_xz[np.ix_(d, a)],
            g_x=fg_xz[np.ix_(a, d)],
            g_z=fg_xz[np.ix_(a, a)],
            f_u=fg_u[d, :],
            g_u=fg_u[a, :],
            h_x=h_xz[:, d],
            h_z=h_xz[:, a],
            h_u=h_u,
        )


def linearization_function(
    sys: System,
    inputs,
    outputs,
    *,
    simplify: bool = False,
    initialize: bool = True,
    initialization_solver_alg: str = "newton",
    initialization_abstol: float = 1e-5,
    initialization_reltol: float = 1e-3,
    op=None,
    p=None,
    zero_dummy_der: bool = False,
) -> tuple:
    """
    Build a function returning the Jacobian blocks of ``sys`` at any operating point.

    Parameters
    ----------
    sys : System
        System to linearize; simplified with the given inputs and outputs.
    inputs, outputs : symbol | Sequence
        Inputs (become tunable parameters) and outputs. Arrays are expanded.
    simplify : bool
        Run ``ca.simplify`` on the simplified equations.
    initialize : bool
        Re-solve the algebraic unknowns when the operating point violates the
        algebraic equations.
    initialization_solver_alg : str
        CasADi rootfinder plugin used for initialization.
    initialization_abstol, initialization_reltol : float
        Consistency tolerances.
    op : dict | None
        Operating point overriding the defaults.
    p : dict | None
        Parameter values overriding the defaults.
    zero_dummy_der : bool
        Give unknowns introduced by simplification a zero default.

    Returns
    -------
    lin_fun, ssys : LinearizationFunction, System
        ``lin_fun(u, p, t)`` returns ``LinearizationBlocks``. ``ssys`` is the
        simplified system whose unknown order ``u`` follows.
    """
    inputs = _flatten_io(inputs)
    outputs = _flatten_io(outputs)
    ssys, diff_idxs, alge_idxs, input_idxs = io_preprocessing(sys, inputs, outputs, simplify=simplify)
    op = dict(op or {})

    if zero_dummy_der:
        original = {sys.key(u) for v in sys.unknowns for u in collect(v)}
        dummies = [u for u in ssys.unknowns if ssys.key(u) not in original]
        if not dummies:
            warnings.warn(f"zero_dummy_der is set but system '{sys.name}' has no dummy derivatives")
        for u in dummies:
            ssys._defaults[u] = 0.0
            op[u] = 0.0

    parameters = ParameterBuffers.from_system(ssys, _parameter_mapping(ssys, p, op))
    lin_fun = LinearizationFunction(
        ssys,
        ssys.outputs,
        diff_idxs,
        alge_idxs,
        input_idxs,
        parameters,
        initialize=initialize,
        initialization_solver_alg=initialization_solver_alg,
        initialization_abstol=initialization_abstol,
        initialization_reltol=initialization_reltol,
    )
    return lin_fun, ssys


# ---------------------------------------------------------------------------
# DAE reduction
# ---------------------------------------------------------------------------
def _input_names(sys: System, columns) -> list:
    inputs = sys.inputs
    return [getname(inputs[j]) if j < len(inputs) else f"u[{j}]" for j in columns]


def _input_derivative_error(sys: System, columns) -> RuntimeError:
    return RuntimeError(
        "Input derivatives appeared in expressions (-g_z\\g_u != 0), the following inputs appeared "
        f"differentiated: {_input_names(sys, columns)}. Call `linearize` with keyword argument "
        "`allow_input_derivatives=True` to allow this and have the returned `B` matrix be of double "
        "width, where the last half holds the coefficients of the input derivatives."
    )


_INDEX_ERROR = "g_z not invertible, this indicates that the DAE is of index > 1."


def state_space(blocks: LinearizationBlocks, sys: System, allow_input_derivatives: bool = False) -> LinearSystem:
    """Reduce numeric Jacobian blocks to ``(A, B, C, D)``."""
    f_x, f_z, g_x, g_z, f_u, g_u, h_x, h_z, h_u = (np.atleast_2d(np.asarray(b, dtype=float)) for b in blocks)
    if g_z.size == 0:
        return LinearSystem(f_x, f_u, h_x, h_u)

    with warnings.catch_warnings():
        warnings.simplefilter("ignore", linalg.LinAlgWarning)
        lu, piv = linalg.lu_factor(g_z)
    if np.any(np.diag(lu) == 0.0):
        raise RuntimeError(_INDEX_ERROR)

    gzgx = -linalg.lu_solve((lu, piv), g_x)
    A = np.block([[f_x, f_z], [gzgx @ f_x, gzgx @ f_z]])
    B = np.vstack([f_u, gzgx @ f_u])
    C = np.hstack([h_x, h_z])
    D = h_u

    Bs = -linalg.lu_solve((lu, piv), g_u)
    if np.any(Bs != 0.0):
        if not allow_input_derivatives:
            columns = [j for j in range(Bs.shape[1]) if np.any(Bs[:, j] != 0.0)]
            raise _input_derivative_error(sys, columns)
        B = np.hstack([B, np.vstack([np.zeros_like(f_u), Bs])])
        D = np.hstack([D, np.zeros_like(D)])
    return LinearSystem(A, B, C, D)


def _symbolic_state_space(
    blocks: LinearizationBlocks, sys: System, allow_input_derivatives: bool = False
) -> LinearSystem:
    f_x, f_z, g_x, g_z, f_u, g_u, h_x, h_z, h_u = blocks
    if g_z.numel() == 0:
        return LinearSystem(f_x, f_u, h_x, h_u)

    nz = g_z.shape[0]
    if ca.sprank(g_z) < nz:
        raise RuntimeError(_INDEX_ERROR)
    if g_z.is_constant() and np.linalg.matrix_rank(np.asarray(ca.evalf(g_z).full())) < nz:
        raise RuntimeError(_INDEX_ERROR)

    gzgx = -ca.solve(g_z, g_x)
    A = ca.vertcat(ca.horzcat(f_x, f_z), ca.horzcat(ca.mtimes(gzgx, f_x), ca.mtimes(gzgx, f_z)))
    B = ca.vertcat(f_u, ca.mtimes(gzgx, f_u))
    C = ca.horzcat(h_x, h_z)
    D = h_u

    Bs = -ca.solve(g_z, g_u)
    columns = [j for j in range(g_u.shape[1]) if g_u[:, j].nnz() > 0 and not Bs[:, j].is_zero()]
    if columns:
        if not allow_input_derivatives:
            raise _input_derivative_error(sys, columns)
        B = ca.horzcat(B, ca.vertcat(ca.SX.zeros(*f_u.shape), Bs))
        D = ca.horzcat(D, ca.SX.zeros(*D.shape))
    return LinearSystem(A, B, C, D)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def _input_defaults(sys: System) -> dict:
    """Inputs without a default value start at zero."""
    known = sys.canonicalize_mapping(sys.defaults)
    return {i: 0.0 for i in sys.inputs if sys.key(i) not in known and getdefault(i) is None}


def _parameter_mapping(sys: System, p, op) -> dict:
    base = _input_defaults(sys)
    if p is None:
        return _merge(base, op)
    if isinstance(p, ParameterBuffers):
        return _merge(base, p.to_dict(), op)
    if isinstance(p, dict):
        return _merge(base, p, op)
    p = list(p)
    if p and all(isinstance(item, tuple) and len(item) == 2 for item in p):
        return _merge(base, dict(p), op)
    params = sys.parameters
    if len(p) != len(params):
        raise ValueError(f"Expected {len(params)} parameter values, got {len(p)}")
    return _merge(base, dict(zip(params, p)), op)


def _linearize_with(
    sys: System,
    lin_fun: collections.abc.Callable,
    t=0.0,
    op=None,
    allow_input_derivatives: bool = False,
    p=None,
) -> LinearSystem:
    op = dict(op or {})
    _warn_unknown_keys(sys, op)
    params = _parameter_mapping(sys, p, op)
    base = getattr(lin_fun, "parameters", None)
    if isinstance(base, ParameterBuffers):
        ps = base.copy()
        ps.update(params)
    else:
        ps = ParameterBuffers.from_system(sys, params)
    u0 = operating_point_vector(sys, op, ps)
    blocks = lin_fun(u0, params, t)
    return state_space(blocks, sys, allow_input_derivatives=allow_input_derivatives)


def linearize(
    sys: System,
    inputs_or_lin_fun,
    outputs=None,
    *,
    t=0.0,
    op=None,
    allow_input_derivatives: bool = False,
    p=None,
    **kwargs,
):
    """
    Linearize ``sys`` around an operating point.

    Two forms are supported:

    ``linearize(ssys, lin_fun, *, t, op, allow_input_derivatives, p)``
        Evaluate an existing linearization function at the operating point
        ``op`` merged over the defaults of ``ssys`` and return a
        ``LinearSystem``.

    ``linearize(sys, inputs, outputs, *, t, op, allow_input_derivatives, p, **kwargs)``
        Build the linearization function (``kwargs`` are forwarded to
        ``linearization_function``) and return ``(LinearSystem, ssys)``.

    The state of the result is ``[x; z]`` in the unknown order of the
    simplified system. When ``allow_input_derivatives`` is set and input
    derivatives appear, ``B`` and ``D`` are of double width and the second
    half multiplies ``du/dt``.

    Raises:
        RuntimeError: if ``g_z`` is singular (index > 1) or input derivatives
            appear and are not allowed
    """
    if outputs is None and callable(inputs_or_lin_fun):
        if kwargs:
            raise TypeError(f"Unexpected keyword arguments {sorted(kwargs)}")
        return _linearize_with(
            sys, inputs_or_lin_fun, t=t, op=op, allow_input_derivatives=allow_input_derivatives, p=p
        )
    lin_fun, ssys = linearization_function(sys, inputs_or_lin_fun, outputs, op=op, p=p, **kwargs)
    result = _linearize_with(ssys, lin_fun, t=t, op=op, allow_input_derivatives=allow_input_derivatives, p=p)
    return result, ssys


def linearize_symbolic(
    sys: System,
    inputs,
    outputs,
    *,
    simplify: bool = False,
    allow_input_derivatives: bool = False,
) -> tuple:
    """
    Symbolic linearization; the result depends on the unknowns, parameters
    and independent variable of the returned simplified system.

    Returns:
        ``(SymbolicLinearization, ssys)``
    """
    inputs = _flatten_io(inputs)
    outputs = _flatten_io(outputs)
    ssys, diff_idxs, alge_idxs, _ = io_preprocessing(sys, inputs, outputs, simplify=simplify)
    x = unknown_vector_sx(ssys)
    u = ca.vertcat(*[i.sx for i in ssys.inputs]) if ssys.inputs else ca.SX(0, 1)
    fg = rhs_expression(ssys)
    h = observed_expression(ssys, ssys.outputs)
    fg_xz = ca.jacobian(fg, x)
    fg_u = ca.jacobian(fg, u)
    h_xz = ca.jacobian(h, x)
    h_u = ca.jacobian(h, u)

    def rows(m, idxs):
        return m[idxs, :] if idxs else ca.SX(0, m.shape[1])

    def cols(m, idxs):
        return m[:, idxs] if idxs else ca.SX(m.shape[0], 0)

    blocks = LinearizationBlocks(
        f_x=cols(rows(fg_xz, diff_idxs), diff_idxs),
        f_z=cols(rows(fg_xz, diff_idxs), alge_idxs),
        g_x=cols(rows(fg_xz, alge_idxs), diff_idxs),
        g_z=cols(rows(fg_xz, alge_idxs), alge_idxs),
        f_u=rows(fg_u, diff_idxs),
        g_u=rows(fg_u, alge_idxs),
        h_x=cols(h_xz, diff_idxs),
        h_z=cols(h_xz, alge_idxs),
        h_u=h_u,
    )
    A, B, C, D = _symbolic_state_space(blocks, ssys, allow_input_derivatives=allow_input_derivatives)
    return SymbolicLinearization(A, B, C, D, *blocks), ssys


# ---------------------------------------------------------------------------
# Coordinate changes
# ---------------------------------------------------------------------------
def similarity_transform(sys, T, *, unitary: bool = False) -> LinearSystem:
    """
    Change state coordinates ``x = T x_new``.

    Returns ``(T⁻¹ A T, T⁻¹ B, C T, D)``. With ``unitary`` the inverse is
    taken as the conjugate transpose.
    """
    A, B, C, D = (np.asarray(m) for m in (sys.A, sys.B, sys.C, sys.D))
    T = np.asarray(T)
    if unitary:
        Tinv = T.conj().T
        return LinearSystem(Tinv @ A @ T, Tinv @ B, C @ T, D)
    lu = linalg.lu_factor(T)
    return LinearSystem(linalg.lu_solve(lu, A @ T), linalg.lu_solve(lu, B), C @ T, D)


def reorder_unknowns(sys, old, new) -> Any:
    """
    Permute the states of a linear system from the ordering ``old`` to ``new``.

    Raises:
        ValueError: if ``old`` and ``new`` differ in length or ``new`` holds a
            variable not in ``old``
    """
    old = list(old)
    new = list(new)
    if len(old) != len(new):
        raise ValueError("old and new must have the same length")
    perm = []
    for n in new:
        matches = [i for i, o in enumerate(old) if _same_variable(o, n)]
        if not matches:
            # `n` may carry the namespace of an enclosing system
            matches = [i for i, o in enumerate(old) if getname(n).endswith(NAMESPACE_SEPARATOR + getname(o))]
        if not matches:
            raise ValueError(f"{n} is not part of the old ordering")
        perm.append(matches[0])
    if perm == sorted(perm):
        return sys
    P = np.zeros((len(old), len(old)))
    for i, j in enumerate(perm):
        P[j, i] = 1.0
    return similarity_transform(sys, P, unitary=True)


def _same_variable(a, b) -> bool:
    if is_symbol(a) and is_symbol(b):
        return a == b or getname(a) == getname(b)
    return getname(a) == getname(b)
