"""
Structural simplification of flattened systems.

Differential equations are solved for their derivative and algebraic
equations are torn: an unknown that appears affinely with a constant nonzero
coefficient is solved for and moved to the observed equations. What remains
is the semi-explicit DAE

    der(x) = f(x, z, p, t)
         0 = g(x, z, p, t)

with unknowns ordered ``[x; z]``.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import casadi as ca

from cymodel.equations import Equation
from cymodel.index_cache import IndexCache
from cymodel.symbolic import (
    as_sx,
    collect,
    der,
    getname,
    is_symbol,
    isirreducible,
    setmetadata,
)
from cymodel.system import System, get_index_cache
from cymodel.types import Portion


@dataclass
class _AlgebraicEquation:
    residual: ca.SX
    preferred: list = field(default_factory=list)


def _solve_affine(residual: ca.SX, var: ca.SX, require_constant: bool):
    """Solve ``residual(var) = 0`` for ``var`` if ``var`` appears affinely."""
    coef = ca.jacobian(residual, var)
    if ca.depends_on(coef, var):
        return None
    if require_constant:
        if not coef.is_constant() or float(ca.evalf(coef)) == 0.0:
            return None
    rest = ca.substitute(residual, var, ca.SX(0))
    if coef.is_one():
        return -rest
    if coef.is_minus_one():
        return rest
    return -rest / coef


def _markio(sys: System, inputs, outputs) -> tuple:
    """Resolve inputs and outputs against the flattened system."""
    resolved_inputs = []
    missing = []
    for i in inputs:
        found = sys.lookup(i)
        if found is None or not (sys.is_unknown(found) or sys.is_parameter(found)):
            missing.append(getname(i))
        else:
            resolved_inputs.extend(collect(found))
    if missing:
        raise ValueError(
            f"Some specified inputs were not found in system. The following variables were not found: {missing}"
        )
    resolved_outputs = []
    for o in outputs:
        found = sys.lookup(o)
        if found is None:
            missing.append(getname(o))
        else:
            resolved_outputs.extend(collect(found))
    if missing:
        raise ValueError(
            f"Some specified outputs were not found in system. The following variables were not found: {missing}"
        )
    return resolved_inputs, resolved_outputs


def structural_simplify(sys: System, inputs=(), outputs=(), simplify: bool = False) -> System:
    """
    Reduce ``sys`` to a semi-explicit DAE and complete it.

    Args:
        sys: System to simplify; subsystems are flattened
        inputs: Unknowns to turn into tunable input parameters
        outputs: Variables that must remain computable
        simplify: Run ``ca.simplify`` on the resulting expressions

    Returns:
        A complete system whose unknowns are the differential unknowns
        followed by the algebraic ones.

    Raises:
        ValueError: if inputs or outputs are missing, an unknown has several
            differential equations, or the algebraic part is unbalanced
        NotImplementedError: for equations coupling several derivatives or
            containing a derivative nonlinearly
    """
    inputs, outputs = _markio(sys, inputs, outputs)
    key = sys.key
    input_keys = {key(i) for i in inputs}

    unknowns = [e for u in sys.unknowns for e in collect(u) if key(e) not in input_keys]
    unknown_keys = {key(u) for u in unknowns}
    parameters = list(sys.parameters)
    input_params = []
    for i in inputs:
        if sys.is_parameter(i):
            input_params.append(i)
            continue
        p = setmetadata(i, input=True, tunable=True)
        parameters.append(p)
        input_params.append(p)

    # -- differential equations ----------------------------------------
    differential = {}
    algebraic = []
    for eq in (s for e in sys.equations for s in e.scalarize()):
        residual = eq.residual()
        present = [u for u in unknowns if u.der_sx is not None and ca.depends_on(residual, u.der_sx)]
        if not present:
            preferred = [s for s in (eq.lhs, eq.rhs) if is_symbol(s) and key(s) in unknown_keys]
            algebraic.append(_AlgebraicEquation(residual, preferred))
            continue
        if len(present) > 1:
            raise NotImplementedError(f"Equation {eq} couples the derivatives of {present}")
        u = present[0]
        if key(u) in differential:
            raise ValueError(f"Unknown {u} has more than one differential equation")
        rhs = _solve_affine(residual, u.der_sx, require_constant=False)
        if rhs is None:
            raise NotImplementedError(f"Derivative of {u} appears nonlinearly in {eq}")
        differential[key(u)] = (u, rhs)

    # -- tearing ---------------------------------------------------------
    remaining = [u for u in unknowns if key(u) not in differential]
    solved = []
    observed = [(eq.lhs, as_sx(eq.rhs)) for e in sys.observed for eq in e.scalarize()]

    def eliminate(var, expr):
        for item in algebraic:
            item.residual = ca.substitute(item.residual, var.sx, expr)
        for k, (u, rhs) in differential.items():
            differential[k] = (u, ca.substitute(rhs, var.sx, expr))
        solved[:] = [(s, ca.substitute(e, var.sx, expr)) for s, e in solved]
        observed[:] = [(s, ca.substitute(e, var.sx, expr)) for s, e in observed]

    progress = True
    while progress:
        progress = False
        for item in algebraic:
            remaining_keys = {key(u) for u in remaining}
            candidates = [s for s in item.preferred if key(s) in remaining_keys]
            candidates += [u for u in remaining if u not in candidates]
            for var in candidates:
                if isirreducible(var) or not ca.depends_on(item.residual, var.sx):
                    continue
                expr = _solve_affine(item.residual, var.sx, require_constant=True)
                if expr is None:
                    continue
                algebraic.remove(item)
                remaining = [u for u in remaining if key(u) != key(var)]
                var = next(u for u in unknowns if key(u) == key(var))
                eliminate(var, expr)
                solved.append((var, expr))
                progress = True
                break
            if progress:
                break

    if len(algebraic) != len(remaining):
        raise ValueError(
            f"System '{sys.name}' is structurally unbalanced: {len(algebraic)} algebraic equation(s) "
            f"for {len(remaining)} algebraic unknown(s) {remaining}"
        )

    post = ca.simplify if simplify else (lambda e: e)
    diff_unknowns = [u for u, _ in differential.values()]
    eqs = [Equation(der(u), post(rhs)) for u, rhs in differential.values()]
    eqs += [Equation(0.0, post(-item.residual)) for item in algebraic]
    observed_eqs = [Equation(v, post(e)) for v, e in solved]
    observed_eqs += [Equation(lhs, post(e)) for lhs, e in observed]

    ssys = System(
        eqs,
        sys.iv,
        diff_unknowns + remaining,
        parameters,
        name=sys.name,
        observed=observed_eqs,
        defaults=sys.defaults,
        continuous_events=sys.continuous_events,
        discrete_events=sys.discrete_events,
        parameter_dependencies=sys.parameter_dependencies,
        description=sys.description,
    )
    ssys._systems = sys.systems
    ssys._flat = True
    ssys._inputs = input_params
    ssys._outputs = outputs
    ssys._n_differential = len(diff_unknowns)
    ssys._complete = True
    ssys._index_cache = IndexCache(ssys)
    return ssys


def io_preprocessing(sys: System, inputs, outputs, simplify: bool = False) -> tuple:
    """
    Simplify ``sys`` with designated inputs and outputs.

    Returns:
        ``(ssys, diff_idxs, alge_idxs, input_idxs)`` where the index lists
        address the unknowns of ``ssys`` and ``input_idxs`` are the
        ``ParameterIndex`` of each input.
    """
    ssys = structural_simplify(sys, inputs, outputs, simplify=simplify)
    n_diff = ssys._n_differential
    diff_idxs = list(range(n_diff))
    alge_idxs = list(range(n_diff, len(ssys.unknowns)))
    ic = get_index_cache(ssys)
    input_idxs = []
    for i in ssys.inputs:
        pidx = ic.parameter_index(i)
        if pidx is None or pidx.portion is not Portion.TUNABLE:
            raise ValueError(f"Input {i} must be a tunable floating point parameter")
        input_idxs.append(pidx)
    return ssys, diff_idxs, alge_idxs, input_idxs
