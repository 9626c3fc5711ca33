"""
Numeric parameter storage laid out by an index cache.

``ParameterBuffers`` holds the values of every parameter of a completed system
in the buffer families of its ``IndexCache``. Values are resolved in order of
precedence: explicitly given values, parameter dependencies, then defaults.
Symbolic values are evaluated by substituting the values of the parameters
they reference until a fixpoint is reached.

Example:
    >>> ps = ParameterBuffers.from_system(sys, {k: 3.0})
    >>> ps[k]
    3.0
    >>> ps.update({"k": 4.0})
    >>> [len(buf) for buf in ps]
    [1]
"""

from __future__ import annotations

import copy
from typing import Optional

import casadi as ca
import numpy as np

from cymodel.index_cache import IndexCache, buffer_symbol_sizes, iterated_buffer_index, reorder_parameters
from cymodel.symbolic import (
    FunctionWrapper,
    as_sx,
    evaluate,
    is_array,
    is_numeric_type,
    is_symbol,
    symtype,
)
from cymodel.system import System, get_index_cache
from cymodel.types import ParameterIndex, Portion


def _coerce(value, sym):
    """Match an evaluated value to the shape and type of ``sym``."""
    stype = symtype(sym)
    if stype is FunctionWrapper:
        if callable(value) and not isinstance(value, FunctionWrapper):
            return FunctionWrapper(value)
        return value
    if not is_numeric_type(stype):
        return value
    if is_array(sym):
        arr = np.asarray(value)
        if all(n is not None for n in sym.shape) and arr.size == int(np.prod(sym.shape)):
            arr = arr.reshape(sym.shape)
        return arr.astype(sym.dtype) if sym.dtype in (int, bool) else arr
    if isinstance(value, np.ndarray):
        value = value.item()
    if sym.dtype is int:
        return int(round(value))
    if sym.dtype is bool:
        return bool(value)
    return value


def resolve_parameter_values(sys: System, values=None, current: Optional[dict] = None) -> dict:
    """
    Numeric value of every parameter of ``sys``, keyed by canonical name.

    Args:
        sys: Completed system
        values: ``{symbol or name: value}``; keys that are not parameters
            are ignored. Values may be expressions of other parameters.
        current: Values to fall back on before defaults

    Raises:
        ValueError: if a parameter has no value or values depend on each
            other cyclically
    """
    params = {sys.key(p): p for p in sys.parameters}
    given = {k: v for k, v in sys.canonicalize_mapping(values).items() if k in params}
    deps = {sys.key(eq.lhs): eq.rhs for eq in sys.parameter_dependencies}
    defaults = {k: v for k, v in sys.canonicalize_mapping(sys.defaults).items() if k in params}

    raw = {}
    for k in params:
        if k in given:
            raw[k] = given[k]
        elif k in deps:
            raw[k] = deps[k]
        elif current is not None and k in current:
            raw[k] = current[k]
        elif k in defaults:
            raw[k] = defaults[k]

    resolved = {}

    def resolve(k, stack):
        if k in resolved:
            return resolved[k]
        if k in stack:
            raise ValueError(f"Cyclic parameter values involving {[str(params[s]) for s in stack]}")
        if k not in raw or raw[k] is None:
            raise ValueError(f"No value provided for parameter {params[k]}")
        value = raw[k]
        if is_symbol(value) or isinstance(value, ca.SX):
            expr = as_sx(value)
            subs = {}
            for k2, p2 in params.items():
                if p2.sx is None or not is_numeric_type(symtype(p2)):
                    continue
                if ca.depends_on(expr, p2.sx):
                    subs[p2] = resolve(k2, stack | {k})
            value = evaluate(expr, subs)
        resolved[k] = _coerce(value, params[k])
        return resolved[k]

    for k in params:
        resolve(k, frozenset())
    return resolved


class ParameterBuffers:
    """
    Parameter values of a completed system, grouped as its index cache lays
    them out.

    Attributes:
        tunable: Flat float array
        discrete: One list per discrete element type
        constant: One list per constant buffer
        nonnumeric: One list per non-numeric buffer
    """

    def __init__(self, sys: System, tunable: np.ndarray, discrete: list, constant: list, nonnumeric: list):
        self.system = sys
        self.index_cache: IndexCache = get_index_cache(sys)
        self.tunable = tunable
        self.discrete = discrete
        self.constant = constant
        self.nonnumeric = nonnumeric
        self._layout = reorder_parameters(self.index_cache, sys.parameters)
        self._sizes = buffer_symbol_sizes(self.index_cache, sys)

    @classmethod
    def from_system(cls, sys: System, values=None) -> "ParameterBuffers":
        """Allocate buffers for ``sys`` and fill them from ``values``, dependencies and defaults."""
        ic = get_index_cache(sys)
        buffers = cls(
            sys,
            np.zeros(ic.tunable_buffer_size.length),
            [[None] * sum(t.length for t in parts) for parts in ic.discrete_buffer_sizes],
            [[None] * t.length for t in ic.constant_buffer_sizes],
            [[None] * t.length for t in ic.nonnumeric_buffer_sizes],
        )
        buffers._assign(resolve_parameter_values(sys, values))
        return buffers

    def _assign(self, resolved: dict):
        for key, value in resolved.items():
            self[self.index_cache.symbol(key)] = value

    # ------------------------------------------------------------------
    # Access
    # ------------------------------------------------------------------
    def _index(self, key) -> ParameterIndex:
        pidx = self.index_cache.parameter_index(key)
        if pidx is None:
            raise KeyError(f"{key} is not a parameter of system '{self.system.name}'")
        return pidx

    def _portion(self, portion: Portion) -> list:
        if portion is Portion.DISCRETE:
            return self.discrete
        if portion is Portion.CONSTANTS:
            return self.constant
        if portion is Portion.NONNUMERIC:
            return self.nonnumeric
        raise ValueError(f"Unhandled portion {portion}")

    def __getitem__(self, key):
        pidx = self._index(key)
        if pidx.portion is Portion.TUNABLE:
            if isinstance(pidx.idx, np.ndarray):
                return self.tunable[pidx.idx].copy()
            return float(self.tunable[pidx.idx])
        buf, j, sub = pidx.idx[0], pidx.idx[1], pidx.idx[2:]
        value = self._portion(pidx.portion)[buf][j]
        if sub:
            return np.asarray(value)[sub]
        return value

    def __setitem__(self, key, value):
        pidx = self._index(key)
        if pidx.portion is Portion.TUNABLE:
            if isinstance(pidx.idx, np.ndarray):
                arr = np.asarray(value, dtype=float)
                if arr.shape != pidx.idx.shape:
                    raise ValueError(f"Value for {key} has shape {arr.shape}, expected {pidx.idx.shape}")
                self.tunable[pidx.idx] = arr
            else:
                self.tunable[pidx.idx] = float(value)
            return
        buf, j, sub = pidx.idx[0], pidx.idx[1], pidx.idx[2:]
        slots = self._portion(pidx.portion)[buf]
        if sub:
            arr = np.array(slots[j])
            arr[sub] = value
            slots[j] = arr
            return
        if pidx.validate_size:
            sym = self._layout[iterated_buffer_index(self.index_cache, pidx)][j]
            if np.shape(value) != tuple(sym.shape):
                raise ValueError(f"Value for {key} has shape {np.shape(value)}, expected {sym.shape}")
        slots[j] = value

    def __iter__(self):
        if self.tunable.size > 0:
            yield self.tunable
        yield from self.discrete
        yield from self.constant
        yield from self.nonnumeric

    def __len__(self) -> int:
        return int(self.tunable.size > 0) + len(self.discrete) + len(self.constant) + len(self.nonnumeric)

    def to_dict(self) -> dict:
        """``{parameter: value}`` for every parameter."""
        return {p: self[p] for p in self.system.parameters}

    def update(self, values):
        """Set ``values`` and recompute dependent parameters not given explicitly."""
        current = {self.system.key(p): self[p] for p in self.system.parameters}
        self._assign(resolve_parameter_values(self.system, values, current=current))

    def copy(self) -> "ParameterBuffers":
        return ParameterBuffers(
            self.system,
            self.tunable.copy(),
            copy.deepcopy(self.discrete),
            copy.deepcopy(self.constant),
            [list(buf) for buf in self.nonnumeric],
        )

    # ------------------------------------------------------------------
    # Numeric views
    # ------------------------------------------------------------------
    def numeric_buffers(self) -> list:
        """
        Flat float arrays of the numeric buffers, in the argument order of
        compiled functions: tunable (if any), discrete, constants.
        """
        out = []
        offset = 0
        if self.tunable.size > 0:
            out.append(np.asarray(self.tunable, dtype=float))
            offset = 1
        for buf, sizes in zip(self.discrete + self.constant, self._sizes[offset:]):
            chunks = []
            for value, n in zip(buf, sizes):
                if n == 0:
                    continue
                flat = np.ravel(np.asarray(value, dtype=float))
                if flat.size != n:
                    raise ValueError(f"Parameter value {value!r} has {flat.size} element(s), expected {n}")
                chunks.append(flat)
            out.append(np.concatenate(chunks) if chunks else np.zeros(0))
        return out

    def evaluate(self, expr) -> np.ndarray:
        """Evaluate an expression of the parameters."""
        expr = as_sx(expr)
        subs = {}
        for p in self.system.parameters:
            if p.sx is not None and is_numeric_type(symtype(p)) and ca.depends_on(expr, p.sx):
                subs[p] = self[p]
        return evaluate(expr, subs)

    def tunable_values(self) -> np.ndarray:
        return self.tunable.copy()

    def with_tunable(self, values) -> "ParameterBuffers":
        """Copy with the tunable buffer replaced by ``values``."""
        values = np.asarray(values, dtype=float)
        if values.shape != self.tunable.shape:
            raise ValueError(f"Expected {self.tunable.shape[0]} tunable values, got shape {values.shape}")
        other = self.copy()
        other.tunable = values.copy()
        return other

    def __repr__(self) -> str:
        return f"ParameterBuffers({[np.asarray(b).tolist() if isinstance(b, np.ndarray) else b for b in self]})"