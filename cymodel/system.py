"""
Hierarchical equation systems.

A ``System`` holds equations over unknowns and parameters and may contain
subsystems. Accessors return the *flattened* view in which every member of a
subsystem is prefixed with the subsystem name (``"plant.x"``).

Example:
    >>> t = independent_variable("t")
    >>> x = variable("x", t, default=1.0)
    >>> k = parameter("k", default=2.0)
    >>> plant = System([Equation(der(x), -k * x)], t, [x], [k], name="plant")
    >>> plant.x.name
    'plant.x'
    >>> sys = complete(plant)
    >>> sys.index_cache.variable_index(sys.x)
    0
"""

from __future__ import annotations

import copy
from typing import Any, Optional

import numpy as np

from cymodel.equations import Equation
from cymodel.events import SymbolicContinuousEvent, SymbolicDiscreteEvent
from cymodel.index_cache import IndexCache
from cymodel.symbolic import (
    ArrayElement,
    Derivative,
    Variable,
    canonical_name,
    getdefault,
    getname,
    has_known_shape,
    is_array,
    is_symbol,
    isinput,
    isoutput,
    renamespace,
)


def _rename_value(namespace, value):
    if is_symbol(value):
        return renamespace(namespace, value)
    return value


class System:
    """
    Equation system with unknowns, parameters, events and subsystems.

    Args:
        eqs: Equations of this level of the hierarchy
        iv: Independent variable (``None`` for time-independent systems)
        unknowns: Unknowns declared at this level
        parameters: Parameters declared at this level
        name: System name, used as namespace by parent systems
        systems: Subsystems
        observed: Explicit observed equations ``y ~ expr``
        defaults: Default values overriding symbol metadata
        continuous_events: ``SymbolicContinuousEvent`` list
        discrete_events: ``SymbolicDiscreteEvent`` list
        parameter_dependencies: Equations ``p ~ expr`` defining dependent parameters
    """

    def __init__(
        self,
        eqs,
        iv: Optional[Variable],
        unknowns=(),
        parameters=(),
        *,
        name: str,
        systems=(),
        observed=(),
        defaults: Optional[dict] = None,
        continuous_events=(),
        discrete_events=(),
        parameter_dependencies=(),
        description: str = "",
    ):
        self._name = name
        self._iv = iv
        self._equations = list(eqs)
        self._unknowns = list(unknowns)
        self._ps = list(parameters)
        self._systems = list(systems)
        self._observed = list(observed)
        self._defaults = dict(defaults or {})
        self._continuous_events = [
            e if isinstance(e, SymbolicContinuousEvent) else SymbolicContinuousEvent(*e) for e in continuous_events
        ]
        self._discrete_events = [
            e if isinstance(e, SymbolicDiscreteEvent) else SymbolicDiscreteEvent(*e) for e in discrete_events
        ]
        self._parameter_dependencies = list(parameter_dependencies)
        self._description = description

        self._flat = False
        self._complete = False
        self._index_cache: Optional[IndexCache] = None
        # set by structural simplification
        self._inputs: Optional[list] = None
        self._outputs: Optional[list] = None
        self._n_differential: Optional[int] = None

        for eq in self._equations:
            if not isinstance(eq, Equation):
                raise TypeError(f"Expected Equation, got {type(eq).__name__}")
        names = set()
        for sub in self._systems:
            if sub.name in names:
                raise ValueError(f"Duplicate subsystem name '{sub.name}' in system '{name}'")
            names.add(sub.name)

    # ------------------------------------------------------------------
    # Flattened accessors
    # ------------------------------------------------------------------
    def _collect(self, attr: str, rename) -> list:
        items = list(self.__dict__[attr])
        if self._flat:
            return items
        for sub in self._systems:
            items.extend(rename(sub.name, x) for x in getattr(sub, attr.lstrip("_")))
        return items

    @property
    def name(self) -> str:
        return self._name

    @property
    def iv(self):
        return self._iv

    @property
    def description(self) -> str:
        return self._description

    @property
    def systems(self) -> list:
        return list(self._systems)

    @property
    def is_complete(self) -> bool:
        return self._complete

    @property
    def equations(self) -> list:
        return self._collect("_equations", lambda ns, eq: eq.renamespace(ns))

    @property
    def unknowns(self) -> list:
        return self._collect("_unknowns", renamespace)

    @property
    def ps(self) -> list:
        return self._collect("_ps", renamespace)

    @property
    def parameters(self) -> list:
        return self.ps

    @property
    def observed(self) -> list:
        return self._collect("_observed", lambda ns, eq: eq.renamespace(ns))

    @property
    def continuous_events(self) -> list:
        return self._collect("_continuous_events", lambda ns, ev: ev.renamespace(ns))

    @property
    def discrete_events(self) -> list:
        return self._collect("_discrete_events", lambda ns, ev: ev.renamespace(ns))

    @property
    def parameter_dependencies(self) -> list:
        return self._collect("_parameter_dependencies", lambda ns, eq: eq.renamespace(ns))

    @property
    def defaults(self) -> dict:
        """Default values keyed by symbol; explicit defaults override metadata."""
        result = {}
        for sym in list(self.__dict__["_unknowns"]) + list(self.__dict__["_ps"]):
            value = getdefault(sym)
            if value is not None:
                result[sym] = value
        if not self._flat:
            for sub in self._systems:
                for key, value in sub.defaults.items():
                    result[renamespace(sub.name, key)] = _rename_value(sub.name, value)
        result.update(self._defaults)
        return result

    @property
    def inputs(self) -> list:
        """Designated inputs; before simplification, unknowns flagged as inputs."""
        if self._inputs is not None:
            return list(self._inputs)
        return [u for u in self.unknowns if isinput(u)]

    @property
    def outputs(self) -> list:
        if self._outputs is not None:
            return list(self._outputs)
        return [u for u in self.unknowns if isoutput(u)]

    @property
    def index_cache(self) -> IndexCache:
        return get_index_cache(self)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------
    def key(self, sym) -> str:
        """Canonical lookup name of ``sym`` (a symbol or a name) in this system."""
        return canonical_name(sym, self._name)

    def _keys(self, syms) -> set:
        keys = set()
        for sym in syms:
            keys.add(self.key(sym))
            if is_array(sym) and has_known_shape(sym):
                keys.update(f"{self.key(sym)}[{','.join(map(str, idx))}]" for idx in np.ndindex(*sym.shape))
        return keys

    def is_parameter(self, sym) -> bool:
        if isinstance(sym, ArrayElement) and self.is_parameter(sym.parent):
            return True
        return self.key(sym) in self._keys(self.parameters)

    def is_unknown(self, sym) -> bool:
        if isinstance(sym, ArrayElement) and self.is_unknown(sym.parent):
            return True
        return self.key(sym) in self._keys(self.unknowns)

    def lookup(self, key) -> Optional[Any]:
        """Find the symbol of this system named by ``key``, or ``None``."""
        if isinstance(key, Derivative):
            key = key.var
        name = self.key(key)
        candidates = list(self.unknowns) + list(self.parameters)
        candidates += [eq.lhs for eq in self.observed if is_symbol(eq.lhs)]
        for sym in candidates:
            if self.key(sym) == name:
                return sym
            if is_array(sym) and has_known_shape(sym) and name.startswith(self.key(sym) + "["):
                for idx in np.ndindex(*sym.shape):
                    if name == self.key(sym[idx]):
                        return sym[idx]
        return None

    def canonicalize_mapping(self, mapping) -> dict:
        """Re-key a ``{symbol or name: value}`` mapping by canonical name."""
        if mapping is None:
            return {}
        if not isinstance(mapping, dict):
            mapping = dict(mapping)
        return {self.key(k): v for k, v in mapping.items()}

    def __getattr__(self, name: str):
        if name.startswith("_"):
            raise AttributeError(name)
        d = self.__dict__
        observed_lhs = [eq.lhs for eq in d["_observed"] if is_symbol(eq.lhs)]
        for sym in d["_unknowns"] + d["_ps"] + observed_lhs:
            if getname(sym) == name:
                return sym if d["_complete"] else renamespace(d["_name"], sym)
        for sub in d["_systems"]:
            if sub.name == name:
                return sub if d["_complete"] else sub._renamed(f"{d['_name']}.{sub.name}")
        raise AttributeError(f"System '{d['_name']}' has no variable or subsystem '{name}'")

    def _renamed(self, name: str) -> "System":
        other = copy.copy(self)
        other._name = name
        return other

    def _flattened(self) -> "System":
        other = copy.copy(self)
        other._equations = self.equations
        other._unknowns = self.unknowns
        other._ps = self.parameters
        other._observed = self.observed
        other._defaults = self.defaults
        other._continuous_events = self.continuous_events
        other._discrete_events = self.discrete_events
        other._parameter_dependencies = self.parameter_dependencies
        other._flat = True
        return other

    def __repr__(self) -> str:
        return (
            f"System({self._name!r}, equations={len(self.equations)}, "
            f"unknowns={len(self.unknowns)}, parameters={len(self.parameters)}, "
            f"complete={self._complete})"
        )


def complete(sys: System) -> System:
    """
    Flatten ``sys`` and build its index cache.

    The returned system is finalized; attribute access no longer adds the
    system namespace.
    """
    if sys.is_complete:
        return sys
    flat = sys._flattened()
    flat._complete = True
    flat._index_cache = IndexCache(flat)
    return flat


def get_index_cache(sys: System) -> IndexCache:
    if not sys.is_complete or sys._index_cache is None:
        raise ValueError(
            f"A completed system is required. Call `complete` or `structural_simplify` on system '{sys.name}'."
        )
    return sys._index_cache


def missing_variable_defaults(sys: System, default_value: float = 0.0) -> dict:
    """Defaults for unknowns that have none."""
    known = sys.canonicalize_mapping(sys.defaults)
    result = {}
    for u in sys.unknowns:
        if sys.key(u) in known:
            continue
        if is_array(u):
            result[u] = np.full(u.shape, default_value)
        else:
            result[u] = default_value
    return result
