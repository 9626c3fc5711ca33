"""
Buffer layout of unknowns and parameters.

The ``IndexCache`` of a completed system assigns every unknown a position in
the state vector and every parameter a slot in one of four buffer families:

- **tunable**: one flat float buffer (scalars take one slot, arrays ``size``)
- **discrete**: parameters ``p(t)`` written by events, grouped by element
  type and then by clock partition (the exact set of events writing them)
- **constants**: remaining numeric parameters, one buffer per element type
- **nonnumeric**: everything else, one buffer per type

All maps are keyed by the canonical name of a symbol, so the raw symbol, its
term-normalized form (``der(x)`` as ``x_t``) and their namespaced spellings all
resolve to the same index. Indices are 0-based.
"""

from __future__ import annotations

from typing import Any, Optional

import numpy as np

from cymodel.equations import Equation
from cymodel.events import affects, discretes
from cymodel.symbolic import (
    arguments,
    canonical_name,
    collect,
    default_toterm,
    getname,
    has_known_shape,
    hasname,
    is_array,
    is_float_type,
    is_indexing,
    is_numeric_type,
    is_symbol,
    is_time_dependent,
    istunable,
    strip_namespace,
    symbol_size,
    symtype,
)
from cymodel.types import (
    BufferTemplate,
    DiscreteIndex,
    ParameterIndex,
    ParameterTimeseriesIndex,
    Portion,
)


def _buffer_sizes_and_idxs(buffers: dict) -> tuple:
    """Give every symbol of every typed group a ``(buffer_idx, position)``."""
    idxs = {}
    templates = []
    for i, (stype, members) in enumerate(buffers.items()):
        for j, key in enumerate(members):
            idxs[key] = (i, j)
        templates.append(BufferTemplate(stype, len(members)))
    return idxs, templates


class IndexCache:
    """
    Index maps and buffer templates of a completed system.

    Args:
        sys: A flattened system exposing ``name``, ``iv``, ``unknowns``,
            ``parameters``, ``observed``, ``continuous_events``,
            ``discrete_events``, ``parameter_dependencies`` and
            ``is_parameter``.

    Raises:
        TypeError: if an event carries an affect that is neither an
            ``Equation`` nor a ``FunctionalAffect``
        ValueError: if an event writes to a symbol that is not a parameter
    """

    def __init__(self, sys):
        self.namespace: Optional[str] = sys.name
        self._symbols: dict = {}

        # -- unknowns --------------------------------------------------
        self.unknown_idx: dict = {}
        offset = 0
        unknowns = list(sys.unknowns)
        for sym in unknowns:
            n = symbol_size(sym)
            if is_array(sym):
                self.unknown_idx[self._register(sym)] = np.arange(offset, offset + n).reshape(sym.shape)
            else:
                self.unknown_idx[self._register(sym)] = offset
            offset += n
        for sym in unknowns:
            if not is_indexing(sym):
                continue
            arr = sym.parent
            if self._key(arr) in self.unknown_idx:
                continue
            element_keys = [self._key(e) for e in collect(arr)]
            if not all(k in self.unknown_idx for k in element_keys):
                continue
            idxs = [int(self.unknown_idx[k]) for k in element_keys]
            if idxs == list(range(idxs[0], idxs[0] + len(idxs))):
                self.unknown_idx[self._register(arr)] = np.arange(idxs[0], idxs[0] + len(idxs)).reshape(arr.shape)
            else:
                self.unknown_idx[self._register(arr)] = idxs
        self.n_unknowns: int = offset

        self.observed_syms: set = set()
        for eq in sys.observed:
            if is_symbol(eq.lhs):
                self.observed_syms.add(self._register(eq.lhs))

        # -- discrete parameters ---------------------------------------
        parameters = {self._key(p): p for p in sys.parameters}
        events = list(sys.continuous_events) + list(sys.discrete_events)
        constant_buffers: dict = {}
        disc_param_callbacks: dict = {}
        for i, event in enumerate(events):
            discs = []
            for affect in affects(event):
                written = discretes(affect)
                if isinstance(affect, Equation):
                    # equations may also reset unknowns
                    written = [s for s in written if sys.is_parameter(s)]
                discs.extend(written)
            for sym in discs:
                if not sys.is_parameter(sym):
                    raise ValueError(f"Expected discrete variable {sym} in callback to be a parameter")
                if is_indexing(sym):
                    sym = arguments(sym)[0]
                key = self._key(sym)
                sym = parameters.get(key, sym)
                if is_time_dependent(sym, sys.iv):
                    disc_param_callbacks.setdefault(key, set()).add(i)
                    self._register(sym)
                else:
                    constant_buffers.setdefault(symtype(sym), {})[self._register(sym)] = None

        clock_partitions: list = []
        for clocks in disc_param_callbacks.values():
            if clocks not in clock_partitions:
                clock_partitions.append(clocks)

        disc_syms_by_symtype: dict = {}
        for key in disc_param_callbacks:
            disc_syms_by_symtype.setdefault(symtype(self._symbols[key]), []).append(key)

        self.discrete_idx: dict = {}
        callback_to_clocks: dict = {}
        self.discrete_buffer_sizes: list = []
        for typei, (stype, keys) in enumerate(disc_syms_by_symtype.items()):
            by_partition = [[k for k in keys if disc_param_callbacks[k] == part] for part in clock_partitions]
            symi = 0
            for parti, part_keys in enumerate(by_partition):
                for clockidx in clock_partitions[parti]:
                    callback_to_clocks.setdefault(events[clockidx], set()).add(parti)
                for clocki, key in enumerate(part_keys):
                    self.discrete_idx[key] = DiscreteIndex(typei, symi, parti, clocki)
                    symi += 1
            self.discrete_buffer_sizes.append([BufferTemplate(stype, len(part)) for part in by_partition])
        self.callback_to_clocks: dict = {event: sorted(parts) for event, parts in callback_to_clocks.items()}
        self.n_clock_partitions: int = len(clock_partitions)

        # -- remaining parameters --------------------------------------
        tunable_buffers: dict = {}
        nonnumeric_buffers: dict = {}
        for key, p in parameters.items():
            stype = symtype(p)
            if key in self.discrete_idx:
                continue
            if key in constant_buffers.get(stype, {}):
                continue
            self._register(p)
            if is_numeric_type(stype):
                if istunable(p, True) and has_known_shape(p) and is_float_type(stype):
                    tunable_buffers.setdefault(stype, {})[key] = None
                else:
                    constant_buffers.setdefault(stype, {})[key] = None
            else:
                nonnumeric_buffers.setdefault(stype, {})[key] = None

        self.constant_idx, self.constant_buffer_sizes = _buffer_sizes_and_idxs(constant_buffers)
        self.nonnumeric_idx, self.nonnumeric_buffer_sizes = _buffer_sizes_and_idxs(nonnumeric_buffers)

        self.tunable_idx: dict = {}
        self.symbol_to_variable: dict = {}
        offset = 0
        for members in tunable_buffers.values():
            for key in members:
                p = self._symbols[key]
                n = symbol_size(p)
                if is_array(p):
                    self.tunable_idx[key] = np.arange(offset, offset + n).reshape(p.shape)
                else:
                    self.tunable_idx[key] = offset
                offset += n
                self.symbol_to_variable[getname(default_toterm(p))] = p
        self.tunable_buffer_size = BufferTemplate(float, offset)

        # -- reverse lookup ----------------------------------------------
        for sym in self._symbols.values():
            if hasname(sym) and not is_indexing(sym):
                self.symbol_to_variable[getname(sym)] = sym
        if sys.iv is not None:
            self.symbol_to_variable[getname(sys.iv)] = sys.iv

        self.dependent_pars: set = {self._key(eq.lhs) for eq in sys.parameter_dependencies}

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------
    def _key(self, sym) -> str:
        return canonical_name(sym, self.namespace)

    def _register(self, sym) -> str:
        key = self._key(sym)
        self._symbols[key] = default_toterm(sym)
        return key

    def _resolve(self, sym) -> Optional[Any]:
        if isinstance(sym, str):
            found = self.symbol_to_variable.get(sym)
            if found is None:
                found = self.symbol_to_variable.get(strip_namespace(sym, self.namespace))
            return found
        return sym

    def check_index_map(self, idxmap: dict, sym) -> Optional[Any]:
        """Look ``sym`` up in ``idxmap`` under its canonical name."""
        return idxmap.get(self._key(sym))

    def symbol(self, key: str):
        """Registered symbol for a canonical name."""
        return self._symbols[key]

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def variable_index(self, sym) -> Optional[Any]:
        """
        Position of an unknown in the state vector.

        Returns an ``int`` for scalars, an integer ``ndarray`` shaped like the
        array for contiguous arrays, a ``list`` for non-contiguous arrays, or
        ``None`` when ``sym`` is not an unknown.
        """
        sym = self._resolve(sym)
        if sym is None:
            return None
        idx = self.check_index_map(self.unknown_idx, sym)
        if idx is not None:
            return idx
        sym = default_toterm(sym)
        if not is_indexing(sym):
            return None
        base = self.variable_index(sym.parent)
        if base is None:
            return None
        if isinstance(base, np.ndarray):
            return int(base[sym.indices])
        return base[sym.flat_index]

    def is_variable(self, sym) -> bool:
        return self.variable_index(sym) is not None

    def parameter_index(self, sym) -> Optional[ParameterIndex]:
        sym = self._resolve(sym)
        if sym is None:
            return None
        validate_size = is_array(sym) and has_known_shape(sym)
        idx = self.check_index_map(self.tunable_idx, sym)
        if idx is not None:
            return ParameterIndex(Portion.TUNABLE, idx, validate_size)
        idx = self.check_index_map(self.discrete_idx, sym)
        if idx is not None:
            return ParameterIndex(Portion.DISCRETE, (idx.buffer_idx, idx.idx_in_buffer), validate_size)
        idx = self.check_index_map(self.constant_idx, sym)
        if idx is not None:
            return ParameterIndex(Portion.CONSTANTS, idx, validate_size)
        idx = self.check_index_map(self.nonnumeric_idx, sym)
        if idx is not None:
            return ParameterIndex(Portion.NONNUMERIC, idx, validate_size)
        if not is_indexing(sym):
            return None
        pidx = self.parameter_index(sym.parent)
        if pidx is None:
            return None
        if pidx.portion is Portion.TUNABLE:
            base = np.asarray(pidx.idx).reshape(sym.parent.shape)
            return ParameterIndex(pidx.portion, int(base[sym.indices]), False)
        return ParameterIndex(pidx.portion, (*pidx.idx, *sym.indices), False)

    def is_parameter(self, sym) -> bool:
        return self.parameter_index(sym) is not None

    def timeseries_parameter_index(self, sym) -> Optional[ParameterTimeseriesIndex]:
        """Clock partition and in-partition slot of a discrete parameter."""
        sym = self._resolve(sym)
        if sym is None:
            return None
        idx = self.check_index_map(self.discrete_idx, sym)
        if idx is not None:
            return ParameterTimeseriesIndex(idx.clock_idx, (idx.buffer_idx, idx.idx_in_clock))
        if not is_indexing(sym):
            return None
        ts_idx = self.timeseries_parameter_index(sym.parent)
        if ts_idx is None:
            return None
        return ParameterTimeseriesIndex(ts_idx.timeseries_idx, (*ts_idx.parameter_idx, *sym.indices))

    def is_timeseries_parameter(self, sym) -> bool:
        return self.timeseries_parameter_index(sym) is not None

    def is_observed(self, sym) -> bool:
        sym = self._resolve(sym)
        return sym is not None and self._key(sym) in self.observed_syms

    def is_dependent_parameter(self, sym) -> bool:
        sym = self._resolve(sym)
        return sym is not None and self._key(sym) in self.dependent_pars

    def reorder_parameters(self, ps, drop_missing: bool = False) -> tuple:
        return reorder_parameters(self, ps, drop_missing=drop_missing)

    def __repr__(self) -> str:
        return (
            f"IndexCache(unknowns={self.n_unknowns}, tunable={self.tunable_buffer_size.length}, "
            f"discrete={[[t.length for t in parts] for parts in self.discrete_buffer_sizes]}, "
            f"constants={[t.length for t in self.constant_buffer_sizes]}, "
            f"nonnumeric={[t.length for t in self.nonnumeric_buffer_sizes]})"
        )


# ---------------------------------------------------------------------------
# Buffer ordering
# ---------------------------------------------------------------------------
def reorder_parameters(ic_or_sys, ps, drop_missing: bool = False) -> tuple:
    """
    Arrange parameters into buffers in the layout described by an index cache.

    Buffers are ordered tunable (only if non-empty), discrete (one per element
    type, partitions concatenated), constants, nonnumeric. Array tunables are
    scattered element-wise. Slots without a parameter hold ``None`` unless
    ``drop_missing`` is set.

    Args:
        ic_or_sys: An ``IndexCache`` or a system. Systems without an index cache
            get ``ps`` back as a single buffer.
        ps: Parameters to arrange
        drop_missing: Remove empty slots

    Returns:
        Tuple of buffers (lists), or ``()`` when there is nothing to arrange.

    Raises:
        ValueError: if a parameter is not part of the layout
    """
    if not isinstance(ic_or_sys, IndexCache):
        cache = getattr(ic_or_sys, "_index_cache", None)
        if cache is None:
            return ps if isinstance(ps, tuple) else (ps,)
        ic_or_sys = cache
    ic = ic_or_sys
    ps = list(ps)
    if not ps:
        return ()

    param_buf = [None] * ic.tunable_buffer_size.length
    disc_buf = [[None] * sum(t.length for t in parts) for parts in ic.discrete_buffer_sizes]
    const_buf = [[None] * t.length for t in ic.constant_buffer_sizes]
    nonnumeric_buf = [[None] * t.length for t in ic.nonnumeric_buffer_sizes]

    for p in ps:
        key = ic._key(p)
        if key in ic.tunable_idx:
            idx = ic.tunable_idx[key]
            if isinstance(idx, np.ndarray):
                for element in collect(p):
                    param_buf[int(idx[element.indices])] = element
            else:
                param_buf[idx] = p
        elif key in ic.discrete_idx:
            didx = ic.discrete_idx[key]
            disc_buf[didx.buffer_idx][didx.idx_in_buffer] = p
        elif key in ic.constant_idx:
            i, j = ic.constant_idx[key]
            const_buf[i][j] = p
        elif key in ic.nonnumeric_idx:
            i, j = ic.nonnumeric_idx[key]
            nonnumeric_buf[i][j] = p
        else:
            raise ValueError(f"Invalid parameter {p}")

    result = ([param_buf] if param_buf else []) + disc_buf + const_buf + nonnumeric_buf
    if drop_missing:
        result = [[v for v in buf if v is not None] for buf in result]
    if all(len(buf) == 0 for buf in result):
        return ()
    return tuple(result)


def iterated_buffer_index(ic: IndexCache, pidx: ParameterIndex) -> int:
    """Position of the buffer holding ``pidx`` in the ``reorder_parameters`` sequence."""
    idx = 0
    if pidx.portion is Portion.TUNABLE:
        return idx
    if ic.tunable_buffer_size.length > 0:
        idx += 1
    if pidx.portion is Portion.DISCRETE:
        return idx + pidx.idx[0]
    idx += len(ic.discrete_buffer_sizes)
    if pidx.portion is Portion.CONSTANTS:
        return idx + pidx.idx[0]
    idx += len(ic.constant_buffer_sizes)
    if pidx.portion is Portion.NONNUMERIC:
        return idx + pidx.idx[0]
    raise ValueError(f"Unhandled portion {pidx.portion}")


def get_buffer_template(ic: IndexCache, pidx: ParameterIndex) -> BufferTemplate:
    """Template of the buffer ``pidx`` points into."""
    if pidx.portion is Portion.TUNABLE:
        return ic.tunable_buffer_size
    if pidx.portion is Portion.DISCRETE:
        parts = ic.discrete_buffer_sizes[pidx.idx[0]]
        return BufferTemplate(parts[0].type, sum(t.length for t in parts))
    if pidx.portion is Portion.CONSTANTS:
        return ic.constant_buffer_sizes[pidx.idx[0]]
    if pidx.portion is Portion.NONNUMERIC:
        return ic.nonnumeric_buffer_sizes[pidx.idx[0]]
    raise ValueError(f"Unhandled portion {pidx.portion}")


def buffer_symbol_sizes(ic: IndexCache, sys) -> tuple:
    """Per-slot scalar sizes of the numeric buffers, used to flatten values."""
    sizes = []
    for buf in reorder_parameters(ic, sys.parameters):
        sizes.append([0 if p is None else symbol_size(p) for p in buf])
    return tuple(sizes)

