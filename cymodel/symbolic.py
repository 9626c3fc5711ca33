"""
Symbolic variables, parameters and derivatives.

Every symbol wraps a CasADi ``SX`` that is shared by all of its spellings
(plain, namespaced, term-normalized), so expressions built from any spelling
are interchangeable. Symbol identity for lookups is the *canonical name*:
the term-normalized name with the owning system's namespace removed.

Example:
    >>> t = independent_variable("t")
    >>> x = variable("x", t, default=1.0)
    >>> k = parameter("k", default=2.0)
    >>> expr = -k * x           # a casadi SX
    >>> canonical_name(renamespace("sys", der(x)), "sys")
    'x_t'
"""

from __future__ import annotations

import collections.abc
import types
from dataclasses import dataclass, field, replace
from enum import Enum, auto
from typing import Any, Optional

import casadi as ca
import numpy as np

NAMESPACE_SEPARATOR = "."


class SymbolKind(Enum):
    """Role a symbol was declared with."""

    INDEPENDENT = auto()  # Independent variable (usually time)
    UNKNOWN = auto()  # Time-varying unknown
    PARAMETER = auto()  # Parameter, possibly time-dependent (p(t))


@dataclass(frozen=True)
class ArrayType:
    """Symbolic type of an array-valued symbol."""

    eltype: type
    ndim: int

    def __str__(self) -> str:
        return f"Array[{self.eltype.__name__}, {self.ndim}]"


class FunctionWrapper:
    """Opaque holder for callables stored as parameter values."""

    __slots__ = ("func",)

    def __init__(self, func: collections.abc.Callable) -> None:
        self.func = func

    def __call__(self, *args, **kwargs):
        return self.func(*args, **kwargs)

    def __repr__(self) -> str:
        return f"FunctionWrapper({getattr(self.func, '__name__', self.func)!r})"


_FUNCTION_DTYPES = (collections.abc.Callable, types.FunctionType, FunctionWrapper)
_NUMERIC_DTYPES = (float, int, bool, np.floating, np.integer, np.bool_)


# ---------------------------------------------------------------------------
# Arithmetic
# ---------------------------------------------------------------------------
def as_sx(value) -> ca.SX:
    """Convert a symbol, number or array to a casadi SX."""
    if isinstance(value, _Symbolic):
        sx = value.sx
        if sx is None:
            raise ValueError(f"Symbol {value} has no known shape and cannot be used in expressions")
        shape = value.shape
        if shape is not None and len(shape) == 2:
            # symbols store arrays flat in row-major order
            return ca.reshape(sx, shape[1], shape[0]).T
        return sx
    if isinstance(value, ca.SX):
        return value
    if isinstance(value, ca.DM):
        return ca.SX(value)
    if isinstance(value, (list, tuple, np.ndarray)):
        arr = np.asarray(value, dtype=float)
        return ca.SX(ca.DM(arr.reshape(-1, 1) if arr.ndim <= 1 else arr))
    return ca.SX(float(value))


def flatten_sx(expr) -> ca.SX:
    """Column vector of the elements of ``expr`` in row-major order."""
    expr = as_sx(expr)
    return ca.vec(expr.T)


def _value_sx(value) -> ca.SX:
    if isinstance(value, (list, tuple, np.ndarray)):
        return ca.SX(ca.DM(np.asarray(value, dtype=float).reshape(-1)))
    return flatten_sx(value)


class _Symbolic:
    """Operator overloading shared by all symbol kinds; results are ca.SX."""

    __slots__ = ()

    def __add__(self, other):
        return as_sx(self) + as_sx(other)

    def __radd__(self, other):
        return as_sx(other) + as_sx(self)

    def __sub__(self, other):
        return as_sx(self) - as_sx(other)

    def __rsub__(self, other):
        return as_sx(other) - as_sx(self)

    def __mul__(self, other):
        return as_sx(self) * as_sx(other)

    def __rmul__(self, other):
        return as_sx(other) * as_sx(self)

    def __truediv__(self, other):
        return as_sx(self) / as_sx(other)

    def __rtruediv__(self, other):
        return as_sx(other) / as_sx(self)

    def __pow__(self, other):
        return as_sx(self) ** as_sx(other)

    def __matmul__(self, other):
        return ca.mtimes(as_sx(self), as_sx(other))

    def __rmatmul__(self, other):
        return ca.mtimes(as_sx(other), as_sx(self))

    def __neg__(self):
        return -as_sx(self)

    def __pos__(self):
        return as_sx(self)

    def __str__(self) -> str:
        return self.name

    def __repr__(self) -> str:
        return self.name


# ---------------------------------------------------------------------------
# Symbol kinds
# ---------------------------------------------------------------------------
@dataclass(frozen=True, repr=False)
class Variable(_Symbolic):
    """
    A named symbol, optionally array-valued and optionally a call ``x(t)``.

    ``sx`` holds the value symbol and ``der_sx`` its time derivative. Both
    are excluded from equality so that renamed copies still compare by
    structure while sharing the same casadi symbols.
    """

    name: str
    shape: Optional[tuple] = None
    dtype: Any = float
    args: tuple = ()
    metadata: dict = field(default_factory=dict, compare=False, hash=False)
    sx: Any = field(default=None, compare=False, hash=False)
    der_sx: Any = field(default=None, compare=False, hash=False)

    def __getitem__(self, index) -> "ArrayElement":
        if self.shape is None:
            raise TypeError(f"Scalar symbol {self.name} cannot be indexed")
        if not isinstance(index, tuple):
            index = (index,)
        if len(index) != len(self.shape):
            raise IndexError(f"{self.name} has {len(self.shape)} dimension(s), got index {index}")
        normalized = []
        for i, n in zip(index, self.shape):
            i = int(i)
            if n is not None:
                if i < -n or i >= n:
                    raise IndexError(f"Index {index} out of bounds for {self.name} with shape {self.shape}")
                i = i % n
            normalized.append(i)
        return ArrayElement(self, tuple(normalized))


@dataclass(frozen=True, repr=False)
class ArrayElement(_Symbolic):
    """Indexing expression ``parent[i, j, ...]`` with 0-based indices."""

    parent: Variable
    indices: tuple

    @property
    def name(self) -> str:
        return f"{self.parent.name}[{','.join(str(i) for i in self.indices)}]"

    @property
    def shape(self):
        return None

    @property
    def dtype(self):
        return self.parent.dtype

    @property
    def args(self) -> tuple:
        return self.parent.args

    @property
    def metadata(self) -> dict:
        return self.parent.metadata

    @property
    def flat_index(self) -> int:
        return int(np.ravel_multi_index(self.indices, self.parent.shape))

    @property
    def sx(self):
        if self.parent.sx is None:
            return None
        return self.parent.sx[self.flat_index]

    @property
    def der_sx(self):
        if self.parent.der_sx is None:
            return None
        return self.parent.der_sx[self.flat_index]


@dataclass(frozen=True, repr=False)
class Derivative(_Symbolic):
    """Time derivative ``der(x)`` of a variable or array element."""

    var: Any

    @property
    def name(self) -> str:
        return f"der({self.var.name})"

    @property
    def shape(self):
        return self.var.shape

    @property
    def dtype(self):
        return self.var.dtype

    @property
    def args(self) -> tuple:
        return self.var.args

    @property
    def metadata(self) -> dict:
        return self.var.metadata

    @property
    def sx(self):
        return self.var.der_sx

    def __getitem__(self, index) -> "Derivative":
        return Derivative(self.var[index])


Symbol = (Variable, ArrayElement, Derivative)


def is_symbol(obj) -> bool:
    return isinstance(obj, _Symbolic)


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------
def _normalize_shape(shape) -> Optional[tuple]:
    if shape is None:
        return None
    if isinstance(shape, (int, np.integer)):
        return (int(shape),)
    return tuple(None if n is None else int(n) for n in shape)


def _make(name: str, shape, dtype, args: tuple, metadata: dict, differentiable: bool) -> Variable:
    shape = _normalize_shape(shape)
    if shape is not None and any(n is None for n in shape):
        sx = None
        der_sx = None
    else:
        n = 1 if shape is None else int(np.prod(shape))
        sx = ca.SX.sym(name, n)
        der_sx = ca.SX.sym(f"der({name})", n) if differentiable else None
    return Variable(name=name, shape=shape, dtype=dtype, args=args, metadata=metadata, sx=sx, der_sx=der_sx)


def independent_variable(name: str = "t") -> Variable:
    """Create the independent variable of a system (usually time)."""
    return _make(name, None, float, (), {"kind": SymbolKind.INDEPENDENT}, differentiable=False)


def variable(
    name: str,
    iv: Optional[Variable] = None,
    *,
    shape=None,
    dtype: Any = float,
    default: Any = None,
    input: bool = False,
    output: bool = False,
    irreducible: bool = False,
    description: str = "",
) -> Variable:
    """
    Create an unknown ``name(iv)``.

    Args:
        name: Variable name
        iv: Independent variable, makes the symbol a call ``x(t)``
        shape: Array shape, ``None`` for scalars
        default: Default (initial) value
        input: Mark as an input for linearization
        output: Mark as an output
        irreducible: Never eliminate during structural simplification
        description: Free text
    """
    metadata = {
        "kind": SymbolKind.UNKNOWN,
        "default": default,
        "input": input,
        "output": output,
        "irreducible": irreducible,
        "description": description,
    }
    args = () if iv is None else (iv,)
    return _make(name, shape, dtype, args, metadata, differentiable=True)


def parameter(
    name: str,
    *,
    iv: Optional[Variable] = None,
    shape=None,
    dtype: Any = float,
    default: Any = None,
    tunable: bool = True,
    description: str = "",
) -> Variable:
    """
    Create a parameter. Passing ``iv`` makes it a time-dependent ``p(t)``,
    which events may update as a discrete parameter.
    """
    metadata = {
        "kind": SymbolKind.PARAMETER,
        "default": default,
        "tunable": tunable,
        "description": description,
    }
    args = () if iv is None else (iv,)
    numeric = _is_numeric_dtype(dtype)
    return _make(name, shape if numeric else None, dtype, args, metadata, differentiable=False)


def der(sym) -> Derivative:
    """Time derivative of a variable or array element."""
    if isinstance(sym, Derivative):
        raise NotImplementedError("Higher order derivatives are not supported")
    if not isinstance(sym, (Variable, ArrayElement)):
        raise TypeError(f"Cannot differentiate {sym!r}")
    return Derivative(sym)


# ---------------------------------------------------------------------------
# Structure
# ---------------------------------------------------------------------------
def hasname(sym) -> bool:
    return isinstance(sym, _Symbolic)


def getname(sym) -> str:
    if isinstance(sym, str):
        return sym
    if not hasname(sym):
        raise TypeError(f"{sym!r} has no name")
    return sym.name


def iscall(sym) -> bool:
    if isinstance(sym, (ArrayElement, Derivative)):
        return True
    return isinstance(sym, Variable) and len(sym.args) > 0


def getindex(array, *indices):
    """Operation of an indexing expression."""
    return array[indices]


def operation(sym):
    """Callee of a call: ``getindex``, ``der`` or the bare variable of ``x(t)``."""
    if isinstance(sym, ArrayElement):
        return getindex
    if isinstance(sym, Derivative):
        return der
    if isinstance(sym, Variable) and sym.args:
        return replace(sym, args=())
    return None


def arguments(sym) -> tuple:
    if isinstance(sym, ArrayElement):
        return (sym.parent, *sym.indices)
    if isinstance(sym, Derivative):
        return (sym.var,)
    return sym.args


def is_indexing(sym) -> bool:
    return iscall(sym) and operation(sym) is getindex


def is_time_dependent(sym, iv) -> bool:
    """True for symbols of the form ``p(t)``: a call with the iv as only argument."""
    if is_indexing(sym):
        sym = arguments(sym)[0]
    if iv is None or not isinstance(sym, Variable) or not iscall(sym):
        return False
    args = arguments(sym)
    return len(args) == 1 and args[0] == iv


def default_toterm(sym):
    """Rewrite ``der(x)`` as the plain variable ``x_t``; other symbols are unchanged."""
    if not isinstance(sym, Derivative):
        return sym
    var = sym.var
    if isinstance(var, ArrayElement):
        return ArrayElement(default_toterm(Derivative(var.parent)), var.indices)
    return Variable(
        name=f"{var.name}_t",
        shape=var.shape,
        dtype=var.dtype,
        args=var.args,
        metadata=var.metadata,
        sx=var.der_sx,
        der_sx=None,
    )


def _prefix(namespace) -> str:
    return namespace if isinstance(namespace, str) else namespace.name


def renamespace(namespace, sym):
    """Prefix ``sym`` with a system (or system name) namespace."""
    ns = _prefix(namespace)
    if isinstance(sym, str):
        return f"{ns}{NAMESPACE_SEPARATOR}{sym}"
    if isinstance(sym, ArrayElement):
        return ArrayElement(renamespace(ns, sym.parent), sym.indices)
    if isinstance(sym, Derivative):
        return Derivative(renamespace(ns, sym.var))
    if isinstance(sym, Variable):
        if sym.metadata.get("kind") is SymbolKind.INDEPENDENT:
            return sym
        return replace(sym, name=f"{ns}{NAMESPACE_SEPARATOR}{sym.name}")
    raise TypeError(f"Cannot namespace {sym!r}")


def strip_namespace(name: str, namespace: Optional[str]) -> str:
    if namespace:
        prefix = namespace + NAMESPACE_SEPARATOR
        if name.startswith(prefix):
            return name[len(prefix) :]
    return name


def canonical_name(sym, namespace: Optional[str] = None) -> str:
    """Name used as the lookup key of ``sym`` inside the system ``namespace``."""
    if isinstance(sym, str):
        return strip_namespace(sym, namespace)
    return strip_namespace(getname(default_toterm(sym)), namespace)


# ---------------------------------------------------------------------------
# Types and shapes
# ---------------------------------------------------------------------------
def _is_function_dtype(dtype) -> bool:
    return dtype in _FUNCTION_DTYPES or (isinstance(dtype, type) and issubclass(dtype, FunctionWrapper))


def _is_numeric_dtype(dtype) -> bool:
    return isinstance(dtype, type) and issubclass(dtype, _NUMERIC_DTYPES)


def symtype(sym):
    """Symbolic type: a scalar dtype, an ``ArrayType`` or ``FunctionWrapper``."""
    dtype = sym.dtype
    if _is_function_dtype(dtype):
        return FunctionWrapper
    if is_array(sym):
        return ArrayType(dtype, len(sym.shape))
    return dtype


def is_numeric_type(stype) -> bool:
    if isinstance(stype, ArrayType):
        return _is_numeric_dtype(stype.eltype)
    return _is_numeric_dtype(stype)


def is_float_type(stype) -> bool:
    eltype = stype.eltype if isinstance(stype, ArrayType) else stype
    return isinstance(eltype, type) and issubclass(eltype, (float, np.floating))


def is_array(sym) -> bool:
    return sym.shape is not None


def has_known_shape(sym) -> bool:
    return sym.shape is None or all(n is not None for n in sym.shape)


def symbol_size(sym) -> int:
    """Number of scalar slots, 0 for arrays of unknown shape."""
    if sym.shape is None:
        return 1
    if not has_known_shape(sym):
        return 0
    return int(np.prod(sym.shape))


def collect(sym) -> list:
    """Scalar elements of ``sym`` in row-major order."""
    if not is_array(sym):
        return [sym]
    if not has_known_shape(sym):
        raise ValueError(f"Cannot scalarize {sym.name} with unknown shape {sym.shape}")
    return [sym[index] for index in np.ndindex(*sym.shape)]


# ---------------------------------------------------------------------------
# Metadata
# ---------------------------------------------------------------------------
def getdefault(sym):
    if isinstance(sym, ArrayElement):
        value = sym.parent.metadata.get("default")
        if value is None:
            return None
        if is_symbol(value) or isinstance(value, ca.SX):
            flat = flatten_sx(value)
            return value if flat.numel() == 1 else flat[sym.flat_index]
        arr = np.asarray(value)
        return arr.item() if arr.ndim == 0 else arr[sym.indices]
    return sym.metadata.get("default")


def istunable(sym, default: bool = True) -> bool:
    return bool(sym.metadata.get("tunable", default))


def isinput(sym) -> bool:
    return bool(sym.metadata.get("input", False))


def isoutput(sym) -> bool:
    return bool(sym.metadata.get("output", False))


def isirreducible(sym) -> bool:
    return bool(sym.metadata.get("irreducible", False))


def setmetadata(sym, **updates):
    """Copy of ``sym`` with updated metadata; the casadi symbols are shared."""
    if isinstance(sym, ArrayElement):
        return ArrayElement(setmetadata(sym.parent, **updates), sym.indices)
    if isinstance(sym, Derivative):
        return Derivative(setmetadata(sym.var, **updates))
    return replace(sym, metadata={**sym.metadata, **updates})


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------
def substitute(expr, mapping: dict) -> ca.SX:
    """Substitute symbols in ``expr`` by values or expressions."""
    expr = as_sx(expr)
    if not mapping:
        return expr
    olds = []
    news = []
    for sym, value in mapping.items():
        if not is_symbol(sym) or sym.sx is None:
            continue
        if not ca.depends_on(expr, sym.sx):
            continue
        new = _value_sx(value)
        if new.numel() != sym.sx.numel():
            raise ValueError(f"Value for {sym} has {new.numel()} elements, expected {sym.sx.numel()}")
        olds.append(sym.sx)
        news.append(new)
    if not olds:
        return expr
    return ca.substitute(expr, ca.vertcat(*olds), ca.vertcat(*news))


def evaluate(expr, mapping: dict) -> np.ndarray:
    """
    Evaluate ``expr`` numerically after substituting the values in ``mapping``.

    Raises:
        ValueError: if free symbols remain after substitution
    """
    numeric = {
        k: v
        for k, v in mapping.items()
        if is_symbol(k) and v is not None and not isinstance(v, (str, FunctionWrapper))
    }
    result = substitute(expr, numeric)
    free = ca.symvar(result)
    if free:
        raise ValueError(f"Cannot evaluate expression, free symbols remain: {[str(s) for s in free]}")
    return np.array(ca.evalf(result).full())
