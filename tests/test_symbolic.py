"""Tests for symbols, equations and systems."""

from __future__ import annotations

import collections.abc

import casadi as ca
import numpy as np
import pytest

from cymodel import Equation, System, complete, der, independent_variable, parameter, variable
from cymodel.symbolic import (
    ArrayElement,
    ArrayType,
    FunctionWrapper,
    arguments,
    as_sx,
    canonical_name,
    collect,
    default_toterm,
    evaluate,
    flatten_sx,
    getdefault,
    getindex,
    is_indexing,
    is_time_dependent,
    iscall,
    operation,
    renamespace,
    symbol_size,
    symtype,
)
from cymodel.system import get_index_cache, missing_variable_defaults


class TestSymbols:
    def test_expressions_are_casadi(self, t) -> None:
        x = variable("x", t)
        k = parameter("k", default=2.0)

        expr = k * x + 1.0
        assert isinstance(expr, ca.SX)
        assert ca.depends_on(expr, x.sx)
        np.testing.assert_allclose(evaluate(expr, {x: 3.0, k: 2.0}), [[7.0]])

    def test_evaluate_rejects_free_symbols(self, t) -> None:
        x = variable("x", t)
        k = parameter("k")

        with pytest.raises(ValueError, match="free symbols"):
            evaluate(k * x, {k: 1.0})

    def test_default_toterm_shares_derivative_symbol(self, t) -> None:
        x = variable("x", t)

        term = default_toterm(der(x))
        assert term.name == "x_t"
        assert term.sx is x.der_sx
        assert default_toterm(x) is x

    def test_canonical_name_strips_namespace(self, t) -> None:
        x = variable("x", t)

        assert renamespace("sys", x).name == "sys.x"
        assert canonical_name(renamespace("sys", der(x)), "sys") == "x_t"
        assert canonical_name("sys.x", "sys") == "x"
        assert canonical_name("other.x", "sys") == "other.x"

    def test_call_structure(self, t) -> None:
        v = variable("v", t, shape=2)
        k = parameter("k")

        assert iscall(v[1]) and operation(v[1]) is getindex and arguments(v[1]) == (v, 1)
        assert iscall(der(v[0])) and operation(der(v[0])) is der and arguments(der(v[0])) == (v[0],)
        assert iscall(v) and operation(v).name == "v" and arguments(v) == (t,)
        assert not iscall(k) and operation(k) is None
        assert is_indexing(v[0]) and not is_indexing(v)

    def test_renamespace_keeps_independent_variable(self, t) -> None:
        assert renamespace("sys", t) is t

    def test_higher_derivatives_not_supported(self, t) -> None:
        x = variable("x", t)

        with pytest.raises(NotImplementedError):
            der(der(x))

    def test_time_dependent_parameter(self, t) -> None:
        d = parameter("d", iv=t, default=0.0)
        k = parameter("k", default=1.0)

        assert is_time_dependent(d, t)
        assert not is_time_dependent(k, t)


class TestArrays:
    def test_row_major_elements(self, t) -> None:
        v = variable("v", t, shape=(2, 3))

        assert v[1, 2].flat_index == 5
        assert [e.name for e in collect(v)][:4] == ["v[0,0]", "v[0,1]", "v[0,2]", "v[1,0]"]
        assert as_sx(v).shape == (2, 3)
        assert ca.is_equal(flatten_sx(v)[5], v[1, 2].sx)

    def test_negative_and_invalid_indices(self, t) -> None:
        v = variable("v", t, shape=3)
        x = variable("x", t)

        assert v[-1] == v[2]
        with pytest.raises(IndexError):
            v[3]
        with pytest.raises(TypeError):
            x[0]

    def test_unknown_shape(self, t) -> None:
        w = variable("w", t, shape=(None,))

        assert symbol_size(w) == 0
        with pytest.raises(ValueError):
            collect(w)

    def test_element_default(self, t) -> None:
        v = variable("v", t, shape=2, default=[1.0, 2.0])

        assert getdefault(v[1]) == 2.0
        assert isinstance(v[0], ArrayElement)

        w = variable("w", t, shape=2, default=v)
        assert ca.is_equal(getdefault(w[1]), v[1].sx)

    def test_symtype(self, t) -> None:
        v = variable("v", t, shape=(2, 2))
        f = parameter("f", dtype=collections.abc.Callable)

        assert symtype(v) == ArrayType(float, 2)
        assert symtype(f) is FunctionWrapper
        assert symtype(parameter("n", dtype=int)) is int


class TestEquation:
    def test_rejects_non_symbolic_sides(self, t) -> None:
        with pytest.raises(TypeError):
            Equation("x", 1.0)

    def test_scalarize_array_equation(self, t) -> None:
        w = variable("w", t, shape=2)

        eqs = Equation(der(w), w * -1.0).scalarize()
        assert len(eqs) == 2
        assert all(eq.is_differential for eq in eqs)
        assert eqs[1].lhs.var == w[1]

    def test_str(self, t) -> None:
        x = variable("x", t)
        y = variable("y", t)

        assert str(Equation(y, x)) == "y ~ x"


class TestSystem:
    def test_namespacing(self, t, feedback_loop) -> None:
        assert feedback_loop.f.x.name == "cl.f.x"
        assert {u.name for u in feedback_loop.unknowns} >= {"f.x", "c.r", "p.y"}
        assert [p.name for p in feedback_loop.parameters] == ["c.kp"]
        assert feedback_loop.key(feedback_loop.f.x) == "f.x"

    def test_defaults_are_namespaced(self, feedback_loop) -> None:
        defaults = feedback_loop.canonicalize_mapping(feedback_loop.defaults)
        assert defaults["c.kp"] == 1.0

    def test_array_element_defaults(self, t) -> None:
        v = variable("v", t, shape=2, default=[1.0, 2.0])
        sys = System([], t, [v[0], v[1]], name="s")

        assert sys.defaults == {v[0]: 1.0, v[1]: 2.0}

    def test_outputs_from_metadata(self, t) -> None:
        x = variable("x", t, output=True)
        y = variable("y", t)
        sys = System([], t, [x, y], name="s")

        assert [o.name for o in sys.outputs] == ["x"]

    def test_missing_attribute(self, feedback_loop) -> None:
        with pytest.raises(AttributeError):
            feedback_loop.nothing

    def test_duplicate_subsystems(self, t) -> None:
        a = System([], t, name="a")

        with pytest.raises(ValueError, match="Duplicate"):
            System([], t, name="top", systems=[a, a])

    def test_rejects_non_equations(self, t) -> None:
        x = variable("x", t)

        with pytest.raises(TypeError):
            System([x], t, [x], name="bad")

    def test_index_cache_requires_complete(self, feedback_loop) -> None:
        with pytest.raises(ValueError, match="completed system"):
            get_index_cache(feedback_loop)

        csys = complete(feedback_loop)
        assert csys.is_complete
        assert complete(csys) is csys
        assert csys.f.name == "f"

    def test_missing_variable_defaults(self, t) -> None:
        x = variable("x", t, default=1.0)
        v = variable("v", t, shape=2)
        sys = System([], t, [x, v], name="s")

        missing = missing_variable_defaults(sys, 0.5)
        assert list(missing) == [v]
        np.testing.assert_allclose(missing[v], [0.5, 0.5])

    def test_lookup(self, feedback_loop) -> None:
        assert feedback_loop.lookup("p.x").name == "p.x"
        assert feedback_loop.lookup(der(feedback_loop.p.x)).name == "p.x"
        assert feedback_loop.lookup("p.nothing") is None

    def test_independent_variable_is_shared(self, feedback_loop, t) -> None:
        assert feedback_loop.iv is t
        assert independent_variable("t").name == t.name
