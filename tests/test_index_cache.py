"""Tests for the buffer layout of unknowns and parameters."""

from __future__ import annotations

import numpy as np
import pytest

from cymodel import (
    BufferTemplate,
    DiscreteIndex,
    Equation,
    FunctionalAffect,
    ParameterIndex,
    ParameterTimeseriesIndex,
    Portion,
    SymbolicContinuousEvent,
    SymbolicDiscreteEvent,
    System,
    complete,
    der,
    get_buffer_template,
    iterated_buffer_index,
    parameter,
    renamespace,
    reorder_parameters,
    variable,
)
from cymodel.index_cache import buffer_symbol_sizes


@pytest.fixture
def mixed(t):
    """Scalar and array unknowns with parameters of every kind."""
    x = variable("x", t)
    v = variable("v", t, shape=2)
    z = variable("z", t)
    k = parameter("k", default=3.0)
    K = parameter("K", shape=(2, 2), default=np.eye(2))
    m = parameter("m", dtype=int, default=2)
    c = parameter("c", default=0.5, tunable=False)
    s = parameter("s", dtype=str, default="linear")
    k2 = parameter("k2")
    y = variable("y", t)
    sys = System(
        [Equation(der(x), v[0] - k * x)],
        t,
        [x, v, z],
        [k, K, m, c, s, k2],
        name="mixed",
        observed=[Equation(y, x)],
        parameter_dependencies=[Equation(k2, k * 2.0)],
    )
    return complete(sys)


@pytest.fixture
def clocked(t):
    """Parameters written by overlapping sets of events."""
    x = variable("x", t)
    a = parameter("a", iv=t, default=0.0)
    b = parameter("b", iv=t, default=0.0)
    c = parameter("c", iv=t, default=0.0)
    g = parameter("g", default=1.0)
    crossing = SymbolicContinuousEvent([x - 1.0], [Equation(a, a + 1.0), Equation(b, x)])
    periodic = SymbolicDiscreteEvent(
        0.1, [FunctionalAffect(lambda integ, u, p, ctx: None, discretes=[b, c]), Equation(g, 2.0)]
    )
    sys = System(
        [Equation(der(x), a - x)],
        t,
        [x],
        [a, b, c, g],
        name="clocked",
        continuous_events=[crossing],
        discrete_events=[periodic],
    )
    return complete(sys)


@pytest.fixture
def grouped(t):
    """Two parameters written by the same pair of events, one by a single event."""
    x = variable("x", t)
    a = parameter("a", iv=t, default=0.0)
    b = parameter("b", iv=t, default=1.0)
    c = parameter("c", iv=t, default=0.0)
    fast = SymbolicDiscreteEvent(0.1, [Equation(a, a + 1.0), Equation(b, b * 2.0)])
    slow = SymbolicDiscreteEvent(1.0, [FunctionalAffect(lambda integ, u, p, ctx: None, discretes=[a, b, c])])
    sys = System([Equation(der(x), a - x)], t, [x], [a, b, c], name="grouped", discrete_events=[fast, slow])
    return complete(sys)


class TestUnknownIndices:
    def test_scalar_and_array_positions(self, mixed) -> None:
        ic = mixed.index_cache

        assert ic.variable_index(mixed.x) == 0
        np.testing.assert_array_equal(ic.variable_index(mixed.v), [1, 2])
        assert ic.variable_index(mixed.v[1]) == 2
        assert ic.variable_index(mixed.z) == 3
        assert ic.n_unknowns == 4

    def test_lookup_by_name(self, mixed) -> None:
        ic = mixed.index_cache

        assert ic.variable_index("x") == 0
        assert ic.variable_index("mixed.z") == 3
        assert ic.variable_index("nothing") is None
        assert not ic.is_variable(mixed.k)

    def test_spellings_share_an_index(self, mixed, t) -> None:
        ic = mixed.index_cache
        raw = variable("x", t)

        assert {ic.variable_index(s) for s in (raw, renamespace("mixed", raw), "x", "mixed.x")} == {0}

    def test_derivative_is_not_an_unknown(self, mixed) -> None:
        assert mixed.index_cache.variable_index(der(mixed.x)) is None

    def test_contiguous_destructured_array(self, t) -> None:
        v = variable("v", t, shape=2)
        sys = complete(System([], t, [v[0], v[1]], name="d"))

        np.testing.assert_array_equal(sys.index_cache.variable_index(v), [0, 1])

    def test_scattered_destructured_array(self, t) -> None:
        v = variable("v", t, shape=2)
        x = variable("x", t)
        sys = complete(System([], t, [v[0], x, v[1]], name="d"))

        assert sys.index_cache.variable_index(v) == [0, 2]
        assert sys.index_cache.variable_index(v[1]) == 2

    def test_observed_and_dependent(self, mixed) -> None:
        ic = mixed.index_cache

        assert ic.is_observed("y")
        assert not ic.is_observed(mixed.x)
        assert ic.is_dependent_parameter(mixed.k2)
        assert not ic.is_dependent_parameter(mixed.k)


class TestParameterIndices:
    def test_portions(self, mixed) -> None:
        ic = mixed.index_cache

        assert ic.parameter_index(mixed.k) == ParameterIndex(Portion.TUNABLE, 0)
        assert ic.parameter_index(mixed.K) == ParameterIndex(Portion.TUNABLE, np.arange(2, 6).reshape(2, 2), True)
        assert ic.parameter_index(mixed.m) == ParameterIndex(Portion.CONSTANTS, (0, 0))
        assert ic.parameter_index(mixed.c) == ParameterIndex(Portion.CONSTANTS, (1, 0))
        assert ic.parameter_index(mixed.s) == ParameterIndex(Portion.NONNUMERIC, (0, 0))
        assert ic.parameter_index(mixed.x) is None

    def test_array_element(self, mixed) -> None:
        ic = mixed.index_cache

        assert ic.parameter_index(mixed.K[1, 0]) == ParameterIndex(Portion.TUNABLE, 4)
        assert ic.parameter_index(mixed.k2) == ParameterIndex(Portion.TUNABLE, 1)
        assert ic.is_parameter("K")

    def test_templates(self, mixed) -> None:
        ic = mixed.index_cache

        assert ic.tunable_buffer_size == BufferTemplate(float, 6)
        assert ic.constant_buffer_sizes == [BufferTemplate(int, 1), BufferTemplate(float, 1)]
        assert ic.nonnumeric_buffer_sizes == [BufferTemplate(str, 1)]
        assert get_buffer_template(ic, ic.parameter_index(mixed.c)) == BufferTemplate(float, 1)

    def test_negative_template_length(self) -> None:
        with pytest.raises(ValueError):
            BufferTemplate(float, -1)

    def test_iterated_buffer_index(self, mixed) -> None:
        ic = mixed.index_cache

        assert [iterated_buffer_index(ic, ic.parameter_index(p)) for p in (mixed.k, mixed.m, mixed.c, mixed.s)] == [
            0,
            1,
            2,
            3,
        ]

    def test_buffer_symbol_sizes(self, mixed) -> None:
        sizes = buffer_symbol_sizes(mixed.index_cache, mixed)
        assert sizes == ([1] * 6, [1], [1], [1])


class TestReorderParameters:
    def test_layout(self, mixed) -> None:
        tunable, ints, floats, strings = reorder_parameters(mixed, mixed.parameters)

        assert tunable[:2] == [mixed.k, mixed.k2]
        assert tunable[2:] == [mixed.K[0, 0], mixed.K[0, 1], mixed.K[1, 0], mixed.K[1, 1]]
        assert ints == [mixed.m]
        assert floats == [mixed.c]
        assert strings == [mixed.s]

    def test_round_trip(self, mixed) -> None:
        ic = mixed.index_cache
        buffers = reorder_parameters(mixed, mixed.parameters[::-1])

        assert buffers == reorder_parameters(mixed, mixed.parameters)
        for p in (mixed.k, mixed.k2, mixed.K[0, 1], mixed.K[1, 0], mixed.m, mixed.c, mixed.s):
            pidx = ic.parameter_index(p)
            slot = pidx.idx if pidx.portion is Portion.TUNABLE else pidx.idx[1]
            assert buffers[iterated_buffer_index(ic, pidx)][slot] == p

    def test_missing_slots(self, mixed) -> None:
        buffers = reorder_parameters(mixed.index_cache, [mixed.k, mixed.c])
        assert buffers[0][1] is None

        dropped = reorder_parameters(mixed.index_cache, [mixed.k, mixed.c], drop_missing=True)
        assert dropped == ([mixed.k], [], [mixed.c], [])

    def test_empty(self, mixed) -> None:
        assert reorder_parameters(mixed, []) == ()

    def test_invalid_parameter(self, mixed) -> None:
        with pytest.raises(ValueError, match="Invalid parameter"):
            reorder_parameters(mixed, [mixed.x])

    def test_incomplete_system(self, t) -> None:
        k = parameter("k")
        sys = System([], t, [], [k], name="raw")

        assert reorder_parameters(sys, [k]) == ([k],)


class TestDiscreteParameters:
    def test_clock_partitions(self, clocked) -> None:
        ic = clocked.index_cache

        assert ic.n_clock_partitions == 3
        assert ic.discrete_idx["a"] == DiscreteIndex(0, 0, 0, 0)
        assert ic.discrete_idx["b"] == DiscreteIndex(0, 1, 1, 0)
        assert ic.discrete_idx["c"] == DiscreteIndex(0, 2, 2, 0)
        assert ic.discrete_buffer_sizes == [[BufferTemplate(float, 1)] * 3]

    def test_same_writers_share_a_partition(self, grouped) -> None:
        ic = grouped.index_cache
        fast, slow = grouped.discrete_events

        assert ic.n_clock_partitions == 2
        assert ic.discrete_idx["a"] == DiscreteIndex(0, 0, 0, 0)
        assert ic.discrete_idx["b"] == DiscreteIndex(0, 1, 0, 1)
        assert ic.discrete_idx["c"] == DiscreteIndex(0, 2, 1, 0)
        assert ic.discrete_buffer_sizes == [[BufferTemplate(float, 2), BufferTemplate(float, 1)]]
        assert ic.callback_to_clocks[fast] == [0]
        assert ic.callback_to_clocks[slow] == [0, 1]
        assert ic.timeseries_parameter_index(grouped.b) == ParameterTimeseriesIndex(0, (0, 1))

    def test_callback_to_clocks(self, clocked) -> None:
        ic = clocked.index_cache
        crossing = clocked.continuous_events[0]
        periodic = clocked.discrete_events[0]

        assert ic.callback_to_clocks[crossing] == [0, 1]
        assert ic.callback_to_clocks[periodic] == [1, 2]

    def test_discrete_indices(self, clocked) -> None:
        ic = clocked.index_cache

        assert ic.parameter_index(clocked.b) == ParameterIndex(Portion.DISCRETE, (0, 1))
        assert ic.timeseries_parameter_index(clocked.b) == ParameterTimeseriesIndex(1, (0, 0))
        assert ic.is_timeseries_parameter("c")
        assert not ic.is_timeseries_parameter(clocked.g)

    def test_written_constant_is_not_tunable(self, clocked) -> None:
        ic = clocked.index_cache

        assert ic.parameter_index(clocked.g) == ParameterIndex(Portion.CONSTANTS, (0, 0))
        assert ic.tunable_buffer_size.length == 0
        assert reorder_parameters(ic, clocked.parameters) == (
            [clocked.a, clocked.b, clocked.c],
            [clocked.g],
        )

    def test_affect_must_write_parameters(self, t) -> None:
        x = variable("x", t)
        ev = SymbolicDiscreteEvent(1.0, [FunctionalAffect(lambda *args: None, discretes=[x])])
        sys = System([Equation(der(x), x * -1.0)], t, [x], name="bad", discrete_events=[ev])

        with pytest.raises(ValueError, match="to be a parameter"):
            complete(sys)

    def test_unhandled_affect(self, t) -> None:
        x = variable("x", t)
        ev = SymbolicDiscreteEvent(1.0, ["reset"])
        sys = System([Equation(der(x), x * -1.0)], t, [x], name="bad", discrete_events=[ev])

        with pytest.raises(TypeError, match="Unhandled affect type"):
            complete(sys)
