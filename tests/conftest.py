"""Shared models for the cymodel test suite."""

from __future__ import annotations

from types import SimpleNamespace

import pytest

from cymodel import Equation, System, der, independent_variable, parameter, variable


@pytest.fixture
def t():
    return independent_variable("t")


def _first_order(name: str, t, pole: float) -> System:
    """der(x) = u - pole*x, y = x"""
    x = variable("x", t)
    u = variable("u", t)
    y = variable("y", t)
    return System([Equation(der(x), u - pole * x), Equation(y, x)], t, [x, u, y], name=name)


@pytest.fixture
def feedback_loop(t):
    """Reference filter feeding a proportional controller around a first order plant."""
    filt = _first_order("f", t, 2.0)
    plant = _first_order("p", t, 1.0)

    r = variable("r", t)
    y = variable("y", t)
    u = variable("u", t)
    kp = parameter("kp", default=1.0)
    ctrl = System([Equation(u, kp * (r - y))], t, [r, y, u], [kp], name="c")

    connections = [
        Equation(filt.y, ctrl.r),
        Equation(ctrl.u, plant.u),
        Equation(plant.y, ctrl.y),
    ]
    return System(connections, t, name="cl", systems=[filt, ctrl, plant])


@pytest.fixture
def dae(t):
    """der(x) = u + z - a*x, 0 = z - x + z^3"""
    x = variable("x", t, default=0.0)
    z = variable("z", t)
    u = variable("u", t)
    a = parameter("a", default=1.0)
    sys = System(
        [Equation(der(x), u + z - a * x), Equation(0.0, z - x + z**3)],
        t,
        [x, z, u],
        [a],
        name="dae",
    )
    return SimpleNamespace(sys=sys, x=x, z=z, u=u, a=a)


@pytest.fixture
def input_derivative(t):
    """der(x) = z - x, 0 = z - u + z^3; z follows u, so x sees du/dt."""
    x = variable("x", t, default=0.0)
    z = variable("z", t)
    u = variable("u", t)
    sys = System([Equation(der(x), z - x), Equation(0.0, z - u + z**3)], t, [x, z, u], name="deriv")
    return SimpleNamespace(sys=sys, x=x, z=z, u=u)


@pytest.fixture
def high_index(t):
    """der(x) = z, 0 = x - u; z is not determined by the algebraic equation."""
    x = variable("x", t, default=0.0)
    z = variable("z", t)
    u = variable("u", t)
    sys = System([Equation(der(x), z), Equation(0.0, x - u)], t, [x, z, u], name="index2")
    return SimpleNamespace(sys=sys, x=x, z=z, u=u)
