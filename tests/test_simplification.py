"""Tests for structural simplification and code generation."""

from __future__ import annotations

import numpy as np
import pytest

from cymodel import Equation, ParameterBuffers, Portion, System, der, io_preprocessing, structural_simplify, variable
from cymodel.codegen import build_explicit_observed_function, generate_rhs, rhs_expression


class TestStructuralSimplify:
    def test_feedback_loop_reduces_to_states(self, feedback_loop) -> None:
        ssys = structural_simplify(feedback_loop, inputs=[feedback_loop.f.u], outputs=[feedback_loop.p.x])

        assert [u.name for u in ssys.unknowns] == ["f.x", "p.x"]
        assert ssys._n_differential == 2
        assert [i.name for i in ssys.inputs] == ["f.u"]
        assert [o.name for o in ssys.outputs] == ["p.x"]
        assert ssys.is_complete
        assert ssys.index_cache.is_observed("c.u")

    def test_algebraic_unknowns_are_kept(self, dae) -> None:
        ssys = structural_simplify(dae.sys, inputs=[dae.u])

        assert [u.name for u in ssys.unknowns] == ["x", "z"]
        assert ssys._n_differential == 1
        assert ssys.is_parameter(dae.u)

    def test_irreducible_unknown(self, t) -> None:
        x = variable("x", t, default=1.0)
        y = variable("y", t, irreducible=True)
        sys = System([Equation(der(x), y * -1.0), Equation(y, x * 2.0)], t, [x, y], name="s")

        ssys = structural_simplify(sys)
        assert [u.name for u in ssys.unknowns] == ["x", "y"]

    def test_tearing_moves_to_observed(self, t) -> None:
        x = variable("x", t, default=1.0)
        y = variable("y", t)
        sys = System([Equation(der(x), y * -1.0), Equation(y, x * 2.0)], t, [x, y], name="s")

        ssys = structural_simplify(sys)
        assert [u.name for u in ssys.unknowns] == ["x"]
        assert [eq.lhs.name for eq in ssys.observed] == ["y"]

    def test_array_unknowns_are_scalarized(self, t) -> None:
        w = variable("w", t, shape=2)
        sys = System([Equation(der(w), w * -1.0)], t, [w], name="s")

        ssys = structural_simplify(sys)
        assert [u.name for u in ssys.unknowns] == ["w[0]", "w[1]"]

    def test_unbalanced(self, t) -> None:
        x = variable("x", t)
        y = variable("y", t)
        sys = System([Equation(der(x), y - x)], t, [x, y], name="s")

        with pytest.raises(ValueError, match="unbalanced"):
            structural_simplify(sys)

    def test_duplicate_differential_equation(self, t) -> None:
        x = variable("x", t)
        sys = System([Equation(der(x), x * -1.0), Equation(der(x), x * -2.0)], t, [x], name="s")

        with pytest.raises(ValueError, match="more than one differential equation"):
            structural_simplify(sys)

    def test_coupled_derivatives(self, t) -> None:
        x = variable("x", t)
        y = variable("y", t)
        sys = System([Equation(0.0, der(x) - der(y)), Equation(der(y), x * -1.0)], t, [x, y], name="s")

        with pytest.raises(NotImplementedError):
            structural_simplify(sys)

    def test_missing_input(self, dae, t) -> None:
        stray = variable("stray", t)

        with pytest.raises(ValueError, match="inputs were not found"):
            structural_simplify(dae.sys, inputs=[stray])

    def test_missing_output(self, dae, t) -> None:
        with pytest.raises(ValueError, match="outputs were not found"):
            structural_simplify(dae.sys, inputs=[dae.u], outputs=["w"])


class TestIOPreprocessing:
    def test_indices(self, dae) -> None:
        ssys, diff_idxs, alge_idxs, input_idxs = io_preprocessing(dae.sys, [dae.u], [dae.x])

        assert diff_idxs == [0]
        assert alge_idxs == [1]
        assert len(input_idxs) == 1
        assert input_idxs[0].portion is Portion.TUNABLE
        assert input_idxs[0] == ssys.index_cache.parameter_index(dae.u)


class TestCodegen:
    def test_rhs(self, dae) -> None:
        ssys = structural_simplify(dae.sys, inputs=[dae.u])
        ps = ParameterBuffers.from_system(ssys, {dae.u: 0.5})
        rhs = generate_rhs(ssys)

        # f = u + z - a x, g = z - x + z^3
        np.testing.assert_allclose(rhs([1.0, 2.0], ps), [1.5, 9.0])
        np.testing.assert_allclose(rhs.jacobian([1.0, 2.0], ps), [[-1.0, 1.0], [-1.0, 13.0]])

    def test_input_jacobian(self, dae) -> None:
        ssys, _, _, input_idxs = io_preprocessing(dae.sys, [dae.u], [dae.x])
        ps = ParameterBuffers.from_system(ssys, {dae.u: 0.0})
        rhs = generate_rhs(ssys)

        np.testing.assert_allclose(rhs.input_jacobian([0.0, 0.0], ps, 0.0, input_idxs), [[1.0], [0.0]])
        assert rhs.input_jacobian([0.0, 0.0], ps, 0.0, []).shape == (2, 0)

    def test_observed_function(self, feedback_loop) -> None:
        ssys = structural_simplify(feedback_loop, inputs=[feedback_loop.f.u])
        ps = ParameterBuffers.from_system(ssys, {"f.u": 0.0, "c.kp": 3.0})
        h = build_explicit_observed_function(ssys, ["c.u"])

        # c.u = kp (f.x - p.x)
        np.testing.assert_allclose(h([2.0, 1.0], ps), [3.0])

    def test_requires_simplified_system(self, feedback_loop) -> None:
        with pytest.raises(ValueError, match="structurally simplified"):
            rhs_expression(feedback_loop)
