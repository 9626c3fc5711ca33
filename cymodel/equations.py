"""
Symbolic equations ``lhs ~ rhs``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import casadi as ca

from cymodel.symbolic import (
    ArrayElement,
    Derivative,
    Variable,
    as_sx,
    collect,
    flatten_sx,
    is_array,
    is_symbol,
    renamespace,
)


@dataclass(eq=False)
class Equation:
    """
    Equation ``lhs = rhs``.

    Either side may be a symbol, a casadi expression or a number. Symbolic
    sides are kept as symbols so that differential equations (``der(x) ~ f``)
    and assignments (``y ~ expr``) remain recognizable.
    """

    lhs: Any
    rhs: Any

    def __post_init__(self):
        for side in (self.lhs, self.rhs):
            if not (is_symbol(side) or isinstance(side, (ca.SX, int, float))):
                raise TypeError(f"Equation sides must be symbolic or numeric, got {type(side).__name__}")

    @property
    def is_differential(self) -> bool:
        return isinstance(self.lhs, Derivative)

    def residual(self) -> ca.SX:
        """``lhs - rhs`` as a row-major column vector."""
        return flatten_sx(as_sx(self.lhs) - as_sx(self.rhs))

    def renamespace(self, namespace) -> "Equation":
        return Equation(_rename(namespace, self.lhs), _rename(namespace, self.rhs))

    def scalarize(self) -> list:
        """Split an array equation into one equation per element."""
        if is_symbol(self.lhs) and is_array(self.lhs):
            lhs = collect(self.lhs)
            rhs = flatten_sx(self.rhs)
            if rhs.numel() == 1 and len(lhs) > 1:
                rhs = ca.repmat(rhs, len(lhs), 1)
            if rhs.numel() != len(lhs):
                raise ValueError(f"Equation {self} has mismatched sides: {len(lhs)} vs {rhs.numel()} elements")
            return [Equation(lhs[i], rhs[i]) for i in range(len(lhs))]
        residual = self.residual()
        if residual.numel() == 1:
            return [self]
        return [Equation(0.0, -residual[i]) for i in range(residual.numel())]

    def __str__(self) -> str:
        return f"{self.lhs} ~ {self.rhs}"

    __repr__ = __str__


def _rename(namespace, side):
    if isinstance(side, (Variable, ArrayElement, Derivative)):
        return renamespace(namespace, side)
    return side
