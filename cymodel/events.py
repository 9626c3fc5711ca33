"""
Symbolic events and their affects.

An event's affects are either ``Equation`` assignments ``p ~ expr`` or a
``FunctionalAffect`` wrapping user code. Parameters written by affects become
discrete parameters in the index cache.
"""

from __future__ import annotations

import collections.abc
from dataclasses import dataclass, field
from typing import Any

from cymodel.equations import Equation
from cymodel.symbolic import renamespace


@dataclass(eq=False)
class FunctionalAffect:
    """
    Affect implemented by a Python callable.

    Args:
        func: ``func(integrator, unknowns, parameters, ctx)``
        unknowns: Unknowns read by the affect
        parameters: Parameters read by the affect
        discretes: Parameters written by the affect
        ctx: Arbitrary user context
    """

    func: collections.abc.Callable
    unknowns: collections.abc.Sequence = ()
    parameters: collections.abc.Sequence = ()
    discretes: collections.abc.Sequence = ()
    ctx: Any = None

    def __post_init__(self):
        self.unknowns = tuple(self.unknowns)
        self.parameters = tuple(self.parameters)
        self.discretes = tuple(self.discretes)

    def renamespace(self, namespace) -> "FunctionalAffect":
        return FunctionalAffect(
            self.func,
            tuple(renamespace(namespace, s) for s in self.unknowns),
            tuple(renamespace(namespace, s) for s in self.parameters),
            tuple(renamespace(namespace, s) for s in self.discretes),
            self.ctx,
        )


def _rename_affects(namespace, affects: list) -> list:
    return [a.renamespace(namespace) if isinstance(a, (Equation, FunctionalAffect)) else a for a in affects]


@dataclass(eq=False)
class SymbolicContinuousEvent:
    """Event triggered by zero crossings of ``conditions``."""

    conditions: Any
    affects: Any = field(default_factory=list)
    affect_neg: Any = None

    def __post_init__(self):
        if not isinstance(self.conditions, (list, tuple)):
            self.conditions = [self.conditions]
        self.conditions = list(self.conditions)
        if not isinstance(self.affects, (list, tuple)):
            self.affects = [self.affects]
        self.affects = list(self.affects)

    def renamespace(self, namespace) -> "SymbolicContinuousEvent":
        return SymbolicContinuousEvent(
            self.conditions,
            _rename_affects(namespace, self.affects),
            None if self.affect_neg is None else _rename_affects(namespace, self.affect_neg),
        )


@dataclass(eq=False)
class SymbolicDiscreteEvent:
    """Event triggered periodically (number), at given times (list) or by a condition."""

    condition: Any
    affects: Any = field(default_factory=list)

    def __post_init__(self):
        if not isinstance(self.affects, (list, tuple)):
            self.affects = [self.affects]
        self.affects = list(self.affects)

    def renamespace(self, namespace) -> "SymbolicDiscreteEvent":
        return SymbolicDiscreteEvent(self.condition, _rename_affects(namespace, self.affects))


def affects(event) -> list:
    """All affects of ``event``, including the negative-crossing ones."""
    result = list(event.affects)
    neg = getattr(event, "affect_neg", None)
    if neg:
        result.extend(a for a in neg if a not in result)
    return result


def discretes(affect) -> tuple:
    if isinstance(affect, FunctionalAffect):
        return affect.discretes
    if isinstance(affect, Equation):
        return (affect.lhs,)
    raise TypeError(f"Unhandled affect type {type(affect).__name__}")
