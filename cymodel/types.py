"""
Index and buffer descriptors shared by the index cache and parameter buffers.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, auto
from typing import Any

import numpy as np


class Portion(Enum):
    """Buffer family a parameter lives in."""

    TUNABLE = auto()  # Flat float buffer, differentiable
    DISCRETE = auto()  # Updated by events, grouped per clock partition
    CONSTANTS = auto()  # Numeric but not tunable
    NONNUMERIC = auto()  # Strings, callables and other opaque values


@dataclass(frozen=True)
class BufferTemplate:
    """Element type and length of one parameter buffer."""

    type: Any
    length: int

    def __post_init__(self):
        if self.length < 0:
            raise ValueError(f"Buffer length must be non-negative, got {self.length}")


@dataclass(frozen=True, eq=False)
class ParameterIndex:
    """
    Location of a parameter inside the parameter buffers.

    ``idx`` is an ``int`` or an integer ``ndarray`` (array parameters) for the
    tunable portion, and a ``(buffer_idx, idx_in_buffer, *subscripts)`` tuple
    otherwise.
    """

    portion: Portion
    idx: Any
    validate_size: bool = False

    def __eq__(self, other):
        if not isinstance(other, ParameterIndex):
            return NotImplemented
        if self.portion is not other.portion or self.validate_size != other.validate_size:
            return False
        if isinstance(self.idx, np.ndarray) or isinstance(other.idx, np.ndarray):
            return np.array_equal(np.asarray(self.idx), np.asarray(other.idx))
        return self.idx == other.idx

    def __hash__(self) -> int:
        idx = tuple(np.asarray(self.idx).ravel()) if isinstance(self.idx, np.ndarray) else self.idx
        return hash((self.portion, idx, self.validate_size))


@dataclass(frozen=True)
class DiscreteIndex:
    """Position of a discrete parameter by type buffer and by clock partition."""

    buffer_idx: int
    idx_in_buffer: int
    clock_idx: int
    idx_in_clock: int


@dataclass(frozen=True)
class ParameterTimeseriesIndex:
    """Clock partition and in-partition position of a discrete parameter."""

    timeseries_idx: int
    parameter_idx: tuple
