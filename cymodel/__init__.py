"""
Cymodel - Symbolic modeling and linearization of dynamical systems with CasADi

Build hierarchical equation systems from symbolic variables, lay out their
unknowns and parameters in typed buffers, and linearize them around
operating points.
"""

from beartype.claw import beartype_package

beartype_package(__name__)

__version__ = "0.1.0"

from .equations import Equation
from .events import FunctionalAffect, SymbolicContinuousEvent, SymbolicDiscreteEvent
from .index_cache import IndexCache, get_buffer_template, iterated_buffer_index, reorder_parameters
from .linearization import (
    LinearizationBlocks,
    LinearizationFunction,
    LinearSystem,
    SymbolicLinearization,
    linearization_function,
    linearize,
    linearize_symbolic,
    reorder_unknowns,
    similarity_transform,
)
from .parameters import ParameterBuffers
from .simplification import io_preprocessing, structural_simplify
from .symbolic import (
    ArrayType,
    FunctionWrapper,
    default_toterm,
    der,
    evaluate,
    independent_variable,
    parameter,
    renamespace,
    variable,
)
from .system import System, complete, get_index_cache, missing_variable_defaults
from .types import (
    BufferTemplate,
    DiscreteIndex,
    ParameterIndex,
    ParameterTimeseriesIndex,
    Portion,
)

__all__ = [
    "__version__",
    "ArrayType",
    "BufferTemplate",
    "DiscreteIndex",
    "Equation",
    "FunctionWrapper",
    "FunctionalAffect",
    "IndexCache",
    "LinearSystem",
    "LinearizationBlocks",
    "LinearizationFunction",
    "ParameterBuffers",
    "ParameterIndex",
    "ParameterTimeseriesIndex",
    "Portion",
    "SymbolicContinuousEvent",
    "SymbolicDiscreteEvent",
    "SymbolicLinearization",
    "System",
    "complete",
    "default_toterm",
    "der",
    "evaluate",
    "get_buffer_template",
    "get_index_cache",
    "independent_variable",
    "io_preprocessing",
    "iterated_buffer_index",
    "linearization_function",
    "linearize",
    "linearize_symbolic",
    "missing_variable_defaults",
    "parameter",
    "renamespace",
    "reorder_parameters",
    "reorder_unknowns",
    "similarity_transform",
    "structural_simplify",
    "variable",
]
