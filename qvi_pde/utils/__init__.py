"""
Utilities for QVI_PDE: errors, logging, progress bars, sparse linear solvers
and convergence studies.
"""

from __future__ import annotations

from .exceptions import (
    ConfigurationError,
    ConvergenceError,
    DimensionMismatchError,
    QVISolverError,
    SolverDivergenceError,
)
from .qvi_logging import configure_logging, get_logger
from .sparse_operations import BiCGSTABSolver, LinearSolver, SparseLUSolver, create_linear_solver

__all__ = [
    "BiCGSTABSolver",
    "ConfigurationError",
    "ConvergenceError",
    "DimensionMismatchError",
    "LinearSolver",
    "QVISolverError",
    "SolverDivergenceError",
    "SparseLUSolver",
    "configure_logging",
    "create_linear_solver",
    "get_logger",
]
