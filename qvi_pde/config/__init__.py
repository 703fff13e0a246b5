"""
Configuration for QVI_PDE.

    >>> from qvi_pde.config import NumericsConfig
    >>> numerics = NumericsConfig(scaling_factor=1e-3, iteration_tolerance=1e-8)
"""

from __future__ import annotations

from .numerics import LinearSolverKind, NumericsConfig, TimeDiscretization

__all__ = [
    "LinearSolverKind",
    "NumericsConfig",
    "TimeDiscretization",
]
