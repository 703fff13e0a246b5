"""Rectilinear grids and piecewise-linear interpolation."""

from __future__ import annotations

from .interpolation import PiecewiseLinear, interpolation_matrix
from .rectilinear_grid import RectilinearGrid

__all__ = [
    "PiecewiseLinear",
    "RectilinearGrid",
    "interpolation_matrix",
]
