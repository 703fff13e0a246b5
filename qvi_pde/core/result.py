"""
Result of one HJB-QVI solve.

One :class:`HJBQVIResult` is produced per refinement level. All arrays are
made read-only on construction.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from qvi_pde.geometry.interpolation import PiecewiseLinear
from qvi_pde.utils.exceptions import validate_array_dimensions

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from qvi_pde.geometry.rectilinear_grid import RectilinearGrid


@dataclass(frozen=True)
class HJBQVIResult:
    """
    Solution and diagnostics of an HJB-QVI solve at one refinement level.

    Attributes:
        spatial_grid: Refined spatial grid the solution lives on
        stochastic_control_grid: Candidate stochastic controls actually used
        impulse_control_grid: Candidate impulse controls actually used
        solution_vector: Value function at t = 0 (flat, first axis fastest)
        stochastic_control_vectors: Optimal stochastic control per control
            dimension; NaN where an impulse is taken
        impulse_control_vectors: Optimal impulse per impulse dimension; NaN
            where no impulse is taken
        timesteps: Realized number of timesteps (0 for infinite horizon)
        scaling_factor: Realized penalty scaling (NaN if not applicable)
        iteration_tolerance: Fixed-point tolerance (NaN if fully explicit)
        mean_inner_iterations: Mean policy / penalty iterations per step
            (sweeps for iterated optimal stopping, NaN if fully explicit)
        mean_solver_iterations: Mean iterations per linear solve (NaN for
            direct solvers)
        execution_time_seconds: Wall-clock time of the solve
    """

    spatial_grid: RectilinearGrid
    stochastic_control_grid: RectilinearGrid
    impulse_control_grid: RectilinearGrid
    solution_vector: NDArray
    stochastic_control_vectors: tuple[NDArray, ...]
    impulse_control_vectors: tuple[NDArray, ...]
    timesteps: int
    scaling_factor: float
    iteration_tolerance: float
    mean_inner_iterations: float
    mean_solver_iterations: float
    execution_time_seconds: float

    def __post_init__(self):
        shape = (self.spatial_grid.size,)
        validate_array_dimensions(self.solution_vector, shape, "solution_vector")
        self.solution_vector.setflags(write=False)
        for vector in (*self.stochastic_control_vectors, *self.impulse_control_vectors):
            validate_array_dimensions(vector, shape, "control_vector")
            vector.setflags(write=False)

    @property
    def intervention_mask(self) -> NDArray:
        """True at nodes where an impulse is taken."""
        if not self.impulse_control_vectors:
            return np.zeros(self.spatial_grid.size, dtype=bool)
        return ~np.isnan(self.impulse_control_vectors[0])

    def value_at(self, point: Sequence[float]) -> float:
        """Piecewise-linear value of the solution at a point."""
        return PiecewiseLinear(self.spatial_grid, self.solution_vector).interpolate(point)

    def solution_array(self) -> NDArray:
        """Solution reshaped to the spatial grid's shape."""
        return self.spatial_grid.reshape(self.solution_vector)
