"""
Numerical configuration for the HJB-QVI solver.

Tolerances, iteration caps, linear solver selection and time discretization
settings. The model is frozen so that a problem built from it can be shared
between concurrent ``solve(refinement)`` calls.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class LinearSolverKind(str, Enum):
    """Sparse linear solver used for each implicit step."""

    BICGSTAB = "bicgstab"
    SPARSE_LU = "sparse_lu"


class TimeDiscretization(str, Enum):
    """Backward differentiation formula used for the time derivative."""

    BDF1 = "bdf1"
    BDF2 = "bdf2"


class NumericsConfig(BaseModel):
    """
    Numerical parameters for the HJB-QVI solver.

    Attributes
    ----------
    scaling_factor : float
        Penalty scale; the realized penalty scaling is ``scaling_factor * dt``
        (default: 1e-2)
    iteration_tolerance : float
        Relative tolerance of the policy, penalty and iterated optimal
        stopping fixed-point loops (default: 1e-6)
    target_timestep_relative_error : float | None
        Target relative change per step; enables adaptive stepping when set
        (default: None)
    max_inner_iterations : int
        Cap on the per-step tolerance loop (default: 100)
    max_outer_iterations : int
        Cap on the iterated optimal stopping sweeps (default: 100)
    linear_solver : LinearSolverKind
        Sparse solver for each implicit step (default: BICGSTAB)
    solver_tolerance : float
        BiCGSTAB relative residual tolerance (default: 1e-10)
    solver_max_iterations : int | None
        BiCGSTAB iteration cap, scipy's default when None (default: None)
    time_discretization : TimeDiscretization
        BDF order (default: BDF1)
    refine_stochastic_control_grid : bool
        Refine the stochastic control grid with the spatial grid (default: True)
    refine_impulse_control_grid : bool
        Refine the impulse control grid with the spatial grid (default: True)
    time_independent_coefficients : bool
        Coefficients do not depend on time; lets the generator be cached under
        semi-Lagrangian handling (default: False)
    drop_semi_lagrangian_off_grid : bool
        Ignore semi-Lagrangian candidates whose foot point leaves the grid
        (default: False)
    show_progress : bool
        Display a progress bar over timesteps (default: False)
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    scaling_factor: float = Field(default=1e-2, gt=0)
    iteration_tolerance: float = Field(default=1e-6, gt=0)
    target_timestep_relative_error: float | None = Field(default=None, gt=0)
    max_inner_iterations: int = Field(default=100, ge=1)
    max_outer_iterations: int = Field(default=100, ge=1)
    linear_solver: LinearSolverKind = LinearSolverKind.BICGSTAB
    solver_tolerance: float = Field(default=1e-10, gt=0)
    solver_max_iterations: int | None = Field(default=None, ge=1)
    time_discretization: TimeDiscretization = TimeDiscretization.BDF1
    refine_stochastic_control_grid: bool = True
    refine_impulse_control_grid: bool = True
    time_independent_coefficients: bool = False
    drop_semi_lagrangian_off_grid: bool = False
    show_progress: bool = False

    @property
    def adaptive(self) -> bool:
        """Whether adaptive timestepping is enabled."""
        return self.target_timestep_relative_error is not None

    @model_validator(mode="after")
    def validate_time_discretization(self) -> NumericsConfig:
        """BDF2 needs a constant step."""
        if self.time_discretization is TimeDiscretization.BDF2 and self.adaptive:
            raise ValueError("BDF2 time discretization requires constant timestepping")
        return self
