"""
Convergence study over refinement levels.

Solves a problem at increasing refinement levels, reads the solution at a test
point and reports the change between levels and the ratio of consecutive
changes. For a method of order ``p`` in the refinement the ratio tends to
``2^p``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from qvi_pde.utils.qvi_logging import LoggedOperation, get_logger

if TYPE_CHECKING:
    from collections.abc import Sequence

    from qvi_pde.core.problem import HJBQVIProblem
    from qvi_pde.core.result import HJBQVIResult

logger = get_logger(__name__)


@dataclass(frozen=True)
class ConvergenceRow:
    """One refinement level of a convergence study."""

    refinement: int
    nodes: int
    stochastic_control_nodes: int
    impulse_control_nodes: int
    timesteps: int
    scaling_factor: float
    iteration_tolerance: float
    mean_inner_iterations: float
    mean_solver_iterations: float
    value: float
    change: float
    ratio: float
    seconds: float


def run_convergence_study(
    problem: HJBQVIProblem,
    test_point: Sequence[float],
    max_refinement: int = 0,
    min_refinement: int = 0,
) -> tuple[list[ConvergenceRow], HJBQVIResult]:
    """
    Solve at refinement levels ``min_refinement..max_refinement``.

    Args:
        problem: Problem to solve
        test_point: Spatial point the value is read at
        max_refinement: Finest level
        min_refinement: Coarsest level

    Returns:
        The table rows and the result at the finest level
    """
    if max_refinement < min_refinement:
        raise ValueError(f"max_refinement ({max_refinement}) must be >= min_refinement ({min_refinement})")

    rows: list[ConvergenceRow] = []
    previous_value = np.nan
    previous_change = np.nan
    result = None

    for refinement in range(min_refinement, max_refinement + 1):
        with LoggedOperation(logger, f"refinement level {refinement}"):
            result = problem.solve(refinement)

        value = result.value_at(test_point)
        change = value - previous_value
        with np.errstate(divide="ignore", invalid="ignore"):
            ratio = float(np.divide(previous_change, change))

        rows.append(
            ConvergenceRow(
                refinement=refinement,
                nodes=result.spatial_grid.size,
                stochastic_control_nodes=result.stochastic_control_grid.size,
                impulse_control_nodes=result.impulse_control_grid.size,
                timesteps=result.timesteps,
                scaling_factor=result.scaling_factor,
                iteration_tolerance=result.iteration_tolerance,
                mean_inner_iterations=result.mean_inner_iterations,
                mean_solver_iterations=result.mean_solver_iterations,
                value=value,
                change=change,
                ratio=ratio,
                seconds=result.execution_time_seconds,
            )
        )
        previous_value = value
        previous_change = change

    return rows, result


_HEADERS = (
    ("Spatial Nodes", "nodes", "d"),
    ("Stochastic Ctrl Nodes", "stochastic_control_nodes", "d"),
    ("Impulse Ctrl Nodes", "impulse_control_nodes", "d"),
    ("Timesteps", "timesteps", "d"),
    ("Scaling Factor", "scaling_factor", ".4g"),
    ("Policy Tolerance", "iteration_tolerance", ".4g"),
    ("Mean Policy Its", "mean_inner_iterations", ".4g"),
    ("Mean Solver Its", "mean_solver_iterations", ".4g"),
    ("Value", "value", ".12g"),
    ("Change", "change", ".6g"),
    ("Ratio", "ratio", ".6g"),
    ("Time (sec)", "seconds", ".4g"),
)


def format_convergence_table(rows: Sequence[ConvergenceRow], width: int = 23) -> str:
    """Render convergence rows as a fixed-width text table."""
    lines = ["".join(f"{title:>{width}}" for title, _, _ in _HEADERS)]
    for row in rows:
        lines.append("".join(f"{getattr(row, attr):>{width}{spec}}" for _, attr, spec in _HEADERS))
    return "\n".join(lines)
