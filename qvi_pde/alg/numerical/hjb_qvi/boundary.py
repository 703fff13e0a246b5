"""
Boundary routines for the controlled generator.

A boundary routine handles one side of one spatial dimension. It is called once
per boundary face with every argument restricted to the nodes of that face:

    routine(problem, grid, d, args, index, strides) -> BoundaryStencil

where ``args = (t, x_0, ..., x_{D-1}, w_0, ...)`` are the evaluation arguments
(``t`` a scalar, the rest arrays over the face), ``index`` the per-dimension
multi-index arrays and ``strides`` the flat stride of every dimension. The
returned stencil gives the diagonal contribution and, optionally, the value of
the single off-diagonal entry at the inward neighbour (``row + strides[d]`` on
the lower side, ``row - strides[d]`` on the upper side). Routines must keep the
row diagonally dominant with non-positive off-diagonals.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from qvi_pde.core.problem import HJBQVIProblem
    from qvi_pde.geometry.rectilinear_grid import RectilinearGrid


@dataclass(frozen=True)
class BoundaryStencil:
    """Row entries produced by a boundary routine for one face."""

    diagonal: NDArray | float
    neighbor: NDArray | float | None = None


BoundaryRoutine = Callable[..., BoundaryStencil]


def boundary_drift(problem: HJBQVIProblem, d: int, args: tuple) -> NDArray | float:
    """Controlled drift of dimension ``d`` (zero under semi-Lagrangian handling)."""
    if problem.handling.semi_lagrangian:
        return 0.0
    return np.asarray(problem.controlled_drift[d](*args), dtype=np.float64)


def linear_boundary(
    problem: HJBQVIProblem,
    grid: RectilinearGrid,
    d: int,
    args: tuple,
    index: tuple[NDArray, ...],
    strides: tuple[int, ...],
) -> BoundaryStencil:
    """
    Assume the solution is linear in ``x_d`` near the boundary.

    With ``u ≈ c·x_d`` the drift term ``μ ∂u/∂x_d`` becomes ``μ u / x_d``, so the
    row only gains the diagonal entry ``-μ / x_d``. Suitable for the far
    boundary of asset-price axes.
    """
    mu = boundary_drift(problem, d, args)
    return BoundaryStencil(diagonal=-mu / args[1 + d])


def zero_diffusion_right_boundary(
    problem: HJBQVIProblem,
    grid: RectilinearGrid,
    d: int,
    args: tuple,
    index: tuple[NDArray, ...],
    strides: tuple[int, ...],
) -> BoundaryStencil:
    """
    Drop the diffusion on the upper boundary and take a backward difference.

    Monotone when the drift points inward (``μ <= 0``).
    """
    x = grid[d]
    i = index[d]
    dxb = x[i] - x[i - 1]
    alpha = -boundary_drift(problem, d, args) / dxb
    return BoundaryStencil(diagonal=alpha, neighbor=-alpha)


def zero_diffusion_left_boundary(
    problem: HJBQVIProblem,
    grid: RectilinearGrid,
    d: int,
    args: tuple,
    index: tuple[NDArray, ...],
    strides: tuple[int, ...],
) -> BoundaryStencil:
    """
    Drop the diffusion on the lower boundary and take a forward difference.

    Monotone when the drift points inward (``μ >= 0``).
    """
    x = grid[d]
    i = index[d]
    dxf = x[i + 1] - x[i]
    beta = boundary_drift(problem, d, args) / dxf
    return BoundaryStencil(diagonal=beta, neighbor=-beta)
