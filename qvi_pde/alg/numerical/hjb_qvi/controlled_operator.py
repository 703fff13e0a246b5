"""
Monotone finite-difference discretization of the controlled generator.

For a control assignment ``w`` the generator row at an interior node of
dimension ``d`` with spacings

    dxb = x_i - x_{i-1},   dxf = x_{i+1} - x_i,   dxc = x_{i+1} - x_{i-1}

uses the coefficients

    α = v²/(dxb·dxc) - μ/dxc,   β = v²/(dxf·dxc) + μ/dxc      (central)

which discretizes ``½ v² u_xx + μ u_x``. Drift falls back to forward
differencing when α < 0 and to backward differencing when β < 0, so that
α, β >= 0 for every drift. The resulting matrix

    (A u)_i = Σ_d [ (α_d + β_d) u_i - α_d u_{i-s_d} - β_d u_{i+s_d} ] + ρ u_i

has non-positive off-diagonals and is diagonally dominant, i.e. ``A`` is an
M-matrix. Boundary nodes delegate to the problem's boundary routines
(:mod:`.boundary`) and contribute nothing for that dimension when no routine
is given.

Under semi-Lagrangian handling drift and running reward enter through the
explicit event only, so the generator is assembled with zero drift and zero
source.

References:
    - Forsyth & Labahn (2007): Numerical methods for controlled
      Hamilton-Jacobi-Bellman PDEs in finance
    - Barles & Souganidis (1991): Convergence of approximation schemes for
      fully nonlinear second order equations
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Union

import numpy as np
import scipy.sparse as sp

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from numpy.typing import ArrayLike, NDArray

    from qvi_pde.core.problem import HJBQVIProblem
    from qvi_pde.geometry.rectilinear_grid import RectilinearGrid


def monotone_coefficients(
    v: NDArray,
    mu: NDArray,
    dxb: NDArray,
    dxc: NDArray,
    dxf: NDArray,
) -> tuple[NDArray, NDArray]:
    """
    Backward and forward coefficients of one dimension at interior nodes.

    Args:
        v: Diffusion coefficient (the generator carries ``½ v² ∂²u/∂x²``)
        mu: Drift
        dxb: Backward spacing
        dxc: Centered spacing ``dxb + dxf``
        dxf: Forward spacing

    Returns:
        ``(alpha, beta)``, both non-negative
    """
    alpha_common = v * v / dxb / dxc
    beta_common = v * v / dxf / dxc

    alpha = alpha_common - mu / dxc
    beta = beta_common + mu / dxc

    forward = alpha < 0.0
    backward = ~forward & (beta < 0.0)

    alpha = np.where(forward, alpha_common, np.where(backward, alpha_common - mu / dxb, alpha))
    beta = np.where(forward, beta_common + mu / dxf, np.where(backward, beta_common, beta))
    return alpha, beta


def _broadcast(values: ArrayLike, size: int) -> NDArray:
    return np.broadcast_to(np.asarray(values, dtype=np.float64), (size,))


class ControlledOperator:
    """
    Generator matrix ``A(t; w)`` and source ``b(t; w)`` on a refined grid.

    Args:
        problem: Problem supplying coefficients and boundary routines
        grid: Refined spatial grid
    """

    def __init__(self, problem: HJBQVIProblem, grid: RectilinearGrid):
        self.problem = problem
        self.grid = grid
        self.strides = grid.strides
        self.index = grid.multi_index()
        self.coordinates = grid.coordinates()
        self.rows = np.arange(grid.size)

    def arguments(self, t: float, controls: Sequence[ArrayLike] | None = None) -> tuple:
        """
        Evaluation arguments ``(t, x_0, ..., w_0, ...)`` over every node.

        Args:
            t: Time
            controls: Per-dimension control values, arrays over the nodes or
                scalars (zero when None or under semi-Lagrangian handling)
        """
        dimension = self.problem.stochastic_control_dimension
        if controls is None or self.problem.handling.semi_lagrangian:
            controls = (0.0,) * dimension
        q = tuple(_broadcast(c, self.grid.size) for c in controls)
        return (t, *self.coordinates, *q)

    def coefficients(self, t: float, controls: Sequence[ArrayLike] | None = None) -> list[tuple[NDArray, NDArray, NDArray]]:
        """
        Interior coefficients of every dimension.

        Returns:
            One ``(rows, alpha, beta)`` triple per dimension, ``rows`` being the
            flat indices of the nodes interior to that dimension
        """
        args = self.arguments(t, controls)
        result = []
        for d in range(self.grid.dimension):
            result.append(self._interior_coefficients(d, args))
        return result

    def _interior_coefficients(self, d: int, args: tuple) -> tuple[NDArray, NDArray, NDArray]:
        x = self.grid[d]
        i = self.index[d]
        interior = (i > 0) & (i < x.size - 1)
        rows = self.rows[interior]
        ii = i[interior]

        dxb = x[ii] - x[ii - 1]
        dxf = x[ii + 1] - x[ii]
        dxc = x[ii + 1] - x[ii - 1]

        v = _broadcast(self.problem.volatility[d](*args[: 1 + self.grid.dimension]), self.grid.size)[interior]
        if self.problem.handling.semi_lagrangian:
            mu = np.zeros(rows.size)
        else:
            mu = _broadcast(self.problem.controlled_drift[d](*args), self.grid.size)[interior]

        alpha, beta = monotone_coefficients(v, mu, dxb, dxc, dxf)
        return rows, alpha, beta

    def matrix(self, t: float, controls: Sequence[ArrayLike] | None = None) -> sp.csr_matrix:
        """
        Assemble the generator matrix.

        Args:
            t: Time
            controls: Stochastic control assignment (arrays over nodes or scalars)

        Returns:
            Sparse M-matrix ``A`` of shape ``(size, size)``
        """
        size = self.grid.size
        args = self.arguments(t, controls)
        diagonal = _broadcast(self.problem.discount(*args[: 1 + self.grid.dimension]), size).copy()

        rows_list = []
        cols_list = []
        vals_list = []

        for d in range(self.grid.dimension):
            stride = self.strides[d]
            rows, alpha, beta = self._interior_coefficients(d, args)

            rows_list += [rows, rows]
            cols_list += [rows - stride, rows + stride]
            vals_list += [-alpha, -beta]
            diagonal[rows] += alpha + beta

            for side, routine in (
                (0, self.problem.left_boundaries[d]),
                (self.grid.shape[d] - 1, self.problem.right_boundaries[d]),
            ):
                if routine is None:
                    continue
                face = self.index[d] == side
                face_rows = self.rows[face]
                face_args = tuple(a[face] if np.ndim(a) else a for a in args)
                face_index = tuple(i[face] for i in self.index)
                stencil = routine(self.problem, self.grid, d, face_args, face_index, self.strides)

                diagonal[face_rows] += _broadcast(stencil.diagonal, face_rows.size)
                if stencil.neighbor is not None:
                    offset = stride if side == 0 else -stride
                    rows_list.append(face_rows)
                    cols_list.append(face_rows + offset)
                    vals_list.append(_broadcast(stencil.neighbor, face_rows.size))

        rows_list.append(self.rows)
        cols_list.append(self.rows)
        vals_list.append(diagonal)

        return sp.csr_matrix(
            (np.concatenate(vals_list), (np.concatenate(rows_list), np.concatenate(cols_list))),
            shape=(size, size),
        )

    def source(self, t: float, controls: Sequence[ArrayLike] | None = None) -> NDArray:
        """Running reward ``b(t; w)`` (zero under semi-Lagrangian handling)."""
        if self.problem.handling.semi_lagrangian:
            return self.grid.zeros()
        args = self.arguments(t, controls)
        return _broadcast(self.problem.controlled_continuous_flow(*args), self.grid.size).copy()

    def memoized(self) -> GeneratorMemo:
        """
        Generator lookup for control-independent assembly.

        Under semi-Lagrangian handling the generator does not depend on the
        control; with time-independent coefficients it is assembled once.
        """
        if self.problem.handling.semi_lagrangian and self.problem.numerics.time_independent_coefficients:
            return Cached(self.matrix(self.problem.expiry if self.problem.finite_horizon else 0.0))
        return Recomputed(self.matrix)


@dataclass(frozen=True)
class Cached:
    """Generator assembled once."""

    value: sp.csr_matrix

    def __call__(self, t: float, controls: Sequence[ArrayLike] | None = None) -> sp.csr_matrix:
        return self.value


@dataclass(frozen=True)
class Recomputed:
    """Generator assembled at every request."""

    build: Callable[..., sp.csr_matrix]

    def __call__(self, t: float, controls: Sequence[ArrayLike] | None = None) -> sp.csr_matrix:
        return self.build(t, controls)


GeneratorMemo = Union[Cached, Recomputed]
