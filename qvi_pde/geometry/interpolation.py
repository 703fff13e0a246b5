"""
Piecewise-linear interpolation on rectilinear grids.

Two views of the same multilinear interpolant are provided:

- :class:`PiecewiseLinear` evaluates a grid vector at arbitrary points
  (scipy.interpolate.RegularGridInterpolator), used by the explicit event and
  for reading results.
- :func:`interpolation_matrix` returns the sparse matrix ``W`` with
  ``W @ u = interpolant(points)``, used to couple impulse transitions
  implicitly into the linear system.

Query points are clamped to the grid's bounding box (constant extrapolation),
so every row of ``W`` is a convex combination of grid values.
"""

from __future__ import annotations

from itertools import product
from typing import TYPE_CHECKING

import numpy as np
import scipy.sparse as sp
from scipy.interpolate import RegularGridInterpolator

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import ArrayLike, NDArray

    from qvi_pde.geometry.rectilinear_grid import RectilinearGrid


def _clip_points(grid: RectilinearGrid, points: Sequence[ArrayLike]) -> list[NDArray]:
    return [np.clip(np.asarray(p, dtype=np.float64), axis[0], axis[-1]) for p, axis in zip(points, grid.axes, strict=True)]


class PiecewiseLinear:
    """
    Multilinear interpolant of a vector defined on a rectilinear grid.

    Args:
        grid: Grid the vector lives on
        vector: Flat vector of nodal values (first axis fastest)
    """

    def __init__(self, grid: RectilinearGrid, vector: NDArray):
        if vector.shape != (grid.size,):
            raise ValueError(f"Vector of shape {vector.shape} does not match grid of size {grid.size}")
        self.grid = grid
        self.vector = vector
        self._interpolator = RegularGridInterpolator(
            grid.axes,
            grid.reshape(vector),
            method="linear",
            bounds_error=False,
            fill_value=None,
        )

    def __call__(self, *points: ArrayLike) -> NDArray:
        """
        Interpolate at points given per dimension.

        Args:
            *points: One coordinate array per dimension (broadcastable)

        Returns:
            Interpolated values with the broadcast shape of the inputs
        """
        clipped = np.broadcast_arrays(*_clip_points(self.grid, points))
        shape = clipped[0].shape
        query = np.column_stack([c.ravel() for c in clipped])
        return self._interpolator(query).reshape(shape)

    def interpolate(self, point: Sequence[float]) -> float:
        """Interpolate at a single point."""
        return float(self(*[np.asarray(x) for x in point]))


def interpolation_matrix(grid: RectilinearGrid, points: Sequence[ArrayLike]) -> sp.csr_matrix:
    """
    Sparse multilinear interpolation weights.

    Args:
        grid: Grid the interpolated vector lives on
        points: One coordinate array per dimension, each of length ``n``

    Returns:
        ``(n, grid.size)`` CSR matrix ``W`` such that ``W @ u`` interpolates
        ``u`` at the (clamped) points. Rows sum to one.
    """
    clipped = np.broadcast_arrays(*_clip_points(grid, points))
    n = clipped[0].size

    lower = []
    weight = []
    for axis, x in zip(grid.axes, clipped, strict=True):
        x = x.ravel()
        if axis.size == 1:
            lower.append(np.zeros(n, dtype=np.int64))
            weight.append(np.zeros(n))
            continue
        i = np.clip(np.searchsorted(axis, x, side="right") - 1, 0, axis.size - 2)
        lower.append(i)
        weight.append((x - axis[i]) / (axis[i + 1] - axis[i]))

    rows = []
    cols = []
    vals = []
    point_rows = np.arange(n)
    for corner in product((0, 1), repeat=grid.dimension):
        col = np.zeros(n, dtype=np.int64)
        val = np.ones(n)
        for d, upper in enumerate(corner):
            if upper:
                col += np.minimum(lower[d] + 1, grid.shape[d] - 1) * grid.strides[d]
                val *= weight[d]
            else:
                col += lower[d] * grid.strides[d]
                val *= 1.0 - weight[d]
        keep = val != 0.0
        rows.append(point_rows[keep])
        cols.append(col[keep])
        vals.append(val[keep])

    return sp.csr_matrix(
        (np.concatenate(vals), (np.concatenate(rows), np.concatenate(cols))),
        shape=(n, grid.size),
    )
