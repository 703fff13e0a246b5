"""
Rectilinear (tensor-product) grids for the HJB-QVI discretization.

A rectilinear grid in D dimensions is the Cartesian product of D strictly
increasing, possibly non-uniform, coordinate axes:

    G = x_0 × x_1 × ... × x_{D-1}

Nodes are numbered with the first dimension varying fastest,

    row = Σ_d i_d · stride_d,   stride_0 = 1,   stride_d = stride_{d-1} · N_{d-1}

so that vectors over the grid are flat numpy arrays in Fortran order. The same
class serves the spatial grid and the stochastic / impulse control grids.

Refinement inserts the midpoint of every interval, once per level, so that a
grid refined ``k`` times has ``(N-1)·2^k + 1`` nodes per axis.

References:
    - Forsyth & Labahn (2007): Numerical methods for controlled
      Hamilton-Jacobi-Bellman PDEs in finance
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator, Sequence

    from numpy.typing import ArrayLike, NDArray


class RectilinearGrid:
    """
    Tensor-product grid built from 1D coordinate axes.

    Attributes:
        axes: Tuple of strictly increasing 1D coordinate arrays
        dimension: Number of axes
        shape: Number of nodes along each axis
        size: Total number of nodes
        strides: Flat-index stride of each axis (first axis fastest)

    Example:
        >>> grid = RectilinearGrid([np.linspace(0, 1, 5), [0.0, 0.5, 2.0]])
        >>> grid.size
        15
        >>> grid.refined(1).shape
        (9, 5)
    """

    def __init__(self, axes: Sequence[ArrayLike]):
        """
        Initialize rectilinear grid.

        Args:
            axes: One coordinate array per dimension. A scalar is treated as a
                single-node axis.

        Raises:
            ValueError: If no axes are given, or an axis is empty or not
                strictly increasing
        """
        if len(axes) < 1:
            raise ValueError("A grid needs at least one axis")

        normalized = []
        for d, axis in enumerate(axes):
            array = np.atleast_1d(np.asarray(axis, dtype=np.float64)).copy()
            if array.ndim != 1 or array.size == 0:
                raise ValueError(f"Axis {d} must be a non-empty 1D array")
            if np.any(np.diff(array) <= 0):
                raise ValueError(f"Axis {d} must be strictly increasing")
            array.setflags(write=False)
            normalized.append(array)

        self.axes: tuple[NDArray, ...] = tuple(normalized)
        self.dimension = len(self.axes)
        self.shape = tuple(axis.size for axis in self.axes)
        self.size = int(np.prod(self.shape))
        self.strides = tuple(int(np.prod(self.shape[:d])) for d in range(self.dimension))

    def __getitem__(self, d: int) -> NDArray:
        return self.axes[d]

    def __len__(self) -> int:
        return self.size

    def __iter__(self) -> Iterator[tuple[float, ...]]:
        """Iterate over node coordinates in flat order."""
        coordinates = self.coordinates()
        for row in range(self.size):
            yield tuple(float(c[row]) for c in coordinates)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RectilinearGrid):
            return NotImplemented
        return self.shape == other.shape and all(
            np.array_equal(a, b) for a, b in zip(self.axes, other.axes, strict=True)
        )

    def __hash__(self) -> int:
        return hash(tuple(axis.tobytes() for axis in self.axes))

    def __repr__(self) -> str:
        return f"RectilinearGrid(shape={self.shape})"

    @property
    def bounds(self) -> list[tuple[float, float]]:
        """(min, max) of each axis."""
        return [(float(axis[0]), float(axis[-1])) for axis in self.axes]

    def refined(self, levels: int) -> RectilinearGrid:
        """
        Return a new grid with every interval halved ``levels`` times.

        Args:
            levels: Number of midpoint insertions (0 returns an equal grid)

        Returns:
            Refined grid
        """
        if levels < 0:
            raise ValueError(f"Refinement level must be non-negative, got {levels}")

        axes = []
        for axis in self.axes:
            refined = axis
            for _ in range(levels):
                if refined.size < 2:
                    break
                midpoints = 0.5 * (refined[:-1] + refined[1:])
                merged = np.empty(2 * refined.size - 1)
                merged[0::2] = refined
                merged[1::2] = midpoints
                refined = merged
            axes.append(refined)
        return RectilinearGrid(axes)

    def multi_index(self, rows: ArrayLike | None = None) -> tuple[NDArray, ...]:
        """
        Per-dimension node indices of flat rows.

        Args:
            rows: Flat row indices (all rows if None)

        Returns:
            Tuple of integer arrays ``(i_0, ..., i_{D-1})``
        """
        if rows is None:
            rows = np.arange(self.size)
        return np.unravel_index(np.asarray(rows), self.shape, order="F")

    def coordinates(self, rows: ArrayLike | None = None) -> tuple[NDArray, ...]:
        """Per-dimension node coordinates of flat rows (all rows if None)."""
        index = self.multi_index(rows)
        return tuple(axis[i] for axis, i in zip(self.axes, index, strict=True))

    def nodes(self) -> NDArray:
        """All node coordinates as a ``(size, dimension)`` array."""
        return np.column_stack(self.coordinates())

    def zeros(self) -> NDArray:
        """Zero vector sized to the grid."""
        return np.zeros(self.size)

    def image(self, function: Callable[..., ArrayLike], *leading: float) -> NDArray:
        """
        Evaluate a function at every node.

        The function is called once with coordinate arrays,
        ``function(*leading, x_0, ..., x_{D-1})``; a scalar return is broadcast.

        Args:
            function: Vectorized function of the node coordinates
            *leading: Arguments passed before the coordinates (e.g. time)

        Returns:
            Flat vector of function values
        """
        values = function(*leading, *self.coordinates())
        return np.broadcast_to(np.asarray(values, dtype=np.float64), (self.size,)).copy()

    def reshape(self, vector: NDArray) -> NDArray:
        """View a flat grid vector as an array of shape :attr:`shape`."""
        return np.reshape(vector, self.shape, order="F")

    def contains(self, points: NDArray) -> NDArray:
        """
        Whether points lie inside the grid's bounding box.

        Args:
            points: Array of shape ``(..., dimension)``

        Returns:
            Boolean array of shape ``(...)``
        """
        inside = np.ones(points.shape[:-1], dtype=bool)
        for d, (low, high) in enumerate(self.bounds):
            inside &= (points[..., d] >= low) & (points[..., d] <= high)
        return inside
