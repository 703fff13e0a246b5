"""
Explicit control event applied between implicit steps.

Uses only an already solved value vector ``u`` and piecewise-linear
interpolation:

- semi-Lagrangian stochastic control: for every candidate ``w`` follow the
  characteristic to the foot point ``x + μ(w) dt`` and take
  ``a = max_w [ u(x + μ(w) dt) + f(w) dt ]``
- explicit impulse: ``b = max_z [ u(Γ(x, z)) + K(x, z) ]`` (no ``dt``, the jump
  is instantaneous)

The node intervenes when ``b >= a``; its new value is ``max(a, b)``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from qvi_pde.geometry.interpolation import PiecewiseLinear

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from qvi_pde.core.problem import HJBQVIProblem
    from qvi_pde.geometry.rectilinear_grid import RectilinearGrid


@dataclass(frozen=True)
class EventOutcome:
    """Value after the event, intervention mask and the maximizing controls."""

    value: NDArray
    mask: NDArray
    stochastic_controls: tuple[NDArray, ...] | None
    impulse_controls: tuple[NDArray, ...] | None


def _evaluate(function, args: tuple, size: int) -> NDArray:
    return np.broadcast_to(np.asarray(function(*args), dtype=np.float64), (size,))


class ExplicitEvent:
    """
    Explicit stochastic control and/or impulse on a refined grid.

    Args:
        problem: Problem supplying coefficients and handling
        grid: Refined spatial grid
        stochastic_control_grid: Refined stochastic control grid
        impulse_control_grid: Refined impulse control grid
    """

    def __init__(
        self,
        problem: HJBQVIProblem,
        grid: RectilinearGrid,
        stochastic_control_grid: RectilinearGrid,
        impulse_control_grid: RectilinearGrid,
    ):
        self.problem = problem
        self.grid = grid
        self.stochastic_control_grid = stochastic_control_grid
        self.impulse_control_grid = impulse_control_grid
        self.coordinates = grid.coordinates()
        # Controls of the previous event, kept where every foot point is dropped
        first = next(iter(stochastic_control_grid))
        self.last_stochastic_controls = tuple(np.full(grid.size, wc) for wc in first)

    def _semi_lagrangian(self, t: float, dt: float, u: PiecewiseLinear, current: NDArray):
        size = self.grid.size
        best = np.full(size, -np.inf)
        controls = [c.copy() for c in self.last_stochastic_controls]

        for w in self.stochastic_control_grid:
            args = (t, *self.coordinates, *w)
            feet = [
                x + _evaluate(mu, args, size) * dt
                for x, mu in zip(self.coordinates, self.problem.controlled_drift, strict=True)
            ]

            value = u(*feet) + _evaluate(self.problem.controlled_continuous_flow, args, size) * dt
            if self.problem.numerics.drop_semi_lagrangian_off_grid:
                value = np.where(self.grid.contains(np.stack(feet, axis=-1)), value, -np.inf)

            better = value > best
            best[better] = value[better]
            for c, wc in enumerate(w):
                controls[c][better] = wc

        # Nodes whose every foot point left the grid keep their value
        dropped = np.isneginf(best)
        best[dropped] = current[dropped]
        self.last_stochastic_controls = tuple(controls)
        return best, self.last_stochastic_controls

    def _impulse(self, t: float, u: PiecewiseLinear):
        size = self.grid.size
        best = np.full(size, -np.inf)
        controls = [np.full(size, np.nan) for _ in range(self.impulse_control_grid.dimension)]

        for z in self.impulse_control_grid:
            args = (t, *self.coordinates, *z)
            states = [_evaluate(gamma, args, size) for gamma in self.problem.transition]

            value = u(*states) + _evaluate(self.problem.impulse_flow, args, size)

            better = value > best
            best[better] = value[better]
            for c, zc in enumerate(z):
                controls[c][better] = zc

        return best, tuple(controls)

    def apply(self, t: float, dt: float, vector: NDArray) -> EventOutcome:
        """
        Apply the event to a solved value vector.

        Args:
            t: Time of the event
            dt: Length of the step the event belongs to
            vector: Solved value vector at ``t``

        Returns:
            EventOutcome with the updated value and the chosen controls
        """
        u = PiecewiseLinear(self.grid, vector)

        stochastic_controls = None
        if self.problem.handling.semi_lagrangian:
            a, stochastic_controls = self._semi_lagrangian(t, dt, u, vector)
        else:
            a = vector

        impulse_controls = None
        if self.problem.handling.explicit_impulse:
            b, impulse_controls = self._impulse(t, u)
        else:
            b = np.full(self.grid.size, -np.inf)

        mask = np.isfinite(b) & (b >= a)
        return EventOutcome(
            value=np.where(mask, b, a),
            mask=mask,
            stochastic_controls=stochastic_controls,
            impulse_controls=impulse_controls,
        )
