"""
Implicit handling of the impulse obstacle.

The intervention operator

    M u(x) = max_z [ u(Γ(x, z)) + K(x, z) ]

is evaluated on the discrete grid by scanning the candidate impulses and
interpolating ``u`` at the transitioned states. For the maximizing candidate
at every node the interpolation weights form a sparse matrix ``W`` and the
impulse rewards a vector ``k``, so that ``M u = W u + k`` is linear once the
choice is frozen.

Given the implicit system ``K u = rhs`` of one time level (see
:mod:`.time_stepping`), the obstacle ``u >= M u`` is imposed in one of three
ways:

- **penalty**: ``(K + w P (I - W)) u = rhs + w P k`` with ``P`` the indicator
  of ``M u > u`` and ``w = 1 / scaling_factor``
- **direct**: rows where ``u - M u <= K u - rhs`` are replaced by
  ``u_i - (W u)_i = k_i``, except where the chosen jump lands on the node
  itself (such a row would be singular)
- **obstacle**: as direct, but against an obstacle ``O`` frozen beforehand
  (iterated optimal stopping); selected rows become ``u_i = O_i``

References:
    - Azimzadeh & Forsyth (2016): Weakly chained matrices, policy iteration,
      and impulse control
    - Forsyth & Vetzal (2002): Quadratic convergence for valuing American
      options using a penalty method
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

import numpy as np
import scipy.sparse as sp

from qvi_pde.geometry.interpolation import interpolation_matrix

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from qvi_pde.core.problem import HJBQVIProblem
    from qvi_pde.geometry.rectilinear_grid import RectilinearGrid


@dataclass(frozen=True)
class ImpulseChoice:
    """Maximizing impulse at every node and the linearized intervention operator."""

    value: NDArray
    controls: tuple[NDArray, ...]
    transition_matrix: sp.csr_matrix
    flow: NDArray


class ImpulseOperator:
    """
    Discrete intervention operator on a refined grid.

    Args:
        problem: Problem supplying the transition map and impulse flow
        grid: Refined spatial grid
        control_grid: Refined impulse control grid
    """

    def __init__(self, problem: HJBQVIProblem, grid: RectilinearGrid, control_grid: RectilinearGrid):
        self.problem = problem
        self.grid = grid
        self.control_grid = control_grid
        self.coordinates = grid.coordinates()

    def _transition(self, t: float, z: tuple[float, ...]) -> tuple[list[NDArray], NDArray]:
        args = (t, *self.coordinates, *z)
        states = [
            np.broadcast_to(np.asarray(gamma(*args), dtype=np.float64), (self.grid.size,))
            for gamma in self.problem.transition
        ]
        flow = np.broadcast_to(np.asarray(self.problem.impulse_flow(*args), dtype=np.float64), (self.grid.size,))
        return states, flow

    def __call__(self, t: float, u: NDArray) -> ImpulseChoice:
        """
        Evaluate ``M u`` and the maximizing impulse at every node.

        Ties keep the first candidate in grid order.

        Args:
            t: Time
            u: Current value vector

        Returns:
            ImpulseChoice with ``value == transition_matrix @ u + flow``
        """
        size = self.grid.size
        best = np.full(size, -np.inf)
        controls = [np.zeros(size) for _ in range(self.control_grid.dimension)]
        states = [self.coordinates[d].copy() for d in range(self.grid.dimension)]
        flow = np.zeros(size)

        for z in self.control_grid:
            candidate_states, candidate_flow = self._transition(t, z)
            value = interpolation_matrix(self.grid, candidate_states) @ u + candidate_flow

            better = value > best
            best[better] = value[better]
            for c, zc in enumerate(z):
                controls[c][better] = zc
            for d in range(self.grid.dimension):
                states[d][better] = candidate_states[d][better]
            flow[better] = candidate_flow[better]

        W = interpolation_matrix(self.grid, states)
        return ImpulseChoice(value=W @ u + flow, controls=tuple(controls), transition_matrix=W, flow=flow)


class ImpulseMode(Enum):
    """How the obstacle is coupled into the implicit system."""

    PENALTY = "penalty"
    DIRECT = "direct"
    OBSTACLE = "obstacle"


@dataclass(frozen=True)
class ConstrainedSystem:
    """Implicit system with the impulse obstacle imposed."""

    matrix: sp.csr_matrix
    rhs: NDArray
    mask: NDArray
    choice: ImpulseChoice


class PenaltyMethod:
    """
    Couples the impulse obstacle into an implicit system.

    Args:
        impulse: Discrete intervention operator
        mode: Penalty, direct or frozen-obstacle coupling
        scaling_factor: Penalty scale; the penalty weight is its reciprocal
    """

    def __init__(self, impulse: ImpulseOperator, mode: ImpulseMode, scaling_factor: float):
        self.impulse = impulse
        self.mode = mode
        self.scaling_factor = scaling_factor

    @property
    def weight(self) -> float:
        return 1.0 / self.scaling_factor

    def apply(
        self,
        t: float,
        K: sp.csr_matrix,
        rhs: NDArray,
        u: NDArray,
        obstacle: ImpulseChoice | None = None,
    ) -> ConstrainedSystem:
        """
        Impose the obstacle on ``K u = rhs`` linearized around ``u``.

        Args:
            t: Time of the implicit level
            K: Unconstrained system matrix
            rhs: Unconstrained right-hand side
            u: Current iterate
            obstacle: Frozen obstacle (required in obstacle mode)

        Returns:
            ConstrainedSystem with the modified matrix, right-hand side, the
            intervention mask and the impulse choice it was built from
        """
        size = u.size
        identity = sp.identity(size, format="csr")

        if self.mode is ImpulseMode.OBSTACLE:
            if obstacle is None:
                raise ValueError("Obstacle mode requires a frozen obstacle")
            choice = obstacle
        else:
            choice = self.impulse(t, u)

        if self.mode is ImpulseMode.PENALTY:
            mask = choice.value > u
            P = sp.diags(mask.astype(np.float64) * self.weight, format="csr")
            matrix = (K + P @ (identity - choice.transition_matrix)).tocsr()
            return ConstrainedSystem(matrix=matrix, rhs=rhs + P @ choice.flow, mask=mask, choice=choice)

        residual = K @ u - rhs
        mask = (u - choice.value) <= residual
        if self.mode is ImpulseMode.DIRECT:
            # A jump onto the node itself would make its row u_i - u_i = k_i
            mask &= choice.transition_matrix.diagonal() < 1.0
        keep = sp.diags((~mask).astype(np.float64), format="csr")
        take = sp.diags(mask.astype(np.float64), format="csr")

        if self.mode is ImpulseMode.DIRECT:
            rows = take @ (identity - choice.transition_matrix)
            target = choice.flow
        else:
            rows = take
            target = choice.value

        matrix = (keep @ K + rows).tocsr()
        return ConstrainedSystem(matrix=matrix, rhs=np.where(mask, target, rhs), mask=mask, choice=choice)


class StoppingPenalty:
    """
    Penalizes ``u < g`` for an early-exercise reward ``g``.

    ``(K + w P) u = rhs + w P g`` with ``P`` the indicator of ``g > u`` and
    ``w = 1 / scaling_factor``, the penalty method for American options.

    Args:
        problem: Problem supplying ``stopping_reward``
        grid: Refined spatial grid
        scaling_factor: Penalty scale; the penalty weight is its reciprocal
    """

    def __init__(self, problem: HJBQVIProblem, grid: RectilinearGrid, scaling_factor: float):
        self.problem = problem
        self.grid = grid
        self.scaling_factor = scaling_factor

    def apply(self, t: float, K: sp.csr_matrix, rhs: NDArray, u: NDArray) -> tuple[sp.csr_matrix, NDArray, NDArray]:
        """Penalized ``(matrix, rhs, exercise mask)`` linearized around ``u``."""
        reward = self.grid.image(self.problem.stopping_reward, t)
        exercise = reward > u
        P = sp.diags(exercise.astype(np.float64) / self.scaling_factor, format="csr")
        return (K + P).tocsr(), rhs + P @ reward, exercise
