"""
Policy iteration for one implicit time level.

Howard's algorithm specialized to the monotone discretization: the controls
are re-optimized node by node against the current iterate, the linear system
is re-solved with the new controls, and the loop stops once consecutive
iterates agree to the tolerance. The discrete generator is affine in the
control and an M-matrix for every admissible control, which makes the
iterates monotone.

When the impulse is implicit the penalty (or direct) obstacle is updated in
the same loop, so a single tolerance iteration resolves both controls. An
early-exercise reward is penalized in that loop as well.

Algorithm (one time level, implicit system ``K(w) u = rhs(w)``):
    1. w_k = argmin_w [ A(w) u_k - b(w) ]         (per node, first minimum wins)
    2. impose the obstacle linearized around u_k
    3. u_{k+1} = solve(K(w_k), rhs(w_k)), warm-started from u_k
    4. stop when max_i |u_{k+1} - u_k| / max(1, |u_{k+1}|) <= tolerance

References:
    - Howard, R. A. (1960). Dynamic Programming and Markov Processes
    - Forsyth & Labahn (2007): Numerical methods for controlled
      Hamilton-Jacobi-Bellman PDEs in finance
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from qvi_pde.utils.exceptions import ConvergenceError
from qvi_pde.utils.qvi_logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable

    import scipy.sparse as sp
    from numpy.typing import NDArray

    from qvi_pde.alg.numerical.hjb_qvi.controlled_operator import ControlledOperator
    from qvi_pde.alg.numerical.hjb_qvi.impulse import ImpulseChoice, PenaltyMethod, StoppingPenalty
    from qvi_pde.geometry.rectilinear_grid import RectilinearGrid
    from qvi_pde.utils.sparse_operations import LinearSolver

    SystemBuilder = Callable[[tuple[NDArray, ...] | None], tuple[sp.csr_matrix, NDArray]]

logger = get_logger(__name__)


def relative_error(a: NDArray, b: NDArray) -> float:
    """Relative change ``max_i |a_i - b_i| / max(1, |a_i|)``."""
    return float(np.max(np.abs(a - b) / np.maximum(1.0, np.abs(a))))


def improve_controls(
    operator: ControlledOperator,
    control_grid: RectilinearGrid,
    t: float,
    u: NDArray,
) -> tuple[NDArray, ...]:
    """
    Per-node control minimizing ``(A(w) u - b(w))_i`` over the candidate grid.

    Args:
        operator: Controlled generator on the refined grid
        control_grid: Candidate stochastic controls
        t: Time of the implicit level
        u: Current iterate

    Returns:
        One control array per stochastic control dimension
    """
    size = u.size
    best = np.full(size, np.inf)
    controls = [np.zeros(size) for _ in range(control_grid.dimension)]

    for w in control_grid:
        hamiltonian = operator.matrix(t, w) @ u - operator.source(t, w)
        better = hamiltonian < best
        best[better] = hamiltonian[better]
        for c, wc in enumerate(w):
            controls[c][better] = wc

    return tuple(controls)


@dataclass
class LevelSolution:
    """Outcome of the tolerance iteration at one time level."""

    u: NDArray
    controls: tuple[NDArray, ...] | None
    mask: NDArray | None
    impulse: ImpulseChoice | None
    iterations: int


class PolicyIteration:
    """
    Tolerance iteration over stochastic controls and the implicit impulse.

    Args:
        operator: Controlled generator on the refined grid
        control_grid: Candidate stochastic controls
        solver: Linear solver, owned by the enclosing solve
        penalty: Obstacle coupling, None when the impulse is not implicit
        optimize_controls: Re-optimize stochastic controls (not under
            semi-Lagrangian handling)
        tolerance: Relative tolerance between consecutive iterates
        max_iterations: Iteration cap
        stopping: Early-exercise penalty, None without a stopping reward
    """

    def __init__(
        self,
        operator: ControlledOperator,
        control_grid: RectilinearGrid,
        solver: LinearSolver,
        penalty: PenaltyMethod | None,
        optimize_controls: bool,
        tolerance: float,
        max_iterations: int,
        stopping: StoppingPenalty | None = None,
    ):
        self.operator = operator
        self.control_grid = control_grid
        self.solver = solver
        self.penalty = penalty
        self.optimize_controls = optimize_controls
        self.tolerance = tolerance
        self.max_iterations = max_iterations
        self.stopping = stopping

    @property
    def iterates(self) -> bool:
        """Whether a tolerance loop is needed at all."""
        return self.optimize_controls or self.penalty is not None or self.stopping is not None

    def _solve(self, matrix: sp.csr_matrix, rhs: NDArray, guess: NDArray) -> NDArray:
        # Refactorize only when the matrix object changed
        if matrix is not self.solver.matrix:
            self.solver.initialize(matrix)
        return self.solver.solve(rhs, guess)

    def _pass(
        self,
        t: float,
        system: SystemBuilder,
        u: NDArray,
        obstacle: ImpulseChoice | None,
    ) -> tuple[NDArray, tuple[NDArray, ...] | None, NDArray | None, ImpulseChoice | None]:
        controls = improve_controls(self.operator, self.control_grid, t, u) if self.optimize_controls else None
        matrix, rhs = system(controls)
        if self.stopping is not None:
            matrix, rhs, _ = self.stopping.apply(t, matrix, rhs, u)

        mask = None
        choice = None
        if self.penalty is not None:
            constrained = self.penalty.apply(t, matrix, rhs, u, obstacle=obstacle)
            matrix, rhs, mask, choice = constrained.matrix, constrained.rhs, constrained.mask, constrained.choice

        return self._solve(matrix, rhs, u), controls, mask, choice

    def solve(
        self,
        t: float,
        system: SystemBuilder,
        guess: NDArray,
        obstacle: ImpulseChoice | None = None,
        single_pass: bool = False,
    ) -> LevelSolution:
        """
        Solve one implicit time level.

        Args:
            t: Time of the implicit level
            system: Maps a control assignment to the unconstrained ``(K, rhs)``
            guess: Initial iterate (previous time level)
            obstacle: Frozen obstacle for iterated optimal stopping
            single_pass: Solve once without a tolerance loop

        Returns:
            LevelSolution with the converged iterate

        Raises:
            ConvergenceError: If the tolerance is not met within the cap
            SolverDivergenceError: If a linear solve fails
        """
        u = guess
        if single_pass or not self.iterates:
            u_new, controls, mask, choice = self._pass(t, system, u, obstacle)
            return LevelSolution(u=u_new, controls=controls, mask=mask, impulse=choice, iterations=1)

        history: list[float] = []
        for iteration in range(1, self.max_iterations + 1):
            u_new, controls, mask, choice = self._pass(t, system, u, obstacle)
            error = relative_error(u_new, u)
            history.append(error)
            u = u_new
            if error <= self.tolerance:
                logger.debug(f"t={t:.6g}: converged in {iteration} iterations (error {error:.2e})")
                return LevelSolution(u=u, controls=controls, mask=mask, impulse=choice, iterations=iteration)

        logger.error(f"t={t:.6g}: policy iteration stalled at error {history[-1]:.2e}")
        raise ConvergenceError(
            iterations_used=self.max_iterations,
            max_iterations=self.max_iterations,
            final_error=history[-1],
            tolerance=self.tolerance,
            solver_name="PolicyIteration",
            loop="policy",
            convergence_history=history,
        )
