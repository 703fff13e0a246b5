"""
HJB-QVI solver orchestration.

:class:`HJBQVISolver` solves a frozen :class:`~qvi_pde.core.HJBQVIProblem` at a
refinement level. Each call allocates its own refined grids, generator, linear
solver and trajectory storage, so concurrent calls on one problem are
independent.

Per refinement level ``r``:
    - spatial grid refined ``r`` times (control grids too, unless disabled)
    - ``timesteps · 2^r`` constant steps, or an adaptive target ``target / 2^r``

and one of three drivers runs:
    - backward march over ``[0, T]`` (constant or adaptive steps), with an
      explicit event after each implicit step unless fully implicit
    - a single stationary solve for an infinite horizon
    - iterated optimal stopping: repeated backward sweeps until the whole
      trajectory stops changing
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

import numpy as np

from qvi_pde.alg.numerical.hjb_qvi.controlled_operator import ControlledOperator
from qvi_pde.alg.numerical.hjb_qvi.explicit_event import ExplicitEvent
from qvi_pde.alg.numerical.hjb_qvi.impulse import ImpulseMode, ImpulseOperator, PenaltyMethod, StoppingPenalty
from qvi_pde.alg.numerical.hjb_qvi.policy_iteration import PolicyIteration
from qvi_pde.alg.numerical.hjb_qvi.time_stepping import (
    AdaptiveStepper,
    ConstantStepper,
    ImplicitSystem,
    TrajectoryBuffers,
)
from qvi_pde.config.numerics import TimeDiscretization
from qvi_pde.core.result import HJBQVIResult
from qvi_pde.utils.exceptions import ConfigurationError, ConvergenceError, SolverDivergenceError
from qvi_pde.utils.progress import RichProgressBar
from qvi_pde.utils.qvi_logging import get_logger, log_solver_completion, log_solver_start
from qvi_pde.utils.sparse_operations import create_linear_solver

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from qvi_pde.alg.numerical.hjb_qvi.explicit_event import EventOutcome
    from qvi_pde.alg.numerical.hjb_qvi.policy_iteration import LevelSolution
    from qvi_pde.core.problem import HJBQVIProblem

logger = get_logger(__name__)


class HJBQVISolver:
    """
    Solves an HJB-QVI problem at a given refinement level.

    Args:
        problem: Validated, immutable problem

    Example:
        >>> result = HJBQVISolver(problem).solve(refinement=2)
        >>> result.value_at([100.0])
    """

    name = "HJBQVISolver"

    def __init__(self, problem: HJBQVIProblem):
        self.problem = problem

    def solve(self, refinement: int = 0) -> HJBQVIResult:
        """
        Solve at a refinement level.

        Args:
            refinement: Number of grid halvings (non-negative)

        Returns:
            HJBQVIResult for this level

        Raises:
            ConfigurationError: If ``refinement`` is negative
            ConvergenceError: If a fixed-point loop exceeds its cap
            SolverDivergenceError: If a linear solve fails
        """
        if refinement < 0:
            raise ConfigurationError("refinement", refinement, reason="must be non-negative", solver_name=self.name)
        return _RefinementRun(self.problem, refinement).run()


class _RefinementRun:
    """Working state of one ``solve(refinement)`` call."""

    def __init__(self, problem: HJBQVIProblem, refinement: int):
        self.problem = problem
        self.refinement = refinement
        handling = problem.handling
        numerics = problem.numerics

        self.grid = problem.spatial_grid.refined(refinement)
        self.stochastic_control_grid = problem.stochastic_control_grid.refined(
            refinement if numerics.refine_stochastic_control_grid else 0
        )
        self.impulse_control_grid = problem.impulse_control_grid.refined(
            refinement if numerics.refine_impulse_control_grid else 0
        )

        self.timesteps = problem.timesteps * 2**refinement
        self.target = None
        if numerics.adaptive:
            self.target = numerics.target_timestep_relative_error / 2**refinement
        self.dt = problem.expiry / self.timesteps if problem.finite_horizon else np.nan

        self.operator = ControlledOperator(problem, self.grid)
        self.system = ImplicitSystem(self.operator, self.operator.memoized(), problem.finite_horizon)
        self.solver = create_linear_solver(
            numerics.linear_solver,
            tol=numerics.solver_tolerance,
            max_iter=numerics.solver_max_iterations,
        )

        self.impulse = None
        penalty = None
        if not handling.explicit_impulse:
            self.impulse = ImpulseOperator(problem, self.grid, self.impulse_control_grid)
            if handling.iterated_optimal_stopping:
                mode = ImpulseMode.OBSTACLE
            elif handling.direct:
                mode = ImpulseMode.DIRECT
            else:
                mode = ImpulseMode.PENALTY
            penalty = PenaltyMethod(self.impulse, mode, numerics.scaling_factor)

        stopping = None
        if problem.stopping_reward is not None:
            stopping = StoppingPenalty(problem, self.grid, numerics.scaling_factor)

        self.policy = PolicyIteration(
            self.operator,
            self.stochastic_control_grid,
            self.solver,
            penalty,
            optimize_controls=not handling.semi_lagrangian,
            tolerance=numerics.iteration_tolerance,
            max_iterations=numerics.max_inner_iterations,
            stopping=stopping,
        )

        self.event = None
        if not handling.fully_implicit:
            self.event = ExplicitEvent(problem, self.grid, self.stochastic_control_grid, self.impulse_control_grid)

        self.inner_iterations: list[int] = []
        self.realized_timesteps = 0

    def _configuration(self) -> dict:
        numerics = self.problem.numerics
        return {
            "refinement": self.refinement,
            "nodes": self.grid.size,
            "stochastic_control_nodes": self.stochastic_control_grid.size,
            "impulse_control_nodes": self.impulse_control_grid.size,
            "handling": self.problem.handling.value,
            "timesteps": self.timesteps if self.problem.finite_horizon else 0,
            "adaptive_target": self.target,
            "linear_solver": numerics.linear_solver.value,
            "time_discretization": numerics.time_discretization.value,
            "early_exercise": self.problem.stopping_reward is not None,
        }

    def run(self) -> HJBQVIResult:
        log_solver_start(logger, HJBQVISolver.name, self._configuration())
        start = time.perf_counter()

        u0 = self.grid.image(self.problem.exit_function, self.problem.expiry)

        event = None
        if not self.problem.finite_horizon:
            level = self._stationary(u0)
            solution = level.u
        elif self.problem.handling.iterated_optimal_stopping:
            solution, level = self._iterated_optimal_stopping(u0)
        else:
            solution, level, event = self._march(u0)

        seconds = time.perf_counter() - start
        result = self._result(solution, level, event, seconds)
        log_solver_completion(
            logger, HJBQVISolver.name, result.timesteps, result.mean_inner_iterations, result.execution_time_seconds
        )
        return result

    def _stationary(self, u0: NDArray) -> LevelSolution:
        builder = self.system.builder(0.0, np.nan, [u0])
        try:
            level = self.policy.solve(0.0, builder, guess=u0)
        except SolverDivergenceError as exc:
            logger.error(f"Stationary solve failed: {exc.reason}")
            raise
        self.inner_iterations.append(level.iterations)
        return level

    def _march(self, u0: NDArray) -> tuple[NDArray, LevelSolution, EventOutcome | None]:
        numerics = self.problem.numerics
        if numerics.adaptive:
            stepper = AdaptiveStepper(self.problem.expiry, self.problem.expiry / self.timesteps, self.target)
        else:
            stepper = ConstantStepper(self.problem.expiry, self.timesteps)

        bdf2 = numerics.time_discretization is TimeDiscretization.BDF2
        u = u0
        history = [u0]
        level = None
        outcome = None

        total = None if numerics.adaptive else self.timesteps
        with RichProgressBar(total=total, desc="Backward sweep", disable=not numerics.show_progress) as progress:
            for step in stepper:
                order = 2 if bdf2 and len(history) >= 2 else 1
                builder = self.system.builder(step.t_end, step.dt, history, order)
                try:
                    level = self.policy.solve(step.t_end, builder, guess=u)
                except SolverDivergenceError as exc:
                    logger.error(f"Linear solve failed at timestep {step.index}: {exc.reason}")
                    raise exc.at_timestep(step.index) from exc
                self.inner_iterations.append(level.iterations)

                u_new = level.u
                if self.event is not None:
                    outcome = self.event.apply(step.t_end, step.dt, u_new)
                    u_new = outcome.value

                stepper.accept(u_new, u)
                if numerics.adaptive:
                    logger.debug(f"Step {step.index}: t={step.t_end:.6g}, dt={step.dt:.3e}, next dt={stepper.dt:.3e}")

                history = [u_new, *history][:2]
                u = u_new
                progress.update(1)
                progress.set_postfix(t=f"{step.t_end:.4g}", its=level.iterations)

        self.realized_timesteps = stepper.timesteps
        return u, level, outcome

    def _iterated_optimal_stopping(self, u0: NDArray) -> tuple[NDArray, LevelSolution]:
        numerics = self.problem.numerics
        expiry = self.problem.expiry
        N = self.timesteps

        plain = PolicyIteration(
            self.operator,
            self.stochastic_control_grid,
            self.solver,
            None,
            optimize_controls=True,
            tolerance=numerics.iteration_tolerance,
            max_iterations=numerics.max_inner_iterations,
        )

        buffers = TrajectoryBuffers(N)
        first = True
        sweeps = 0
        level = None
        history: list[float] = []

        while True:
            buffers.current[0] = u0
            for n in range(1, N + 1):
                t_implicit = expiry * (1.0 - n / N)
                previous = buffers.current[n - 1] if first else buffers.previous[n]
                builder = self.system.builder(t_implicit, self.dt, [buffers.current[n - 1]])
                try:
                    if first:
                        level = plain.solve(t_implicit, builder, guess=previous, single_pass=True)
                    else:
                        obstacle = self.impulse(t_implicit, previous)
                        level = self.policy.solve(
                            t_implicit, builder, guess=previous, obstacle=obstacle, single_pass=True
                        )
                except SolverDivergenceError as exc:
                    logger.error(f"Linear solve failed at timestep {n} of sweep {sweeps + 1}: {exc.reason}")
                    raise exc.at_timestep(n) from exc
                buffers.current[n] = level.u

            sweeps += 1
            if first:
                # The first sweep has nothing to compare against
                converged = False
                first = False
            else:
                errors = buffers.slice_errors()
                history.append(max(errors))
                converged = all(error <= numerics.iteration_tolerance for error in errors)
                logger.debug(f"Sweep {sweeps}: max slice error {history[-1]:.2e}")

            buffers.rotate()
            if converged:
                break
            if sweeps >= numerics.max_outer_iterations:
                logger.error(f"Iterated optimal stopping did not converge in {sweeps} sweeps")
                raise ConvergenceError(
                    iterations_used=sweeps,
                    max_iterations=numerics.max_outer_iterations,
                    final_error=history[-1] if history else float("inf"),
                    tolerance=numerics.iteration_tolerance,
                    solver_name=HJBQVISolver.name,
                    loop="iterated optimal stopping",
                    convergence_history=history,
                )

        self.inner_iterations = [sweeps]
        self.realized_timesteps = N
        return buffers.previous[N], level

    def _result(
        self,
        solution: NDArray,
        level: LevelSolution,
        event: EventOutcome | None,
        seconds: float,
    ) -> HJBQVIResult:
        handling = self.problem.handling
        numerics = self.problem.numerics
        size = self.grid.size

        if handling.semi_lagrangian:
            stochastic = event.stochastic_controls
        else:
            stochastic = level.controls
        if handling.explicit_impulse:
            impulse = event.impulse_controls
            mask = event.mask
        else:
            impulse = level.impulse.controls
            mask = level.mask

        stochastic = [np.array(c, dtype=np.float64) for c in stochastic]
        impulse = [np.array(c, dtype=np.float64) for c in impulse]
        mask = np.asarray(mask, dtype=bool)

        # Only the active regime keeps its control
        for vector in stochastic:
            vector[mask] = np.nan
        for vector in impulse:
            vector[~mask] = np.nan

        if handling.fully_explicit:
            scaling_factor = np.nan
            iteration_tolerance = np.nan
            mean_inner_iterations = np.nan
        else:
            scaling_factor = numerics.scaling_factor * (self.dt if self.problem.finite_horizon else 1.0)
            iteration_tolerance = numerics.iteration_tolerance
            mean_inner_iterations = float(np.mean(self.inner_iterations)) if self.inner_iterations else np.nan

        return HJBQVIResult(
            spatial_grid=self.grid,
            stochastic_control_grid=self.stochastic_control_grid,
            impulse_control_grid=self.impulse_control_grid,
            solution_vector=np.array(solution, dtype=np.float64).reshape(size),
            stochastic_control_vectors=tuple(stochastic),
            impulse_control_vectors=tuple(impulse),
            timesteps=self.realized_timesteps if self.problem.finite_horizon else 0,
            scaling_factor=scaling_factor,
            iteration_tolerance=iteration_tolerance,
            mean_inner_iterations=mean_inner_iterations,
            mean_solver_iterations=self.solver.mean_iterations,
            execution_time_seconds=seconds,
        )
