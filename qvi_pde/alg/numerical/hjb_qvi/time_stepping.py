"""
Backward time stepping for the HJB-QVI solver.

The value function is integrated from ``t = T`` down to ``t = 0``. Every step
``[t_n, t_{n+1}]`` solves an implicit system at the older time ``t_n``:

    BDF1:  (I + dt A) u^n = u^{n+1} + dt b
    BDF2:  (3/2 I + dt A) u^n = 2 u^{n+1} - 1/2 u^{n+2} + dt b

BDF2 takes a BDF1 start-up step. Infinite-horizon problems have no time
derivative and solve ``A u = b`` once.

Two steppers choose the step sizes:

- :class:`ConstantStepper`: ``dt = T / N``
- :class:`AdaptiveStepper`: the next step is scaled so that the relative
  change per step stays near a target,

      dt_new = dt · target / max_i ( |u^n_i - u^{n+1}_i| / max(1, |u^n_i|, |u^{n+1}_i|) )

Both move through the states ``NOT_STARTED -> AT_STEP(n) -> DONE``.

:class:`TrajectoryBuffers` holds the two full backward trajectories used by
iterated optimal stopping.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

import numpy as np
import scipy.sparse as sp

from qvi_pde.alg.numerical.hjb_qvi.controlled_operator import Cached
from qvi_pde.alg.numerical.hjb_qvi.policy_iteration import relative_error

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

    from numpy.typing import NDArray

    from qvi_pde.alg.numerical.hjb_qvi.controlled_operator import ControlledOperator, GeneratorMemo
    from qvi_pde.alg.numerical.hjb_qvi.policy_iteration import SystemBuilder

# order -> (scale of u^n, weights of u^{n+1}, u^{n+2}, ...)
BDF_COEFFICIENTS: dict[int, tuple[float, tuple[float, ...]]] = {
    1: (1.0, (1.0,)),
    2: (1.5, (2.0, -0.5)),
}


class StepperState(Enum):
    NOT_STARTED = "not_started"
    AT_STEP = "at_step"
    DONE = "done"


@dataclass(frozen=True)
class TimeStep:
    """One backward step from ``t_start`` down to ``t_end``."""

    index: int
    t_start: float
    t_end: float

    @property
    def dt(self) -> float:
        return self.t_start - self.t_end


class ConstantStepper:
    """
    Equal steps ``dt = expiry / timesteps``.

    Args:
        expiry: Terminal time
        timesteps: Number of steps
    """

    def __init__(self, expiry: float, timesteps: int):
        self.expiry = expiry
        self.timesteps = timesteps
        self.state = StepperState.NOT_STARTED
        self.index = 0

    @property
    def dt(self) -> float:
        return self.expiry / self.timesteps

    def next_step(self) -> TimeStep | None:
        """Advance to the next step, or return None once ``t = 0`` is reached."""
        if self.state is StepperState.DONE or self.index == self.timesteps:
            self.state = StepperState.DONE
            return None
        self.index += 1
        self.state = StepperState.AT_STEP
        n = self.index
        return TimeStep(
            index=n,
            t_start=self.expiry * (1.0 - (n - 1) / self.timesteps),
            t_end=self.expiry * (1.0 - n / self.timesteps),
        )

    def accept(self, u_new: NDArray, u_old: NDArray) -> None:
        """Constant steps ignore the solution."""

    def __iter__(self) -> Iterator[TimeStep]:
        while True:
            step = self.next_step()
            if step is None:
                return
            yield step


def adaptive_timestep(dt: float, target: float, u_new: NDArray, u_old: NDArray) -> float:
    """
    Step size that keeps the relative change per step near ``target``.

    Returns ``inf`` when the solution did not change, leaving the clamp to the
    remaining horizon to the stepper.
    """
    scale = np.maximum(1.0, np.maximum(np.abs(u_new), np.abs(u_old)))
    change = float(np.max(np.abs(u_new - u_old) / scale))
    if change == 0.0:
        return np.inf
    return dt * target / change


class AdaptiveStepper(ConstantStepper):
    """
    Variable steps driven by the relative change of the solution.

    Args:
        expiry: Terminal time
        initial_dt: First step size
        target: Target relative change per step
    """

    def __init__(self, expiry: float, initial_dt: float, target: float):
        super().__init__(expiry, timesteps=0)
        self.target = target
        self.time = expiry
        self._dt = initial_dt
        self._current: TimeStep | None = None

    @property
    def dt(self) -> float:
        return self._dt

    def next_step(self) -> TimeStep | None:
        if self.state is StepperState.DONE or self.time <= 0.0:
            self.state = StepperState.DONE
            return None
        dt = min(self._dt, self.time)
        t_end = 0.0 if dt >= self.time else self.time - dt
        self.index += 1
        self.timesteps = self.index
        self.state = StepperState.AT_STEP
        self._current = TimeStep(index=self.index, t_start=self.time, t_end=t_end)
        self.time = t_end
        return self._current

    def accept(self, u_new: NDArray, u_old: NDArray) -> None:
        """Choose the next step size from the change over the current step."""
        self._dt = adaptive_timestep(self._current.dt, self.target, u_new, u_old)


class ImplicitSystem:
    """
    Builds ``(K, rhs)`` of one implicit time level for a control assignment.

    Args:
        operator: Controlled generator on the refined grid
        generator: Generator lookup (cached or recomputed)
        finite_horizon: False for ``A u = b``
    """

    def __init__(self, operator: ControlledOperator, generator: GeneratorMemo, finite_horizon: bool):
        self.operator = operator
        self.generator = generator
        self.finite_horizon = finite_horizon
        self.identity = sp.identity(operator.grid.size, format="csr")
        self._time_matrices: dict[tuple[float, float], sp.csr_matrix] = {}

    def _time_matrix(self, A: sp.csr_matrix, dt: float, scale: float) -> sp.csr_matrix:
        cacheable = isinstance(self.generator, Cached)
        key = (dt, scale)
        if cacheable and key in self._time_matrices:
            return self._time_matrices[key]
        K = (scale * self.identity + dt * A).tocsr()
        if cacheable:
            self._time_matrices[key] = K
        return K

    def builder(self, t: float, dt: float, history: Sequence[NDArray], order: int = 1) -> SystemBuilder:
        """
        System builder for the level at time ``t``.

        Args:
            t: Time of the implicit level
            dt: Step size
            history: Previous solutions, most recent first (at least ``order``)
            order: BDF order

        Returns:
            Callable mapping a control assignment to ``(K, rhs)``
        """
        if not self.finite_horizon:

            def stationary(controls):
                return self.generator(t, controls), self.operator.source(t, controls)

            return stationary

        scale, weights = BDF_COEFFICIENTS[order]
        known = sum(w * u for w, u in zip(weights, history, strict=False))

        def build(controls):
            A = self.generator(t, controls)
            return self._time_matrix(A, dt, scale), known + dt * self.operator.source(t, controls)

        return build


@dataclass
class TrajectoryBuffers:
    """
    Two full backward trajectories for iterated optimal stopping.

    ``current`` is filled by the sweep in progress, ``previous`` holds the
    completed sweep before it (None during the first sweep).
    """

    timesteps: int
    current: list[NDArray | None] = field(default_factory=list)
    previous: list[NDArray | None] | None = None

    def __post_init__(self):
        if not self.current:
            self.current = [None] * (self.timesteps + 1)

    def rotate(self) -> None:
        """Finish a sweep: the current trajectory becomes the previous one."""
        self.previous = self.current
        self.current = [None] * (self.timesteps + 1)

    def slice_errors(self) -> list[float]:
        """Relative change of every slice between the last two sweeps."""
        return [relative_error(a, b) for a, b in zip(self.current, self.previous, strict=True)]
