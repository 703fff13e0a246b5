"""
Unit tests for steppers, BDF systems and trajectory buffers.
"""

import pytest

import numpy as np
import scipy.sparse as sp

from qvi_pde.alg.numerical.hjb_qvi import (
    AdaptiveStepper,
    Cached,
    ConstantStepper,
    ControlledOperator,
    ImplicitSystem,
    StepperState,
    TrajectoryBuffers,
    adaptive_timestep,
)

# =============================================================================
# Steppers
# =============================================================================


class TestConstantStepper:
    def test_steps_backward_to_zero(self):
        stepper = ConstantStepper(expiry=2.0, timesteps=4)
        steps = list(stepper)
        assert [s.index for s in steps] == [1, 2, 3, 4]
        assert steps[0].t_start == 2.0
        assert steps[-1].t_end == 0.0
        np.testing.assert_allclose([s.dt for s in steps], 0.5)
        assert stepper.state is StepperState.DONE

    def test_state_transitions(self):
        stepper = ConstantStepper(expiry=1.0, timesteps=1)
        assert stepper.state is StepperState.NOT_STARTED
        stepper.next_step()
        assert stepper.state is StepperState.AT_STEP
        assert stepper.next_step() is None
        assert stepper.state is StepperState.DONE
        assert stepper.next_step() is None


class TestAdaptiveStepper:
    def test_adaptive_timestep_scales_with_change(self):
        u_old = np.zeros(3)
        u_new = np.array([0.0, 0.2, 0.1])
        assert adaptive_timestep(0.1, 0.05, u_new, u_old) == pytest.approx(0.1 * 0.05 / 0.2)

    def test_relative_change_uses_larger_magnitude(self):
        u_old = np.array([10.0])
        u_new = np.array([12.0])
        assert adaptive_timestep(1.0, 0.1, u_new, u_old) == pytest.approx(0.1 / (2.0 / 12.0))

    def test_no_change_gives_infinite_step(self):
        u = np.ones(4)
        assert adaptive_timestep(0.1, 0.05, u, u) == np.inf

    def test_last_step_is_clamped_to_zero(self):
        stepper = AdaptiveStepper(expiry=1.0, initial_dt=0.3, target=0.1)
        times = []
        for step in stepper:
            times.append(step.t_end)
            # A constant relative change of the target keeps dt at 0.3
            stepper.accept(np.full(2, 0.1), np.zeros(2))
        assert times[-1] == 0.0
        assert stepper.timesteps == len(times) == 4
        np.testing.assert_allclose(times[:3], [0.7, 0.4, 0.1])

    def test_infinite_step_finishes_horizon(self):
        stepper = AdaptiveStepper(expiry=1.0, initial_dt=0.25, target=0.1)
        step = stepper.next_step()
        stepper.accept(np.ones(2), np.ones(2))
        last = stepper.next_step()
        assert last.t_start == step.t_end
        assert last.t_end == 0.0
        assert stepper.next_step() is None


# =============================================================================
# Implicit systems
# =============================================================================


class TestImplicitSystem:
    def test_bdf1(self, reset_problem):
        operator = ControlledOperator(reset_problem, reset_problem.spatial_grid)
        system = ImplicitSystem(operator, operator.memoized(), finite_horizon=True)
        u1 = np.linspace(0.0, 1.0, 11)

        K, rhs = system.builder(0.5, 0.1, [u1])((0.25,))

        A = operator.matrix(0.5, (0.25,))
        np.testing.assert_allclose(K.toarray(), (sp.identity(11) + 0.1 * A).toarray())
        np.testing.assert_allclose(rhs, u1 + 0.1 * operator.source(0.5, (0.25,)))

    def test_bdf2(self, reset_problem):
        operator = ControlledOperator(reset_problem, reset_problem.spatial_grid)
        system = ImplicitSystem(operator, operator.memoized(), finite_horizon=True)
        u1 = np.linspace(0.0, 1.0, 11)
        u2 = np.ones(11)

        K, rhs = system.builder(0.5, 0.1, [u1, u2], order=2)((0.0,))

        A = operator.matrix(0.5, (0.0,))
        np.testing.assert_allclose(K.toarray(), (1.5 * sp.identity(11) + 0.1 * A).toarray())
        np.testing.assert_allclose(rhs, 2.0 * u1 - 0.5 * u2 + 0.1 * operator.source(0.5, (0.0,)))

    def test_stationary(self, reset_problem):
        operator = ControlledOperator(reset_problem, reset_problem.spatial_grid)
        system = ImplicitSystem(operator, operator.memoized(), finite_horizon=False)
        K, rhs = system.builder(0.0, np.nan, [np.zeros(11)])((0.0,))
        np.testing.assert_allclose(K.toarray(), operator.matrix(0.0, (0.0,)).toarray())
        np.testing.assert_allclose(rhs, operator.source(0.0, (0.0,)))

    def test_cached_generator_reuses_system_matrix(self, reset_builder):
        problem = reset_builder().use_semi_lagrangian_scheme().coefficients_are_time_independent().build()
        operator = ControlledOperator(problem, problem.spatial_grid)
        memo = operator.memoized()
        assert isinstance(memo, Cached)
        system = ImplicitSystem(operator, memo, finite_horizon=True)
        K1, _ = system.builder(0.5, 0.1, [np.zeros(11)])(None)
        K2, _ = system.builder(0.4, 0.1, [np.ones(11)])(None)
        assert K1 is K2


# =============================================================================
# Trajectory buffers
# =============================================================================


class TestTrajectoryBuffers:
    def test_rotate(self):
        buffers = TrajectoryBuffers(timesteps=2)
        assert buffers.current == [None, None, None]
        assert buffers.previous is None

        buffers.current = [np.zeros(2), np.ones(2), np.full(2, 2.0)]
        filled = buffers.current
        buffers.rotate()
        assert buffers.previous is filled
        assert buffers.current == [None, None, None]

    def test_slice_errors(self):
        buffers = TrajectoryBuffers(timesteps=1)
        buffers.previous = [np.zeros(2), np.array([1.0, 2.0])]
        buffers.current = [np.zeros(2), np.array([1.0, 2.5])]
        np.testing.assert_allclose(buffers.slice_errors(), [0.0, 0.2])
