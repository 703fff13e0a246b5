"""
Unit tests for the explicit control event.
"""

import numpy as np

from qvi_pde.alg.numerical.hjb_qvi import ExplicitEvent
from qvi_pde.core import ImpulseScheme, StochasticControlScheme


def make_event(problem):
    return ExplicitEvent(
        problem, problem.spatial_grid, problem.stochastic_control_grid, problem.impulse_control_grid
    )


class TestExplicitImpulse:
    def test_ties_intervene(self, reset_builder):
        problem = reset_builder().handling(StochasticControlScheme.PENALTY, ImpulseScheme.EXPLICIT).build()
        x = problem.spatial_grid[0]
        u = -0.4 * (x - 0.5) ** 2

        outcome = make_event(problem).apply(0.5, 0.1, u)

        # u(0) = u(0.5) - cost exactly
        assert outcome.mask[0] and outcome.mask[-1]
        assert not outcome.mask[1:-1].any()
        np.testing.assert_allclose(outcome.value, np.maximum(u, -0.1))
        assert outcome.impulse_controls[0][0] == 0.5
        assert outcome.stochastic_controls is None

    def test_no_intervention_when_flat(self, reset_builder):
        problem = reset_builder().handling(StochasticControlScheme.PENALTY, ImpulseScheme.EXPLICIT).build()
        outcome = make_event(problem).apply(0.5, 0.1, np.ones(11))
        assert not outcome.mask.any()
        np.testing.assert_array_equal(outcome.value, 1.0)


class TestSemiLagrangian:
    def test_follows_characteristics(self, reset_builder):
        problem = reset_builder(volatility=0.0).use_semi_lagrangian_scheme().build()
        x = problem.spatial_grid[0]
        u = x.copy()
        dt = 0.2

        outcome = make_event(problem).apply(0.5, dt, u)

        # Moving right is best wherever the foot stays on the grid
        interior = x + 0.25 * dt <= 1.0
        np.testing.assert_array_equal(outcome.stochastic_controls[0][interior], 0.25)
        expected = np.minimum(x + 0.25 * dt, 1.0) - 4.0 * (x - 0.5) ** 2 * dt
        np.testing.assert_allclose(outcome.value[~outcome.mask], expected[~outcome.mask])

    def test_off_grid_feet_are_dropped(self, reset_builder):
        problem = reset_builder().use_semi_lagrangian_scheme().ignore_extrapolatory_controls().build()
        outcome = make_event(problem).apply(0.5, 10.0, np.zeros(11))
        # Only the zero control keeps every foot on the grid
        np.testing.assert_array_equal(outcome.stochastic_controls[0], 0.0)

    def test_fully_dropped_nodes_keep_value_and_first_control(self, reset_builder):
        problem = (
            reset_builder()
            .stochastic_control_axes([[-0.25, 0.25]])
            .use_semi_lagrangian_scheme()
            .ignore_extrapolatory_controls()
            .build()
        )
        outcome = make_event(problem).apply(0.5, 10.0, np.zeros(11))
        np.testing.assert_array_equal(outcome.stochastic_controls[0], -0.25)
        assert not outcome.mask.any()
        np.testing.assert_array_equal(outcome.value, 0.0)

    def test_fully_dropped_nodes_keep_previous_control(self, reset_builder):
        problem = (
            reset_builder(volatility=0.0)
            .stochastic_control_axes([[-0.25, 0.25]])
            .use_semi_lagrangian_scheme()
            .ignore_extrapolatory_controls()
            .build()
        )
        event = make_event(problem)
        x = problem.spatial_grid[0]
        first = event.apply(0.5, 0.2, x.copy())
        # Moving right pays off wherever the foot stays on the grid
        assert (first.stochastic_controls[0][x <= 0.95] == 0.25).all()

        second = event.apply(0.5, 10.0, x.copy())
        np.testing.assert_array_equal(second.stochastic_controls[0], first.stochastic_controls[0])
        assert not np.isnan(second.stochastic_controls[0]).any()
