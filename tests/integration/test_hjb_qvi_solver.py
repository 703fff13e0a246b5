"""
Integration tests for HJBQVISolver.

Tests complete solves of the reset problem under every handling, the
stationary and adaptive drivers and the bookkeeping of HJBQVIResult.
"""

import pytest

import numpy as np

from qvi_pde import ConfigurationError, HJBQVIProblemBuilder, HJBQVISolver
from qvi_pde.core import ImpulseScheme, StochasticControlScheme


def assert_controls_exclusive(result):
    """Stochastic controls live off the intervention region, impulses on it."""
    mask = result.intervention_mask
    for vector in result.stochastic_control_vectors:
        np.testing.assert_array_equal(np.isnan(vector), mask)
    for vector in result.impulse_control_vectors:
        np.testing.assert_array_equal(np.isnan(vector), ~mask)


# =============================================================================
# Penalized, fully implicit
# =============================================================================


class TestPenalizedSolve:
    def test_regions(self, reset_problem):
        result = reset_problem.solve()
        mask = result.intervention_mask
        # Far from the centre it pays to jump, at the centre it does not
        assert mask[0] and mask[-1]
        assert not mask[5]
        assert_controls_exclusive(result)
        np.testing.assert_allclose(result.impulse_control_vectors[0][mask], 0.5)

    def test_value_bounds(self, reset_problem):
        result = reset_problem.solve()
        u = result.solution_vector
        assert np.all(np.isfinite(u))
        assert np.all(u <= 0.0)
        # Edges are worth at most the centre minus the jump cost
        assert u[0] <= u[5] - 0.1 + 1e-2

    def test_diagnostics(self, reset_problem):
        result = reset_problem.solve(refinement=1)
        assert result.timesteps == 16
        assert result.scaling_factor == pytest.approx(1e-2 / 16)
        assert result.iteration_tolerance == 1e-6
        assert result.mean_inner_iterations >= 2.0
        assert np.isnan(result.mean_solver_iterations)
        assert result.execution_time_seconds > 0.0
        assert result.solution_array().shape == (21,)

    def test_deterministic(self, reset_problem):
        first = reset_problem.solve()
        second = HJBQVISolver(reset_problem).solve()
        np.testing.assert_array_equal(first.solution_vector, second.solution_vector)
        np.testing.assert_array_equal(first.intervention_mask, second.intervention_mask)

    def test_results_are_read_only(self, reset_problem):
        result = reset_problem.solve()
        with pytest.raises(ValueError):
            result.solution_vector[0] = 1.0

    def test_bicgstab_matches_lu(self, reset_builder):
        lu = reset_builder().build().solve()
        bicgstab = reset_builder().use_bicgstab_solver().build().solve()
        np.testing.assert_allclose(bicgstab.solution_vector, lu.solution_vector, atol=1e-5)
        assert bicgstab.mean_solver_iterations > 0.0

    def test_negative_refinement(self, reset_problem):
        with pytest.raises(ConfigurationError, match="refinement"):
            reset_problem.solve(refinement=-1)

    def test_control_refinement_can_be_disabled(self, reset_builder):
        problem = reset_builder().disable_stochastic_control_refinement().disable_impulse_control_refinement().build()
        result = problem.solve(refinement=1)
        assert result.stochastic_control_grid.size == 3
        assert result.impulse_control_grid.size == 11
        assert result.spatial_grid.size == 21


# =============================================================================
# Other handlings
# =============================================================================


class TestHandlings:
    def test_direct_control_close_to_penalty(self, reset_builder):
        penalty = reset_builder().numerics(scaling_factor=1e-4).build().solve()
        direct = reset_builder().use_direct_control_scheme().build().solve()
        np.testing.assert_allclose(direct.solution_vector, penalty.solution_vector, atol=1e-3)
        assert_controls_exclusive(direct)

    def test_iterated_optimal_stopping(self, reset_builder):
        ios = reset_builder(timesteps=4).use_iterated_optimal_stopping().build().solve()
        direct = reset_builder(timesteps=4).use_direct_control_scheme().build().solve()

        # The first sweep is never accepted, so at least two sweeps ran
        assert ios.mean_inner_iterations >= 2.0
        assert ios.timesteps == 4
        np.testing.assert_allclose(ios.solution_vector, direct.solution_vector, atol=1e-2)
        assert_controls_exclusive(ios)

    def test_fully_explicit(self, reset_builder):
        result = reset_builder().use_semi_lagrangian_scheme().build().solve()
        assert np.isnan(result.scaling_factor)
        assert np.isnan(result.iteration_tolerance)
        assert np.isnan(result.mean_inner_iterations)
        assert result.timesteps == 8
        assert result.intervention_mask[0]
        assert result.value_at([0.5]) > result.value_at([0.0])
        assert_controls_exclusive(result)

    def test_dropped_feet_still_report_a_control(self, reset_builder):
        # Fast controls push every foot of the central nodes off the grid
        result = (
            reset_builder()
            .stochastic_control_axes([[-5.0, 5.0]])
            .use_semi_lagrangian_scheme()
            .ignore_extrapolatory_controls()
            .build()
            .solve()
        )
        stochastic = np.isnan(result.stochastic_control_vectors[0])
        impulse = np.isnan(result.impulse_control_vectors[0])
        assert not (stochastic & impulse).any()
        assert_controls_exclusive(result)

    def test_penalty_with_explicit_impulse(self, reset_builder):
        result = (
            reset_builder().handling(StochasticControlScheme.PENALTY, ImpulseScheme.EXPLICIT).build().solve()
        )
        implicit = reset_builder().build().solve()
        assert result.scaling_factor == pytest.approx(1e-2 / 8)
        np.testing.assert_allclose(result.solution_vector, implicit.solution_vector, atol=5e-2)
        assert_controls_exclusive(result)

    def test_semi_lagrangian_with_implicit_impulse(self, reset_builder):
        result = (
            reset_builder()
            .handling(StochasticControlScheme.SEMI_LAGRANGIAN, ImpulseScheme.IMPLICIT)
            .coefficients_are_time_independent()
            .build()
            .solve()
        )
        assert np.all(np.isfinite(result.solution_vector))
        assert result.intervention_mask[0]
        assert_controls_exclusive(result)


# =============================================================================
# Time stepping drivers
# =============================================================================


class TestDrivers:
    def test_infinite_horizon(self):
        problem = (
            HJBQVIProblemBuilder()
            .spatial_axes([np.linspace(0.0, 1.0, 11)])
            .horizon(np.inf)
            .coefficients(
                discount=lambda t, x: 0.5,
                volatility=[lambda t, x: 0.3],
                controlled_drift=[lambda t, x, w: 0.0],
                controlled_continuous_flow=lambda t, x, w: 1.0,
                transition=[lambda t, x, z: x],
                impulse_flow=lambda t, x, z: -1e6,
                exit_function=lambda t, x: 0.0,
            )
            .use_sparse_lu_solver()
            .build()
        )
        result = problem.solve(refinement=1)
        np.testing.assert_allclose(result.solution_vector, 2.0, atol=1e-8)
        assert result.timesteps == 0
        assert result.scaling_factor == pytest.approx(1e-2)
        assert not result.intervention_mask.any()

    def test_adaptive_stepping(self, reset_builder):
        constant = reset_builder(timesteps=32).build().solve()
        adaptive = reset_builder().adaptive_timestepping(0.02).build().solve()
        assert adaptive.timesteps > 8
        np.testing.assert_allclose(adaptive.solution_vector, constant.solution_vector, atol=2e-2)

    def test_adaptive_target_halves_with_refinement(self, reset_builder):
        problem = reset_builder().adaptive_timestepping(0.05).build()
        coarse = problem.solve(refinement=0)
        fine = problem.solve(refinement=1)
        assert fine.timesteps > coarse.timesteps

    def test_bdf2_close_to_bdf1(self, reset_builder):
        bdf1 = reset_builder(timesteps=64).build().solve()
        bdf2 = reset_builder(timesteps=16).numerics(time_discretization="bdf2").build().solve()
        np.testing.assert_allclose(bdf2.solution_vector, bdf1.solution_vector, atol=2e-2)
