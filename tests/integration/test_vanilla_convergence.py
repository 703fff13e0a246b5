"""
Black-Scholes vanilla options as a convergence check of the solver.

The European problem has no impulse worth taking and a closed-form value, so
the solver's value at the money must approach it as the grid and the
timestep are refined. American options add a penalized early-exercise
constraint on top.
"""

import pytest

import numpy as np

from qvi_pde.config import LinearSolverKind
from qvi_pde.problems import STOCK_AXIS, black_scholes_price, vanilla_problem
from qvi_pde.utils.convergence_study import run_convergence_study


def test_closed_form_reference():
    assert black_scholes_price(100.0, 100.0, 1.0, 0.05, 0.2) == pytest.approx(10.4506, abs=1e-4)
    assert black_scholes_price(100.0, 100.0, 1.0, 0.04, 0.2) == pytest.approx(9.9251, abs=1e-4)
    call = black_scholes_price(100.0, 100.0, 1.0, 0.04, 0.2, call=True)
    put = black_scholes_price(100.0, 100.0, 1.0, 0.04, 0.2, call=False)
    # Put-call parity
    assert call - put == pytest.approx(100.0 - 100.0 * np.exp(-0.04))


def test_call_converges_to_closed_form():
    problem = vanilla_problem(linear_solver=LinearSolverKind.SPARSE_LU)
    result = problem.solve(refinement=2)
    assert result.value_at([100.0]) == pytest.approx(9.9251, abs=2e-2)
    assert not result.intervention_mask.any()
    assert result.timesteps == 100


def test_put_converges_to_closed_form():
    problem = vanilla_problem(call=False, linear_solver=LinearSolverKind.SPARSE_LU)
    exact = black_scholes_price(100.0, 100.0, 1.0, 0.04, 0.2, call=False)
    assert problem.solve(refinement=2).value_at([100.0]) == pytest.approx(exact, abs=2e-2)


def test_errors_shrink_with_refinement():
    problem = vanilla_problem(linear_solver=LinearSolverKind.SPARSE_LU)
    rows, _ = run_convergence_study(problem, [100.0], max_refinement=2)
    exact = black_scholes_price(100.0, 100.0, 1.0, 0.04, 0.2)
    errors = [abs(row.value - exact) for row in rows]
    assert errors[2] < errors[0]
    assert rows[0].nodes == STOCK_AXIS.size


def test_adaptive_steps_use_bdf1():
    problem = vanilla_problem(target=0.4, linear_solver=LinearSolverKind.SPARSE_LU)
    assert problem.numerics.time_discretization.value == "bdf1"
    result = problem.solve(refinement=1)
    assert result.value_at([100.0]) == pytest.approx(9.9251, abs=0.2)


@pytest.mark.slow
def test_bicgstab_agrees_with_lu():
    lu = vanilla_problem(linear_solver=LinearSolverKind.SPARSE_LU).solve(refinement=1)
    bicgstab = vanilla_problem(linear_solver=LinearSolverKind.BICGSTAB).solve(refinement=1)
    np.testing.assert_allclose(bicgstab.solution_vector, lu.solution_vector, rtol=1e-6, atol=1e-6)


@pytest.mark.slow
def test_change_ratio_approaches_four():
    # Second order in space and (BDF2) time: changes shrink fourfold per level
    problem = vanilla_problem(linear_solver=LinearSolverKind.SPARSE_LU)
    rows, _ = run_convergence_study(problem, [100.0], max_refinement=4)
    assert np.isnan(rows[1].ratio)
    assert rows[3].ratio == pytest.approx(4.0, abs=0.2)
    assert rows[4].ratio == pytest.approx(4.0, abs=0.2)


# =============================================================================
# American options
# =============================================================================


class TestAmerican:
    def test_put_exceeds_european_put(self):
        european = vanilla_problem(call=False, linear_solver=LinearSolverKind.SPARSE_LU).solve(refinement=1)
        american = vanilla_problem(call=False, american=True, linear_solver=LinearSolverKind.SPARSE_LU).solve(
            refinement=1
        )
        assert american.value_at([100.0]) > european.value_at([100.0]) + 0.1

    def test_put_dominates_payoff(self):
        result = vanilla_problem(call=False, american=True, linear_solver=LinearSolverKind.SPARSE_LU).solve()
        (S,) = result.spatial_grid.coordinates()
        payoff = np.maximum(100.0 - S, 0.0)
        assert np.all(result.solution_vector >= payoff - 1e-3)
        # Deep in the money the put is exercised at once
        assert result.value_at([50.0]) == pytest.approx(50.0, abs=1e-3)

    def test_call_without_dividends_is_european(self):
        european = vanilla_problem(linear_solver=LinearSolverKind.SPARSE_LU).solve(refinement=1)
        american = vanilla_problem(american=True, linear_solver=LinearSolverKind.SPARSE_LU).solve(refinement=1)
        assert american.value_at([100.0]) == pytest.approx(european.value_at([100.0]), abs=1e-3)
