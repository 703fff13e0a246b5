"""
Unit tests for qvi_pde/utils/exceptions.py
"""

import pytest

import numpy as np

from qvi_pde.utils.exceptions import (
    ConfigurationError,
    ConvergenceError,
    DimensionMismatchError,
    QVISolverError,
    SolverDivergenceError,
    validate_array_dimensions,
)


def test_base_error_message():
    error = QVISolverError("boom", solver_name="Test", suggested_action="retry", error_code="E1")
    message = str(error)
    assert message.startswith("[Test] boom")
    assert "Suggestion: retry" in message
    assert "Error Code: E1" in message


def test_configuration_error():
    error = ConfigurationError("timesteps", 0, reason="must be positive", valid_range=(1, 10))
    assert isinstance(error, QVISolverError)
    assert error.parameter_name == "timesteps"
    assert "must be positive" in str(error)
    assert "Increase timesteps to at least 1" in str(error)


def test_handling_error_suggests_fully_implicit():
    error = ConfigurationError("handling", "penalty_explicit", reason="nope")
    assert "fully implicit" in str(error)


def test_convergence_error():
    error = ConvergenceError(
        iterations_used=5,
        max_iterations=5,
        final_error=1e-3,
        tolerance=1e-6,
        loop="policy",
        convergence_history=[1e-1, 1e-2, 1e-3],
    )
    assert "Policy loop failed to converge after 5 iterations" in str(error)
    assert error.diagnostic_data["convergence_trend"] == "converging_slowly"
    assert error.loop == "policy"


@pytest.mark.parametrize(
    "history,trend",
    [
        ([1.0, 1.0, 1.0], "stagnating"),
        ([1.0, 0.5, 1.0], "diverging"),
        ([1.0], "insufficient_data"),
    ],
)
def test_convergence_trends(history, trend):
    error = ConvergenceError(3, 3, 1.0, 1e-6, convergence_history=history)
    assert error.diagnostic_data["convergence_trend"] == trend


def test_solver_divergence_at_timestep():
    error = SolverDivergenceError("breakdown", iterations=7, solver_name="BiCGSTAB")
    located = error.at_timestep(12)
    assert located.timestep == 12
    assert located.iterations == 7
    assert located.reason == "breakdown"
    assert "(timestep 12)" in str(located)
    assert error.timestep is None


def test_validate_array_dimensions():
    validate_array_dimensions(np.zeros(4), (4,), "u")
    with pytest.raises(DimensionMismatchError, match="Dimension mismatch for u"):
        validate_array_dimensions(np.zeros((2, 2)), (4,), "u")
