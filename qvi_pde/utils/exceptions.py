"""
Error hierarchy for QVI_PDE.

All errors derive from :class:`QVISolverError`. Besides the message each one
records the component that raised it, a stable error code, a hint for the user
and a dictionary of diagnostics. A failure in a linear solve deep inside the
backward sweep can therefore be reported together with the timestep and the
iteration count that produced it.
"""

from __future__ import annotations

from typing import Any

import numpy as np


class QVISolverError(Exception):
    """
    Base class of every error raised by the solver.

    Args:
        message: What went wrong
        solver_name: Component that raised the error
        suggested_action: Hint appended to the message
        error_code: Stable identifier (e.g. ``CONVERGENCE_FAILURE``)
        diagnostic_data: Extra key/value pairs listed under the message
    """

    def __init__(
        self,
        message: str,
        solver_name: str | None = None,
        suggested_action: str | None = None,
        error_code: str | None = None,
        diagnostic_data: dict[str, Any] | None = None,
    ):
        self.solver_name = solver_name or "Unknown Solver"
        self.suggested_action = suggested_action
        self.error_code = error_code
        self.diagnostic_data = diagnostic_data or {}

        lines = [f"[{self.solver_name}] {message}"]
        if suggested_action:
            lines.append(f"Suggestion: {suggested_action}")
        if error_code:
            lines.append(f"Error Code: {error_code}")
        if self.diagnostic_data:
            lines.append("Diagnostic Information:")
            lines.extend(f"   - {key}: {value}" for key, value in self.diagnostic_data.items())

        super().__init__("\n".join(lines))


class ConfigurationError(QVISolverError):
    """A problem, grid or numerics setting that cannot be solved."""

    def __init__(
        self,
        parameter_name: str,
        provided_value: Any,
        reason: str | None = None,
        valid_range: tuple | None = None,
        solver_name: str | None = None,
    ):
        self.parameter_name = parameter_name
        self.provided_value = provided_value

        diagnostics = {"parameter": parameter_name, "provided_value": repr(provided_value)}
        if valid_range:
            diagnostics["valid_range"] = f"[{valid_range[0]}, {valid_range[1]}]"

        message = f"Invalid configuration for parameter '{parameter_name}'"
        if reason:
            message = f"{message}: {reason}"

        super().__init__(
            message,
            solver_name=solver_name or "HJBQVIProblem",
            suggested_action=_configuration_hint(parameter_name, provided_value, valid_range),
            error_code="INVALID_CONFIGURATION",
            diagnostic_data=diagnostics,
        )


class ConvergenceError(QVISolverError):
    """A policy, penalty or outer stopping loop ran out of iterations."""

    def __init__(
        self,
        iterations_used: int,
        max_iterations: int,
        final_error: float,
        tolerance: float,
        solver_name: str | None = None,
        loop: str | None = None,
        convergence_history: list[float] | None = None,
    ):
        self.iterations_used = iterations_used
        self.max_iterations = max_iterations
        self.final_error = final_error
        self.tolerance = tolerance
        self.loop = loop

        trend = convergence_trend(convergence_history or [])
        diagnostics: dict[str, Any] = {
            "iterations": f"{iterations_used}/{max_iterations}",
            "final_error": f"{final_error:.2e}",
            "tolerance": f"{tolerance:.2e}",
            "convergence_trend": trend,
        }
        if loop:
            diagnostics["loop"] = loop

        subject = f"{loop.capitalize()} loop" if loop else "Iteration"
        super().__init__(
            f"{subject} failed to converge after {iterations_used} iterations",
            solver_name=solver_name,
            suggested_action=_convergence_hint(final_error / tolerance, trend),
            error_code="CONVERGENCE_FAILURE",
            diagnostic_data=diagnostics,
        )


class SolverDivergenceError(QVISolverError):
    """The sparse linear solve broke down or missed its residual tolerance."""

    def __init__(
        self,
        reason: str,
        iterations: int | None = None,
        timestep: int | None = None,
        solver_name: str | None = None,
    ):
        self.reason = reason
        self.iterations = iterations
        self.timestep = timestep

        diagnostics: dict[str, Any] = {"reason": reason}
        if iterations is not None:
            diagnostics["iterations"] = iterations
        if timestep is not None:
            diagnostics["timestep"] = timestep

        where = "" if timestep is None else f" (timestep {timestep})"
        super().__init__(
            f"Linear solve failed: {reason}{where}",
            solver_name=solver_name,
            suggested_action=(
                "Check that the boundary routines keep the system an M-matrix, or switch to the sparse LU solver"
            ),
            error_code="SOLVER_DIVERGENCE",
            diagnostic_data=diagnostics,
        )

    def at_timestep(self, timestep: int) -> SolverDivergenceError:
        """Copy of this error located at a timestep index."""
        return SolverDivergenceError(self.reason, self.iterations, timestep, self.solver_name)


class DimensionMismatchError(QVISolverError):
    """An array does not have the shape its grid implies."""

    def __init__(
        self,
        array_name: str,
        provided_shape: tuple,
        expected_shape: tuple,
        solver_name: str | None = None,
    ):
        if len(provided_shape) != len(expected_shape):
            detail = f"got {len(provided_shape)} dimensions, expected {len(expected_shape)}"
        else:
            detail = ", ".join(
                f"axis {i}: got {p}, expected {e}"
                for i, (p, e) in enumerate(zip(provided_shape, expected_shape))
                if p != e
            )

        super().__init__(
            f"Dimension mismatch for {array_name}",
            solver_name=solver_name,
            suggested_action=f"Flatten {array_name} to the grid shape {expected_shape}",
            error_code="DIMENSION_MISMATCH",
            diagnostic_data={"provided_shape": provided_shape, "expected_shape": expected_shape, "detail": detail},
        )


def convergence_trend(history: list[float]) -> str:
    """Classify the last three errors of a fixed-point loop."""
    if len(history) < 3:
        return "insufficient_data"

    oldest, middle, latest = history[-3:]
    if latest < middle < oldest:
        return "converging_slowly"
    if latest > 1.1 * middle:
        return "diverging"
    if max(history[-3:]) < 1.1 * max(min(history[-3:]), np.finfo(float).tiny):
        return "stagnating"
    return "oscillating"


def _convergence_hint(excess: float, trend: str) -> str:
    if excess < 10:
        return "Raise max_inner_iterations / max_outer_iterations or relax iteration_tolerance"
    if trend == "oscillating":
        return "Reduce the timestep or increase the penalty scaling_factor"
    return "Check the coefficient functions and reduce the timestep"


def _configuration_hint(parameter_name: str, provided_value: Any, valid_range: tuple | None) -> str:
    if valid_range and isinstance(provided_value, (int, float)):
        low, high = valid_range
        if provided_value < low:
            return f"Increase {parameter_name} to at least {low}"
        if provided_value > high:
            return f"Decrease {parameter_name} to at most {high}"
    if parameter_name == "handling":
        return "Infinite horizons, adaptive steps and iterated optimal stopping need fully implicit handling"
    return f"Check the value of {parameter_name}"


def validate_array_dimensions(
    array: np.ndarray, expected_shape: tuple, array_name: str, solver_name: str | None = None
) -> None:
    """Raise :class:`DimensionMismatchError` unless ``array.shape == expected_shape``."""
    if array.shape != expected_shape:
        raise DimensionMismatchError(array_name, array.shape, expected_shape, solver_name)
