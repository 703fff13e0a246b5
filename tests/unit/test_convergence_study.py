"""
Unit tests for qvi_pde/utils/convergence_study.py
"""

import pytest

import numpy as np

from qvi_pde.utils.convergence_study import ConvergenceRow, format_convergence_table, run_convergence_study


@pytest.fixture
def study(reset_problem):
    return run_convergence_study(reset_problem, [0.5], max_refinement=1)


def test_one_row_per_level(study):
    rows, result = study
    assert [row.refinement for row in rows] == [0, 1]
    assert [row.nodes for row in rows] == [11, 21]
    assert [row.timesteps for row in rows] == [8, 16]
    assert [row.impulse_control_nodes for row in rows] == [11, 21]
    assert result.spatial_grid.size == 21


def test_changes_and_ratios(study):
    rows, result = study
    assert np.isnan(rows[0].change)
    assert np.isnan(rows[0].ratio)
    assert rows[1].change == pytest.approx(rows[1].value - rows[0].value)
    assert np.isnan(rows[1].ratio)
    assert rows[1].value == pytest.approx(result.value_at([0.5]))


def test_min_refinement(reset_problem):
    rows, _ = run_convergence_study(reset_problem, [0.5], max_refinement=1, min_refinement=1)
    assert len(rows) == 1
    assert rows[0].nodes == 21


def test_invalid_range(reset_problem):
    with pytest.raises(ValueError, match="min_refinement"):
        run_convergence_study(reset_problem, [0.5], max_refinement=0, min_refinement=1)


def test_format_table():
    row = ConvergenceRow(
        refinement=0,
        nodes=11,
        stochastic_control_nodes=3,
        impulse_control_nodes=11,
        timesteps=8,
        scaling_factor=1e-3,
        iteration_tolerance=1e-6,
        mean_inner_iterations=2.5,
        mean_solver_iterations=float("nan"),
        value=-0.25,
        change=float("nan"),
        ratio=float("nan"),
        seconds=0.01,
    )
    lines = format_convergence_table([row, row], width=23).splitlines()
    assert len(lines) == 3
    assert "Spatial Nodes" in lines[0]
    assert "Ratio" in lines[0]
    assert len(lines[1]) == len(lines[0])
    assert "nan" in lines[1]
