"""
Pytest configuration and shared fixtures for the QVI_PDE test suite.

The reference problem is a one-dimensional reset problem: the state drifts
under a bounded control, pays a running cost for being away from the centre
and may jump anywhere on the grid at a fixed cost. Far from the centre the
jump is worth it, near the centre it is not, so solutions have both an
intervention and a continuation region.
"""

import pytest

import numpy as np

from qvi_pde import HJBQVIProblemBuilder

# =============================================================================
# Test Configuration
# =============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers and settings."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "integration: Integration tests (slower, cross-component)")
    config.addinivalue_line("markers", "mathematical: Mathematical property validation tests")
    config.addinivalue_line("markers", "slow: Slow tests (may take >10 seconds)")


def pytest_collection_modifyitems(config, items):
    """Add markers based on test paths."""
    for item in items:
        test_path = str(item.fspath)
        if "/unit/" in test_path:
            item.add_marker(pytest.mark.unit)
        elif "/integration/" in test_path:
            item.add_marker(pytest.mark.integration)


# =============================================================================
# Problem Fixtures
# =============================================================================

RESET_COST = 0.1


def _reset_builder(nodes: int = 11, timesteps: int = 8, discount: float = 0.1, volatility: float = 0.1):
    """Builder for the reset problem, ready to build() or to customize further."""
    axis = np.linspace(0.0, 1.0, nodes)
    return (
        HJBQVIProblemBuilder()
        .spatial_axes([axis])
        .stochastic_control_axes([[-0.25, 0.0, 0.25]])
        .impulse_control_axes([axis])
        .horizon(expiry=1.0, timesteps=timesteps)
        .coefficients(
            discount=lambda t, x: discount,
            volatility=[lambda t, x: volatility],
            controlled_drift=[lambda t, x, w: w],
            controlled_continuous_flow=lambda t, x, w: -4.0 * (x - 0.5) ** 2,
            transition=[lambda t, x, z: z],
            impulse_flow=lambda t, x, z: -RESET_COST,
            exit_function=lambda t, x: 0.0,
        )
        .use_sparse_lu_solver()
    )


@pytest.fixture
def reset_builder():
    """Factory for reset problem builders."""
    return _reset_builder


@pytest.fixture
def reset_problem():
    """Reset problem with the default penalized, fully implicit handling."""
    return _reset_builder().build()


@pytest.fixture
def grid_1d():
    """Nonuniform 1D grid."""
    from qvi_pde import RectilinearGrid

    return RectilinearGrid([[0.0, 0.5, 1.5, 3.0]])


@pytest.fixture
def grid_2d():
    """Small 2D grid with different node counts per axis."""
    from qvi_pde import RectilinearGrid

    return RectilinearGrid([np.linspace(0.0, 1.0, 5), [0.0, 0.5, 2.0]])
