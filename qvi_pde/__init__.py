"""
QVI_PDE: numerical solvers for Hamilton-Jacobi-Bellman quasi-variational
inequalities arising from stochastic control problems with impulses.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("qvi_pde")
except PackageNotFoundError:
    # package is not installed
    __version__ = "0.0.0-dev"

from .alg.numerical.hjb_qvi import (  # noqa: E402
    HJBQVISolver,
    linear_boundary,
    zero_diffusion_left_boundary,
    zero_diffusion_right_boundary,
)
from .config import LinearSolverKind, NumericsConfig, TimeDiscretization  # noqa: E402
from .core import (  # noqa: E402
    Handling,
    HJBQVIProblem,
    HJBQVIProblemBuilder,
    HJBQVIResult,
    ImpulseScheme,
    StochasticControlScheme,
)
from .geometry import PiecewiseLinear, RectilinearGrid  # noqa: E402
from .utils import (  # noqa: E402
    ConfigurationError,
    ConvergenceError,
    QVISolverError,
    SolverDivergenceError,
    configure_logging,
    get_logger,
)

__all__ = [
    "ConfigurationError",
    "ConvergenceError",
    "HJBQVIProblem",
    "HJBQVIProblemBuilder",
    "HJBQVIResult",
    "HJBQVISolver",
    "Handling",
    "ImpulseScheme",
    "LinearSolverKind",
    "NumericsConfig",
    "PiecewiseLinear",
    "QVISolverError",
    "RectilinearGrid",
    "SolverDivergenceError",
    "StochasticControlScheme",
    "TimeDiscretization",
    "__version__",
    "configure_logging",
    "get_logger",
    "linear_boundary",
    "zero_diffusion_left_boundary",
    "zero_diffusion_right_boundary",
]
