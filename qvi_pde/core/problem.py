"""
HJB-QVI problem definition.

An HJB-QVI problem on a rectilinear domain reads, backward in time,

    max{ -u_t - sup_w [ L^w u + f(w) ] + ρ u ,  u - M u } = 0,   u(T, x) = g(x)

with the controlled generator

    L^w u = Σ_d ( ½ σ_d² ∂²u/∂x_d² + μ_d(w) ∂u/∂x_d ),

and the intervention operator

    M u(x) = sup_z [ u(Γ(x, z)) + K(x, z) ].

The ``volatility`` coefficients are the ``σ_d`` above: the discrete generator
carries ``½ v_d² ∂²u/∂x_d²`` with ``v_d = σ_d``.

:class:`HJBQVIProblem` is a frozen description of such a problem: its grids,
coefficient functions, boundary routines, the :class:`Handling` of the two
controls and the :class:`~qvi_pde.config.NumericsConfig`. It is validated at
construction so that an invalid configuration never reaches a solve. Use
:class:`HJBQVIProblemBuilder` to assemble one step by step.

Coefficient functions are vectorized (see :meth:`RectilinearGrid.image`):

    discount(t, *x), volatility[d](t, *x)                    -> ρ, v_d
    controlled_drift[d](t, *x, *w), controlled_continuous_flow(t, *x, *w)
    transition[d](t, *x, *z), impulse_flow(t, *x, *z)       -> Γ_d, K
    exit_function(t, *x)                                     -> g
    stopping_reward(t, *x)                   (optional)      -> early-exercise reward
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

import numpy as np
from pydantic import ValidationError

from qvi_pde.config.numerics import LinearSolverKind, NumericsConfig, TimeDiscretization
from qvi_pde.geometry.rectilinear_grid import RectilinearGrid
from qvi_pde.utils.exceptions import ConfigurationError

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from numpy.typing import ArrayLike

    from qvi_pde.alg.numerical.hjb_qvi.boundary import BoundaryRoutine
    from qvi_pde.core.result import HJBQVIResult


class StochasticControlScheme(Enum):
    """How the continuous (stochastic) control is resolved."""

    SEMI_LAGRANGIAN = "semi_lagrangian"
    PENALTY = "penalty"
    DIRECT_CONTROL = "direct_control"
    ITERATED_OPTIMAL_STOPPING = "iterated_optimal_stopping"


class ImpulseScheme(Enum):
    """How the impulse control is resolved."""

    EXPLICIT = "explicit"
    IMPLICIT = "implicit"


class Handling(Enum):
    """
    Valid combinations of stochastic control and impulse handling.

    - **SEMI_LAGRANGIAN_EXPLICIT**: both controls from the explicit event
      (fully explicit)
    - **SEMI_LAGRANGIAN_IMPLICIT**: stochastic control from the explicit event,
      impulse from the penalized linear system
    - **PENALTY_EXPLICIT**: policy iteration, impulse from the explicit event
    - **PENALTY_IMPLICIT**: policy iteration and penalized impulse
      (default, fully implicit)
    - **DIRECT_CONTROL_IMPLICIT**: policy iteration, impulse rows imposed
      directly (fully implicit)
    - **ITERATED_OPTIMAL_STOPPING_IMPLICIT**: policy iteration, impulse rows
      imposed against an obstacle frozen from the previous backward sweep
      (fully implicit)
    """

    SEMI_LAGRANGIAN_EXPLICIT = "semi_lagrangian_explicit"
    SEMI_LAGRANGIAN_IMPLICIT = "semi_lagrangian_implicit"
    PENALTY_EXPLICIT = "penalty_explicit"
    PENALTY_IMPLICIT = "penalty_implicit"
    DIRECT_CONTROL_IMPLICIT = "direct_control_implicit"
    ITERATED_OPTIMAL_STOPPING_IMPLICIT = "iterated_optimal_stopping_implicit"

    @classmethod
    def from_parts(cls, control: StochasticControlScheme, impulse: ImpulseScheme) -> Handling:
        """
        Look up the handling for a (stochastic control, impulse) pair.

        Raises:
            ConfigurationError: If the pair is not a valid combination
        """
        for handling, parts in _HANDLING_PARTS.items():
            if parts == (control, impulse):
                return handling
        raise ConfigurationError(
            parameter_name="handling",
            provided_value=f"{control.value} x {impulse.value}",
            reason=f"{control.value} resolves an implicit impulse and cannot be combined with explicit impulses",
        )

    @property
    def stochastic_control(self) -> StochasticControlScheme:
        return _HANDLING_PARTS[self][0]

    @property
    def impulse(self) -> ImpulseScheme:
        return _HANDLING_PARTS[self][1]

    @property
    def semi_lagrangian(self) -> bool:
        return self.stochastic_control is StochasticControlScheme.SEMI_LAGRANGIAN

    @property
    def explicit_impulse(self) -> bool:
        return self.impulse is ImpulseScheme.EXPLICIT

    @property
    def fully_implicit(self) -> bool:
        return not (self.semi_lagrangian or self.explicit_impulse)

    @property
    def fully_explicit(self) -> bool:
        return self.semi_lagrangian and self.explicit_impulse

    @property
    def direct(self) -> bool:
        """Impulse rows are imposed exactly rather than penalized."""
        return self in (Handling.DIRECT_CONTROL_IMPLICIT, Handling.ITERATED_OPTIMAL_STOPPING_IMPLICIT)

    @property
    def iterated_optimal_stopping(self) -> bool:
        return self is Handling.ITERATED_OPTIMAL_STOPPING_IMPLICIT


_HANDLING_PARTS: dict[Handling, tuple[StochasticControlScheme, ImpulseScheme]] = {
    Handling.SEMI_LAGRANGIAN_EXPLICIT: (StochasticControlScheme.SEMI_LAGRANGIAN, ImpulseScheme.EXPLICIT),
    Handling.SEMI_LAGRANGIAN_IMPLICIT: (StochasticControlScheme.SEMI_LAGRANGIAN, ImpulseScheme.IMPLICIT),
    Handling.PENALTY_EXPLICIT: (StochasticControlScheme.PENALTY, ImpulseScheme.EXPLICIT),
    Handling.PENALTY_IMPLICIT: (StochasticControlScheme.PENALTY, ImpulseScheme.IMPLICIT),
    Handling.DIRECT_CONTROL_IMPLICIT: (StochasticControlScheme.DIRECT_CONTROL, ImpulseScheme.IMPLICIT),
    Handling.ITERATED_OPTIMAL_STOPPING_IMPLICIT: (
        StochasticControlScheme.ITERATED_OPTIMAL_STOPPING,
        ImpulseScheme.IMPLICIT,
    ),
}


@dataclass(frozen=True)
class HJBQVIProblem:
    """
    Immutable HJB-QVI problem.

    Attributes:
        spatial_grid: Spatial grid (every axis needs at least two nodes)
        stochastic_control_grid: Candidate stochastic controls
        impulse_control_grid: Candidate impulse controls
        expiry: Terminal time T (``np.inf`` for an infinite horizon)
        timesteps: Number of timesteps at refinement level 0
        discount: Discount rate ρ(t, x)
        volatility: Per-dimension diffusion v_d(t, x)
        controlled_drift: Per-dimension drift μ_d(t, x, w)
        controlled_continuous_flow: Running reward f(t, x, w)
        transition: Per-dimension impulse transition Γ_d(t, x, z)
        impulse_flow: Impulse reward K(t, x, z)
        exit_function: Terminal payoff g(t, x), evaluated at t = expiry
        handling: How the stochastic and impulse controls are resolved
        numerics: Tolerances, solver selection and refinement switches
        left_boundaries: Per-dimension routine for the lower boundary (or None)
        right_boundaries: Per-dimension routine for the upper boundary (or None)
        stopping_reward: Early-exercise reward g(t, x) with u >= g imposed by
            penalty (American options), or None

    Raises:
        ConfigurationError: On any invalid combination of settings
    """

    spatial_grid: RectilinearGrid
    stochastic_control_grid: RectilinearGrid
    impulse_control_grid: RectilinearGrid
    expiry: float
    timesteps: int
    discount: Callable[..., ArrayLike]
    volatility: tuple[Callable[..., ArrayLike], ...]
    controlled_drift: tuple[Callable[..., ArrayLike], ...]
    controlled_continuous_flow: Callable[..., ArrayLike]
    transition: tuple[Callable[..., ArrayLike], ...]
    impulse_flow: Callable[..., ArrayLike]
    exit_function: Callable[..., ArrayLike]
    handling: Handling = Handling.PENALTY_IMPLICIT
    numerics: NumericsConfig = field(default_factory=NumericsConfig)
    left_boundaries: tuple[BoundaryRoutine | None, ...] | None = None
    right_boundaries: tuple[BoundaryRoutine | None, ...] | None = None
    stopping_reward: Callable[..., ArrayLike] | None = None

    def __post_init__(self):
        dimension = self.spatial_grid.dimension

        # Coefficient and boundary sequences are stored as tuples
        for name in ("volatility", "controlled_drift", "transition"):
            object.__setattr__(self, name, tuple(getattr(self, name)))
        for name in ("left_boundaries", "right_boundaries"):
            routines = getattr(self, name)
            object.__setattr__(self, name, (None,) * dimension if routines is None else tuple(routines))

        for name in ("volatility", "controlled_drift", "transition", "left_boundaries", "right_boundaries"):
            count = len(getattr(self, name))
            if count != dimension:
                raise ConfigurationError(
                    parameter_name=name,
                    provided_value=count,
                    reason=f"expected one entry per spatial dimension ({dimension})",
                )

        for d, axis in enumerate(self.spatial_grid.axes):
            if axis.size < 2:
                raise ConfigurationError(
                    parameter_name=f"spatial_grid[{d}]",
                    provided_value=axis.size,
                    reason="every spatial axis needs at least two nodes",
                    valid_range=(2, float("inf")),
                )

        if not self.expiry > 0.0:
            raise ConfigurationError("expiry", self.expiry, reason="expiry must be positive", valid_range=(0, np.inf))

        adaptive = self.numerics.adaptive

        if not self.finite_horizon and not self.handling.fully_implicit:
            raise ConfigurationError(
                "handling",
                self.handling.value,
                reason="only a fully implicit method can be used for infinite-horizon problems",
            )

        if self.finite_horizon and self.timesteps <= 0:
            raise ConfigurationError(
                "timesteps",
                self.timesteps,
                reason="number of timesteps must be positive",
                valid_range=(1, float("inf")),
            )

        if adaptive and (not self.finite_horizon or not self.handling.fully_implicit):
            raise ConfigurationError(
                "target_timestep_relative_error",
                self.numerics.target_timestep_relative_error,
                reason="variable timestepping needs a finite horizon and a fully implicit discretization",
            )

        if self.handling.iterated_optimal_stopping and (adaptive or not self.finite_horizon):
            raise ConfigurationError(
                "handling",
                self.handling.value,
                reason="iterated optimal stopping does not support variable timesteps or infinite horizons",
            )

        if self.numerics.time_discretization is TimeDiscretization.BDF2 and (
            not self.handling.fully_implicit or self.handling.iterated_optimal_stopping
        ):
            raise ConfigurationError(
                "time_discretization",
                self.numerics.time_discretization.value,
                reason="BDF2 needs a fully implicit discretization without iterated optimal stopping",
            )

        if self.stopping_reward is not None and self.handling.direct:
            raise ConfigurationError(
                "stopping_reward",
                self.handling.value,
                reason="early exercise is penalized and cannot be combined with directly imposed impulse rows",
            )

    @property
    def dimension(self) -> int:
        return self.spatial_grid.dimension

    @property
    def stochastic_control_dimension(self) -> int:
        return self.stochastic_control_grid.dimension

    @property
    def impulse_control_dimension(self) -> int:
        return self.impulse_control_grid.dimension

    @property
    def finite_horizon(self) -> bool:
        return bool(np.isfinite(self.expiry))

    def solve(self, refinement: int = 0) -> HJBQVIResult:
        """
        Solve the problem at a refinement level.

        Shorthand for ``HJBQVISolver(self).solve(refinement)``.
        """
        from qvi_pde.alg.numerical.hjb_qvi.hjb_qvi_solver import HJBQVISolver

        return HJBQVISolver(self).solve(refinement)


class HJBQVIProblemBuilder:
    """
    Fluent builder for :class:`HJBQVIProblem`.

    Collects grids, coefficients and switches, then produces a frozen problem.
    Validation happens once, in :meth:`build`.

    Examples
    --------
    >>> problem = (
    ...     HJBQVIProblemBuilder()
    ...     .spatial_axes([np.linspace(0.0, 1.0, 21)])
    ...     .stochastic_control_axes([[-0.2, 0.0, 0.2]])
    ...     .impulse_control_axes([np.linspace(0.0, 1.0, 11)])
    ...     .horizon(expiry=1.0, timesteps=20)
    ...     .coefficients(
    ...         discount=lambda t, x: 0.1,
    ...         volatility=[lambda t, x: 0.3],
    ...         controlled_drift=[lambda t, x, w: w],
    ...         controlled_continuous_flow=lambda t, x, w: -(x - 0.5) ** 2,
    ...         transition=[lambda t, x, z: z],
    ...         impulse_flow=lambda t, x, z: -0.1,
    ...         exit_function=lambda t, x: 0.0,
    ...     )
    ...     .use_direct_control_scheme()
    ...     .use_sparse_lu_solver()
    ...     .build()
    ... )
    """

    def __init__(self):
        """Initialize empty problem builder."""
        self._spatial_axes: Sequence[ArrayLike] | None = None
        self._stochastic_control_axes: Sequence[ArrayLike] = [[0.0]]
        self._impulse_control_axes: Sequence[ArrayLike] = [[0.0]]
        self._expiry: float | None = None
        self._timesteps = 0
        self._coefficients: dict[str, Any] = {}
        self._control = StochasticControlScheme.PENALTY
        self._impulse = ImpulseScheme.IMPLICIT
        self._numerics: dict[str, Any] = {}
        self._left: dict[int, BoundaryRoutine] = {}
        self._right: dict[int, BoundaryRoutine] = {}
        self._stopping_reward: Callable[..., ArrayLike] | None = None

    # Grids and horizon

    def spatial_axes(self, axes: Sequence[ArrayLike]) -> HJBQVIProblemBuilder:
        """Set the spatial axes (one coordinate array per dimension)."""
        self._spatial_axes = axes
        return self

    def stochastic_control_axes(self, axes: Sequence[ArrayLike]) -> HJBQVIProblemBuilder:
        """Set the candidate stochastic control axes (default: the single control 0)."""
        self._stochastic_control_axes = axes
        return self

    def impulse_control_axes(self, axes: Sequence[ArrayLike]) -> HJBQVIProblemBuilder:
        """Set the candidate impulse control axes (default: the single control 0)."""
        self._impulse_control_axes = axes
        return self

    def horizon(self, expiry: float, timesteps: int = 0) -> HJBQVIProblemBuilder:
        """
        Set the time horizon.

        Parameters
        ----------
        expiry : float
            Terminal time, ``np.inf`` for an infinite horizon
        timesteps : int
            Number of timesteps at refinement level 0 (finite horizon only)

        Returns
        -------
        HJBQVIProblemBuilder
            Self for method chaining
        """
        self._expiry = expiry
        self._timesteps = timesteps
        return self

    def coefficients(
        self,
        discount: Callable[..., ArrayLike],
        volatility: Sequence[Callable[..., ArrayLike]],
        controlled_drift: Sequence[Callable[..., ArrayLike]],
        controlled_continuous_flow: Callable[..., ArrayLike],
        transition: Sequence[Callable[..., ArrayLike]],
        impulse_flow: Callable[..., ArrayLike],
        exit_function: Callable[..., ArrayLike],
    ) -> HJBQVIProblemBuilder:
        """
        Set the coefficient functions.

        Parameters
        ----------
        discount : callable
            ρ(t, *x)
        volatility : sequence of callable
            v_d(t, *x), one per spatial dimension
        controlled_drift : sequence of callable
            μ_d(t, *x, *w), one per spatial dimension
        controlled_continuous_flow : callable
            f(t, *x, *w)
        transition : sequence of callable
            Γ_d(t, *x, *z), one per spatial dimension
        impulse_flow : callable
            K(t, *x, *z)
        exit_function : callable
            g(t, *x)

        Returns
        -------
        HJBQVIProblemBuilder
            Self for method chaining
        """
        self._coefficients = {
            "discount": discount,
            "volatility": tuple(volatility),
            "controlled_drift": tuple(controlled_drift),
            "controlled_continuous_flow": controlled_continuous_flow,
            "transition": tuple(transition),
            "impulse_flow": impulse_flow,
            "exit_function": exit_function,
        }
        return self

    def left_boundary(self, d: int, routine: BoundaryRoutine) -> HJBQVIProblemBuilder:
        """Use ``routine`` on the lower boundary of dimension ``d``."""
        self._left[d] = routine
        return self

    def right_boundary(self, d: int, routine: BoundaryRoutine) -> HJBQVIProblemBuilder:
        """Use ``routine`` on the upper boundary of dimension ``d``."""
        self._right[d] = routine
        return self

    # Handling

    def handling(self, control: StochasticControlScheme, impulse: ImpulseScheme) -> HJBQVIProblemBuilder:
        """Set the stochastic control and impulse schemes explicitly."""
        self._control = control
        self._impulse = impulse
        return self

    def use_penalized_scheme(self) -> HJBQVIProblemBuilder:
        """Policy iteration with a penalized implicit impulse (default)."""
        return self.handling(StochasticControlScheme.PENALTY, ImpulseScheme.IMPLICIT)

    def use_direct_control_scheme(self) -> HJBQVIProblemBuilder:
        """Policy iteration with impulse rows imposed directly."""
        return self.handling(StochasticControlScheme.DIRECT_CONTROL, ImpulseScheme.IMPLICIT)

    def use_semi_lagrangian_scheme(self) -> HJBQVIProblemBuilder:
        """Semi-Lagrangian stochastic control and explicit impulses."""
        return self.handling(StochasticControlScheme.SEMI_LAGRANGIAN, ImpulseScheme.EXPLICIT)

    def use_iterated_optimal_stopping(self) -> HJBQVIProblemBuilder:
        """Fixed point over full backward sweeps with a frozen obstacle."""
        return self.handling(StochasticControlScheme.ITERATED_OPTIMAL_STOPPING, ImpulseScheme.IMPLICIT)

    # Numerics

    def numerics(self, **fields: Any) -> HJBQVIProblemBuilder:
        """Set arbitrary :class:`NumericsConfig` fields."""
        self._numerics.update(fields)
        return self

    def disable_stochastic_control_refinement(self) -> HJBQVIProblemBuilder:
        return self.numerics(refine_stochastic_control_grid=False)

    def disable_impulse_control_refinement(self) -> HJBQVIProblemBuilder:
        return self.numerics(refine_impulse_control_grid=False)

    def coefficients_are_time_independent(self) -> HJBQVIProblemBuilder:
        return self.numerics(time_independent_coefficients=True)

    def ignore_extrapolatory_controls(self) -> HJBQVIProblemBuilder:
        return self.numerics(drop_semi_lagrangian_off_grid=True)

    def use_bicgstab_solver(self) -> HJBQVIProblemBuilder:
        return self.numerics(linear_solver=LinearSolverKind.BICGSTAB)

    def use_sparse_lu_solver(self) -> HJBQVIProblemBuilder:
        return self.numerics(linear_solver=LinearSolverKind.SPARSE_LU)

    def early_exercise(self, reward: Callable[..., ArrayLike]) -> HJBQVIProblemBuilder:
        """Allow stopping at any time for ``reward(t, *x)`` (American exercise)."""
        self._stopping_reward = reward
        return self

    def adaptive_timestepping(self, target: float) -> HJBQVIProblemBuilder:
        """Choose step sizes to keep the relative change per step near ``target``."""
        return self.numerics(target_timestep_relative_error=target)

    def build(self) -> HJBQVIProblem:
        """
        Build the frozen problem.

        Returns
        -------
        HJBQVIProblem
            Validated problem

        Raises
        ------
        ValueError
            If the spatial axes, horizon or coefficients were never set
        ConfigurationError
            If the settings are inconsistent
        """
        if self._spatial_axes is None:
            raise ValueError("spatial_axes() must be called before build()")
        if self._expiry is None:
            raise ValueError("horizon() must be called before build()")
        if not self._coefficients:
            raise ValueError("coefficients() must be called before build()")

        try:
            numerics = NumericsConfig(**self._numerics)
        except ValidationError as exc:
            error = exc.errors()[0]
            name = ".".join(str(part) for part in error["loc"]) or "numerics"
            raise ConfigurationError(name, error.get("input"), reason=error["msg"]) from exc

        dimension = len(self._spatial_axes)
        return HJBQVIProblem(
            spatial_grid=RectilinearGrid(self._spatial_axes),
            stochastic_control_grid=RectilinearGrid(self._stochastic_control_axes),
            impulse_control_grid=RectilinearGrid(self._impulse_control_axes),
            expiry=self._expiry,
            timesteps=self._timesteps,
            handling=Handling.from_parts(self._control, self._impulse),
            numerics=numerics,
            left_boundaries=tuple(self._left.get(d) for d in range(dimension)),
            right_boundaries=tuple(self._right.get(d) for d in range(dimension)),
            stopping_reward=self._stopping_reward,
            **self._coefficients,
        )
