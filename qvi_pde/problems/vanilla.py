"""
Vanilla options as degenerate HJB-QVI problems.

The Black-Scholes equation

    V_t + ½ σ² S² V_SS + (r - q) S V_S - r V = 0,   V(T, S) = payoff(S)

is an HJB-QVI with a single (trivial) stochastic control and an impulse that
is never worth taking. It has a closed-form solution, which makes it the
reference problem for convergence studies of the solver.

American options add the early-exercise constraint ``V >= payoff(S)``, imposed
by a penalty inside the same tolerance iteration as the controls.
"""

from __future__ import annotations

import math

import numpy as np
from scipy.stats import norm

from qvi_pde.alg.numerical.hjb_qvi.boundary import linear_boundary
from qvi_pde.config.numerics import LinearSolverKind, TimeDiscretization
from qvi_pde.core.problem import HJBQVIProblem, HJBQVIProblemBuilder

# Nonuniform stock axis, dense around the usual strikes
STOCK_AXIS = np.array(
    [
        0.0, 10.0, 20.0, 30.0, 40.0, 50.0, 60.0, 70.0,
        75.0, 80.0,
        84.0, 88.0, 92.0,
        94.0, 96.0, 98.0, 100.0, 102.0, 104.0, 106.0, 108.0, 110.0,
        114.0, 118.0,
        123.0,
        130.0, 140.0, 150.0,
        175.0,
        225.0,
        300.0,
        750.0,
        2000.0,
        10000.0,
    ]
)  # fmt: skip

# Impulse reward that makes intervening never optimal
NO_IMPULSE_FLOW = -1e6

# Penalty scale for the early-exercise constraint of American options
AMERICAN_SCALING_FACTOR = 1e-6


def black_scholes_price(
    spot: float,
    strike: float,
    expiry: float,
    interest: float,
    volatility: float,
    dividends: float = 0.0,
    call: bool = True,
) -> float:
    """Closed-form Black-Scholes price of a European call or put."""
    sqrt_t = math.sqrt(expiry)
    d1 = (math.log(spot / strike) + (interest - dividends + 0.5 * volatility**2) * expiry) / (volatility * sqrt_t)
    d2 = d1 - volatility * sqrt_t
    discounted_spot = spot * math.exp(-dividends * expiry)
    discounted_strike = strike * math.exp(-interest * expiry)
    if call:
        return float(discounted_spot * norm.cdf(d1) - discounted_strike * norm.cdf(d2))
    return float(discounted_strike * norm.cdf(-d2) - discounted_spot * norm.cdf(-d1))


def vanilla_problem(
    expiry: float = 1.0,
    interest: float = 0.04,
    volatility: float = 0.2,
    dividends: float = 0.0,
    strike: float = 100.0,
    steps: int = 25,
    call: bool = True,
    american: bool = False,
    target: float | None = None,
    linear_solver: LinearSolverKind = LinearSolverKind.BICGSTAB,
    time_discretization: TimeDiscretization = TimeDiscretization.BDF2,
    axis: np.ndarray | None = None,
) -> HJBQVIProblem:
    """
    European or American call or put under Black-Scholes dynamics.

    Args:
        expiry: Time to expiry
        interest: Risk-free rate (also the discount rate)
        volatility: Black-Scholes volatility σ
        dividends: Continuous dividend yield
        strike: Strike price
        steps: Timesteps at refinement level 0
        call: Call if True, put otherwise
        american: Allow early exercise (penalized against the payoff)
        target: Adaptive timestepping target (constant steps if None)
        linear_solver: Sparse solver
        time_discretization: BDF order (BDF2 needs constant steps)
        axis: Stock axis (defaults to :data:`STOCK_AXIS`)

    Returns:
        Frozen problem
    """
    if target is not None:
        time_discretization = TimeDiscretization.BDF1

    if call:

        def payoff(t, S):
            return np.maximum(S - strike, 0.0)

    else:

        def payoff(t, S):
            return np.maximum(strike - S, 0.0)

    builder = (
        HJBQVIProblemBuilder()
        .spatial_axes([STOCK_AXIS if axis is None else axis])
        .horizon(expiry=expiry, timesteps=steps)
        .coefficients(
            discount=lambda t, S: interest,
            volatility=[lambda t, S: volatility * S],
            controlled_drift=[lambda t, S, w: (interest - dividends) * S],
            controlled_continuous_flow=lambda t, S, w: 0.0,
            transition=[lambda t, S, z: S],
            impulse_flow=lambda t, S, z: NO_IMPULSE_FLOW,
            exit_function=payoff,
        )
        .right_boundary(0, linear_boundary)
        .numerics(linear_solver=linear_solver, time_discretization=time_discretization)
    )
    if american:
        builder = builder.early_exercise(payoff).numerics(scaling_factor=AMERICAN_SCALING_FACTOR)
    if target is not None:
        builder = builder.adaptive_timestepping(target)
    return builder.build()
