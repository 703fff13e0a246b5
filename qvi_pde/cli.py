"""
Command-line interface for QVI_PDE.

Runs convergence tables for the reference problems.
"""

import sys

import click

from qvi_pde import __version__


@click.group()
@click.version_option(version=__version__, prog_name="qvi_pde")
def main():
    """
    QVI_PDE: HJB quasi-variational inequality solver

    Monotone finite differences, policy iteration and penalty methods for
    stochastic control problems with impulses.
    """


@main.command()
@click.option("--expiry", "-T", type=float, default=1.0, show_default=True, help="Time to expiry")
@click.option("--interest", "-r", type=float, default=0.04, show_default=True, help="Risk-free rate")
@click.option("--volatility", "-v", type=float, default=0.2, show_default=True, help="Black-Scholes volatility")
@click.option("--dividends", "-q", type=float, default=0.0, show_default=True, help="Dividend yield")
@click.option("--spot", "-S", type=float, default=100.0, show_default=True, help="Stock price the value is read at")
@click.option("--strike", "-K", type=float, default=100.0, show_default=True, help="Strike price")
@click.option("--refinement", "-R", type=int, default=5, show_default=True, help="Finest refinement level")
@click.option("--steps", "-N", type=int, default=25, show_default=True, help="Timesteps at level 0")
@click.option("--put", is_flag=True, help="Price a put instead of a call")
@click.option("--american", "-A", is_flag=True, help="Allow early exercise")
@click.option("--variable", is_flag=True, help="Use adaptive timestepping")
@click.option(
    "--solver",
    "-s",
    type=click.Choice(["bicgstab", "sparse_lu"]),
    default="bicgstab",
    show_default=True,
    help="Sparse linear solver",
)
@click.option(
    "--bdf",
    type=click.Choice(["1", "2"]),
    default="2",
    show_default=True,
    help="BDF order (variable stepping always uses BDF1)",
)
@click.option("--verbose", is_flag=True, help="Enable debug logging")
def vanilla(
    expiry,
    interest,
    volatility,
    dividends,
    spot,
    strike,
    refinement,
    steps,
    put,
    american,
    variable,
    solver,
    bdf,
    verbose,
):
    """
    Convergence table for a vanilla option under Black-Scholes.

    Examples:
        qvi-pde vanilla
        qvi-pde vanilla --put -R 3
        qvi-pde vanilla --variable --solver sparse_lu
        qvi-pde vanilla --bdf 1 -N 50
        qvi-pde vanilla --american --put
    """
    from qvi_pde.config import LinearSolverKind, TimeDiscretization
    from qvi_pde.problems import black_scholes_price, vanilla_problem
    from qvi_pde.utils import QVISolverError, configure_logging
    from qvi_pde.utils.convergence_study import format_convergence_table, run_convergence_study

    configure_logging(level="DEBUG" if verbose else "WARNING")

    target = expiry / steps * 10.0 if variable and steps > 0 else None
    try:
        problem = vanilla_problem(
            expiry=expiry,
            interest=interest,
            volatility=volatility,
            dividends=dividends,
            strike=strike,
            steps=steps,
            call=not put,
            american=american,
            target=target,
            linear_solver=LinearSolverKind(solver),
            time_discretization=TimeDiscretization(f"bdf{bdf}"),
        )
        rows, _ = run_convergence_study(problem, [spot], max_refinement=refinement)
    except (QVISolverError, ValueError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo(format_convergence_table(rows))
    exact = black_scholes_price(spot, strike, expiry, interest, volatility, dividends, call=not put)
    label = "Closed form (European)" if american else "Closed form"
    click.echo(f"\n{label}: {exact:.12g}")


if __name__ == "__main__":
    main()
