"""Reference problems."""

from __future__ import annotations

from .vanilla import STOCK_AXIS, black_scholes_price, vanilla_problem

__all__ = [
    "STOCK_AXIS",
    "black_scholes_price",
    "vanilla_problem",
]
