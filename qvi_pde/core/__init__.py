"""Problem definition and results."""

from __future__ import annotations

from .problem import (
    Handling,
    HJBQVIProblem,
    HJBQVIProblemBuilder,
    ImpulseScheme,
    StochasticControlScheme,
)
from .result import HJBQVIResult

__all__ = [
    "HJBQVIProblem",
    "HJBQVIProblemBuilder",
    "HJBQVIResult",
    "Handling",
    "ImpulseScheme",
    "StochasticControlScheme",
]
