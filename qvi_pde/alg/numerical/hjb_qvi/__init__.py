"""
HJB-QVI solver components.

- controlled_operator: monotone discretization of the controlled generator
- boundary: boundary routines for the generator
- policy_iteration: per-level tolerance iteration (controls and implicit impulse)
- impulse: intervention operator, penalty / direct / obstacle coupling
- explicit_event: semi-Lagrangian control and explicit impulse
- time_stepping: steppers, BDF systems, trajectory buffers
- hjb_qvi_solver: orchestration per refinement level
"""

from __future__ import annotations

from .boundary import (
    BoundaryStencil,
    linear_boundary,
    zero_diffusion_left_boundary,
    zero_diffusion_right_boundary,
)
from .controlled_operator import Cached, ControlledOperator, Recomputed, monotone_coefficients
from .explicit_event import EventOutcome, ExplicitEvent
from .hjb_qvi_solver import HJBQVISolver
from .impulse import ImpulseChoice, ImpulseMode, ImpulseOperator, PenaltyMethod, StoppingPenalty
from .policy_iteration import PolicyIteration, improve_controls, relative_error
from .time_stepping import (
    AdaptiveStepper,
    ConstantStepper,
    ImplicitSystem,
    StepperState,
    TimeStep,
    TrajectoryBuffers,
    adaptive_timestep,
)

__all__ = [
    "AdaptiveStepper",
    "BoundaryStencil",
    "Cached",
    "ConstantStepper",
    "ControlledOperator",
    "EventOutcome",
    "ExplicitEvent",
    "HJBQVISolver",
    "ImplicitSystem",
    "ImpulseChoice",
    "ImpulseMode",
    "ImpulseOperator",
    "PenaltyMethod",
    "PolicyIteration",
    "Recomputed",
    "StepperState",
    "StoppingPenalty",
    "TimeStep",
    "TrajectoryBuffers",
    "adaptive_timestep",
    "improve_controls",
    "linear_boundary",
    "monotone_coefficients",
    "relative_error",
    "zero_diffusion_left_boundary",
    "zero_diffusion_right_boundary",
]
