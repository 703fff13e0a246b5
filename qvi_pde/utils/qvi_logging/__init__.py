"""
Logging utilities for QVI_PDE.

Usage:
    >>> from qvi_pde.utils.qvi_logging import get_logger, configure_logging
    >>> configure_logging(level="DEBUG")
    >>> logger = get_logger(__name__)
    >>> logger.info("Starting computation...")
"""

from __future__ import annotations

from .logger import (
    LoggedOperation,
    QVILogger,
    configure_logging,
    get_logger,
    log_solver_completion,
    log_solver_start,
)

__all__ = [
    "LoggedOperation",
    "QVILogger",
    "configure_logging",
    "get_logger",
    "log_solver_completion",
    "log_solver_start",
]
