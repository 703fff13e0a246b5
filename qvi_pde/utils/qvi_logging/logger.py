"""
Logging infrastructure for QVI_PDE.

Every module obtains its logger through :func:`get_logger`. The loggers share
one set of settings (level, colours, optional log file) that
:func:`configure_logging` updates in place, so reconfiguring after import
affects loggers that already exist.
"""

from __future__ import annotations

import logging
import sys
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Any, ClassVar

import colorlog

_FORMAT = "%(asctime)s - %(name)-20s - %(levelname)-8s - %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_LEVEL_COLORS = {
    "DEBUG": "cyan",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "red,bg_white",
}


def _make_formatter(use_colors: bool, include_location: bool) -> logging.Formatter:
    fmt = _FORMAT + (" [%(filename)s:%(lineno)d]" if include_location else "")
    if use_colors:
        return colorlog.ColoredFormatter("%(log_color)s" + fmt, datefmt=_DATE_FORMAT, log_colors=_LEVEL_COLORS)
    return logging.Formatter(fmt, datefmt=_DATE_FORMAT)


class QVILogger:
    """
    Registry of package loggers and their shared settings.

    Convergence studies may solve refinement levels from worker threads, so
    registration and reconfiguration hold a lock.
    """

    _lock: ClassVar[threading.Lock] = threading.Lock()
    _loggers: ClassVar[dict[str, logging.Logger]] = {}
    _log_level: ClassVar[int] = logging.WARNING
    _log_to_file: ClassVar[bool] = False
    _log_file_path: ClassVar[Path | None] = None
    _use_colors: ClassVar[bool] = True
    _include_location: ClassVar[bool] = False

    @classmethod
    def configure(
        cls,
        level: str | int = "WARNING",
        log_to_file: bool = False,
        log_file_path: str | Path | None = None,
        use_colors: bool = True,
        include_location: bool = False,
    ) -> None:
        """
        Update the shared settings and re-attach handlers on every known logger.

        Args:
            level: Level name or number
            log_to_file: Also write to a log file
            log_file_path: Log file; defaults to ``./logs/qvi_pde_<timestamp>.log``
            use_colors: Colour console output with colorlog
            include_location: Append ``[file:line]`` to each record
        """
        with cls._lock:
            cls._log_level = getattr(logging, level.upper()) if isinstance(level, str) else level
            cls._log_to_file = log_to_file
            cls._use_colors = use_colors
            cls._include_location = include_location
            cls._log_file_path = cls._resolve_log_file(log_file_path) if log_to_file else None

            for logger in cls._loggers.values():
                cls._attach_handlers(logger)

    @staticmethod
    def _resolve_log_file(log_file_path: str | Path | None) -> Path:
        if log_file_path is None:
            path = Path.cwd() / "logs" / f"qvi_pde_{datetime.now():%Y%m%d_%H%M%S}.log"
        else:
            path = Path(log_file_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        return path

    @classmethod
    def get_logger(cls, name: str) -> logging.Logger:
        """Registered logger for ``name``, created on first use."""
        with cls._lock:
            logger = cls._loggers.get(name)
            if logger is None:
                logger = logging.getLogger(name)
                cls._attach_handlers(logger)
                cls._loggers[name] = logger
        return logger

    @classmethod
    def _attach_handlers(cls, logger: logging.Logger) -> None:
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()
        logger.setLevel(cls._log_level)
        logger.propagate = False

        console = logging.StreamHandler(sys.stdout)
        console.setFormatter(_make_formatter(cls._use_colors, cls._include_location))
        logger.addHandler(console)

        if cls._log_file_path is not None:
            file_handler = logging.FileHandler(cls._log_file_path)
            file_handler.setFormatter(_make_formatter(False, cls._include_location))
            logger.addHandler(file_handler)


def get_logger(name: str | None = None) -> logging.Logger:
    """Logger for ``name`` (``"qvi_pde"`` when omitted)."""
    return QVILogger.get_logger(name or "qvi_pde")


def configure_logging(**kwargs) -> None:
    """Shortcut for :meth:`QVILogger.configure`."""
    QVILogger.configure(**kwargs)


def log_solver_start(logger: logging.Logger, solver_name: str, config: dict[str, Any]) -> None:
    logger.info(f"Starting {solver_name}")
    logger.debug(f"{solver_name} settings: {config}")


def log_solver_completion(
    logger: logging.Logger,
    solver_name: str,
    iterations: int,
    mean_inner_iterations: float,
    execution_time: float,
) -> None:
    logger.info(
        f"{solver_name} finished {iterations} timesteps in {execution_time:.3f}s "
        f"(mean inner iterations {mean_inner_iterations:.2f})"
    )


class LoggedOperation:
    """Context manager logging the start, duration and failure of a block."""

    def __init__(self, logger: logging.Logger, operation_name: str, log_level: int = logging.INFO):
        self.logger = logger
        self.operation_name = operation_name
        self.log_level = log_level
        self._started = 0.0

    def __enter__(self):
        self.logger.log(self.log_level, f"Starting {self.operation_name}")
        self._started = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        elapsed = time.perf_counter() - self._started
        if exc_type is None:
            self.logger.log(self.log_level, f"Completed {self.operation_name} in {elapsed:.3f}s")
        else:
            self.logger.error(f"Failed {self.operation_name} after {elapsed:.3f}s: {exc_val}")
        return False
