"""
Unit tests for the logging helpers.
"""

import logging

from qvi_pde.utils.qvi_logging import (
    LoggedOperation,
    QVILogger,
    configure_logging,
    get_logger,
    log_solver_completion,
    log_solver_start,
)


def test_get_logger_is_cached():
    assert get_logger("qvi_pde.test") is get_logger("qvi_pde.test")
    assert get_logger().name == "qvi_pde"


def test_default_level_is_warning():
    configure_logging()
    logger = get_logger("qvi_pde.test_default")
    assert logger.level == logging.WARNING
    assert not logger.isEnabledFor(logging.INFO)


def test_configure_sets_level():
    logger = get_logger("qvi_pde.test_level")
    configure_logging(level="DEBUG", use_colors=False)
    try:
        assert logger.level == logging.DEBUG
        assert not logger.propagate
    finally:
        configure_logging()


def test_log_to_file(tmp_path):
    path = tmp_path / "logs" / "run.log"
    configure_logging(level="INFO", log_to_file=True, log_file_path=path, use_colors=False)
    try:
        logger = get_logger("qvi_pde.test_file")
        log_solver_start(logger, "TestSolver", {"nodes": 5})
        log_solver_completion(logger, "TestSolver", 10, 2.5, 0.1)
        for handler in logger.handlers:
            handler.flush()
        text = path.read_text()
        assert "Starting TestSolver" in text
        assert "10 timesteps" in text
    finally:
        configure_logging()
        assert QVILogger._log_to_file is False


def test_logged_operation_reports_failure(caplog):
    logger = logging.getLogger("qvi_pde.test_operation")
    logger.propagate = True
    with caplog.at_level(logging.INFO, logger="qvi_pde.test_operation"):
        try:
            with LoggedOperation(logger, "refinement level 0"):
                raise RuntimeError("bad")
        except RuntimeError:
            pass
    assert "Starting refinement level 0" in caplog.text
    assert "Failed refinement level 0" in caplog.text
