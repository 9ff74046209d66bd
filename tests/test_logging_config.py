"""Tests for logging configuration module."""

from __future__ import annotations

import logging

import pytest

from lms_cli.config import Config, LogLevel
from lms_cli.logging_config import (
    LOGGER_NAME,
    get_logger,
    reset_logging,
    setup_logging,
)


class TestLoggingSetup:
    """Tests for logging setup."""

    def test_setup_logging_creates_handler(self) -> None:
        """Test that setup_logging creates a handler."""
        config = Config(log_level=LogLevel.DEBUG)
        setup_logging(config)

        logger = logging.getLogger(LOGGER_NAME)
        assert len(logger.handlers) == 1
        assert logger.level == logging.DEBUG

    def test_setup_logging_idempotent(self) -> None:
        """Test that setup_logging is idempotent."""
        config = Config(log_level=LogLevel.DEBUG)

        setup_logging(config)
        setup_logging(config)
        setup_logging(config)

        logger = logging.getLogger(LOGGER_NAME)
        assert len(logger.handlers) == 1

    def test_setup_logging_updates_level(self) -> None:
        """Test that setup_logging updates level on subsequent calls."""
        setup_logging(Config(log_level=LogLevel.DEBUG))
        logger = logging.getLogger(LOGGER_NAME)
        assert logger.level == logging.DEBUG

        setup_logging(Config(log_level=LogLevel.ERROR))
        assert logger.level == logging.ERROR
        assert logger.handlers[0].level == logging.ERROR

    def test_logs_go_to_stderr(self, capsys: pytest.CaptureFixture[str]) -> None:
        """Test that log records never reach stdout."""
        setup_logging(Config(log_level=LogLevel.INFO))

        get_logger("stderr_check").info("hello from the logger")

        captured = capsys.readouterr()
        assert "hello from the logger" not in captured.out

    def test_setup_logging_stops_propagation(self) -> None:
        """Test that package records stay out of the root logger's handlers."""
        setup_logging(Config(log_level=LogLevel.INFO))

        assert logging.getLogger(LOGGER_NAME).propagate is False

    def test_reset_logging_restores_propagation(self) -> None:
        """Test that reset_logging undoes setup_logging."""
        setup_logging(Config(log_level=LogLevel.INFO))
        reset_logging()

        logger = logging.getLogger(LOGGER_NAME)
        assert logger.handlers == []
        assert logger.propagate is True


class TestGetLogger:
    """Tests for get_logger function."""

    def test_get_logger_returns_child_logger(self) -> None:
        """Test that get_logger returns a child logger."""
        logger = get_logger("test_module")
        assert logger.name == f"{LOGGER_NAME}.test_module"

    def test_get_logger_with_package_name(self) -> None:
        """Test that get_logger handles full package name."""
        logger = get_logger(f"{LOGGER_NAME}.submodule")
        assert logger.name == f"{LOGGER_NAME}.submodule"

    def test_get_logger_consistent(self) -> None:
        """Test that get_logger returns same logger for same name."""
        logger1 = get_logger("test_module")
        logger2 = get_logger("test_module")
        assert logger1 is logger2
