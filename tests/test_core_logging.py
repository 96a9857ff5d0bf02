"""Tests for core logging module."""

import logging

from subkeeper.core.logging import get_logger, setup_logging


class TestGetLogger:
    """Tests for get_logger function."""

    def test_returns_logger(self):
        """Should return a logger instance."""
        assert isinstance(get_logger("test"), logging.Logger)

    def test_prefixes_with_package_name(self):
        """Should prefix logger name with 'subkeeper.'."""
        assert get_logger("mymodule").name == "subkeeper.mymodule"

    def test_different_names_return_different_loggers(self):
        """Should return distinct loggers for different names."""
        assert get_logger("module1").name != get_logger("module2").name


class TestSetupLogging:
    """Tests for setup_logging function."""

    def test_configures_root_logger(self):
        """Should configure root logger with INFO level."""
        setup_logging()

        assert logging.getLogger().level == logging.INFO

    def test_custom_level(self):
        """Should apply the requested root level."""
        setup_logging(level=logging.DEBUG)

        assert logging.getLogger().level == logging.DEBUG
        setup_logging()

    def test_suppresses_apscheduler(self):
        """Should set apscheduler to WARNING level."""
        setup_logging()

        assert logging.getLogger("apscheduler").level == logging.WARNING
