"""Tests for logging setup."""

import logging

import pytest

from rook.logging import (
    TRACE,
    StructuredLogger,
    configure_logging,
    get_level_from_name,
    get_level_from_verbosity,
    get_logger,
    log_performance,
)


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


class TestLevels:
    def test_verbosity(self):
        assert get_level_from_verbosity(0) == logging.WARNING
        assert get_level_from_verbosity(1) == logging.INFO
        assert get_level_from_verbosity(2) == logging.DEBUG
        assert get_level_from_verbosity(3) == TRACE
        assert get_level_from_verbosity(7) == TRACE

    def test_names(self):
        assert get_level_from_name("trace") == TRACE
        assert get_level_from_name("INFO") == logging.INFO

    def test_invalid_name(self):
        with pytest.raises(ValueError, match="Invalid log level"):
            get_level_from_name("loud")


class TestConfigureLogging:
    def test_console_and_file(self, tmp_path):
        log_file = tmp_path / "logs" / "rook.log"
        configure_logging(level=logging.WARNING, log_file=log_file, file_level=logging.DEBUG)

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert [h.level for h in root.handlers] == [logging.WARNING, logging.DEBUG]

        logging.getLogger("rook.test").debug("to the file only")
        for handler in root.handlers:
            handler.flush()
        assert "to the file only" in log_file.read_text()


class TestLogPerformance:
    def test_logs_duration(self, caplog):
        logger = logging.getLogger("rook.test")
        with caplog.at_level(logging.INFO, logger="rook.test"):
            with log_performance(logger, "Compile", hosts=3):
                pass
        assert "Compile completed in" in caplog.text
        assert "(hosts=3)" in caplog.text

    def test_threshold_suppresses_fast_blocks(self, caplog):
        logger = logging.getLogger("rook.test")
        with caplog.at_level(logging.INFO, logger="rook.test"):
            with log_performance(logger, "Fast", threshold=60):
                pass
        assert "Fast" not in caplog.text


class TestStructuredLogger:
    def test_context_appended(self, caplog):
        logger = get_logger("rook.test", run="deploy")
        with caplog.at_level(logging.INFO, logger="rook.test"):
            logger.info("Host finished", host="web1")
        assert "Host finished (run=deploy, host=web1)" in caplog.text

    def test_bind(self):
        child = StructuredLogger("rook.test", run="deploy").bind(host="web1")
        assert child.context == {"run": "deploy", "host": "web1"}
