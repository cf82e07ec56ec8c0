"""Tests for host and worker logging setup."""

import io
import logging
import os

import pytest

from sandterm.harness.logging_utils import (
    LOG_LEVEL_ENV,
    abbreviate,
    configure_logging,
    configure_worker_logging,
    resolve_level,
)


@pytest.fixture(autouse=True)
def restore_logger(monkeypatch):
    """Keep logger and environment changes local to each test."""
    monkeypatch.setenv(LOG_LEVEL_ENV, "")
    monkeypatch.delenv(LOG_LEVEL_ENV)
    logger = logging.getLogger("sandterm")
    level, propagate, handlers = logger.level, logger.propagate, list(logger.handlers)
    yield
    for handler in logger.handlers:
        if handler not in handlers:
            handler.close()
    logger.setLevel(level)
    logger.propagate = propagate
    logger.handlers = handlers


class TestConfigureLogging:
    """Tests for host logging."""

    def test_nothing_configured_by_default(self):
        before = list(logging.getLogger("sandterm").handlers)

        configure_logging()

        assert logging.getLogger("sandterm").handlers == before

    def test_explicit_level_is_exported_to_workers(self):
        configure_logging("debug")

        assert logging.getLogger("sandterm").level == logging.DEBUG
        assert os.environ[LOG_LEVEL_ENV] == "debug"

    def test_log_file(self, tmp_path):
        path = tmp_path / "logs" / "sandterm.log"

        configure_logging("INFO", str(path))
        logging.getLogger("sandterm.test").info("written")
        for handler in logging.getLogger("sandterm").handlers:
            handler.flush()

        assert "written" in path.read_text()

    def test_invalid_level(self):
        with pytest.raises(ValueError):
            resolve_level("loud")


class TestWorkerLogging:
    """Tests for worker logging."""

    def test_handler_keeps_the_given_stream(self, monkeypatch):
        stream = io.StringIO()
        configure_worker_logging(stream)
        monkeypatch.setattr("sys.stderr", io.StringIO())

        logging.getLogger("sandterm.harness.worker").warning("still visible")

        assert "still visible" in stream.getvalue()
        assert "worker[" in stream.getvalue()

    def test_level_from_environment(self, monkeypatch):
        monkeypatch.setenv(LOG_LEVEL_ENV, "DEBUG")

        configure_worker_logging(io.StringIO())

        assert logging.getLogger("sandterm").level == logging.DEBUG

    def test_default_level_is_warning(self):
        configure_worker_logging(io.StringIO())

        assert logging.getLogger("sandterm").level == logging.WARNING


class TestAbbreviate:
    """Tests for log previews."""

    def test_flattens_and_truncates(self):
        assert abbreviate("a\nb") == "a\\nb"
        assert abbreviate("x" * 10, limit=4) == "xxxx..."
        assert abbreviate(None) == ""
