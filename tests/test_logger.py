"""Tests for logging configuration."""

import gzip
import logging

import pytest

from tmbackup.config import ConfigurationError, LoggingConfig, ValidationError
from tmbackup.destination import SafetyCheckFailure
from tmbackup.latest import SymlinkIntegrityError
from tmbackup.logger import (
    ConsoleFormatter,
    ErrorCode,
    GzipRotatingFileHandler,
    LOGGER_NAME,
    LoggingError,
    get_error_guidance,
    log_backup_error,
    map_exception_to_error_code,
    setup_logging,
)
from tmbackup.lock import LockError
from tmbackup.retention import OutOfSpaceError
from tmbackup.store import StoreError
from tmbackup.transfer import TransferError


pytestmark = pytest.mark.usefixtures("reset_tmbackup_logger")


def _record(level: int, message: str) -> logging.LogRecord:
    return logging.LogRecord("tmbackup.test", level, __file__, 1, message, None, None)


@pytest.fixture
def logging_config(tmp_path):
    return LoggingConfig(
        log_file=tmp_path / "logs" / "tmbackup.log",
        error_log_file=tmp_path / "logs" / "tmbackup.err",
    )


class TestConsoleFormatter:
    """Console lines look like the classic tool's output."""

    def test_info(self):
        assert ConsoleFormatter().format(_record(logging.INFO, "Starting backup...")) == \
            "tmbackup: Starting backup..."

    def test_warning(self):
        assert ConsoleFormatter().format(_record(logging.WARNING, "careful")) == \
            "tmbackup: [WARNING] careful"

    def test_error(self):
        assert ConsoleFormatter().format(_record(logging.ERROR, "failed")) == \
            "tmbackup: [ERROR] failed"


class TestSetupLogging:
    """Tests for setup_logging."""

    def test_creates_log_directory_and_handlers(self, logging_config):
        logger = setup_logging(logging_config, console=False)

        logger.info("hello")
        logger.error("bad")
        for handler in logger.handlers:
            handler.flush()

        assert "hello" in logging_config.log_file.read_text()
        error_text = logging_config.error_log_file.read_text()
        assert "bad" in error_text
        assert "hello" not in error_text

    def test_console_splits_streams_by_level(self, logging_config, capsys):
        logger = setup_logging(logging_config)

        logger.info("Starting backup...")
        logger.warning("careful")
        logger.error("failed")

        captured = capsys.readouterr()
        assert captured.out == "tmbackup: Starting backup...\n"
        assert "tmbackup: [WARNING] careful" in captured.err
        assert "tmbackup: [ERROR] failed" in captured.err
        assert "Starting backup" not in captured.err

    def test_repeated_setup_does_not_duplicate_handlers(self, logging_config):
        setup_logging(logging_config)
        logger = setup_logging(logging_config)
        assert len(logger.handlers) == 4

    def test_invalid_level(self, logging_config):
        logging_config.level = "LOUD"
        with pytest.raises(LoggingError, match="Invalid log level"):
            setup_logging(logging_config)


class TestGzipRotation:
    """Rotated logs are gzip compressed."""

    def test_rotation_compresses(self, tmp_path):
        log_file = tmp_path / "rotate.log"
        handler = GzipRotatingFileHandler(log_file, maxBytes=100, backupCount=2)
        handler.setFormatter(logging.Formatter("%(message)s"))
        try:
            for i in range(20):
                handler.emit(_record(logging.INFO, f"line {i:04d} " + "x" * 20))
        finally:
            handler.close()

        rotated = tmp_path / "rotate.log.1.gz"
        assert rotated.exists()
        with gzip.open(rotated, "rt") as f:
            assert "line" in f.read()
        assert not (tmp_path / "rotate.log.3.gz").exists()


class TestErrorCodes:
    """Fatal errors carry a code and guidance."""

    def test_mapping(self):
        assert map_exception_to_error_code(OutOfSpaceError("x")) is ErrorCode.SPACE_EXHAUSTED
        assert map_exception_to_error_code(SymlinkIntegrityError("x")) is ErrorCode.LATEST_LINK_UNSAFE
        assert map_exception_to_error_code(RuntimeError("x")) is ErrorCode.UNKNOWN_ERROR

    def test_every_code_has_guidance(self):
        for code in ErrorCode:
            assert get_error_guidance(code)

    def test_every_code_is_reachable(self):
        produced = {
            map_exception_to_error_code(error)
            for error in (
                ConfigurationError("x"), ValidationError("x"), SafetyCheckFailure("x"),
                StoreError("x"), SymlinkIntegrityError("x"), OutOfSpaceError("x"),
                LockError("x"), TransferError("x"), RuntimeError("x"),
            )
        }
        assert produced == set(ErrorCode)

    def test_log_backup_error(self, caplog):
        logger = logging.getLogger(LOGGER_NAME)
        with caplog.at_level(logging.INFO, logger=LOGGER_NAME):
            code = log_backup_error(logger, OutOfSpaceError("disk full"), "transfer")

        assert code is ErrorCode.SPACE_EXHAUSTED
        assert "[E4001] Backup failed during transfer: disk full" in caplog.text
        assert get_error_guidance(code) in caplog.text
