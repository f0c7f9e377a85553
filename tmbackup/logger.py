"""Logging configuration for tmbackup.

This module provides logging setup and utility functions for the backup
system: a rotating main log and error log, both gzip-compressed on rotation,
plus console output in the ``tmbackup: [LEVEL] message`` style. Errors are
tagged with an ErrorCode whose guidance tells the user what to do next.
"""

import gzip
import logging
import os
import shutil
import sys
from datetime import datetime
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, Optional

from tmbackup.config import LoggingConfig


# Logger name for the tmbackup package
LOGGER_NAME = "tmbackup"

VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR"}


class ErrorCode(Enum):
    """Error codes attached to fatal errors in the logs."""
    # Configuration errors (1xxx)
    CONFIG_INVALID = "E1002"

    # Destination errors (2xxx)
    DESTINATION_INVALID = "E2001"
    DESTINATION_NOT_MARKED = "E2002"
    DESTINATION_UNREACHABLE = "E2003"

    # Snapshot state errors (3xxx)
    LATEST_LINK_UNSAFE = "E3001"

    # Space errors (4xxx)
    SPACE_EXHAUSTED = "E4001"

    # Lock errors (5xxx)
    LOCK_HELD = "E5001"

    # Transfer errors (6xxx)
    TRANSFER_FAILED = "E6001"

    UNKNOWN_ERROR = "E0001"


ERROR_GUIDANCE: Dict[ErrorCode, str] = {
    ErrorCode.CONFIG_INVALID: "The configuration is invalid. Check the values named in the message.",
    ErrorCode.DESTINATION_INVALID: "The destination must be a path, user@host:path or user@host:port:path without single quotes.",
    ErrorCode.DESTINATION_NOT_MARKED: "The destination has no backup.marker file. Run `tmbackup mark` if it really is a backup folder.",
    ErrorCode.DESTINATION_UNREACHABLE: "The destination could not be accessed. Check that the drive is mounted or the host is reachable.",
    ErrorCode.LATEST_LINK_UNSAFE: "The 'latest' link points outside the destination. Remove it and run the backup again.",
    ErrorCode.SPACE_EXHAUSTED: "The destination is full and there is no older snapshot left to delete. Free up space or use a larger drive.",
    ErrorCode.LOCK_HELD: "Another backup is already running. Wait for it to finish.",
    ErrorCode.TRANSFER_FAILED: "rsync reported an error. Check the rsync log file named in the message.",
    ErrorCode.UNKNOWN_ERROR: "An unexpected error occurred. Check the logs for more details.",
}


_EXCEPTION_CODES: Dict[str, ErrorCode] = {
    "ConfigurationError": ErrorCode.CONFIG_INVALID,
    "ValidationError": ErrorCode.DESTINATION_INVALID,
    "SafetyCheckFailure": ErrorCode.DESTINATION_NOT_MARKED,
    "StoreError": ErrorCode.DESTINATION_UNREACHABLE,
    "SymlinkIntegrityError": ErrorCode.LATEST_LINK_UNSAFE,
    "OutOfSpaceError": ErrorCode.SPACE_EXHAUSTED,
    "LockError": ErrorCode.LOCK_HELD,
    "TransferError": ErrorCode.TRANSFER_FAILED,
}


def map_exception_to_error_code(exception: Exception) -> ErrorCode:
    """Return the ErrorCode for an exception raised by tmbackup."""
    return _EXCEPTION_CODES.get(type(exception).__name__, ErrorCode.UNKNOWN_ERROR)


def get_error_guidance(error_code: ErrorCode) -> str:
    return ERROR_GUIDANCE.get(error_code, ERROR_GUIDANCE[ErrorCode.UNKNOWN_ERROR])


class LoggingError(Exception):
    """Raised when logging setup fails."""
    pass


class GzipRotatingFileHandler(RotatingFileHandler):
    """Rotating file handler that compresses rotated files with gzip."""

    def rotation_filename(self, default_name: str) -> str:
        return default_name + ".gz"

    def rotate(self, source: str, dest: str) -> None:
        if not os.path.exists(source):
            return

        try:
            with open(source, "rb") as f_in:
                with gzip.open(dest, "wb") as f_out:
                    shutil.copyfileobj(f_in, f_out)
            os.remove(source)
        except OSError:
            # If compression fails, fall back to simple rename
            if os.path.exists(source):
                fallback_dest = dest[:-3] if dest.endswith(".gz") else dest
                try:
                    os.rename(source, fallback_dest)
                except OSError:
                    pass  # Best effort - don't fail logging


class ConsoleFormatter(logging.Formatter):
    """Formats console lines as ``tmbackup: msg`` or ``tmbackup: [LEVEL] msg``."""

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        if record.levelno >= logging.WARNING:
            return f"{LOGGER_NAME}: [{record.levelname}] {message}"
        return f"{LOGGER_NAME}: {message}"


def _ensure_log_directory(log_path: Path) -> None:
    """Ensure the parent directory for a log file exists."""
    log_dir = log_path.parent
    if not log_dir.exists():
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise LoggingError(f"Failed to create log directory {log_dir}: {e}")


def _get_log_level(level_str: str) -> int:
    """Convert log level string to logging constant."""
    level_str = level_str.upper()
    if level_str not in VALID_LOG_LEVELS:
        raise LoggingError(
            f"Invalid log level '{level_str}'. Must be one of: {', '.join(sorted(VALID_LOG_LEVELS))}"
        )
    return getattr(logging, level_str)


def setup_logging(
    config: Optional[LoggingConfig] = None,
    verbose: bool = False,
    console: bool = True,
) -> logging.Logger:
    """
    Configure logging for tmbackup.

    Sets up:
    - A rotating file handler for general logs
    - A rotating file handler for error logs only
    - Console output: INFO and DEBUG to stdout, warnings and errors to stderr

    Args:
        config: LoggingConfig with paths, level and rotation settings
        verbose: Force DEBUG level on the console
        console: Add the stdout and stderr console handlers

    Returns:
        Configured logger instance

    Raises:
        LoggingError: If log directory cannot be created or level is invalid
    """
    if config is None:
        config = LoggingConfig()

    log_file = Path(os.path.expanduser(str(config.log_file)))
    error_log_file = Path(os.path.expanduser(str(config.error_log_file)))

    _ensure_log_directory(log_file)
    _ensure_log_directory(error_log_file)

    log_level = _get_log_level(config.level)

    logger = logging.getLogger(LOGGER_NAME)

    # Clear any existing handlers to avoid duplicates
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()

    logger.setLevel(logging.DEBUG)  # Allow all levels, handlers will filter

    detailed_formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    file_handler = GzipRotatingFileHandler(
        log_file,
        maxBytes=config.log_max_bytes,
        backupCount=config.log_backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(log_level)
    file_handler.setFormatter(detailed_formatter)
    logger.addHandler(file_handler)

    error_handler = GzipRotatingFileHandler(
        error_log_file,
        maxBytes=config.log_max_bytes,
        backupCount=config.log_backup_count,
        encoding="utf-8",
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(detailed_formatter)
    logger.addHandler(error_handler)

    if console:
        stdout_handler = logging.StreamHandler(sys.stdout)
        stdout_handler.setLevel(logging.DEBUG if verbose else log_level)
        stdout_handler.addFilter(lambda record: record.levelno < logging.WARNING)
        stdout_handler.setFormatter(ConsoleFormatter())
        logger.addHandler(stdout_handler)

        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setLevel(logging.WARNING if verbose else max(logging.WARNING, log_level))
        stderr_handler.setFormatter(ConsoleFormatter())
        logger.addHandler(stderr_handler)

    return logger


def get_logger() -> logging.Logger:
    """Get the tmbackup logger instance."""
    return logging.getLogger(LOGGER_NAME)


def log_backup_start(logger: logging.Logger, source: str, destination: str) -> None:
    logger.info("Starting backup...")
    logger.info(f"From: {source}")
    logger.info(f"To:   {destination}")


def log_backup_completion(
    logger: logging.Logger,
    duration_seconds: float,
    snapshot_path: Optional[str] = None,
    warnings: bool = False,
) -> None:
    """Log the end of a backup run."""
    if warnings:
        logger.info("Backup completed with warnings and/or errors")
    else:
        logger.info("Backup completed without errors.")
    logger.debug(f"Finished at {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    logger.info(f"Duration: {duration_seconds:.2f} seconds")
    if snapshot_path:
        logger.info(f"Snapshot: {snapshot_path}")


def log_backup_error(
    logger: logging.Logger,
    error: Exception,
    context: Optional[str] = None,
) -> ErrorCode:
    """
    Log a fatal backup error with its error code and guidance.

    Returns:
        The ErrorCode attached to the log line
    """
    code = map_exception_to_error_code(error)
    if context:
        logger.error(f"[{code.value}] Backup failed during {context}: {error}")
    else:
        logger.error(f"[{code.value}] Backup failed: {error}")
    logger.info(get_error_guidance(code))
    return code
