"""Logging setup with credential redaction, plus per-operation helpers."""

import logging
import logging.handlers
import re
import sys
import time
from pathlib import Path
from typing import Optional

LOGGER_NAME = "cloud_backup"

# Access key ids, and the values of secret-looking key=value pairs
_SECRET_PATTERNS = [
    (re.compile(r"\b(AKIA|ASIA)[A-Z0-9]{12,}\b"), r"\1****"),
    (re.compile(r"(?i)\b(secret_access_key|secret_key|session_token|password|IdToken|AccessToken)"
                r"(['\"]?\s*[=:]\s*['\"]?)[^\s'\",}]+"), r"\1\2****"),
]


def redact(message: str) -> str:
    """Mask access key ids and secret values in a log message."""
    for pattern, replacement in _SECRET_PATTERNS:
        message = pattern.sub(replacement, message)
    return message


class RedactingFilter(logging.Filter):
    """Rewrites records so credentials never reach a handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = redact(record.getMessage())
        record.args = None
        return True


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[Path] = None,
    log_to_console: bool = True,
    max_file_size: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5
) -> logging.Logger:
    """Configure the ``cloud_backup`` logger.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Rotating log file (optional)
        log_to_console: Also log to stderr
        max_file_size: Size at which the log file rotates
        backup_count: Rotated files to keep

    Returns:
        The package logger
    """
    level = getattr(logging, log_level.upper())
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    logger.handlers.clear()

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    redacting = RedactingFilter()

    if log_to_console:
        # stderr keeps log lines out of the CLI's table output
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        console_handler.addFilter(redacting)
        logger.addHandler(console_handler)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=max_file_size,
            backupCount=backup_count,
            encoding='utf-8'
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(redacting)
        logger.addHandler(file_handler)

    return logger


class OperationLogger:
    """Prefixes messages with the profile and operation they belong to."""

    def __init__(self, logger: logging.Logger, profile_id: str, operation_id: str):
        self.logger = logger
        self.prefix = f"[profile={profile_id} op={operation_id[:8]}]"

    def log(self, level: int, message: str):
        self.logger.log(level, f"{self.prefix} {message}")

    def debug(self, message: str):
        self.log(logging.DEBUG, message)

    def info(self, message: str):
        self.log(logging.INFO, message)

    def error(self, message: str):
        self.log(logging.ERROR, message)


class StepTimer:
    """Context manager that logs the start and duration of one rclone step.

    The measured duration stays available on ``elapsed`` after the block.
    """

    def __init__(self, logger, step: str, level: int = logging.INFO):
        self.logger = logger
        self.step = step
        self.level = level
        self.elapsed: Optional[float] = None
        self._started: Optional[float] = None

    def __enter__(self) -> "StepTimer":
        self._started = time.monotonic()
        self.logger.log(self.level, f"{self.step}: started")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.elapsed = time.monotonic() - self._started
        if exc_type is None:
            self.logger.log(self.level, f"{self.step}: finished in {self.elapsed:.2f}s")
        else:
            self.logger.error(f"{self.step}: aborted after {self.elapsed:.2f}s: {exc_val}")
        return False
