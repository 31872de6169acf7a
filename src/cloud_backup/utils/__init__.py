"""Utility functions and helpers."""

from .file_utils import FileHelper
from .logging import OperationLogger, StepTimer, redact, setup_logging

__all__ = ["setup_logging", "redact", "OperationLogger", "StepTimer", "FileHelper"]
