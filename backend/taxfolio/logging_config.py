"""
Logging configuration.

Format: [TIMESTAMP] [LEVEL] [MODULE:FUNCTION:LINE] MESSAGE
"""

import logging
import os
import sys
import time
from datetime import datetime
from typing import Optional


class StructuredFormatter(logging.Formatter):
    """Single-line structured log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
        location = f"{record.module}:{record.funcName}:{record.lineno}"

        message = f"[{timestamp}] [{record.levelname:8s}] [{location}] {record.getMessage()}"
        if record.exc_info:
            message += f"\n{self.formatException(record.exc_info)}"
        return message


class StepTimer:
    """Context manager logging how long a processing step took."""

    def __init__(self, logger: logging.Logger, operation: str, threshold_ms: float = 1000):
        self.logger = logger
        self.operation = operation
        self.threshold_ms = threshold_ms
        self._start: Optional[float] = None

    def __enter__(self):
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration_ms = (time.perf_counter() - self._start) * 1000
        if exc_type is not None:
            self.logger.warning(f"{self.operation} failed after {duration_ms:.1f}ms: {exc_val}")
        elif duration_ms > self.threshold_ms:
            self.logger.warning(f"SLOW: {self.operation} took {duration_ms:.1f}ms")
        else:
            self.logger.debug(f"{self.operation} took {duration_ms:.1f}ms")


def setup_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """
    Set up a logger with structured console output.

    Args:
        name: Logger name (usually __name__)
        level: Log level name. Defaults to the LOG_LEVEL env var or INFO.
    """
    logger = logging.getLogger(name)

    # Avoid duplicate handlers
    if logger.handlers:
        return logger

    if level is None:
        level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_level = getattr(logging, level, logging.INFO)
    logger.setLevel(log_level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(StructuredFormatter())
    logger.addHandler(handler)

    return logger
