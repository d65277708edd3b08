"""
Logging configuration for density map building and analysis.

Usage:
    from densitymaps.utils.logging import get_logger, setup_logging

    # Get a logger for your module
    logger = get_logger(__name__)

    # Setup logging at application start
    setup_logging(level="INFO", log_file="/path/to/output/densitymaps.log")

    # Use it
    logger.info("Building density map")
    logger.debug("Tile bounds: %s", bounds)
    logger.warning("Tile (%d, %d) failed, filling with zeros", x, y)
"""

import logging
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Optional, Union


class ColoredFormatter(logging.Formatter):
    """Formatter that adds colors to log levels for terminal output."""

    COLORS = {
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[35m',  # Magenta
    }
    RESET = '\033[0m'

    def format(self, record: logging.LogRecord) -> str:
        # Color a copy so file handlers sharing the record keep plain text
        record = logging.makeLogRecord(record.__dict__)
        if record.levelname in self.COLORS:
            record.levelname = (
                f"{self.COLORS[record.levelname]}{record.levelname}{self.RESET}"
            )
        return super().format(record)


_loggers: dict[str, logging.Logger] = {}
_initialized = False

DEFAULT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for a module.

    Args:
        name: Module name (typically __name__)

    Returns:
        Logger instance, cached per name
    """
    if name not in _loggers:
        _loggers[name] = logging.getLogger(name)
    return _loggers[name]


def setup_logging(
    level: Union[str, int] = "INFO",
    log_file: Optional[Union[str, Path]] = None,
    log_dir: Optional[Union[str, Path]] = None,
    console: bool = True,
    colored: bool = True,
    format_string: Optional[str] = None,
) -> logging.Logger:
    """
    Configure the root logger for an application run.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Explicit path to log file
        log_dir: Directory for an auto-named log file (timestamped)
        console: Whether to log to stdout
        colored: Whether to color console output (only when stdout is a TTY)
        format_string: Custom format string

    Returns:
        Root logger instance
    """
    global _initialized

    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    if format_string is None:
        format_string = DEFAULT_FORMAT

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Re-initializing replaces the handlers we installed last time
    if _initialized:
        for handler in list(root_logger.handlers):
            root_logger.removeHandler(handler)
            handler.close()

    if console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        if colored and sys.stdout.isatty():
            console_handler.setFormatter(ColoredFormatter(format_string))
        else:
            console_handler.setFormatter(logging.Formatter(format_string))
        root_logger.addHandler(console_handler)

    if log_file or log_dir:
        if log_file:
            log_path = Path(log_file)
        else:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            log_path = Path(log_dir) / f"densitymaps_{timestamp}.log"

        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path, mode='a')
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(format_string))
        root_logger.addHandler(file_handler)

        root_logger.info("Logging to file: %s", log_path)

    _initialized = True
    return root_logger


def log_parameters(logger: logging.Logger, params: dict, title: str = "Parameters") -> None:
    """
    Log a dictionary of parameters as an aligned block.

    Args:
        logger: Logger instance
        params: Dictionary of parameters to log
        title: Title for the parameter block
    """
    logger.info("=" * 50)
    logger.info(title)
    logger.info("=" * 50)

    for key, value in params.items():
        if isinstance(value, (list, tuple)) and len(value) > 5:
            logger.info("  %s: [%d items]", key, len(value))
        elif isinstance(value, dict) and len(value) > 5:
            logger.info("  %s: {%d keys}", key, len(value))
        else:
            logger.info("  %s: %s", key, value)

    logger.info("=" * 50)


def format_duration(duration_seconds: float) -> str:
    """Human-readable duration (seconds, minutes or hours)."""
    if duration_seconds >= 3600:
        return f"{duration_seconds / 3600:.1f} hours"
    if duration_seconds >= 60:
        return f"{duration_seconds / 60:.1f} minutes"
    return f"{duration_seconds:.1f} seconds"


def log_processing_start(logger: logging.Logger, operation: str, **kwargs) -> None:
    """Log the start of a processing operation with parameters."""
    logger.info("Starting: %s", operation)
    for key, value in kwargs.items():
        logger.info("  %s: %s", key, value)


def log_processing_end(
    logger: logging.Logger,
    operation: str,
    duration_seconds: Optional[float] = None,
    **results
) -> None:
    """Log the end of a processing operation with results."""
    if duration_seconds is not None:
        logger.info("Completed: %s in %s", operation, format_duration(duration_seconds))
    else:
        logger.info("Completed: %s", operation)

    for key, value in results.items():
        logger.info("  %s: %s", key, value)


class ProcessingTimer:
    """
    Context manager for timing operations.

    Cancellation is not a failure: exceptions listed in ``quiet`` are logged
    at DEBUG instead of ERROR, and are still propagated.
    """

    def __init__(self, logger: logging.Logger, operation: str, quiet: tuple = ()):
        self.logger = logger
        self.operation = operation
        self.quiet = quiet
        self.start_time: Optional[float] = None
        self.duration: Optional[float] = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        self.logger.info("Starting: %s", self.operation)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration = time.perf_counter() - self.start_time
        if exc_type is not None:
            if self.quiet and issubclass(exc_type, self.quiet):
                self.logger.debug("Stopped: %s after %.1fs (%s)",
                                  self.operation, self.duration, exc_type.__name__)
            else:
                self.logger.error("Failed: %s after %.1fs - %s",
                                  self.operation, self.duration, exc_val)
        else:
            log_processing_end(self.logger, self.operation, self.duration)
        return False
