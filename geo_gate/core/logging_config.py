"""
Logging configuration for GeoGate.
"""

import logging
import sys
from typing import Optional


# Color codes for console output
class LogColors:
    RESET = "\033[0m"
    BOLD = "\033[1m"
    RED = "\033[91m"
    YELLOW = "\033[93m"
    BLUE = "\033[94m"
    GRAY = "\033[90m"


class ColoredFormatter(logging.Formatter):
    """Formatter that colors the level name."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.colors = {
            logging.DEBUG: LogColors.GRAY,
            logging.INFO: LogColors.BLUE,
            logging.WARNING: LogColors.YELLOW,
            logging.ERROR: LogColors.RED,
            logging.CRITICAL: LogColors.RED + LogColors.BOLD,
        }

    def format(self, record):
        # Work on a copy so other handlers see the plain level name
        record = logging.makeLogRecord(record.__dict__)
        if record.levelno in self.colors:
            record.levelname = (
                f"{self.colors[record.levelno]}{record.levelname}{LogColors.RESET}"
            )

        return super().format(record)


def setup_logging(verbosity: int = 0, use_colors: bool = True) -> None:
    """
    Setup logging configuration based on verbosity level.

    Args:
        verbosity: Verbosity level (0-2)
            0: Only show essential messages (WARNING and above)
            1: Show DEBUG messages from GeoGate modules (-v)
            2: Show all DEBUG messages including external libraries (-vv)
        use_colors: Whether to use colored output
    """
    level = logging.DEBUG if verbosity >= 1 else logging.WARNING

    fmt = "%(levelname)s: %(message)s"
    if use_colors and sys.stderr.isatty():
        formatter: logging.Formatter = ColoredFormatter(fmt=fmt, datefmt="%H:%M:%S")
    else:
        formatter = logging.Formatter(fmt=fmt, datefmt="%H:%M:%S")

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if verbosity <= 1:
        # Keep third-party chatter out unless -vv was given
        for name in ("paramiko", "urllib3", "requests"):
            logging.getLogger(name).setLevel(logging.WARNING)

        logging.getLogger("geo_gate").setLevel(
            logging.WARNING if verbosity == 0 else logging.DEBUG
        )
    else:
        for name in ("paramiko", "urllib3", "requests", "geo_gate"):
            logging.getLogger(name).setLevel(logging.DEBUG)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger under the geo_gate namespace.

    Args:
        name: Module name (usually __name__)

    Returns:
        Configured logger instance
    """
    if not name.startswith("geo_gate"):
        if name == "__main__":
            name = "geo_gate.cli"
        elif "." not in name:
            name = f"geo_gate.{name}"

    return logging.getLogger(name)


def log_success(message: str, logger: Optional[logging.Logger] = None) -> None:
    """Log a success message."""
    if logger is None:
        logger = get_logger("geo_gate")
    logger.info(f"✓ {message}")


def log_error(message: str, logger: Optional[logging.Logger] = None) -> None:
    """Log an error message."""
    if logger is None:
        logger = get_logger("geo_gate")
    logger.error(f"✗ {message}")


def log_warning(message: str, logger: Optional[logging.Logger] = None) -> None:
    """Log a warning message."""
    if logger is None:
        logger = get_logger("geo_gate")
    logger.warning(f"⚠ {message}")


def log_info(message: str, logger: Optional[logging.Logger] = None) -> None:
    """Log an info message."""
    if logger is None:
        logger = get_logger("geo_gate")
    logger.info(message)


def log_debug(message: str, logger: Optional[logging.Logger] = None) -> None:
    """Log a debug message."""
    if logger is None:
        logger = get_logger("geo_gate")
    logger.debug(message)
